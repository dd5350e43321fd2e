"""Shared test fixtures for bizdash tests."""

from datetime import date, timedelta

import pytest

from bizdash import db
from bizdash.config import Config, RemindersConfig


TODAY = date(2026, 3, 20)


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(tmp_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {
            "db_path": tmp_path / "test.db",
            "reminders": RemindersConfig(lock_path=tmp_path / "reminders.lock"),
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def make_invoice():
    """Factory fixture that inserts a customer + invoice due N days before `today`.

    Returns the invoice ID. Commits so other connections see the rows.
    """
    def _make_invoice(
        conn,
        number="INV-001",
        days_ago=10,
        total=1500.0,
        status="pending",
        today=TODAY,
        customer_name="Acme Corp",
        customer_email="billing@acme.example",
    ):
        customer_id = db.create_customer(conn, name=customer_name, email=customer_email)
        due = today - timedelta(days=days_ago)
        invoice_id = db.create_invoice(
            conn,
            invoice_number=number,
            customer_id=customer_id,
            due_date=due.isoformat(),
            total=total,
            status=status,
        )
        conn.commit()
        return invoice_id
    return _make_invoice
