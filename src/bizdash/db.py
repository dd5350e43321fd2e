"""Database operations for the bizdash reminder engine."""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("bizdash.db")


@dataclass
class Customer:
    id: int
    name: str
    email: str
    phone: str = ""
    company: str | None = None


@dataclass
class Invoice:
    id: int
    invoice_number: str
    customer_id: int
    issue_date: str
    due_date: str  # ISO date, YYYY-MM-DD
    total: float
    status: str = "pending"
    created_at: str | None = None


@dataclass
class ReminderRule:
    id: int
    name: str
    days_overdue: int  # threshold
    enabled: bool = True
    email_template: str | None = None


@dataclass
class ReminderRecord:
    id: int
    invoice_id: int
    days_overdue: int  # threshold that fired
    sent_at: str | None
    email_sent: bool


@dataclass
class Notification:
    id: int
    user_id: str | None
    title: str
    message: str
    type: str
    is_read: bool
    related_invoice_id: int | None
    created_at: str | None


@dataclass
class ReminderRun:
    id: int
    trigger: str
    status: str
    started_at: str | None
    finished_at: str | None
    reminders_sent: int
    pair_errors: int
    error: str | None


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).with_name("schema.sql")
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Customer and invoice functions
# ============================================================================


def create_customer(
    conn: sqlite3.Connection,
    name: str,
    email: str,
    phone: str = "",
    company: str | None = None,
) -> int:
    """Create a customer and return its ID."""
    cursor = conn.execute(
        "INSERT INTO customers (name, email, phone, company) VALUES (?, ?, ?, ?)",
        (name, email, phone, company),
    )
    return cursor.lastrowid


def create_invoice(
    conn: sqlite3.Connection,
    invoice_number: str,
    customer_id: int,
    due_date: str,
    total: float,
    status: str = "pending",
    issue_date: str | None = None,
) -> int:
    """Create an invoice and return its ID. issue_date defaults to due_date."""
    cursor = conn.execute(
        """
        INSERT INTO invoices (invoice_number, customer_id, issue_date, due_date, total, status)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (invoice_number, customer_id, issue_date or due_date, due_date, total, status),
    )
    return cursor.lastrowid


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> Invoice | None:
    cursor = conn.execute(
        """
        SELECT id, invoice_number, customer_id, issue_date, due_date, total, status, created_at
        FROM invoices
        WHERE id = ?
        """,
        (invoice_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_invoice(row)


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        invoice_number=row["invoice_number"],
        customer_id=row["customer_id"],
        issue_date=row["issue_date"],
        due_date=row["due_date"],
        total=row["total"],
        status=row["status"],
        created_at=row["created_at"],
    )


def set_invoice_status(conn: sqlite3.Connection, invoice_id: int, status: str) -> None:
    """Collaborator helper: invoice CRUD (and tests) mark invoices paid.

    The reminder engine never calls this; overdue is derived, not stored.
    """
    conn.execute(
        "UPDATE invoices SET status = ? WHERE id = ?",
        (status, invoice_id),
    )


def get_pending_invoices_due_before(
    conn: sqlite3.Connection,
    before: str,
) -> list[tuple[Invoice, Customer]]:
    """Fetch pending invoices with due_date strictly before `before`, with their customer.

    `before` is an ISO date string; ISO dates compare correctly as text.
    """
    cursor = conn.execute(
        """
        SELECT i.id, i.invoice_number, i.customer_id, i.issue_date, i.due_date,
               i.total, i.status, i.created_at,
               c.name AS customer_name, c.email AS customer_email,
               c.phone AS customer_phone, c.company AS customer_company
        FROM invoices i
        JOIN customers c ON c.id = i.customer_id
        WHERE i.status = 'pending' AND i.due_date < ?
        """,
        (before,),
    )
    results = []
    for row in cursor.fetchall():
        customer = Customer(
            id=row["customer_id"],
            name=row["customer_name"],
            email=row["customer_email"],
            phone=row["customer_phone"] or "",
            company=row["customer_company"],
        )
        results.append((_row_to_invoice(row), customer))
    return results


# ============================================================================
# Reminder rule (policy) functions
# ============================================================================


def _row_to_reminder_rule(row: sqlite3.Row) -> ReminderRule:
    return ReminderRule(
        id=row["id"],
        name=row["name"],
        days_overdue=row["days_overdue"],
        enabled=bool(row["enabled"]),
        email_template=row["email_template"],
    )


def list_reminder_rules(conn: sqlite3.Connection) -> list[ReminderRule]:
    """Fetch all reminder rules (enabled and disabled), ordered by threshold."""
    cursor = conn.execute(
        """
        SELECT id, name, days_overdue, enabled, email_template
        FROM reminder_settings
        ORDER BY days_overdue
        """
    )
    return [_row_to_reminder_rule(row) for row in cursor.fetchall()]


def get_enabled_reminder_rules(conn: sqlite3.Connection) -> list[ReminderRule]:
    """Fetch enabled reminder rules, ordered by threshold."""
    cursor = conn.execute(
        """
        SELECT id, name, days_overdue, enabled, email_template
        FROM reminder_settings
        WHERE enabled = 1
        ORDER BY days_overdue
        """
    )
    return [_row_to_reminder_rule(row) for row in cursor.fetchall()]


def get_reminder_rule(conn: sqlite3.Connection, rule_id: int) -> ReminderRule | None:
    cursor = conn.execute(
        """
        SELECT id, name, days_overdue, enabled, email_template
        FROM reminder_settings
        WHERE id = ?
        """,
        (rule_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_reminder_rule(row)


def add_reminder_rule(
    conn: sqlite3.Connection,
    name: str,
    days_overdue: int,
    enabled: bool = True,
    email_template: str | None = None,
) -> int:
    """Add a reminder rule. Raises ValueError on a negative threshold.

    A duplicate threshold raises sqlite3.IntegrityError.
    """
    if days_overdue < 0:
        raise ValueError("days_overdue must be non-negative")
    cursor = conn.execute(
        """
        INSERT INTO reminder_settings (name, days_overdue, enabled, email_template)
        VALUES (?, ?, ?, ?)
        """,
        (name, days_overdue, 1 if enabled else 0, email_template),
    )
    return cursor.lastrowid


def update_reminder_rule(
    conn: sqlite3.Connection,
    rule_id: int,
    *,
    name: str | None = None,
    days_overdue: int | None = None,
    enabled: bool | None = None,
    email_template: str | None = None,
) -> ReminderRule | None:
    """Update the given fields of a reminder rule. Returns the updated rule, or None."""
    updates = []
    params: list = []
    if name is not None:
        updates.append("name = ?")
        params.append(name)
    if days_overdue is not None:
        if days_overdue < 0:
            raise ValueError("days_overdue must be non-negative")
        updates.append("days_overdue = ?")
        params.append(days_overdue)
    if enabled is not None:
        updates.append("enabled = ?")
        params.append(1 if enabled else 0)
    if email_template is not None:
        updates.append("email_template = ?")
        params.append(email_template)

    if updates:
        params.append(rule_id)
        conn.execute(
            f"UPDATE reminder_settings SET {', '.join(updates)} WHERE id = ?",
            params,
        )
    return get_reminder_rule(conn, rule_id)


def delete_reminder_rule(conn: sqlite3.Connection, rule_id: int) -> bool:
    """Delete a reminder rule. Returns True if it existed.

    Ledger rows keyed by the threshold are left alone.
    """
    cursor = conn.execute("DELETE FROM reminder_settings WHERE id = ?", (rule_id,))
    return cursor.rowcount > 0


# ============================================================================
# Reminder ledger functions
# ============================================================================


def reminder_exists(conn: sqlite3.Connection, invoice_id: int, days_overdue: int) -> bool:
    """Check whether a reminder was already recorded for (invoice, threshold)."""
    cursor = conn.execute(
        "SELECT 1 FROM invoice_reminders WHERE invoice_id = ? AND days_overdue = ?",
        (invoice_id, days_overdue),
    )
    return cursor.fetchone() is not None


def insert_reminder_record(
    conn: sqlite3.Connection,
    invoice_id: int,
    days_overdue: int,
    email_sent: bool = False,
) -> bool:
    """Claim (invoice, threshold) in the ledger.

    Returns False if a record already existed (claim lost), True otherwise.
    """
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO invoice_reminders (invoice_id, days_overdue, email_sent)
        VALUES (?, ?, ?)
        """,
        (invoice_id, days_overdue, 1 if email_sent else 0),
    )
    return cursor.rowcount > 0


def mark_reminder_message_sent(
    conn: sqlite3.Connection, invoice_id: int, days_overdue: int,
) -> None:
    """Record that the outbound message for (invoice, threshold) was delivered."""
    conn.execute(
        "UPDATE invoice_reminders SET email_sent = 1 WHERE invoice_id = ? AND days_overdue = ?",
        (invoice_id, days_overdue),
    )


def _row_to_reminder_record(row: sqlite3.Row) -> ReminderRecord:
    return ReminderRecord(
        id=row["id"],
        invoice_id=row["invoice_id"],
        days_overdue=row["days_overdue"],
        sent_at=row["sent_at"],
        email_sent=bool(row["email_sent"]),
    )


def get_reminder_records(conn: sqlite3.Connection, invoice_id: int) -> list[ReminderRecord]:
    """Ledger rows for one invoice, ordered by threshold."""
    cursor = conn.execute(
        """
        SELECT id, invoice_id, days_overdue, sent_at, email_sent
        FROM invoice_reminders
        WHERE invoice_id = ?
        ORDER BY days_overdue
        """,
        (invoice_id,),
    )
    return [_row_to_reminder_record(row) for row in cursor.fetchall()]


def get_unsent_reminder_records(conn: sqlite3.Connection) -> list[ReminderRecord]:
    """Ledger rows whose outbound message was never delivered."""
    cursor = conn.execute(
        """
        SELECT id, invoice_id, days_overdue, sent_at, email_sent
        FROM invoice_reminders
        WHERE email_sent = 0
        ORDER BY sent_at, id
        """
    )
    return [_row_to_reminder_record(row) for row in cursor.fetchall()]


# ============================================================================
# Notification functions
# ============================================================================


def create_notification(
    conn: sqlite3.Connection,
    title: str,
    message: str,
    type: str = "info",
    user_id: str | None = None,
    related_invoice_id: int | None = None,
) -> int:
    """Create a notification. user_id=None means visible to all admins."""
    cursor = conn.execute(
        """
        INSERT INTO notifications (user_id, title, message, type, related_invoice_id)
        VALUES (?, ?, ?, ?, ?)
        """,
        (user_id, title, message, type, related_invoice_id),
    )
    return cursor.lastrowid


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        message=row["message"],
        type=row["type"],
        is_read=bool(row["is_read"]),
        related_invoice_id=row["related_invoice_id"],
        created_at=row["created_at"],
    )


def list_notifications(
    conn: sqlite3.Connection,
    user_id: str | None = None,
    unread_only: bool = False,
    limit: int = 100,
) -> list[Notification]:
    """List notifications newest first.

    With user_id, returns that user's notifications plus the all-admins ones.
    """
    query = """
        SELECT id, user_id, title, message, type, is_read, related_invoice_id, created_at
        FROM notifications
        WHERE 1 = 1
    """
    params: list = []
    if user_id is not None:
        query += " AND (user_id IS NULL OR user_id = ?)"
        params.append(user_id)
    if unread_only:
        query += " AND is_read = 0"
    query += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)
    cursor = conn.execute(query, params)
    return [_row_to_notification(row) for row in cursor.fetchall()]


def get_notifications_for_invoice(
    conn: sqlite3.Connection, invoice_id: int,
) -> list[Notification]:
    cursor = conn.execute(
        """
        SELECT id, user_id, title, message, type, is_read, related_invoice_id, created_at
        FROM notifications
        WHERE related_invoice_id = ?
        ORDER BY id
        """,
        (invoice_id,),
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


def mark_notification_read(
    conn: sqlite3.Connection, notification_id: int,
) -> Notification | None:
    """Mark a notification read. Returns the updated notification, or None if missing."""
    conn.execute(
        "UPDATE notifications SET is_read = 1 WHERE id = ?",
        (notification_id,),
    )
    cursor = conn.execute(
        """
        SELECT id, user_id, title, message, type, is_read, related_invoice_id, created_at
        FROM notifications
        WHERE id = ?
        """,
        (notification_id,),
    )
    row = cursor.fetchone()
    return _row_to_notification(row) if row else None


# ============================================================================
# Reminder run history functions
# ============================================================================


def start_reminder_run(conn: sqlite3.Connection, trigger: str) -> int:
    """Record the start of a reminder run. Returns run ID."""
    cursor = conn.execute(
        "INSERT INTO reminder_runs (trigger, status) VALUES (?, 'running')",
        (trigger,),
    )
    return cursor.lastrowid


def finish_reminder_run(
    conn: sqlite3.Connection,
    run_id: int,
    status: str,
    reminders_sent: int = 0,
    pair_errors: int = 0,
    error: str | None = None,
) -> None:
    """Record the outcome of a reminder run."""
    conn.execute(
        """
        UPDATE reminder_runs
        SET status = ?, reminders_sent = ?, pair_errors = ?, error = ?,
            finished_at = datetime('now')
        WHERE id = ?
        """,
        (status, reminders_sent, pair_errors, error[:500] if error else None, run_id),
    )


def _row_to_reminder_run(row: sqlite3.Row) -> ReminderRun:
    return ReminderRun(
        id=row["id"],
        trigger=row["trigger"],
        status=row["status"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        reminders_sent=row["reminders_sent"],
        pair_errors=row["pair_errors"],
        error=row["error"],
    )


def get_last_reminder_run(
    conn: sqlite3.Connection, trigger: str | None = None,
) -> ReminderRun | None:
    """Most recent run, optionally filtered by trigger."""
    query = """
        SELECT id, trigger, status, started_at, finished_at, reminders_sent, pair_errors, error
        FROM reminder_runs
    """
    params: tuple = ()
    if trigger:
        query += " WHERE trigger = ?"
        params = (trigger,)
    query += " ORDER BY id DESC LIMIT 1"
    row = conn.execute(query, params).fetchone()
    return _row_to_reminder_run(row) if row else None


def list_reminder_runs(conn: sqlite3.Connection, limit: int = 20) -> list[ReminderRun]:
    cursor = conn.execute(
        """
        SELECT id, trigger, status, started_at, finished_at, reminders_sent, pair_errors, error
        FROM reminder_runs
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_reminder_run(row) for row in cursor.fetchall()]
