"""Overdue invoice detection.

An invoice is overdue when its stored status is still "pending" and its
due date is strictly before the evaluation date. The status is never
rewritten to "overdue"; the date comparison is the only source of truth.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date

from . import db

logger = logging.getLogger("bizdash.overdue")


class ScanError(Exception):
    """The invoice store could not be scanned; the run has no valid input."""


@dataclass
class OverdueInvoice:
    invoice: db.Invoice
    customer: db.Customer
    days_overdue: int


def days_overdue(due_date: date, today: date) -> int:
    """Whole days between due date and today (negative if not yet due)."""
    return (today - due_date).days


def is_overdue(status: str, due_date: date, today: date) -> bool:
    """Pure overdue check: pending and due strictly before today."""
    return status == "pending" and due_date < today


def scan_overdue_invoices(conn: sqlite3.Connection, today: date) -> list[OverdueInvoice]:
    """Return every overdue invoice paired with its customer.

    All-or-nothing: any store error raises ScanError and no partial list
    is returned.
    """
    try:
        rows = db.get_pending_invoices_due_before(conn, today.isoformat())
    except sqlite3.Error as e:
        raise ScanError(f"Failed to query pending invoices: {e}") from e

    overdue = []
    for invoice, customer in rows:
        try:
            due = date.fromisoformat(invoice.due_date)
        except ValueError as e:
            raise ScanError(
                f"Invoice {invoice.invoice_number} has invalid due date {invoice.due_date!r}"
            ) from e
        # Already filtered by the query; apply the pure predicate as well
        if not is_overdue(invoice.status, due, today):
            continue
        overdue.append(OverdueInvoice(
            invoice=invoice,
            customer=customer,
            days_overdue=days_overdue(due, today),
        ))

    logger.debug("Found %d overdue invoice(s) as of %s", len(overdue), today)
    return overdue
