"""Tiered overdue-invoice reminders.

Matches overdue invoices against the enabled reminder rules and dispatches
at most one reminder per (invoice, threshold). The ledger row and the admin
notification are written in one transaction per pair; the outbound message
goes out after commit and only flips the ledger's email_sent flag.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from . import db

if TYPE_CHECKING:
    from .notifier import Notifier
    from .overdue import OverdueInvoice

logger = logging.getLogger("bizdash.reminders")


@dataclass
class ReminderResult:
    invoice_number: str
    days_overdue: int
    threshold: int
    sent: bool

    def to_dict(self) -> dict:
        return {
            "invoiceNumber": self.invoice_number,
            "daysOverdue": self.days_overdue,
            "sent": self.sent,
        }


@dataclass
class RunSummary:
    """Outcome of one scan-and-dispatch run. Not persisted beyond the run row."""
    trigger: str = "manual"
    results: list[ReminderResult] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    failed: bool = False
    error: str | None = None
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.sent)

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "sent": self.sent_count,
            "errors": len(self.errors),
        }


def format_notification(item: "OverdueInvoice") -> tuple[str, str]:
    """Title and message for the admin-visible overdue notification."""
    number = item.invoice.invoice_number
    title = f"Payment Overdue: {number}"
    message = (
        f"Invoice {number} for {item.customer.name} is {item.days_overdue} days overdue "
        f"(Amount: ${item.invoice.total:,.2f})"
    )
    return title, message


def _record_reminder(
    conn: sqlite3.Connection, item: "OverdueInvoice", rule: db.ReminderRule,
) -> bool:
    """Write notification and ledger claim as one transaction.

    Returns False (and writes nothing) if another writer already claimed
    the pair.
    """
    title, message = format_notification(item)
    try:
        db.create_notification(
            conn,
            title=title,
            message=message,
            type="warning",
            user_id=None,
            related_invoice_id=item.invoice.id,
        )
        if not db.insert_reminder_record(conn, item.invoice.id, rule.days_overdue):
            conn.rollback()
            return False
        conn.commit()
        return True
    except Exception:
        conn.rollback()
        raise


def _deliver(
    conn: sqlite3.Connection,
    item: "OverdueInvoice",
    rule: db.ReminderRule,
    notifier: "Notifier",
) -> None:
    """Send the outbound message. Failures leave email_sent = 0 for reconciliation."""
    number = item.invoice.invoice_number
    try:
        delivered = notifier.send_reminder(item, rule)
    except Exception as e:
        logger.error("Reminder delivery raised for %s (threshold %d): %s", number, rule.days_overdue, e)
        return

    if not delivered:
        logger.debug("Reminder message for %s (threshold %d) not delivered", number, rule.days_overdue)
        return

    try:
        db.mark_reminder_message_sent(conn, item.invoice.id, rule.days_overdue)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(
            "Failed to mark reminder message sent for %s (threshold %d): %s",
            number, rule.days_overdue, e,
        )


def dispatch_reminders(
    conn: sqlite3.Connection,
    overdue: list["OverdueInvoice"],
    rules: list[db.ReminderRule],
    notifier: "Notifier",
    trigger: str = "manual",
    dry_run: bool = False,
) -> RunSummary:
    """Dispatch reminders for every unrecorded (invoice, threshold) pair that is due.

    Every satisfied threshold fires independently, so an invoice that has
    been overdue for a long time can get several reminders in one run.
    Pair-level failures are logged and reported, and never abort the run.
    Commits per pair.
    """
    summary = RunSummary(trigger=trigger, dry_run=dry_run)
    rules = sorted(rules, key=lambda r: r.days_overdue)

    # Start from a clean transaction so a pair rollback only undoes that pair
    conn.commit()

    for item in overdue:
        number = item.invoice.invoice_number
        for rule in rules:
            if item.days_overdue < rule.days_overdue:
                continue

            try:
                if db.reminder_exists(conn, item.invoice.id, rule.days_overdue):
                    continue

                if dry_run:
                    logger.info(
                        "Would send reminder for %s (%d days overdue, threshold %d)",
                        number, item.days_overdue, rule.days_overdue,
                    )
                    summary.results.append(ReminderResult(
                        number, item.days_overdue, rule.days_overdue, sent=False,
                    ))
                    continue

                if not _record_reminder(conn, item, rule):
                    logger.info(
                        "Reminder for %s (threshold %d) already claimed, skipping",
                        number, rule.days_overdue,
                    )
                    continue
            except Exception as e:
                logger.error(
                    "Failed to dispatch reminder for %s (threshold %d): %s",
                    number, rule.days_overdue, e,
                )
                summary.errors.append({
                    "invoice_number": number,
                    "threshold": rule.days_overdue,
                    "error": str(e),
                })
                summary.results.append(ReminderResult(
                    number, item.days_overdue, rule.days_overdue, sent=False,
                ))
                continue

            logger.info(
                "Sent reminder for %s (%d days overdue, threshold %d)",
                number, item.days_overdue, rule.days_overdue,
            )
            summary.results.append(ReminderResult(
                number, item.days_overdue, rule.days_overdue, sent=True,
            ))
            _deliver(conn, item, rule, notifier)

    summary.finished_at = datetime.now(timezone.utc)
    return summary
