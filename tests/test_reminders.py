"""Tests for reminders.py dispatch logic."""

import sqlite3
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from bizdash import db
from bizdash.overdue import scan_overdue_invoices
from bizdash.reminders import (
    ReminderResult,
    RunSummary,
    dispatch_reminders,
    format_notification,
)

TODAY = date(2026, 3, 20)


def _add_rules(conn, *thresholds):
    for t in thresholds:
        db.add_reminder_rule(conn, name=f"{t} days", days_overdue=t)
    conn.commit()
    return db.get_enabled_reminder_rules(conn)


def _run(conn, notifier=None, **kwargs):
    overdue = scan_overdue_invoices(conn, TODAY)
    rules = db.get_enabled_reminder_rules(conn)
    notifier = notifier or MagicMock(**{"send_reminder.return_value": False})
    return dispatch_reminders(conn, overdue, rules, notifier, **kwargs)


class TestFormatNotification:
    def test_title_and_message(self, db_conn, make_invoice):
        make_invoice(db_conn, number="INV-042", days_ago=10, total=1500.0, customer_name="Acme Corp")
        item = scan_overdue_invoices(db_conn, TODAY)[0]

        title, message = format_notification(item)

        assert title == "Payment Overdue: INV-042"
        assert message == "Invoice INV-042 for Acme Corp is 10 days overdue (Amount: $1,500.00)"


class TestRunSummary:
    def test_to_dict_shape(self):
        summary = RunSummary(results=[
            ReminderResult("INV-1", 10, 7, sent=True),
            ReminderResult("INV-2", 4, 3, sent=False),
        ], errors=[{"invoice_number": "INV-2", "threshold": 3, "error": "boom"}])

        assert summary.sent_count == 1
        assert summary.to_dict() == {
            "results": [
                {"invoiceNumber": "INV-1", "daysOverdue": 10, "sent": True},
                {"invoiceNumber": "INV-2", "daysOverdue": 4, "sent": False},
            ],
            "sent": 1,
            "errors": 1,
        }


class TestDispatchReminders:
    def test_threshold_reached_sends_one_reminder(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, number="INV-001", days_ago=10)
        _add_rules(db_conn, 7)

        summary = _run(db_conn)

        assert [r.to_dict() for r in summary.results] == [
            {"invoiceNumber": "INV-001", "daysOverdue": 10, "sent": True},
        ]
        records = db.get_reminder_records(db_conn, invoice_id)
        assert [(r.invoice_id, r.days_overdue) for r in records] == [(invoice_id, 7)]
        notifications = db.get_notifications_for_invoice(db_conn, invoice_id)
        assert len(notifications) == 1

    def test_threshold_not_reached_sends_nothing(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 15)

        summary = _run(db_conn)

        assert summary.results == []
        assert db.get_reminder_records(db_conn, invoice_id) == []
        assert db.get_notifications_for_invoice(db_conn, invoice_id) == []

    def test_exact_threshold_fires(self, db_conn, make_invoice):
        make_invoice(db_conn, days_ago=7)
        _add_rules(db_conn, 7)
        assert _run(db_conn).sent_count == 1

    def test_zero_threshold_fires_day_after_due(self, db_conn, make_invoice):
        make_invoice(db_conn, days_ago=1)
        _add_rules(db_conn, 0)
        assert _run(db_conn).sent_count == 1

    def test_catch_up_fires_every_satisfied_threshold(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=20)
        _add_rules(db_conn, 3, 7, 15)

        summary = _run(db_conn)

        assert summary.sent_count == 3
        assert [r.threshold for r in summary.results] == [3, 7, 15]
        records = db.get_reminder_records(db_conn, invoice_id)
        assert [r.days_overdue for r in records] == [3, 7, 15]
        assert len(db.get_notifications_for_invoice(db_conn, invoice_id)) == 3

    def test_rerun_is_idempotent(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=20)
        _add_rules(db_conn, 3, 7, 15)

        first = _run(db_conn)
        second = _run(db_conn)

        assert first.sent_count == 3
        assert second.results == []
        assert len(db.get_reminder_records(db_conn, invoice_id)) == 3
        assert len(db.get_notifications_for_invoice(db_conn, invoice_id)) == 3

    def test_existing_record_is_skipped(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 3, 7)
        db.insert_reminder_record(db_conn, invoice_id, 3)
        db_conn.commit()

        summary = _run(db_conn)

        assert [r.threshold for r in summary.results] == [7]
        assert len(db.get_notifications_for_invoice(db_conn, invoice_id)) == 1

    def test_paid_invoice_excluded(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=30, status="paid")
        _add_rules(db_conn, 3, 7, 15)

        summary = _run(db_conn)

        assert summary.results == []
        assert db.get_reminder_records(db_conn, invoice_id) == []

    def test_disabled_rules_are_not_applied(self, db_conn, make_invoice):
        make_invoice(db_conn, days_ago=10)
        db.add_reminder_rule(db_conn, name="3 days", days_overdue=3, enabled=False)
        db_conn.commit()

        assert _run(db_conn).results == []

    def test_notification_content(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, number="INV-7", days_ago=10, total=99.5, customer_name="Beta Inc")
        _add_rules(db_conn, 7)

        _run(db_conn)

        [notification] = db.get_notifications_for_invoice(db_conn, invoice_id)
        assert notification.title == "Payment Overdue: INV-7"
        assert notification.message == "Invoice INV-7 for Beta Inc is 10 days overdue (Amount: $99.50)"
        assert notification.type == "warning"
        assert notification.user_id is None
        assert notification.is_read is False

    def test_ledger_failure_does_not_block_other_invoices(self, db_conn, make_invoice):
        bad_id = make_invoice(db_conn, number="INV-BAD", days_ago=10)
        good_id = make_invoice(db_conn, number="INV-GOOD", days_ago=10)
        _add_rules(db_conn, 7)

        original = db.insert_reminder_record

        def flaky_insert(conn, invoice_id, days_overdue, email_sent=False):
            if invoice_id == bad_id:
                raise sqlite3.OperationalError("disk I/O error")
            return original(conn, invoice_id, days_overdue, email_sent)

        with patch("bizdash.reminders.db.insert_reminder_record", side_effect=flaky_insert):
            summary = _run(db_conn)

        by_number = {r.invoice_number: r for r in summary.results}
        assert by_number["INV-GOOD"].sent is True
        assert by_number["INV-BAD"].sent is False
        assert summary.errors == [
            {"invoice_number": "INV-BAD", "threshold": 7, "error": "disk I/O error"},
        ]
        assert len(db.get_reminder_records(db_conn, good_id)) == 1
        assert len(db.get_notifications_for_invoice(db_conn, good_id)) == 1
        # Notification for the failed pair is rolled back with the ledger write
        assert db.get_reminder_records(db_conn, bad_id) == []
        assert db.get_notifications_for_invoice(db_conn, bad_id) == []

    def test_failed_pair_retried_on_next_run(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 7)

        with patch(
            "bizdash.reminders.db.create_notification",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            first = _run(db_conn)
        second = _run(db_conn)

        assert first.sent_count == 0
        assert len(first.errors) == 1
        assert second.sent_count == 1
        assert len(db.get_reminder_records(db_conn, invoice_id)) == 1

    def test_lost_claim_writes_nothing(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 7)

        with patch("bizdash.reminders.db.insert_reminder_record", return_value=False):
            summary = _run(db_conn)

        assert summary.results == []
        assert summary.errors == []
        assert db.get_notifications_for_invoice(db_conn, invoice_id) == []

    def test_notifier_called_per_sent_pair(self, db_conn, make_invoice):
        make_invoice(db_conn, number="INV-1", days_ago=20)
        _add_rules(db_conn, 3, 15)
        notifier = MagicMock()
        notifier.send_reminder.return_value = False

        _run(db_conn, notifier=notifier)

        assert notifier.send_reminder.call_count == 2
        thresholds = [c.args[1].days_overdue for c in notifier.send_reminder.call_args_list]
        assert thresholds == [3, 15]
        assert notifier.send_reminder.call_args_list[0].args[0].invoice.invoice_number == "INV-1"

    def test_delivered_message_marks_ledger(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 7)
        notifier = MagicMock()
        notifier.send_reminder.return_value = True

        _run(db_conn, notifier=notifier)

        [record] = db.get_reminder_records(db_conn, invoice_id)
        assert record.email_sent is True

    def test_undelivered_message_leaves_flag_unset(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 7)

        summary = _run(db_conn)

        assert summary.sent_count == 1
        [record] = db.get_reminder_records(db_conn, invoice_id)
        assert record.email_sent is False
        assert [r.invoice_id for r in db.get_unsent_reminder_records(db_conn)] == [invoice_id]

    def test_notifier_exception_does_not_undo_dispatch(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 7)
        notifier = MagicMock()
        notifier.send_reminder.side_effect = RuntimeError("smtp down")

        summary = _run(db_conn, notifier=notifier)

        assert summary.sent_count == 1
        assert summary.errors == []
        assert len(db.get_reminder_records(db_conn, invoice_id)) == 1

    def test_dry_run_writes_nothing(self, db_conn, make_invoice):
        invoice_id = make_invoice(db_conn, days_ago=10)
        _add_rules(db_conn, 3, 7)
        notifier = MagicMock()

        summary = _run(db_conn, notifier=notifier, dry_run=True)

        assert summary.dry_run is True
        assert [(r.threshold, r.sent) for r in summary.results] == [(3, False), (7, False)]
        notifier.send_reminder.assert_not_called()
        assert db.get_reminder_records(db_conn, invoice_id) == []
        assert db.get_notifications_for_invoice(db_conn, invoice_id) == []

    def test_rules_evaluated_in_threshold_order(self, db_conn, make_invoice):
        make_invoice(db_conn, days_ago=30)
        overdue = scan_overdue_invoices(db_conn, TODAY)
        rules = [
            db.ReminderRule(id=2, name="late", days_overdue=15),
            db.ReminderRule(id=1, name="early", days_overdue=3),
        ]

        summary = dispatch_reminders(db_conn, overdue, rules, MagicMock())

        assert [r.threshold for r in summary.results] == [3, 15]

    def test_trigger_recorded_on_summary(self, db_conn):
        summary = dispatch_reminders(db_conn, [], [], MagicMock(), trigger="scheduled")
        assert summary.trigger == "scheduled"
        assert summary.finished_at is not None
