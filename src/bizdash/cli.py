"""CLI interface for reminder administration."""

import argparse
import json
import sqlite3
import sys
from datetime import date
from pathlib import Path

from . import db
from .config import load_config
from .logging_setup import setup_logging
from .scheduler import RunInProgressError, run_reminder_check


def _load(args):
    return load_config(Path(args.config) if args.config else None)


def cmd_init(args):
    """Initialize the database."""
    config = _load(args)
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_check(args):
    """Run the overdue-invoice reminder check now."""
    config = _load(args)
    today = date.fromisoformat(args.date) if args.date else None

    try:
        summary = run_reminder_check(config, trigger="manual", today=today, dry_run=args.dry_run)
    except RunInProgressError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        for r in summary.results:
            if summary.dry_run:
                status = "would send"
            else:
                status = "sent" if r.sent else "FAILED"
            print(f"{r.invoice_number:15} {r.days_overdue:4}d  threshold {r.threshold:3}d  {status}")
        if summary.dry_run:
            print(f"{len(summary.results)} reminder(s) would be sent")
        elif not summary.failed:
            print(f"Sent {summary.sent_count} reminder(s), {len(summary.errors)} error(s)")

    if summary.failed:
        print(f"Error: reminder check failed: {summary.error}", file=sys.stderr)
        sys.exit(1)


def cmd_rules_list(args):
    """List reminder rules."""
    with db.get_db(_load(args).db_path) as conn:
        rules = db.list_reminder_rules(conn)

    if not rules:
        print("No reminder rules configured")
        return

    for r in rules:
        state = "enabled" if r.enabled else "disabled"
        print(f"[{r.id}] {r.days_overdue:4} days  {state:8}  {r.name}")


def cmd_rules_add(args):
    """Add a reminder rule."""
    template = None
    if args.template_file:
        template = Path(args.template_file).read_text()
    try:
        with db.get_db(_load(args).db_path) as conn:
            rule_id = db.add_reminder_rule(
                conn,
                name=args.name or f"{args.days} days overdue",
                days_overdue=args.days,
                enabled=not args.disabled,
                email_template=template,
            )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except sqlite3.IntegrityError:
        print(f"Error: a rule for {args.days} days already exists", file=sys.stderr)
        sys.exit(1)
    print(f"Rule created: {rule_id}")


def _set_rule_enabled(args, enabled: bool):
    with db.get_db(_load(args).db_path) as conn:
        rule = db.update_reminder_rule(conn, args.rule_id, enabled=enabled)
    if rule is None:
        print(f"Rule {args.rule_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Rule {rule.id} ({rule.days_overdue} days) {'enabled' if enabled else 'disabled'}")


def cmd_rules_enable(args):
    _set_rule_enabled(args, True)


def cmd_rules_disable(args):
    _set_rule_enabled(args, False)


def cmd_rules_delete(args):
    with db.get_db(_load(args).db_path) as conn:
        deleted = db.delete_reminder_rule(conn, args.rule_id)
    if not deleted:
        print(f"Rule {args.rule_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Rule {args.rule_id} deleted")


def cmd_notifications_list(args):
    """List notifications, newest first."""
    with db.get_db(_load(args).db_path) as conn:
        notifications = db.list_notifications(
            conn, unread_only=args.unread, limit=args.limit,
        )

    if not notifications:
        print("No notifications")
        return

    for n in notifications:
        marker = " " if n.is_read else "*"
        print(f"{marker}[{n.id}] {n.created_at}  {n.type:7}  {n.title}")
        print(f"      {n.message}")


def cmd_notifications_read(args):
    with db.get_db(_load(args).db_path) as conn:
        notification = db.mark_notification_read(conn, args.notification_id)
    if notification is None:
        print(f"Notification {args.notification_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Notification {notification.id} marked read")


def cmd_reminders_unsent(args):
    """List ledger entries whose outbound message was never delivered."""
    with db.get_db(_load(args).db_path) as conn:
        records = db.get_unsent_reminder_records(conn)
        rows = []
        for rec in records:
            invoice = db.get_invoice(conn, rec.invoice_id)
            rows.append({
                "invoice_number": invoice.invoice_number if invoice else f"#{rec.invoice_id}",
                "threshold": rec.days_overdue,
                "recorded_at": rec.sent_at,
            })
    print(json.dumps({"status": "ok", "count": len(rows), "reminders": rows}, indent=2))


def cmd_runs(args):
    """Show recent reminder runs."""
    with db.get_db(_load(args).db_path) as conn:
        runs = db.list_reminder_runs(conn, limit=args.limit)

    if not runs:
        print("No reminder runs recorded")
        return

    for r in runs:
        line = (
            f"[{r.id}] {r.started_at}  {r.trigger:9}  {r.status:9}  "
            f"sent={r.reminders_sent} errors={r.pair_errors}"
        )
        if r.error:
            line += f"  ({r.error})"
        print(line)


def cmd_serve(args):
    """Run the admin API with Flask's development server."""
    from .api import create_app

    config = _load(args)
    app = create_app(config)
    app.run(host=args.host or config.api.host, port=args.port or config.api.port)


def main():
    parser = argparse.ArgumentParser(description="bizdash reminder CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # check
    check_parser = subparsers.add_parser("check", help="Run the overdue reminder check now")
    check_parser.add_argument("--dry-run", action="store_true", help="Report what would be sent without writing")
    check_parser.add_argument("--date", help="Evaluate as of this date (YYYY-MM-DD)")
    check_parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    # rules
    rules_parser = subparsers.add_parser("rules", help="Manage reminder rules")
    rules_subparsers = rules_parser.add_subparsers(dest="rules_action", required=True)
    rules_subparsers.add_parser("list", help="List reminder rules")
    rules_add_parser = rules_subparsers.add_parser("add", help="Add a reminder rule")
    rules_add_parser.add_argument("days", type=int, help="Days overdue threshold")
    rules_add_parser.add_argument("-n", "--name", help="Rule name")
    rules_add_parser.add_argument("--template-file", help="File containing the email template")
    rules_add_parser.add_argument("--disabled", action="store_true", help="Create the rule disabled")
    for action in ("enable", "disable", "delete"):
        p = rules_subparsers.add_parser(action, help=f"{action.capitalize()} a reminder rule")
        p.add_argument("rule_id", type=int, help="Rule ID")

    # notifications
    notif_parser = subparsers.add_parser("notifications", help="Admin notifications")
    notif_subparsers = notif_parser.add_subparsers(dest="notifications_action", required=True)
    notif_list_parser = notif_subparsers.add_parser("list", help="List notifications")
    notif_list_parser.add_argument("--unread", action="store_true", help="Only unread notifications")
    notif_list_parser.add_argument("-l", "--limit", type=int, default=20, help="Max notifications")
    notif_read_parser = notif_subparsers.add_parser("read", help="Mark a notification read")
    notif_read_parser.add_argument("notification_id", type=int, help="Notification ID")

    # reminders
    reminders_parser = subparsers.add_parser("reminders", help="Reminder ledger")
    reminders_subparsers = reminders_parser.add_subparsers(dest="reminders_action", required=True)
    reminders_subparsers.add_parser("unsent", help="List reminders whose message was not delivered")

    # runs
    runs_parser = subparsers.add_parser("runs", help="Show recent reminder runs")
    runs_parser.add_argument("-l", "--limit", type=int, default=10, help="Max runs")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", help="Bind address (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")

    args = parser.parse_args()

    if args.command != "init":
        setup_logging(_load(args), verbose=args.verbose)

    commands = {
        "init": cmd_init,
        "check": cmd_check,
        "runs": cmd_runs,
        "serve": cmd_serve,
    }

    if args.command == "rules":
        rules_commands = {
            "list": cmd_rules_list,
            "add": cmd_rules_add,
            "enable": cmd_rules_enable,
            "disable": cmd_rules_disable,
            "delete": cmd_rules_delete,
        }
        rules_commands[args.rules_action](args)
    elif args.command == "notifications":
        notifications_commands = {
            "list": cmd_notifications_list,
            "read": cmd_notifications_read,
        }
        notifications_commands[args.notifications_action](args)
    elif args.command == "reminders":
        cmd_reminders_unsent(args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()
