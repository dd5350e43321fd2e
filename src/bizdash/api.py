"""Admin API: Flask endpoints for reminder runs, rules, and notifications.

All endpoints except /health require a bearer token from [api.tokens].
Running reminders and changing rules additionally require an admin user.
"""

import functools
import logging
import sqlite3
import time
from dataclasses import asdict

from flask import Flask, g, jsonify, request

from . import db
from .config import Config
from .scheduler import RunInProgressError, get_run_gate, run_reminder_check

log = logging.getLogger("bizdash.api")


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def _rule_to_json(rule: db.ReminderRule) -> dict:
    return {
        "id": rule.id,
        "name": rule.name,
        "daysOverdue": rule.days_overdue,
        "enabled": rule.enabled,
        "emailTemplate": rule.email_template,
    }


def _notification_to_json(n: db.Notification) -> dict:
    return {
        "id": n.id,
        "userId": n.user_id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "isRead": n.is_read,
        "relatedInvoiceId": n.related_invoice_id,
        "createdAt": n.created_at,
    }


def _parse_rule_fields(data: dict, partial: bool) -> tuple[dict, str | None]:
    """Validate rule JSON. Returns (kwargs for db, error message)."""
    fields = {}
    if "name" in data:
        if not isinstance(data["name"], str) or not data["name"].strip():
            return {}, "name must be a non-empty string"
        fields["name"] = data["name"].strip()
    elif not partial:
        return {}, "name is required"

    if "daysOverdue" in data:
        days = data["daysOverdue"]
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            return {}, "daysOverdue must be a non-negative integer"
        fields["days_overdue"] = days
    elif not partial:
        return {}, "daysOverdue is required"

    if "enabled" in data:
        if not isinstance(data["enabled"], bool):
            return {}, "enabled must be a boolean"
        fields["enabled"] = data["enabled"]

    if "emailTemplate" in data and data["emailTemplate"] is not None:
        fields["email_template"] = str(data["emailTemplate"])

    return fields, None


def create_app(config: Config) -> Flask:
    app = Flask(__name__)

    def require_user(admin: bool = False):
        def decorator(view):
            @functools.wraps(view)
            def wrapped(*args, **kwargs):
                user_id = config.user_for_token(_bearer_token())
                if user_id is None:
                    return jsonify({"message": "Unauthorized"}), 401
                if admin and not config.is_admin(user_id):
                    return jsonify({"message": "Forbidden: Admin access required"}), 403
                g.user_id = user_id
                return view(*args, **kwargs)
            return wrapped
        return decorator

    # -----------------------------------------------------------------------
    # Reminder runs
    # -----------------------------------------------------------------------

    @app.route("/api/check-reminders", methods=["POST"])
    @require_user(admin=True)
    def check_reminders():
        """Run the overdue check now. Partial pair failures still return 200."""
        log.info("Manual reminder run requested by %s", g.user_id)
        try:
            summary = run_reminder_check(config, trigger="manual")
        except RunInProgressError as e:
            return jsonify({"message": str(e)}), 409

        if summary.failed:
            return jsonify({
                "message": "Reminder check failed",
                "error": summary.error,
                "results": [],
            }), 500

        return jsonify({"message": "Reminder check completed", **summary.to_dict()})

    @app.route("/api/reminder-runs", methods=["GET"])
    @require_user(admin=True)
    def reminder_runs():
        limit = request.args.get("limit", 20, type=int)
        with db.get_db(config.db_path) as conn:
            runs = db.list_reminder_runs(conn, limit=limit)
        return jsonify({
            "running": get_run_gate(config).locked,
            "runs": [asdict(r) for r in runs],
        })

    # -----------------------------------------------------------------------
    # Reminder settings
    # -----------------------------------------------------------------------

    @app.route("/api/reminder-settings", methods=["GET"])
    @require_user()
    def list_reminder_settings():
        with db.get_db(config.db_path) as conn:
            rules = db.list_reminder_rules(conn)
        return jsonify([_rule_to_json(r) for r in rules])

    @app.route("/api/reminder-settings", methods=["POST"])
    @require_user(admin=True)
    def create_reminder_setting():
        data = request.get_json(silent=True) or {}
        fields, error = _parse_rule_fields(data, partial=False)
        if error:
            return jsonify({"error": error}), 400
        try:
            with db.get_db(config.db_path) as conn:
                rule_id = db.add_reminder_rule(conn, **fields)
                rule = db.get_reminder_rule(conn, rule_id)
        except sqlite3.IntegrityError:
            return jsonify({
                "error": f"a rule for {fields['days_overdue']} days already exists",
            }), 409
        log.info("Reminder rule '%s' (%d days) created by %s", rule.name, rule.days_overdue, g.user_id)
        return jsonify(_rule_to_json(rule)), 201

    @app.route("/api/reminder-settings/<int:rule_id>", methods=["PATCH"])
    @require_user(admin=True)
    def update_reminder_setting(rule_id):
        data = request.get_json(silent=True) or {}
        fields, error = _parse_rule_fields(data, partial=True)
        if error:
            return jsonify({"error": error}), 400
        try:
            with db.get_db(config.db_path) as conn:
                rule = db.update_reminder_rule(conn, rule_id, **fields)
        except sqlite3.IntegrityError:
            return jsonify({"error": "a rule with that threshold already exists"}), 409
        if rule is None:
            return jsonify({"error": f"rule {rule_id} not found"}), 404
        return jsonify(_rule_to_json(rule))

    @app.route("/api/reminder-settings/<int:rule_id>", methods=["DELETE"])
    @require_user(admin=True)
    def delete_reminder_setting(rule_id):
        with db.get_db(config.db_path) as conn:
            deleted = db.delete_reminder_rule(conn, rule_id)
        if not deleted:
            return jsonify({"error": f"rule {rule_id} not found"}), 404
        return jsonify({"status": "deleted", "id": rule_id})

    # -----------------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------------

    @app.route("/api/notifications", methods=["GET"])
    @require_user()
    def list_notifications():
        unread_only = request.args.get("unread") in ("1", "true")
        limit = request.args.get("limit", 100, type=int)
        with db.get_db(config.db_path) as conn:
            notifications = db.list_notifications(
                conn, user_id=g.user_id, unread_only=unread_only, limit=limit,
            )
        return jsonify([_notification_to_json(n) for n in notifications])

    @app.route("/api/notifications/<int:notification_id>/read", methods=["PATCH"])
    @require_user()
    def read_notification(notification_id):
        with db.get_db(config.db_path) as conn:
            notification = db.mark_notification_read(conn, notification_id)
        if notification is None:
            return jsonify({"error": f"notification {notification_id} not found"}), 404
        return jsonify(_notification_to_json(notification))

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({
            "status": "ok",
            "reminder_run_in_progress": get_run_gate(config).locked,
        })

    @app.before_request
    def _log_request_start():
        g.start_time = time.time()

    @app.after_request
    def _log_request_end(response):
        if request.path == "/health":
            return response
        duration = time.time() - g.get("start_time", time.time())
        log.info("%s %s | %d | %.2fs", request.method, request.path, response.status_code, duration)
        return response

    return app
