"""Outbound reminder delivery: log placeholder, email, and ntfy.

A notifier is called once per newly recorded (invoice, threshold) reminder
and returns True only when the message was handed off to its channel.
Notifiers log their own failures and never raise.
"""

import base64
import logging
import smtplib
import ssl
import uuid
from email.message import EmailMessage
from email.utils import formatdate
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from .config import Config, EmailConfig, NtfyConfig
    from .db import ReminderRule
    from .overdue import OverdueInvoice

logger = logging.getLogger("bizdash.notifier")


class Notifier(Protocol):
    def send_reminder(self, overdue: "OverdueInvoice", rule: "ReminderRule") -> bool:
        ...


def reminder_subject(overdue: "OverdueInvoice") -> str:
    return f"Payment Reminder - Invoice {overdue.invoice.invoice_number}"


def reminder_body(overdue: "OverdueInvoice", rule: "ReminderRule") -> str:
    """Render the customer-facing reminder text.

    A rule's email_template may use {invoice_number}, {customer_name},
    {days_overdue}, {amount} and {due_date}; a broken template falls back to
    the default text.
    """
    fields = {
        "invoice_number": overdue.invoice.invoice_number,
        "customer_name": overdue.customer.name,
        "days_overdue": overdue.days_overdue,
        "amount": f"${overdue.invoice.total:,.2f}",
        "due_date": overdue.invoice.due_date,
    }
    if rule.email_template:
        try:
            return rule.email_template.format(**fields)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(
                "Invalid email template for rule '%s' (%s), using default", rule.name, e,
            )
    return (
        f"Dear {fields['customer_name']},\n\n"
        f"Your invoice {fields['invoice_number']} is {fields['days_overdue']} days overdue "
        f"(due {fields['due_date']}). Amount: {fields['amount']}.\n\n"
        f"Please arrange payment at your earliest convenience."
    )


def _sanitize_header(value: str) -> str:
    """Strip newlines from header values to prevent injection."""
    return value.replace("\r", " ").replace("\n", " ").strip()


class LogNotifier:
    """Placeholder channel: logs the message it would send and reports it undelivered."""

    def send_reminder(self, overdue: "OverdueInvoice", rule: "ReminderRule") -> bool:
        logger.info(
            "[EMAIL PLACEHOLDER] To: %s | Subject: %s | Body: %s",
            overdue.customer.email,
            reminder_subject(overdue),
            reminder_body(overdue, rule).replace("\n", " "),
        )
        return False


class EmailNotifier:
    """Sends the reminder to the customer's email address over SMTP."""

    def __init__(self, config: "EmailConfig"):
        self.config = config

    def _send_smtp(self, msg: EmailMessage) -> None:
        # Port 587 typically uses STARTTLS, port 465 uses implicit TLS
        if self.config.smtp_port == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(
                self.config.smtp_host, self.config.smtp_port,
                context=context, timeout=self.config.timeout,
            ) as server:
                server.login(self.config.smtp_user, self.config.smtp_password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(
                self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout,
            ) as server:
                server.starttls()
                server.login(self.config.smtp_user, self.config.smtp_password)
                server.send_message(msg)

    def send_reminder(self, overdue: "OverdueInvoice", rule: "ReminderRule") -> bool:
        if not self.config.enabled or not self.config.smtp_host:
            logger.warning("Email not configured for reminders")
            return False
        if not overdue.customer.email:
            logger.warning(
                "No email address for customer of %s", overdue.invoice.invoice_number,
            )
            return False

        from_address = self.config.from_email or self.config.smtp_user
        domain = from_address.split("@")[-1] if "@" in from_address else "localhost"

        msg = EmailMessage()
        msg["To"] = overdue.customer.email
        msg["Subject"] = _sanitize_header(reminder_subject(overdue))
        msg["From"] = from_address
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{domain}>"
        msg.set_content(reminder_body(overdue, rule))

        try:
            self._send_smtp(msg)
            return True
        except Exception as e:
            logger.error(
                "Failed to send reminder email for %s: %s", overdue.invoice.invoice_number, e,
            )
            return False


class NtfyNotifier:
    """Pushes the reminder to an ntfy topic watched by the collections team."""

    def __init__(self, config: "NtfyConfig"):
        self.config = config

    def send_reminder(self, overdue: "OverdueInvoice", rule: "ReminderRule") -> bool:
        if not self.config.enabled or not self.config.topic:
            logger.warning("ntfy not configured for reminders")
            return False

        url = f"{self.config.server_url.rstrip('/')}/{self.config.topic}"
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        elif self.config.username:
            credentials = base64.b64encode(
                f"{self.config.username}:{self.config.password}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {credentials}"
        headers["Title"] = reminder_subject(overdue)
        headers["Priority"] = str(self.config.priority)
        headers["Tags"] = "money_with_wings"

        try:
            response = httpx.post(
                url, content=reminder_body(overdue, rule), headers=headers, timeout=10,
            )
            response.raise_for_status()
            return True
        except Exception as e:
            logger.error(
                "Failed to send ntfy reminder for %s: %s", overdue.invoice.invoice_number, e,
            )
            return False


def get_notifier(config: "Config") -> Notifier:
    """Build the notifier named by config.reminders.notifier."""
    name = config.reminders.notifier
    if name == "email":
        return EmailNotifier(config.email)
    if name == "ntfy":
        return NtfyNotifier(config.ntfy)
    if name != "log":
        logger.warning("Unknown reminder notifier '%s', falling back to log", name)
    return LogNotifier()
