"""Reminder scheduler: cron-driven and on-demand overdue-invoice runs."""

import fcntl
import logging
import os
import signal
import sqlite3
import sys
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator
from zoneinfo import ZoneInfo

from croniter import croniter

from . import db
from .config import Config, load_config
from .notifier import Notifier, get_notifier
from .overdue import ScanError, scan_overdue_invoices
from .reminders import RunSummary, dispatch_reminders

logger = logging.getLogger("bizdash.scheduler")


def _now(tz=None):
    """Current time, wrapped for testability."""
    return datetime.now(tz)


DAEMON_LOCK_PATH = Path("/tmp/bizdash-scheduler-daemon.lock")

_stop = False


def _request_stop(signum, frame):
    global _stop
    logger.info("Signal %d received, stopping after the current check", signum)
    _stop = True


class RunInProgressError(Exception):
    """A reminder run is already active; runs never interleave."""


class RunGate:
    """Mutual exclusion for "reminder run in progress".

    A thread lock covers triggers inside one process; an flock lease file
    covers the daemon and the API running as separate processes.
    """

    def __init__(self, lock_path: Path | None = None):
        self.lock_path = lock_path
        self._lock = threading.Lock()
        self._lock_file = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def acquire(self) -> bool:
        """Try to take the gate without blocking. Returns False if held elsewhere."""
        if not self._lock.acquire(blocking=False):
            return False
        if self.lock_path is None:
            return True

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.lock_path, "a+")
        except OSError:
            self._lock.release()
            raise

        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            self._lock.release()
            return False

        # Lease file holds the owning pid
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(str(os.getpid()))
        lock_file.flush()
        self._lock_file = lock_file
        return True

    def release(self) -> None:
        if self._lock_file is not None:
            fcntl.flock(self._lock_file, fcntl.LOCK_UN)
            self._lock_file.close()
            self._lock_file = None
        self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the gate for the duration of a run, or raise RunInProgressError."""
        if not self.acquire():
            raise RunInProgressError("A reminder run is already in progress")
        try:
            yield
        finally:
            self.release()


_gates: dict[Path | None, RunGate] = {}
_gates_lock = threading.Lock()


def get_run_gate(config: Config) -> RunGate:
    """Process-wide gate for the configured lock path."""
    key = config.reminders.lock_path
    with _gates_lock:
        gate = _gates.get(key)
        if gate is None:
            gate = RunGate(key)
            _gates[key] = gate
        return gate


def _reminder_tz(config: Config) -> ZoneInfo:
    try:
        return ZoneInfo(config.reminders.timezone)
    except Exception:
        logger.warning("Invalid reminder timezone '%s', using UTC", config.reminders.timezone)
        return ZoneInfo("UTC")


def _failed_summary(trigger: str, error: str, dry_run: bool) -> RunSummary:
    summary = RunSummary(trigger=trigger, failed=True, error=error, dry_run=dry_run)
    summary.finished_at = datetime.now(timezone.utc)
    return summary


def _log_outcome(summary: RunSummary) -> None:
    if summary.failed:
        logger.error(
            "Reminder run (%s) failed, 0 reminder(s) sent: %s", summary.trigger, summary.error,
        )
        return
    if summary.dry_run:
        logger.info(
            "Reminder dry run (%s): %d reminder(s) would be sent",
            summary.trigger, len(summary.results),
        )
        return
    logger.info(
        "Reminder run (%s) complete: %d reminder(s) sent, %d error(s)",
        summary.trigger, summary.sent_count, len(summary.errors),
    )
    for err in summary.errors:
        logger.warning(
            "Reminder error for %s (threshold %d): %s",
            err["invoice_number"], err["threshold"], err["error"],
        )


def _mark_run_failed(conn, run_id: int | None, error: str) -> None:
    if run_id is None:
        return
    try:
        conn.rollback()
        db.finish_reminder_run(conn, run_id, "failed", error=error)
        conn.commit()
    except sqlite3.Error as e:
        logger.error("Failed to record reminder run %d failure: %s", run_id, e)


def _run_locked(
    config: Config,
    trigger: str,
    today: date,
    notifier: Notifier,
    dry_run: bool,
) -> RunSummary:
    with db.get_db(config.db_path) as conn:
        run_id = None
        if not dry_run:
            run_id = db.start_reminder_run(conn, trigger)
            conn.commit()

        try:
            overdue = scan_overdue_invoices(conn, today)
            rules = db.get_enabled_reminder_rules(conn)
            logger.debug(
                "Evaluating %d overdue invoice(s) against %d rule(s)", len(overdue), len(rules),
            )
            summary = dispatch_reminders(
                conn, overdue, rules, notifier, trigger=trigger, dry_run=dry_run,
            )
        except (ScanError, sqlite3.Error) as e:
            _mark_run_failed(conn, run_id, str(e))
            return _failed_summary(trigger, str(e), dry_run)

        if run_id is not None:
            try:
                db.finish_reminder_run(
                    conn, run_id, "completed",
                    reminders_sent=summary.sent_count,
                    pair_errors=len(summary.errors),
                )
            except sqlite3.Error as e:
                logger.error("Failed to record reminder run %d outcome: %s", run_id, e)
        return summary


def run_reminder_check(
    config: Config,
    trigger: str = "manual",
    today: date | None = None,
    notifier: Notifier | None = None,
    dry_run: bool = False,
) -> RunSummary:
    """Run one full scan-and-dispatch cycle.

    Raises RunInProgressError if another run holds the gate. A scan or
    database failure does not raise; it comes back as a failed summary with
    nothing sent.
    """
    if today is None:
        today = _now(_reminder_tz(config)).date()
    if notifier is None:
        notifier = get_notifier(config)

    with get_run_gate(config).hold():
        logger.info("Starting %s reminder run for %s", trigger, today)
        try:
            summary = _run_locked(config, trigger, today, notifier, dry_run)
        except sqlite3.Error as e:
            summary = _failed_summary(trigger, f"Database unavailable: {e}", dry_run)

    _log_outcome(summary)
    return summary


def is_run_due(cron_expression: str, last_run_at: str | None, now: datetime) -> bool:
    """Whether the cron schedule has fired since the last run.

    last_run_at is a UTC timestamp as stored by datetime('now'). Never-run
    schedules are measured from the start of today.
    """
    if last_run_at:
        last_run = datetime.fromisoformat(last_run_at)
        if last_run.tzinfo is None:
            # reminder_runs timestamps are naive UTC
            last_run = last_run.replace(tzinfo=ZoneInfo("UTC"))
        cron = croniter(cron_expression, last_run.astimezone(now.tzinfo))
    else:
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        cron = croniter(cron_expression, today_start)
    next_run = cron.get_next(datetime)
    return now >= next_run


def check_reminder_schedule(config: Config, now: datetime | None = None) -> RunSummary | None:
    """Run the scheduled reminder job if its cron time has passed.

    Never raises; returns the run summary, or None when nothing ran.
    """
    if not config.reminders.enabled:
        return None

    if now is None:
        now = _now(_reminder_tz(config))

    try:
        with db.get_db(config.db_path) as conn:
            last_run = db.get_last_reminder_run(conn, trigger="scheduled")
        last_run_at = last_run.started_at if last_run else None
        if not is_run_due(config.reminders.cron, last_run_at, now):
            return None
        return run_reminder_check(config, trigger="scheduled", today=now.date())
    except RunInProgressError:
        logger.info("Scheduled reminder run skipped: another run is in progress")
        return None
    except Exception as e:
        logger.error("Error running scheduled reminders: %s", e)
        return None


def run_daemon(config: Config, daemon_lock: Path = DAEMON_LOCK_PATH) -> None:
    """Poll the reminder schedule until SIGTERM/SIGINT.

    Only one daemon may run per host; a second one exits immediately.
    """
    global _stop
    _stop = False

    singleton = RunGate(daemon_lock)
    if not singleton.acquire():
        logger.error("Scheduler daemon already running (lock %s held), exiting", daemon_lock)
        return

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    r = config.reminders
    logger.info(
        "STARTUP reminder scheduler pid=%d cron='%s' tz=%s notifier=%s interval=%ds",
        os.getpid(), r.cron, r.timezone, r.notifier, r.check_interval,
    )

    try:
        next_check = 0.0
        while not _stop:
            if time.monotonic() >= next_check:
                summary = check_reminder_schedule(config)
                if summary is not None:
                    logger.debug("Scheduled run finished (failed=%s)", summary.failed)
                next_check = time.monotonic() + r.check_interval
            time.sleep(1)
    finally:
        singleton.release()
    logger.info("Reminder scheduler stopped")


def main():
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="bizdash reminder scheduler")
    parser.add_argument("-c", "--config", help="Config file (default: search standard locations)")
    parser.add_argument("-d", "--daemon", action="store_true", help="Keep running and follow the cron schedule")
    parser.add_argument("--now", action="store_true", help="Run the reminder check now, ignoring the schedule")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config, verbose=args.verbose, daemon_mode=args.daemon)

    if args.daemon:
        run_daemon(config)
        return
    if not args.now:
        check_reminder_schedule(config)
        return
    try:
        run_reminder_check(config, trigger="manual")
    except RunInProgressError as e:
        logger.error("%s", e)
        sys.exit(2)


if __name__ == "__main__":
    main()
