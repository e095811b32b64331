"""Drive update and cleanup cycles: once, on an interval, or daily at a wall-clock time.

The mode is chosen once from configuration.  Signals can only request a
shutdown (SIGTERM, SIGINT) or toggle debug logging (SIGUSR1).

Daily schedules are computed in the configured IANA zone with an explicit
policy for DST transitions (see ``next_run``) instead of relying on whatever
the date library happens to do with non-existent or repeated local times.
"""

import secrets
import signal
import threading
import time
from datetime import date, datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

import cleanup
import updater
from config import format_duration, load_timezone, parse_schedule_time
from errors import CycleCancelled
from log_setup import get_logger, toggle_debug
from notify import send_notifications


class RunOutcome(Enum):
    STOPPED = "stopped"
    SELF_UPDATE = "self_update"


def generate_cycle_id() -> str:
    """Short random id (8 hex chars) used to correlate one cycle's log lines."""
    return secrets.token_hex(4)


def _utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


def resolve_wall_time(day: date, hour: int, minute: int, tz) -> List[datetime]:
    """Return the real instants at which ``day hour:minute`` occurs in ``tz``.

    - normal time: one instant
    - repeated hour (fall back): both instants, earlier first
    - skipped hour (spring forward): the time shifted forward by the gap,
      e.g. 02:30 on a night that jumps 02:00 -> 03:00 becomes 03:30
    """
    naive = datetime.combine(day, dt_time(hour, minute))
    first = naive.replace(tzinfo=tz, fold=0)
    second = naive.replace(tzinfo=tz, fold=1)

    if first.utcoffset() == second.utcoffset():
        return [first]

    exists = _utc(first).astimezone(tz).replace(tzinfo=None) == naive
    if exists:
        return [_utc(first).astimezone(tz), _utc(second).astimezone(tz)]

    # fold=0 applies the pre-transition offset, which lands past the gap
    return [_utc(first).astimezone(tz)]


def next_run(now: datetime, schedule_time: str, tz) -> datetime:
    """Next occurrence of ``schedule_time`` (``HH:MM``) in ``tz``, strictly after ``now``.

    The run is today when ``HH:MM`` is later than now's local time of day and
    tomorrow otherwise (calendar days, not 24 hours, so the wall-clock time is
    kept across DST changes).  Non-existent and repeated local times are
    resolved by ``resolve_wall_time``; of a repeated time the earliest instant
    after ``now`` is used.
    """
    hour, minute = parse_schedule_time(schedule_time)
    local_now = now.astimezone(tz)
    day = local_now.date()
    if dt_time(hour, minute) <= local_now.time().replace(tzinfo=None):
        day += timedelta(days=1)

    now_utc = _utc(now)
    for offset in range(3):
        for candidate in resolve_wall_time(day + timedelta(days=offset), hour, minute, tz):
            if _utc(candidate) > now_utc:
                return candidate
    raise ValueError(f"could not compute next run for {schedule_time} in {tz}")


def seconds_until(target: datetime, now: datetime) -> float:
    return (_utc(target) - _utc(now)).total_seconds()


def install_signal_handlers(stop_event: threading.Event, log=None) -> None:
    """SIGTERM/SIGINT request shutdown; SIGUSR1 toggles debug logging."""
    log = log or get_logger()

    def _shutdown(signum, frame):
        log.info(f"Received signal {signal.Signals(signum).name}, shutting down gracefully...")
        stop_event.set()

    def _toggle(signum, frame):
        toggle_debug()

    if threading.current_thread() is not threading.main_thread():
        log.debug("Not on the main thread, signal handlers not installed")
        return
    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _toggle)


class Scheduler:
    """Repeats update cycles until the stop event is set.

    ``clock`` is a monotonic clock used for interval cadence and ``now``
    returns the current aware wall-clock time for daily schedules.
    """

    def __init__(self, config, engine, stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 notifier=send_notifications, is_self=None):
        self.config = config
        self.engine = engine
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.now = now
        self.notifier = notifier
        self.is_self = is_self
        self.log = get_logger()

    @property
    def mode(self) -> str:
        if self.config.run_once:
            return "once"
        if self.config.cleanup_only:
            return "cleanup_only"
        if self.config.updates.schedule_time:
            return "daily"
        return "interval"

    def run(self) -> RunOutcome:
        """Run in the configured mode until done, stopped or handing off to a self-update.

        Raises ``ConfigError`` for an unknown timezone before any cycle runs.
        In ``once`` and ``cleanup_only`` mode cycle errors propagate; the
        loop modes log them and keep going.
        """
        mode = self.mode
        self.log.info("HarborBuddy started")

        if mode == "once":
            self.log.info("Running in once mode")
            try:
                report = self.run_cycle()
            except CycleCancelled:
                return RunOutcome.STOPPED
            return RunOutcome.SELF_UPDATE if report and report.self_update_requested else RunOutcome.STOPPED

        if mode == "cleanup_only":
            self.log.info("Running in cleanup-only mode")
            log = get_logger(cycle_id=generate_cycle_id())
            try:
                cleanup.run_cleanup(self.config, self.engine, log, self.stop_event,
                                    dry_run=self.config.updates.dry_run)
            except CycleCancelled:
                pass
            return RunOutcome.STOPPED

        if mode == "daily":
            return self._daily_loop()
        return self._interval_loop()

    def run_cycle(self):
        """Run one update + cleanup cycle; returns the update CycleReport (or None)."""
        cycle_id = generate_cycle_id()
        log = get_logger(cycle_id=cycle_id)
        updates = self.config.updates

        log.info("---- Starting update & cleanup cycle ----")
        log.info(
            f"Configuration: Updates={updates.enabled}, DryRun={updates.dry_run}, "
            f"Cleanup={self.config.cleanup.enabled}"
        )

        report = None
        if updates.enabled:
            kwargs = {"is_self": self.is_self} if self.is_self else {}
            report = updater.run_cycle(self.config, self.engine, log, self.stop_event, **kwargs)
        else:
            log.info("Updates are disabled, skipping update cycle")

        if report is not None and report.self_update_requested:
            self.notifier(self.config.notifications, report, cycle_id)
            log.info("---- Cycle ended for self-update ----")
            return report

        if self.config.cleanup.enabled:
            cleanup.run_cleanup(self.config, self.engine, log, self.stop_event,
                                dry_run=updates.dry_run)
        else:
            log.debug("Cleanup is disabled, skipping")

        if report is not None:
            self.notifier(self.config.notifications, report, cycle_id)
        log.info("---- Cycle complete ----")
        return report

    def _loop_cycle(self, label: str) -> bool:
        """Run a cycle inside a loop; returns True when a self-update hand-off happened."""
        try:
            report = self.run_cycle()
        except CycleCancelled:
            self.log.info("Cycle cancelled")
            return False
        except Exception as e:
            self.log.error(f"Error in {label}: {e}")
            return False
        return bool(report and report.self_update_requested)

    def _interval_loop(self) -> RunOutcome:
        interval = self.config.updates.check_interval
        self.log.info(f"Starting scheduler with interval: {format_duration(interval)}")

        next_tick = self.clock()
        if self._loop_cycle("initial cycle"):
            return RunOutcome.SELF_UPDATE

        while True:
            next_tick += interval
            now = self.clock()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                self.log.warning(f"Cycle overran the interval, skipping {missed} tick(s)")
                next_tick += missed * interval
            if self.stop_event.wait(next_tick - now):
                self.log.info("Scheduler stopped")
                return RunOutcome.STOPPED
            if self._loop_cycle("update cycle"):
                return RunOutcome.SELF_UPDATE

    def _daily_loop(self) -> RunOutcome:
        updates = self.config.updates
        tz = load_timezone(updates.timezone)
        self.log.info(f"Starting scheduler with daily schedule: {updates.schedule_time} ({updates.timezone})")

        while True:
            now = self.now()
            target = next_run(now, updates.schedule_time, tz)
            delay = seconds_until(target, now)
            self.log.info(
                f"Next scheduled run: {target.strftime('%Y-%m-%d %H:%M:%S %Z')} "
                f"(in {format_duration(delay)})"
            )
            if self.stop_event.wait(delay):
                self.log.info("Scheduler stopped")
                return RunOutcome.STOPPED
            if self._loop_cycle("scheduled cycle"):
                return RunOutcome.SELF_UPDATE
