"""Tests for daily schedule computation and the scheduler run modes."""

import re
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, call, patch
from zoneinfo import ZoneInfo

from config import Config
from docker_api import DockerAPIError
from errors import ConfigError, CycleCancelled
from scheduler import (
    RunOutcome, Scheduler, generate_cycle_id, next_run, resolve_wall_time, seconds_until,
)
from selfupdate import SelfUpdateHandoff
from updater import CycleReport
from conftest import api_error

NY = ZoneInfo("America/New_York")
UTC = timezone.utc


def utc(*args):
    return datetime(*args, tzinfo=UTC)


class TestGenerateCycleId:

    def test_eight_hex_chars(self):
        assert re.fullmatch(r"[0-9a-f]{8}", generate_cycle_id())

    def test_random(self):
        assert len({generate_cycle_id() for _ in range(20)}) > 1


class TestNextRun:

    def test_later_today(self):
        result = next_run(utc(2024, 6, 1, 1, 0), "03:00", ZoneInfo("UTC"))
        assert result.astimezone(UTC) == utc(2024, 6, 1, 3, 0)

    def test_passed_today_runs_tomorrow(self):
        result = next_run(utc(2024, 6, 1, 4, 0), "03:00", ZoneInfo("UTC"))
        assert result.astimezone(UTC) == utc(2024, 6, 2, 3, 0)

    def test_exactly_now_runs_tomorrow(self):
        now = utc(2024, 6, 1, 3, 0)
        result = next_run(now, "03:00", ZoneInfo("UTC"))
        assert result.astimezone(UTC) == utc(2024, 6, 2, 3, 0)
        assert seconds_until(result, now) == 24 * 3600

    def test_uses_zone_local_time(self):
        # 12:00 UTC is 08:00 EDT
        result = next_run(utc(2024, 6, 1, 12, 0), "09:30", NY)
        assert result.astimezone(UTC) == utc(2024, 6, 1, 13, 30)
        assert (result.hour, result.minute) == (9, 30)

    def test_invalid_format(self):
        with pytest.raises(ValueError):
            next_run(utc(2024, 6, 1), "3am", NY)

    def test_spring_forward_gap_shifts_forward(self):
        # 2024-03-10 02:00 EST jumps to 03:00 EDT; 02:30 does not exist
        now = utc(2024, 3, 10, 6, 0)  # 01:00 EST
        result = next_run(now, "02:30", NY)
        assert result.astimezone(UTC) == utc(2024, 3, 10, 7, 30)
        assert (result.hour, result.minute) == (3, 30)

    def test_day_after_gap_keeps_wall_clock(self):
        # the day is advanced by calendar, so the next run is still 02:30 local
        now = utc(2024, 3, 10, 8, 0)  # 04:00 EDT
        result = next_run(now, "02:30", NY)
        assert result.astimezone(UTC) == utc(2024, 3, 11, 6, 30)
        assert (result.hour, result.minute) == (2, 30)

    def test_fall_back_uses_first_occurrence(self):
        # 2024-11-03 01:00-02:00 happens twice (EDT, then EST)
        now = utc(2024, 11, 3, 4, 30)  # 00:30 EDT
        result = next_run(now, "01:30", NY)
        assert result.astimezone(UTC) == utc(2024, 11, 3, 5, 30)

    def test_fall_back_second_occurrence_when_first_passed(self):
        now = utc(2024, 11, 3, 6, 15)  # 01:15 EST, the second 01:15
        result = next_run(now, "01:30", NY)
        assert result.astimezone(UTC) == utc(2024, 11, 3, 6, 30)

    @pytest.mark.parametrize("now", [
        utc(2024, 3, 10, 6, 59), utc(2024, 3, 10, 7, 0), utc(2024, 11, 3, 5, 59),
        utc(2024, 11, 3, 6, 0), utc(2024, 12, 31, 23, 59),
    ])
    @pytest.mark.parametrize("schedule", ["00:00", "01:30", "02:30", "23:59"])
    def test_always_strictly_after_now(self, now, schedule):
        result = next_run(now, schedule, NY)
        assert result.astimezone(UTC) > now
        assert seconds_until(result, now) <= 25 * 3600


class TestResolveWallTime:

    def test_normal(self):
        assert len(resolve_wall_time(datetime(2024, 6, 1).date(), 12, 0, NY)) == 1

    def test_ambiguous_returns_both_in_order(self):
        first, second = resolve_wall_time(datetime(2024, 11, 3).date(), 1, 30, NY)
        assert first.astimezone(UTC) < second.astimezone(UTC)
        assert seconds_until(second, first) == 3600


def make_report(**kwargs):
    return CycleReport(**kwargs)


@pytest.fixture
def notifier():
    return Mock()


class TestRunCycle:

    def test_runs_updates_cleanup_and_notifies(self, engine, notifier):
        scheduler = Scheduler(Config(), engine, notifier=notifier)
        report = make_report(total=1, updated=1)
        with patch("updater.run_cycle", return_value=report) as run_updates, \
             patch("cleanup.run_cleanup") as run_cleanup:
            result = scheduler.run_cycle()

        assert result is report
        run_updates.assert_called_once()
        run_cleanup.assert_called_once()
        notifier.assert_called_once()
        assert notifier.call_args[0][1] is report

    def test_cycle_logger_carries_cycle_id(self, engine, notifier):
        scheduler = Scheduler(Config(), engine, notifier=notifier)
        with patch("updater.run_cycle", return_value=make_report()) as run_updates, \
             patch("cleanup.run_cleanup"):
            scheduler.run_cycle()
        log = run_updates.call_args[0][2]
        assert re.fullmatch(r"[0-9a-f]{8}", log.fields["cycle_id"])

    def test_updates_disabled(self, engine, notifier):
        config = Config()
        config.updates.enabled = False
        scheduler = Scheduler(config, engine, notifier=notifier)
        with patch("updater.run_cycle") as run_updates, patch("cleanup.run_cleanup") as run_cleanup:
            assert scheduler.run_cycle() is None
        run_updates.assert_not_called()
        run_cleanup.assert_called_once()
        notifier.assert_not_called()

    def test_cleanup_disabled(self, engine, notifier):
        config = Config()
        config.cleanup.enabled = False
        scheduler = Scheduler(config, engine, notifier=notifier)
        with patch("updater.run_cycle", return_value=make_report()), \
             patch("cleanup.run_cleanup") as run_cleanup:
            scheduler.run_cycle()
        run_cleanup.assert_not_called()

    def test_self_update_skips_cleanup(self, engine, notifier):
        handoff = SelfUpdateHandoff("h", "hb-updater-1", "t", "img")
        scheduler = Scheduler(Config(), engine, notifier=notifier)
        with patch("updater.run_cycle", return_value=make_report(handoff=handoff)), \
             patch("cleanup.run_cleanup") as run_cleanup:
            report = scheduler.run_cycle()
        assert report.self_update_requested
        run_cleanup.assert_not_called()


class TestRunModes:

    def test_once(self, engine, notifier):
        config = Config(run_once=True)
        scheduler = Scheduler(config, engine, notifier=notifier)
        with patch.object(scheduler, "run_cycle", return_value=make_report()) as cycle:
            assert scheduler.run() is RunOutcome.STOPPED
        cycle.assert_called_once_with()

    def test_once_propagates_errors(self, engine, notifier):
        scheduler = Scheduler(Config(run_once=True), engine, notifier=notifier)
        with patch.object(scheduler, "run_cycle", side_effect=api_error(0, "down")):
            with pytest.raises(DockerAPIError):
                scheduler.run()

    def test_once_self_update(self, engine, notifier):
        handoff = SelfUpdateHandoff("h", "hb-updater-1", "t", "img")
        scheduler = Scheduler(Config(run_once=True), engine, notifier=notifier)
        with patch.object(scheduler, "run_cycle", return_value=make_report(handoff=handoff)):
            assert scheduler.run() is RunOutcome.SELF_UPDATE

    def test_cleanup_only(self, engine, notifier):
        scheduler = Scheduler(Config(cleanup_only=True), engine, notifier=notifier)
        with patch("cleanup.run_cleanup") as run_cleanup, patch("updater.run_cycle") as run_updates:
            assert scheduler.run() is RunOutcome.STOPPED
        run_cleanup.assert_called_once()
        run_updates.assert_not_called()

    def test_interval_fixed_cadence_skips_missed_ticks(self, engine, notifier):
        config = Config()
        config.updates.check_interval = 10
        stop_event = Mock()
        stop_event.wait.side_effect = [False, True]
        clock = Mock(side_effect=[0, 3, 25])
        scheduler = Scheduler(config, engine, stop_event=stop_event, clock=clock, notifier=notifier)

        with patch.object(scheduler, "run_cycle", return_value=make_report()) as cycle:
            assert scheduler.run() is RunOutcome.STOPPED

        assert cycle.call_count == 2
        # tick at 10 waits 7s; the cycle then overran past 20, so the next tick is 30
        assert stop_event.wait.call_args_list == [call(7), call(5)]

    def test_interval_loop_survives_cycle_errors(self, engine, notifier):
        config = Config()
        config.updates.check_interval = 10
        stop_event = Mock()
        stop_event.wait.side_effect = [False, True]
        scheduler = Scheduler(config, engine, stop_event=stop_event,
                              clock=Mock(side_effect=[0, 1, 11]), notifier=notifier)

        with patch.object(scheduler, "run_cycle", side_effect=[api_error(0, "down"), None]) as cycle:
            assert scheduler.run() is RunOutcome.STOPPED
        assert cycle.call_count == 2

    def test_interval_cancelled_cycle_then_stop(self, engine, notifier):
        stop_event = Mock()
        stop_event.wait.return_value = True
        scheduler = Scheduler(Config(), engine, stop_event=stop_event,
                              clock=Mock(side_effect=[0, 1]), notifier=notifier)
        with patch.object(scheduler, "run_cycle", side_effect=CycleCancelled()):
            assert scheduler.run() is RunOutcome.STOPPED

    def test_interval_self_update_ends_loop(self, engine, notifier):
        handoff = SelfUpdateHandoff("h", "hb-updater-1", "t", "img")
        stop_event = Mock()
        scheduler = Scheduler(Config(), engine, stop_event=stop_event,
                              clock=Mock(return_value=0), notifier=notifier)
        with patch.object(scheduler, "run_cycle", return_value=make_report(handoff=handoff)):
            assert scheduler.run() is RunOutcome.SELF_UPDATE
        stop_event.wait.assert_not_called()

    def test_daily_waits_until_next_run(self, engine, notifier):
        config = Config()
        config.updates.schedule_time = "03:00"
        config.updates.timezone = "UTC"
        stop_event = Mock()
        stop_event.wait.return_value = True
        scheduler = Scheduler(config, engine, stop_event=stop_event,
                              now=lambda: utc(2024, 6, 1, 2, 0), notifier=notifier)

        with patch.object(scheduler, "run_cycle") as cycle:
            assert scheduler.run() is RunOutcome.STOPPED

        stop_event.wait.assert_called_once_with(3600.0)
        cycle.assert_not_called()

    def test_daily_runs_cycle_then_reschedules(self, engine, notifier):
        config = Config()
        config.updates.schedule_time = "03:00"
        stop_event = Mock()
        stop_event.wait.side_effect = [False, True]
        times = iter([utc(2024, 6, 1, 2, 0), utc(2024, 6, 1, 3, 5)])
        scheduler = Scheduler(config, engine, stop_event=stop_event,
                              now=lambda: next(times), notifier=notifier)

        with patch.object(scheduler, "run_cycle", return_value=make_report()) as cycle:
            scheduler.run()

        cycle.assert_called_once()
        assert stop_event.wait.call_args_list[1] == call(23 * 3600 + 55 * 60)

    def test_daily_invalid_timezone_fails_before_any_cycle(self, engine, notifier):
        config = Config()
        config.updates.schedule_time = "03:00"
        config.updates.timezone = "Mars/Olympus_Mons"
        scheduler = Scheduler(config, engine, notifier=notifier)
        with patch.object(scheduler, "run_cycle") as cycle:
            with pytest.raises(ConfigError):
                scheduler.run()
        cycle.assert_not_called()
