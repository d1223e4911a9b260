"""
CallScheduler のテスト

発信予約の作成・更新・削除、期限の来た予約の実行と
繰り返し設定による次回日時の計算を検証します。
"""

from datetime import datetime, timedelta, timezone

import pytest

from academy_calls.lifecycle import CALL_HISTORY_COLLECTION
from academy_calls.scheduler import (
    SCHEDULES_COLLECTION,
    CallScheduler,
    ScheduleNotFoundError,
    ScheduleTarget,
    next_occurrence,
    parse_repeat,
    parse_run_at,
    parse_targets,
)
from academy_calls.telephony import ProviderError
from academy_calls.webhooks import WebhookValidationError


@pytest.fixture
def scheduler(controller, storage, config, clock):
    return CallScheduler(controller, storage, config, clock)


@pytest.fixture
def targets():
    return [ScheduleTarget("+15551234567", "Aisha"), ScheduleTarget("+15557654321", "Omar")]


class TestParsing:
    """リクエスト値の解析"""

    def test_targets_accept_strings_and_objects(self):
        parsed = parse_targets(["+15551234567", {"phone": " +15557654321 ", "name": "Omar"}])
        assert parsed == [ScheduleTarget("+15551234567", ""), ScheduleTarget("+15557654321", "Omar")]

    @pytest.mark.parametrize("raw", [None, [], "+15551234567", [""], [{"name": "Omar"}], [42]])
    def test_invalid_targets(self, raw):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_targets(raw)
        assert exc_info.value.error_type == "invalid_field"

    def test_run_at_iso(self):
        assert parse_run_at({"runAt": "2024-01-02T09:00:00Z"}) == datetime(2024, 1, 2, 9, tzinfo=timezone.utc)

    def test_run_at_date_and_time(self):
        assert parse_run_at({"date": "2024-01-02", "time": "09:30"}) == datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)

    def test_run_at_missing(self):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_run_at({"date": "2024-01-02"})
        assert exc_info.value.error_type == "missing_fields"

    def test_repeat_defaults_to_once(self):
        assert parse_repeat(None) == "once"
        assert parse_repeat("weekly") == "weekly"
        with pytest.raises(WebhookValidationError):
            parse_repeat("hourly")

    def test_monthly_clamps_to_month_end(self):
        moment = datetime(2024, 1, 31, 9, tzinfo=timezone.utc)
        assert next_occurrence(moment, "monthly") == datetime(2024, 2, 29, 9, tzinfo=timezone.utc)
        assert next_occurrence(datetime(2024, 12, 15, tzinfo=timezone.utc), "monthly") == datetime(2025, 1, 15, tzinfo=timezone.utc)
        assert next_occurrence(moment, "once") is None


class TestScheduleStore:
    """予約の作成・取得・更新・削除"""

    def test_create_and_get(self, scheduler, targets, clock, storage):
        run_at = clock.now + timedelta(hours=1)
        schedule = scheduler.create_schedule(targets, run_at, "daily")

        loaded = scheduler.get_schedule(schedule.id)
        assert loaded.targets == targets
        assert loaded.next_run_at == run_at
        assert loaded.repeat == "daily"
        assert loaded.active is True
        assert storage.get(SCHEDULES_COLLECTION, schedule.id)["nextRunAt"] == run_at.isoformat()

    def test_list_is_ordered_by_next_run(self, scheduler, targets, clock):
        later = scheduler.create_schedule(targets, clock.now + timedelta(days=2))
        sooner = scheduler.create_schedule(targets, clock.now + timedelta(days=1))
        assert [s.id for s in scheduler.list_schedules()] == [sooner.id, later.id]

    def test_partial_update(self, scheduler, targets, clock):
        schedule = scheduler.create_schedule(targets, clock.now)
        updated = scheduler.update_schedule(schedule.id, active=False, repeat="weekly")

        assert updated.active is False
        assert updated.repeat == "weekly"
        assert updated.targets == targets
        assert scheduler.get_schedule(schedule.id).active is False

    def test_delete(self, scheduler, targets, clock):
        schedule = scheduler.create_schedule(targets, clock.now)
        scheduler.delete_schedule(schedule.id)
        assert scheduler.list_schedules() == []

    @pytest.mark.parametrize("operation", ["get_schedule", "delete_schedule", "trigger", "update_schedule"])
    def test_unknown_schedule(self, scheduler, operation):
        with pytest.raises(ScheduleNotFoundError) as exc_info:
            getattr(scheduler, operation)("missing")
        assert exc_info.value.schedule_id == "missing"


class TestRunDue:
    """run_due() と trigger() のテスト"""

    def test_not_yet_due(self, scheduler, targets, clock, store):
        scheduler.create_schedule(targets, clock.now + timedelta(minutes=5))
        assert scheduler.run_due() == []
        assert len(store) == 0

    def test_once_schedule_runs_then_deactivates(self, scheduler, targets, clock, store):
        schedule = scheduler.create_schedule(targets, clock.now)

        assert scheduler.run_due() == [schedule.id]
        assert len(store) == 2

        loaded = scheduler.get_schedule(schedule.id)
        assert loaded.active is False
        assert loaded.last_run_at == clock.now
        assert [r["phone"] for r in loaded.last_results] == ["+15551234567", "+15557654321"]
        assert all(r["status"] == "initiated" for r in loaded.last_results)

        clock.advance(3600)
        assert scheduler.run_due() == []

    def test_daily_schedule_advances_past_now(self, scheduler, targets, clock, store):
        schedule = scheduler.create_schedule(targets, clock.now, "daily")

        # 停止していた 3 日分は 1 回だけ実行する
        clock.advance(3 * 86400 + 3600)
        assert scheduler.run_due() == [schedule.id]
        assert len(store) == 2

        loaded = scheduler.get_schedule(schedule.id)
        assert loaded.active is True
        assert loaded.next_run_at == datetime(2024, 1, 5, 9, tzinfo=timezone.utc)

    def test_inactive_schedule_is_skipped(self, scheduler, targets, clock):
        schedule = scheduler.create_schedule(targets, clock.now)
        scheduler.update_schedule(schedule.id, active=False)
        assert scheduler.run_due() == []

    def test_provider_failure_is_recorded_in_results(self, scheduler, provider, clock, storage):
        provider.fail_next("place_call", ProviderError("Invalid number", code=21211, status_code=400))
        schedule = scheduler.create_schedule([ScheduleTarget("bogus"), ScheduleTarget("+15551234567")], clock.now)

        scheduler.run_due()

        results = scheduler.get_schedule(schedule.id).last_results
        assert results[0] == {"phone": "bogus", "name": "", "callId": None, "status": "failed", "error": "Invalid number"}
        assert results[1]["status"] == "initiated"
        assert len(storage.list(CALL_HISTORY_COLLECTION)) == 1

    def test_trigger_keeps_next_run(self, scheduler, targets, clock, store):
        run_at = clock.now + timedelta(days=1)
        schedule = scheduler.create_schedule(targets, run_at, "weekly")

        triggered = scheduler.trigger(schedule.id)

        assert len(store) == 2
        assert triggered.next_run_at == run_at
        assert triggered.active is True
        assert triggered.last_run_at == clock.now
        assert len(scheduler.get_schedule(schedule.id).last_results) == 2

    def test_task_uses_configured_interval(self, scheduler, config):
        assert scheduler.task.name == "schedules"
        assert scheduler.task.interval == config.schedule_check_interval
