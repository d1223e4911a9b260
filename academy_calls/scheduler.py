"""
定期発信モジュール (Call Scheduler Module)

生徒の電話番号リストへの発信を日時指定で予約します。
期限の来た予約は CallLifecycleController.place_call を通して発信されるため、
通話レコードの作成と配信は手動の発信と同じ経路をたどります。
"""

import calendar
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from .call_store import Clock, utc_now
from .config import Config
from .lifecycle import CallLifecycleController
from .liveness import PeriodicTask
from .storage import Storage
from .telephony import ProviderError
from .webhooks import WebhookValidationError, parse_moment


SCHEDULES_COLLECTION = "schedules"

REPEAT_ONCE = "once"
REPEAT_MODES = (REPEAT_ONCE, "daily", "weekly", "monthly")


class ScheduleNotFoundError(Exception):
    """
    予約が存在しない場合のエラー

    Attributes:
        schedule_id: 予約 ID
    """

    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule not found: {schedule_id}")
        self.schedule_id = schedule_id


@dataclass
class ScheduleTarget:
    """発信先 1 件"""
    phone: str
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"phone": self.phone, "name": self.name}


@dataclass
class CallSchedule:
    """
    発信予約

    Attributes:
        id: 予約 ID
        targets: 発信先のリスト (順番に発信)
        next_run_at: 次回の発信日時 (UTC)
        repeat: 繰り返し (once, daily, weekly, monthly)
        active: 有効かどうか (once の予約は実行後に無効になる)
        created_at: 作成日時
        last_run_at: 最後に実行した日時
        last_results: 最後の実行での発信結果
    """
    id: str
    targets: List[ScheduleTarget]
    next_run_at: datetime
    created_at: datetime
    repeat: str = REPEAT_ONCE
    active: bool = True
    last_run_at: Optional[datetime] = None
    last_results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "targets": [target.to_dict() for target in self.targets],
            "nextRunAt": self.next_run_at.isoformat(),
            "repeat": self.repeat,
            "active": self.active,
            "createdAt": self.created_at.isoformat(),
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastResults": self.last_results,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CallSchedule':
        return cls(
            id=data["id"],
            targets=[ScheduleTarget(t["phone"], t.get("name", "")) for t in data["targets"]],
            next_run_at=datetime.fromisoformat(data["nextRunAt"]),
            created_at=datetime.fromisoformat(data["createdAt"]),
            repeat=data.get("repeat", REPEAT_ONCE),
            active=data.get("active", True),
            last_run_at=datetime.fromisoformat(data["lastRunAt"]) if data.get("lastRunAt") else None,
            last_results=data.get("lastResults", []),
        )


def _add_month(moment: datetime) -> datetime:
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_occurrence(moment: datetime, repeat: str) -> Optional[datetime]:
    """繰り返し設定に従った次回の日時 (once の場合は None)"""
    if repeat == "daily":
        return moment + timedelta(days=1)
    if repeat == "weekly":
        return moment + timedelta(weeks=1)
    if repeat == "monthly":
        return _add_month(moment)
    return None


def parse_targets(raw: Any) -> List[ScheduleTarget]:
    """
    発信先リストを解析

    各要素は電話番号の文字列、または {"phone": ..., "name": ...} です。

    Raises:
        WebhookValidationError: 空または不正な要素がある場合
    """
    if not isinstance(raw, list) or not raw:
        raise WebhookValidationError(
            message="targets must be a non-empty list",
            error_type="invalid_field"
        )

    targets = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            targets.append(ScheduleTarget(item.strip()))
        elif isinstance(item, dict) and isinstance(item.get("phone"), str) and item["phone"].strip():
            targets.append(ScheduleTarget(item["phone"].strip(), str(item.get("name") or "")))
        else:
            raise WebhookValidationError(
                message=f"Invalid target: {item!r}",
                error_type="invalid_field"
            )
    return targets


def parse_run_at(data: Dict[str, Any]) -> datetime:
    """
    発信日時を解析

    runAt (ISO 8601 日時) か、date と time の組 ("2024-01-01", "09:00") を受け付けます。
    タイムゾーンのない値は UTC とみなします。

    Raises:
        WebhookValidationError: 欠落または不正な値
    """
    run_at = data.get("runAt")
    if isinstance(run_at, str) and run_at.strip():
        return parse_moment(run_at.strip(), "runAt")

    day, at = data.get("date"), data.get("time")
    if not (isinstance(day, str) and day.strip() and isinstance(at, str) and at.strip()):
        raise WebhookValidationError(
            message="Missing required fields: runAt or date and time",
            error_type="missing_fields"
        )
    return parse_moment(f"{day.strip()}T{at.strip()}", "date/time")


def parse_repeat(raw: Any) -> str:
    repeat = raw or REPEAT_ONCE
    if repeat not in REPEAT_MODES:
        raise WebhookValidationError(
            message=f"repeat must be one of {list(REPEAT_MODES)}: {raw}",
            error_type="invalid_field"
        )
    return repeat


class CallScheduler:
    """
    発信予約の管理と実行

    予約は schedules コレクションに保存されます。定期タスクが
    schedule_check_interval 秒ごとに期限の来た予約を実行します。
    停止中に期限を過ぎた予約は、再開後に 1 回だけ実行されます。
    """

    def __init__(
        self,
        controller: CallLifecycleController,
        storage: Storage,
        config: Config,
        clock: Optional[Clock] = None
    ):
        self.controller = controller
        self.storage = storage
        self._clock = clock or utc_now
        self._run_lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)
        self.task = PeriodicTask("schedules", config.schedule_check_interval, self.run_due, self._clock)

    def start(self) -> None:
        self.task.start()

    def stop(self) -> None:
        self.task.stop()

    def create_schedule(
        self,
        targets: List[ScheduleTarget],
        run_at: datetime,
        repeat: str = REPEAT_ONCE
    ) -> CallSchedule:
        schedule = CallSchedule(
            id=uuid.uuid4().hex,
            targets=targets,
            next_run_at=run_at,
            created_at=self._clock(),
            repeat=repeat,
        )
        self._save(schedule)
        self.logger.info(
            "schedule_created",
            schedule_id=schedule.id,
            next_run_at=run_at.isoformat(),
            repeat=repeat,
            targets=len(targets)
        )
        return schedule

    def get_schedule(self, schedule_id: str) -> CallSchedule:
        """
        Raises:
            ScheduleNotFoundError: 予約が存在しない場合
        """
        document = self.storage.get(SCHEDULES_COLLECTION, schedule_id)
        if document is None:
            raise ScheduleNotFoundError(schedule_id)
        return CallSchedule.from_dict(document)

    def list_schedules(self) -> List[CallSchedule]:
        schedules = [CallSchedule.from_dict(d) for d in self.storage.list(SCHEDULES_COLLECTION)]
        return sorted(schedules, key=lambda s: s.next_run_at)

    def update_schedule(
        self,
        schedule_id: str,
        targets: Optional[List[ScheduleTarget]] = None,
        run_at: Optional[datetime] = None,
        repeat: Optional[str] = None,
        active: Optional[bool] = None
    ) -> CallSchedule:
        """
        予約を部分的に更新

        Raises:
            ScheduleNotFoundError: 予約が存在しない場合
        """
        with self._run_lock:
            schedule = self.get_schedule(schedule_id)
            if targets is not None:
                schedule.targets = targets
            if run_at is not None:
                schedule.next_run_at = run_at
            if repeat is not None:
                schedule.repeat = repeat
            if active is not None:
                schedule.active = active
            self._save(schedule)

        self.logger.info("schedule_updated", schedule_id=schedule_id, active=schedule.active)
        return schedule

    def delete_schedule(self, schedule_id: str) -> None:
        """
        Raises:
            ScheduleNotFoundError: 予約が存在しない場合
        """
        with self._run_lock:
            if not self.storage.delete(SCHEDULES_COLLECTION, schedule_id):
                raise ScheduleNotFoundError(schedule_id)
        self.logger.info("schedule_deleted", schedule_id=schedule_id)

    def trigger(self, schedule_id: str) -> CallSchedule:
        """
        予約を今すぐ実行

        次回の発信日時と有効状態は変更しません。

        Raises:
            ScheduleNotFoundError: 予約が存在しない場合
        """
        with self._run_lock:
            schedule = self.get_schedule(schedule_id)
            self.logger.info("schedule_triggered", schedule_id=schedule_id)
            self._execute(schedule, self._clock())
            self._save(schedule)
        return schedule

    def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        期限の来た有効な予約を実行

        once の予約は無効にし、繰り返しの予約は次回の日時を now より後まで進めます。

        Returns:
            実行した予約 ID のリスト
        """
        now = now or self._clock()
        executed = []

        with self._run_lock:
            for schedule in self.list_schedules():
                if not schedule.active or schedule.next_run_at > now:
                    continue

                self._execute(schedule, now)
                following = next_occurrence(schedule.next_run_at, schedule.repeat)
                while following is not None and following <= now:
                    following = next_occurrence(following, schedule.repeat)
                if following is None:
                    schedule.active = False
                else:
                    schedule.next_run_at = following
                self._save(schedule)
                executed.append(schedule.id)

        if executed:
            self.logger.info("schedules_executed", schedule_ids=executed)
        return executed

    def _execute(self, schedule: CallSchedule, now: datetime) -> None:
        results = []
        for target in schedule.targets:
            try:
                record = self.controller.place_call(target.phone, target.name)
            except ProviderError as e:
                self.logger.warning(
                    "scheduled_call_failed",
                    schedule_id=schedule.id,
                    to=target.phone,
                    error_code=e.code,
                    error_message=e.message
                )
                results.append({
                    "phone": target.phone,
                    "name": target.name,
                    "callId": None,
                    "status": "failed",
                    "error": e.message,
                })
                continue

            results.append({
                "phone": target.phone,
                "name": target.name,
                "callId": record.id,
                "status": record.state.value,
            })

        schedule.last_run_at = now
        schedule.last_results = results

    def _save(self, schedule: CallSchedule) -> None:
        self.storage.upsert(SCHEDULES_COLLECTION, schedule.id, schedule.to_dict())
