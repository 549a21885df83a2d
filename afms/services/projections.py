"""
Read-model projections.

Each projection folds events into one read model row. The folded data depends
only on the events themselves (dates come from the event, never the wall
clock), so rebuilding from the event store reproduces the incremental result.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from afms.core.clock import to_naive_utc, utcnow
from afms.models.domain import DomainEvent, ReadModel
from afms.models.enums import EventType

CHECK_IN = "check_in"


def event_time(event: DomainEvent) -> datetime:
    """When the recorded fact happened: the payload timestamp if present, else when it was stored."""
    raw = event.event_data.get("timestamp")
    if isinstance(raw, datetime):
        return to_naive_utc(raw)
    if isinstance(raw, str):
        try:
            return to_naive_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            pass
    return event.occurred_at


def is_late(check_in: datetime, work_start_hour: int) -> bool:
    return check_in > check_in.replace(hour=work_start_hour, minute=0, second=0, microsecond=0)


class _Projection:
    read_model_type: str = ""

    def __init__(self, read_model_manager, work_start_hour: int = 8):
        self.read_model_manager = read_model_manager
        self.work_start_hour = work_start_hour

    async def _load(self, model_id: str, initial: Dict[str, Any]) -> ReadModel:
        model = await self.read_model_manager.get_read_model(self.read_model_type, model_id)
        if model is None:
            model = ReadModel(id=model_id, type=self.read_model_type, data=initial, version=0)
        return model

    async def _save(self, model: ReadModel, data: Dict[str, Any]) -> None:
        await self.read_model_manager.save_read_model(
            model.model_copy(update={"data": data, "version": model.version + 1, "last_updated": utcnow()})
        )


class DashboardStatsProjection(_Projection):
    """Per-day dashboard counters, one read model per calendar day (YYYY-MM-DD)."""

    read_model_type = "dashboard_stats"
    interested_events = [
        EventType.ATTENDANCE_RECORDED,
        EventType.PAYROLL_CALCULATED,
        EventType.EMPLOYEE_ADDED,
        EventType.EMPLOYEE_UPDATED,
    ]

    async def project(self, event: DomainEvent) -> None:
        day = event_time(event).date().isoformat()
        async with self.read_model_manager.lock(self.read_model_type, day):
            stats = await self._load(day, {
                "date": day,
                "totalEmployees": 0,
                "presentToday": 0,
                "absentToday": 0,
                "lateToday": 0,
                "totalPayroll": 0,
                "avgWorkingHours": 0,
            })
            data = dict(stats.data)

            if event.event_type == EventType.ATTENDANCE_RECORDED:
                if event.event_data.get("type") == CHECK_IN:
                    data["presentToday"] += 1
                    if is_late(event_time(event), self.work_start_hour):
                        data["lateToday"] += 1
            elif event.event_type == EventType.PAYROLL_CALCULATED:
                data["totalPayroll"] += event.event_data.get("totalAmount") or 0
            elif event.event_type == EventType.EMPLOYEE_ADDED:
                data["totalEmployees"] += 1
            # EmployeeUpdated only bumps the version

            await self._save(stats, data)


class EmployeePerformanceProjection(_Projection):
    """Attendance and payroll totals plus a performance score, one read model per employee."""

    read_model_type = "employee_performance"
    interested_events = [
        EventType.ATTENDANCE_RECORDED,
        EventType.PAYROLL_CALCULATED,
        EventType.PERFORMANCE_REVIEWED,
    ]

    async def project(self, event: DomainEvent) -> None:
        employee_id: Optional[str] = event.event_data.get("employeeId")
        if not employee_id:
            return

        async with self.read_model_manager.lock(self.read_model_type, employee_id):
            performance = await self._load(employee_id, {
                "employeeId": employee_id,
                "totalWorkingDays": 0,
                "totalLateCount": 0,
                "totalAbsentCount": 0,
                "averageWorkingHours": 0,
                "totalSalary": 0,
                "performanceScore": 100,
            })
            data = dict(performance.data)

            if event.event_type == EventType.ATTENDANCE_RECORDED:
                if event.event_data.get("type") == CHECK_IN:
                    data["totalWorkingDays"] += 1
                    if is_late(event_time(event), self.work_start_hour):
                        data["totalLateCount"] += 1
                data["performanceScore"] = self.calculate_performance_score(data)
            elif event.event_type == EventType.PAYROLL_CALCULATED:
                data["totalSalary"] += event.event_data.get("totalAmount") or 0
            elif event.event_type == EventType.PERFORMANCE_REVIEWED:
                score = event.event_data.get("score")
                if score is not None:
                    data["performanceScore"] = score

            await self._save(performance, data)

    @staticmethod
    def calculate_performance_score(data: Dict[str, Any]) -> float:
        working_days = data["totalWorkingDays"]
        if working_days == 0:
            return 100

        late_rate = data["totalLateCount"] / working_days
        absent_rate = data["totalAbsentCount"] / working_days
        score = 100 - late_rate * 20 - absent_rate * 50
        return max(0, min(100, score))
