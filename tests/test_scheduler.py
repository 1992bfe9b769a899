from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from scheduler import SchedulerManager


class _RecordingJobs:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def run_spending_alerts(self) -> int:
        self.calls.append("spending_alerts")
        return 2


def _fields(trigger: CronTrigger) -> dict[str, str]:
    return {field.name: str(field) for field in trigger.fields}


def test_register_jobs_uses_the_notification_schedule() -> None:
    manager = SchedulerManager(jobs=_RecordingJobs())

    manager.register_jobs()

    expected = {
        "biweekly_reports": {"day": "1,15", "hour": "9", "minute": "0"},
        "spending_alerts": {"day": "*", "day_of_week": "*", "hour": "20", "minute": "0"},
        "achievements": {"day": "*", "day_of_week": "*", "hour": "18", "minute": "0"},
        "reengagement": {"day": "*", "day_of_week": "mon", "hour": "10", "minute": "0"},
    }
    for job_id, fields in expected.items():
        job = manager.scheduler.get_job(job_id)
        assert job is not None, job_id
        assert isinstance(job.trigger, CronTrigger)
        assert str(job.trigger.timezone) == get_settings().timezone
        actual = _fields(job.trigger)
        for name, value in fields.items():
            assert actual[name] == value, (job_id, name)
    assert not manager.scheduler.running


def test_run_job_dispatches_to_notification_jobs() -> None:
    jobs = _RecordingJobs()
    manager = SchedulerManager(jobs=jobs)

    manager._run_job("spending_alerts", "cron")

    assert jobs.calls == ["spending_alerts"]
