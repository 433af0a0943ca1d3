from __future__ import annotations

from app.automation import tasks  # noqa: F401
from app.core.celery_app import celery_app


def test_beat_schedule_targets_the_pipeline_tasks() -> None:
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

    assert scheduled == {"automation.process_queue", "webhooks.process_queue", "webhooks.retry_due"}


def test_only_pipeline_tasks_are_registered() -> None:
    registered = {name for name in celery_app.tasks if not name.startswith("celery.")}

    assert registered == {"automation.process_queue", "webhooks.process_queue", "webhooks.retry_due"}
