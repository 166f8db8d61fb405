"""Unit tests for the Celery worker entry point.

Tests cover:
- celery_app routes run_scheduled_tasks to the "scheduled" queue with JSON
  serialisation and late acknowledgement
- run_scheduled_tasks() dispatches a wire batch and returns its counts
- A bad message in the batch is counted, not raised

The task body is called directly (no broker, no worker).
"""

from __future__ import annotations

from unittest.mock import patch

from stream_speculator.config.settings import Settings
from stream_speculator.scheduling.backends import RUN_SCHEDULED_TASKS
from stream_speculator.scheduling.tasks import MonitorChannelData, MonitorChannelTask
from stream_speculator.workers.celery_app import celery_app
from stream_speculator.workers.tasks import run_scheduled_tasks


def _offline_settings() -> Settings:
    return Settings(store_backend="memory", scheduler_backend="celery", is_offline=True)


class TestCeleryConfig:
    def test_task_registered_under_delivery_name(self) -> None:
        assert run_scheduled_tasks.name == RUN_SCHEDULED_TASKS
        assert RUN_SCHEDULED_TASKS in celery_app.tasks

    def test_routing_and_serialisation(self) -> None:
        conf = celery_app.conf
        assert conf.task_routes[RUN_SCHEDULED_TASKS] == {"queue": "scheduled"}
        assert conf.task_serializer == "json"
        assert conf.task_acks_late is True


class TestRunScheduledTasks:
    def test_returns_batch_summary(self) -> None:
        """One routable task and one unknown type give ok=1, failed=1."""
        batch = [
            MonitorChannelTask(data=MonitorChannelData(channel_id="7")).to_wire(),
            {"type": 99, "data": {}},
        ]
        with patch("stream_speculator.workers.tasks.get_settings", return_value=_offline_settings()):
            summary = run_scheduled_tasks.run(batch)

        assert summary == {"ok": 1, "deferred": 0, "failed": 1}

    def test_empty_batch(self) -> None:
        with patch("stream_speculator.workers.tasks.get_settings", return_value=_offline_settings()):
            assert run_scheduled_tasks.run([]) == {"ok": 0, "deferred": 0, "failed": 0}
