"""Task dispatcher: runs one delivered batch through the routing table.

Every message in a batch runs concurrently and is reported individually in
a :class:`BatchReport`.  A message that fails to parse, names an unknown
task type, or whose handler raises is logged and recorded as an error; the
rest of the batch is unaffected.  Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping

import structlog
from pydantic import ValidationError

from stream_speculator.core.logging_config import task_id_var
from stream_speculator.scheduling.delay import is_timestamp_only, seconds_until_due
from stream_speculator.scheduling.scheduler import Clock, Scheduler, utc_now
from stream_speculator.scheduling.tasks import BaseTask, TaskType, parse_task

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[BaseTask], Awaitable[Any]]
Message = dict[str, Any] | str | bytes | BaseTask

ErrorKind = Literal["invalid_payload", "unknown_type", "handler_failed"]


@dataclass
class TaskResult:
    """Outcome of one message.

    Attributes:
        status: ``"ok"``, ``"deferred"`` (re-enqueued because it arrived
            before its due time), or ``"error"``.
        task_type: The task type, when the message got far enough to have one.
        kind: Error category when ``status == "error"``.
        detail: Error message when ``status == "error"``.
    """

    status: Literal["ok", "deferred", "error"]
    task_type: TaskType | None = None
    kind: ErrorKind | None = None
    detail: str | None = None


@dataclass
class BatchReport:
    """Per-message results of one dispatch, in input order."""

    results: list[TaskResult] = field(default_factory=list)

    @property
    def ok(self) -> int:
        return sum(1 for r in self.results if r.status == "ok")

    @property
    def deferred(self) -> int:
        return sum(1 for r in self.results if r.status == "deferred")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "error")


class _Rejected(Exception):
    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


def _decode(message: Message) -> BaseTask:
    if isinstance(message, BaseTask):
        return message
    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError as exc:
            raise _Rejected("invalid_payload", f"not JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise _Rejected("invalid_payload", f"expected an object, got {type(message).__name__}")
    raw_type = message.get("type")
    try:
        TaskType(int(raw_type))
    except (TypeError, ValueError) as exc:
        raise _Rejected("unknown_type", f"unknown task type {raw_type!r}") from exc
    try:
        return parse_task(message)
    except ValidationError as exc:
        raise _Rejected("invalid_payload", str(exc)) from exc


class TaskDispatcher:
    """Resolves each delivered task to its handler and runs the batch.

    Args:
        routes: Task type to handler coroutine function.
        scheduler: Used to re-enqueue tasks that arrived before they were due.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        routes: Mapping[TaskType, TaskHandler],
        scheduler: Scheduler,
        clock: Clock = utc_now,
    ) -> None:
        self.routes = dict(routes)
        self.scheduler = scheduler
        self.clock = clock

    async def dispatch(self, messages: Iterable[Message]) -> BatchReport:
        """Run every message in *messages* concurrently.

        Returns:
            A :class:`BatchReport` with one :class:`TaskResult` per message.
        """
        results = await asyncio.gather(*(self._run_one(m) for m in messages))
        report = BatchReport(results=list(results))
        logger.info(
            "batch_dispatched",
            ok=report.ok,
            deferred=report.deferred,
            failed=report.failed,
        )
        return report

    async def _run_one(self, message: Message) -> TaskResult:
        task_id_var.set(uuid.uuid4().hex[:12])
        try:
            task = _decode(message)
        except _Rejected as rejected:
            logger.error("task_rejected", kind=rejected.kind, detail=rejected.detail)
            return TaskResult(status="error", kind=rejected.kind, detail=rejected.detail)

        task_type = TaskType(task.type)
        handler = self.routes.get(task_type)
        if handler is None:
            detail = f"no handler for {task_type.name}"
            logger.error("task_rejected", kind="unknown_type", detail=detail)
            return TaskResult(status="error", task_type=task_type, kind="unknown_type", detail=detail)

        # Long timestamp delays are clamped at enqueue time, so an early
        # arrival goes back on the queue for the remainder.
        if is_timestamp_only(task) and seconds_until_due(task, self.clock()) >= 1:
            try:
                await self.scheduler.redeliver(task)
            except Exception as exc:
                logger.exception("task_redelivery_failed", task_type=task_type.name)
                return TaskResult(status="error", task_type=task_type, kind="handler_failed", detail=str(exc))
            logger.info("task_deferred", task_type=task_type.name)
            return TaskResult(status="deferred", task_type=task_type)

        try:
            await handler(task)
        except Exception as exc:
            logger.exception("task_failed", task_type=task_type.name)
            return TaskResult(status="error", task_type=task_type, kind="handler_failed", detail=str(exc))
        return TaskResult(status="ok", task_type=task_type)
