from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from paysync.logging_context import set_dispatch_id
from paysync.logging_utils import exception_detail, structured_log
from paysync.services.queue.pgmq import QueueMessage, WorkQueue
from paysync.services.sync.engine import SyncEngine
from paysync.services.sync.errors import (
    RunNotFoundError,
    SyncFailure,
    UnknownObjectTypeError,
)
from paysync.services.sync.types import (
    DispatchReport,
    MessageFailed,
    MessageOk,
    MessageOutcome,
    ProcessNextOverrides,
)

logger = logging.getLogger(__name__)

SKIPPED_MESSAGES_IN_FLIGHT = "messages_in_flight"
SKIPPED_BOOTSTRAP_IN_PROGRESS = "bootstrap_in_progress"


class MalformedMessageError(ValueError):
    pass


@dataclass(frozen=True)
class WorkMessage:
    object_type: str
    triggered_by: str | None = None
    run_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"object": self.object_type}
        if self.triggered_by is not None:
            payload["triggered_by"] = self.triggered_by
        if self.run_id is not None:
            payload["run_id"] = self.run_id
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> WorkMessage:
        if not isinstance(payload, dict):
            raise MalformedMessageError("Queue message payload is not an object.")
        object_type = payload.get("object")
        if not isinstance(object_type, str) or not object_type.strip():
            raise MalformedMessageError("Queue message has no object type.")
        triggered_by = payload.get("triggered_by")
        if triggered_by is not None and not isinstance(triggered_by, str):
            raise MalformedMessageError("Queue message triggered_by must be a string.")
        run_id = payload.get("run_id")
        if run_id is not None and (isinstance(run_id, bool) or not isinstance(run_id, int)):
            raise MalformedMessageError("Queue message run_id must be an integer.")
        return cls(object_type=object_type.strip(), triggered_by=triggered_by, run_id=run_id)


class QueueDispatcher:
    """Drives `SyncEngine.process_next` from an at-least-once queue.

    One `run_once` reads a batch and handles every message concurrently up to
    `max_parallel`. An empty queue with nothing in flight starts a new sweep:
    one message per object type, all stamped with the channel run's id.
    """

    def __init__(
        self,
        engine: SyncEngine,
        queue: WorkQueue,
        *,
        queue_name: str,
        visibility_timeout_seconds: int,
        batch_size: int,
        max_parallel: int,
        channel: str,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._queue_name = queue_name
        self._visibility_timeout_seconds = max(1, int(visibility_timeout_seconds))
        self._batch_size = max(1, int(batch_size))
        self._max_parallel = max(1, int(max_parallel))
        self._channel = channel

    @property
    def channel(self) -> str:
        return self._channel

    async def run_once(self) -> DispatchReport:
        set_dispatch_id(uuid4().hex[:12])
        try:
            messages = await self._queue.read_batch(
                self._queue_name,
                self._visibility_timeout_seconds,
                self._batch_size,
            )
            if not messages:
                return await self._bootstrap_if_idle()

            outcomes = await self._process_batch(messages)
            report = DispatchReport(outcomes=outcomes)
            structured_log(
                logger,
                "info",
                "dispatcher.batch_processed",
                queue=self._queue_name,
                message_count=len(messages),
                failed_count=report.failed_count,
                requeued_count=report.requeued_count,
            )
            return report
        finally:
            set_dispatch_id(None)

    async def _bootstrap_if_idle(self) -> DispatchReport:
        async with self._queue.bootstrap_guard(self._queue_name) as acquired:
            if not acquired:
                return self._skip(SKIPPED_BOOTSTRAP_IN_PROGRESS)
            # Checked under the guard so a sweep enqueued by another dispatcher is seen.
            in_flight = await self._queue.in_flight_count(self._queue_name)
            if in_flight > 0:
                return self._skip(SKIPPED_MESSAGES_IN_FLIGHT, in_flight=in_flight)
            return await self._bootstrap()

    def _skip(self, reason: str, **fields: Any) -> DispatchReport:
        structured_log(logger, "info", "dispatcher.skipped", queue=self._queue_name, reason=reason, **fields)
        return DispatchReport(skipped_reason=reason)

    async def _bootstrap(self) -> DispatchReport:
        object_types = self._engine.list_object_types()
        run = await self._engine.join_or_create_run(self._channel, object_types=object_types)
        for object_type in object_types:
            message = WorkMessage(object_type=object_type, triggered_by=self._channel, run_id=run.id)
            await self._queue.send(self._queue_name, message.to_payload())
        structured_log(
            logger,
            "info",
            "dispatcher.sweep_enqueued",
            queue=self._queue_name,
            run_id=run.id,
            triggered_by=self._channel,
            message_count=len(object_types),
        )
        return DispatchReport(enqueued_object_types=list(object_types), run_id=run.id)

    async def _process_batch(self, messages: list[QueueMessage]) -> list[MessageOutcome]:
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def _bounded(message: QueueMessage) -> MessageOutcome:
            async with semaphore:
                return await self._process_message(message)

        return list(await asyncio.gather(*(_bounded(message) for message in messages)))

    async def _process_message(self, message: QueueMessage) -> MessageOutcome:
        object_type: str | None = None
        try:
            try:
                work = WorkMessage.from_payload(message.payload)
            except MalformedMessageError as exc:
                return await self._drop_poison(message, object_type=None, error=exception_detail(exc))
            object_type = work.object_type

            try:
                result = await self._engine.process_next(
                    work.object_type,
                    ProcessNextOverrides(
                        run_id=work.run_id,
                        triggered_by=work.triggered_by or self._channel,
                    ),
                )
            except (UnknownObjectTypeError, RunNotFoundError) as exc:
                return await self._drop_poison(message, object_type=object_type, error=exception_detail(exc))
            except SyncFailure as exc:
                structured_log(
                    logger,
                    "warning",
                    "dispatcher.message_failed",
                    message_id=message.msg_id,
                    object_type=object_type,
                    run_id=exc.run_id,
                    error=exc.message,
                )
                return MessageFailed(
                    message_id=message.msg_id,
                    object_type=object_type,
                    error=exc.message,
                    acked=False,
                )

            requeued = False
            if result.has_more:
                # Re-send before acking; a crash in between duplicates work instead of losing it.
                await self._queue.send(self._queue_name, work.to_payload())
                requeued = True
            await self._queue.ack(self._queue_name, message.msg_id)
            return MessageOk(
                message_id=message.msg_id,
                object_type=object_type,
                processed=result.processed,
                has_more=result.has_more,
                requeued=requeued,
            )
        except Exception as exc:
            logger.exception(
                "dispatcher.message_crashed",
                extra={
                    "event": "dispatcher.message_crashed",
                    "message_id": message.msg_id,
                    "object_type": object_type,
                },
            )
            return MessageFailed(
                message_id=message.msg_id,
                object_type=object_type,
                error=exception_detail(exc),
                acked=False,
            )

    async def _drop_poison(self, message: QueueMessage, *, object_type: str | None, error: str) -> MessageFailed:
        await self._queue.ack(self._queue_name, message.msg_id)
        structured_log(
            logger,
            "warning",
            "dispatcher.poison_message_dropped",
            message_id=message.msg_id,
            object_type=object_type,
            error=error,
        )
        return MessageFailed(message_id=message.msg_id, object_type=object_type, error=error, acked=True)
