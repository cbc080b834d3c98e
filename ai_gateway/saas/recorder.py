"""Usage recorder — fire-and-forget persistence of UsageEvents.

A bounded asyncio.Queue decouples the request path from the store:
``append()`` never blocks and never raises. One consumer task drains the
queue; each write is bounded by a timeout and retried a fixed number of
times (at-least-once; the store ignores a re-sent event_id). Failures are
published on a bounded error channel and logged.
"""

from __future__ import annotations

import asyncio
from collections import deque

from ai_gateway.core.exceptions import UsageRecordingError
from ai_gateway.core.interfaces import UsageStore
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import UsageEvent

log = get_logger(__name__)


class UsageRecorder:
    """Background writer for usage events.

    Usage:
        recorder = UsageRecorder(store)
        await recorder.start()
        recorder.append(event)
        ...
        await recorder.stop()
    """

    def __init__(
        self,
        store: UsageStore,
        queue_maxsize: int = 1000,
        write_timeout_seconds: float = 5.0,
        write_attempts: int = 3,
        error_channel_size: int = 100,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._store = store
        self._queue: asyncio.Queue[UsageEvent] = asyncio.Queue(maxsize=queue_maxsize)
        self._write_timeout = write_timeout_seconds
        self._write_attempts = max(1, write_attempts)
        self._backoff = retry_backoff_seconds
        # Oldest errors are dropped once the channel is full
        self._errors: deque[UsageRecordingError] = deque(maxlen=error_channel_size)
        self._consumer: asyncio.Task[None] | None = None
        self._written = 0
        self._failed = 0

    # ── Lifecycle ────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="usage-recorder")
        log.info("usage_recorder_started", queue_maxsize=self._queue.maxsize)

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain queued events (bounded by ``timeout``), then stop the consumer."""
        if self._consumer is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("usage_recorder_drain_timeout", pending=self._queue.qsize(), timeout=timeout)

        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

        # Whatever is left could not be written in time
        while not self._queue.empty():
            event = self._queue.get_nowait()
            self._queue.task_done()
            self._publish_error(
                UsageRecordingError(
                    "Recorder stopped before the event was written",
                    context={"event_id": event.event_id, "user_id": event.user_id},
                )
            )
        log.info("usage_recorder_stopped", written=self._written, failed=self._failed)

    async def flush(self) -> None:
        """Wait until every queued event has been written or given up on."""
        await self._queue.join()

    # ── Request Path ─────────────────────────────────────────────

    def append(self, event: UsageEvent) -> bool:
        """Enqueue an event without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._publish_error(
                UsageRecordingError(
                    "Usage queue full, event dropped",
                    context={"event_id": event.event_id, "user_id": event.user_id},
                )
            )
            return False
        return True

    # ── Error Channel ────────────────────────────────────────────

    def drain_errors(self) -> list[UsageRecordingError]:
        """Take and clear every error published so far."""
        errors = list(self._errors)
        self._errors.clear()
        return errors

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> dict[str, int]:
        return {
            "written": self._written,
            "failed": self._failed,
            "pending": self._queue.qsize(),
            "errors_buffered": len(self._errors),
        }

    # ── Consumer ─────────────────────────────────────────────────

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            except asyncio.CancelledError:
                self._publish_error(
                    UsageRecordingError(
                        "Recorder stopped while the event was being written",
                        context={"event_id": event.event_id, "user_id": event.user_id},
                    )
                )
                raise
            finally:
                self._queue.task_done()

    async def _write(self, event: UsageEvent) -> None:
        last_error = ""
        for attempt in range(1, self._write_attempts + 1):
            try:
                await asyncio.wait_for(self._store.insert(event), timeout=self._write_timeout)
            except asyncio.TimeoutError:
                last_error = f"timeout after {self._write_timeout}s"
            except Exception as exc:  # noqa: BLE001 - any store failure is retried, then published
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                self._written += 1
                log.info(
                    "usage_recorded",
                    event_id=event.event_id,
                    user_id=event.user_id,
                    service=event.service,
                    feature_type=event.feature_type,
                    credit_class=event.credit_class.value,
                    model=event.model_used,
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                    cost_jpy=f"{event.estimated_cost:.4f}",
                )
                return

            log.warning(
                "usage_write_retry",
                event_id=event.event_id,
                attempt=attempt,
                max_attempts=self._write_attempts,
                error=last_error,
            )
            if attempt < self._write_attempts and self._backoff > 0:
                await asyncio.sleep(self._backoff * attempt)

        self._publish_error(
            UsageRecordingError(
                f"Usage event not written after {self._write_attempts} attempts: {last_error}",
                context={"event_id": event.event_id, "user_id": event.user_id},
            )
        )

    def _publish_error(self, error: UsageRecordingError) -> None:
        self._failed += 1
        self._errors.append(error)
        log.error("usage_recording_failed", error=str(error), **error.context)
