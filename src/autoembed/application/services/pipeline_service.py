from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import math
import sqlite3
import time
import traceback
from collections import OrderedDict, deque
from pathlib import Path
from typing import Any, Iterable, Mapping

from autoembed.core.channels import EventChannel
from autoembed.core.config import PipelineConfig
from autoembed.core.errors import CacheError, EmbeddingFailedError
from autoembed.core.time import now_epoch
from autoembed.domain.models.embedding import EmbeddingResult, EmbeddingTask, TaskPriority
from autoembed.domain.models.pipeline import (
    CHECKPOINT_VERSION,
    Alert,
    AlertSeverity,
    AlertType,
    Checkpoint,
    DeadLetterItem,
    LatencyMetrics,
    PipelineEvent,
    PipelineMetrics,
    PipelineStatus,
    ProgressEvent,
)
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache
from autoembed.infrastructure.queue.work_queue import PriorityWorkQueue
from autoembed.infrastructure.state.json_state import JsonStateFile

logger = logging.getLogger(__name__)

LOW_PRIORITY_SHED_RATIO = 0.8
CIRCUIT_BREAKER_RATIO = 0.9
THROUGHPUT_WINDOW_SECONDS = 60.0


def dead_letter_path_for(checkpoint_path: Path) -> Path:
    return checkpoint_path.with_name(f"{checkpoint_path.stem}-dlq{checkpoint_path.suffix or '.json'}")


def percentile(sorted_values: list[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, math.floor(pct / 100 * len(sorted_values)))
    return sorted_values[index]


class EmbeddingPipeline:
    """Prioritised, rate-limited embedding queue with retries and a dead-letter queue.

    Results, alerts and progress are published on ``events``. Submission is
    synchronous and cooperative: ``add_task`` returns False when the task is
    refused (pipeline disabled, circuit breaker open, or low-priority load
    shedding) and callers decide whether to try again later.
    """

    def __init__(
        self,
        model_client: Any,
        cache: EmbeddingCache,
        config: PipelineConfig | None = None,
        *,
        checkpoint_path: Path,
        dead_letter_path: Path | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.model_client = model_client
        self.cache = cache
        self.events: EventChannel[PipelineEvent] = EventChannel(self.config.event_channel_size, name="pipeline")
        self._queue = PriorityWorkQueue(
            concurrency=self.config.concurrency,
            interval_cap=self.config.interval_cap,
            interval_seconds=self.config.interval_seconds,
            timeout_seconds=self.config.timeout_seconds,
            name="embedding-pipeline",
        )
        self._checkpoint_file = JsonStateFile(
            checkpoint_path,
            debounce_seconds=self.config.state_save_debounce_seconds,
            on_error=self._on_state_write_error,
        )
        self._dead_letter_file = JsonStateFile(
            dead_letter_path or dead_letter_path_for(checkpoint_path),
            debounce_seconds=self.config.state_save_debounce_seconds,
            on_error=self._on_state_write_error,
        )

        self._enabled = False
        self._processed: OrderedDict[str, None] = OrderedDict()
        self._inflight: set[str] = set()
        self._running: dict[str, EmbeddingTask] = {}
        self._retry_timers: dict[str, tuple[asyncio.TimerHandle, EmbeddingTask]] = {}
        self._dead_letters: list[DeadLetterItem] = []
        self._session_positions: dict[str, int] = {}
        self._last_processed_id: str | None = None
        self._last_checkpoint: float | None = None
        self._breaker_open_until: float | None = None
        self._alert_sent_at: dict[AlertType, float] = {}
        self._relational_connected = False
        self._qdrant_connected = False
        self._reset_counters()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def checkpoint_path(self) -> Path:
        return self._checkpoint_file.path

    @property
    def dead_letter_path(self) -> Path:
        return self._dead_letter_file.path

    async def initialize(self) -> bool:
        self.restore_checkpoint()
        self.restore_dead_letters()
        self._queue.resume()
        self._queue.start()
        self._enabled = True
        logger.info(
            "Embedding pipeline started (concurrency=%d, max queue depth=%d)",
            self.config.concurrency,
            self.config.max_queue_depth,
        )
        return True

    async def shutdown(self) -> None:
        if not self._enabled and not self._running and not self._queue.size:
            return
        self._enabled = False
        self._queue.pause()
        try:
            await asyncio.wait_for(self._queue.wait_for_pending(), timeout=self.config.shutdown_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Shutdown grace period of %.0fs elapsed with %d task(s) still running",
                self.config.shutdown_grace_seconds,
                self._queue.pending,
            )

        parked = [task for task in self._queue.clear() if task is not None]
        for handle, task in self._retry_timers.values():
            handle.cancel()
            parked.append(task)
        self._retry_timers.clear()
        # Cancelled workers drop their entries from _running, so take these first.
        parked.extend(self._running.values())
        self._running.clear()
        await self._queue.stop()
        for task in parked:
            self._dead_letter(task, EmbeddingFailedError("Pipeline shut down before the task completed"))
        if parked:
            logger.warning("Parked %d unfinished task(s) in the dead-letter queue", len(parked))

        self.save_checkpoint()
        self._persist_dead_letters(immediate=True)
        logger.info("Embedding pipeline stopped")

    def add_task(self, task: EmbeddingTask) -> bool:
        return self._submit(task, retry=False)

    def add_tasks(self, tasks: Iterable[EmbeddingTask]) -> int:
        return sum(1 for task in tasks if self.add_task(task))

    def get_metrics(self) -> PipelineMetrics:
        now = time.monotonic()
        while self._completed_at and now - self._completed_at[0] > THROUGHPUT_WINDOW_SECONDS:
            self._completed_at.popleft()
        per_minute = float(len(self._completed_at))
        window = min(THROUGHPUT_WINDOW_SECONDS, max(now - self._metrics_started, 1.0))
        latencies = sorted(self._latencies)
        attempts = self._success_count + self._error_count
        lookups = self._total_processed + self._cache_hits
        return PipelineMetrics(
            latency=LatencyMetrics(
                p50=percentile(latencies, 50),
                p95=percentile(latencies, 95),
                p99=percentile(latencies, 99),
            ),
            embeddings_per_second=per_minute / window,
            embeddings_per_minute=per_minute,
            queue_depth=self._queue.size,
            pending_operations=self._queue.pending,
            success_rate=self._success_count / attempts if attempts else 1.0,
            error_rate=self._error_count / attempts if attempts else 0.0,
            cache_hit_rate=self._cache_hits / lookups if lookups else 0.0,
            total_processed=self._total_processed,
            total_failed=self._error_count,
            total_cached=self._cache_hits,
            timestamp=now_epoch(),
        )

    def reset_metrics(self) -> None:
        self._reset_counters()

    def get_status(self) -> PipelineStatus:
        model_status = self.model_client.get_status()
        return PipelineStatus(
            enabled=self._enabled,
            processing=bool(self._running),
            queue_depth=self._queue.size,
            pending_operations=self._queue.pending,
            model_healthy=model_status.healthy,
            model_loaded=model_status.model_loaded,
            relational_connected=self._relational_connected,
            qdrant_connected=self._qdrant_connected,
            circuit_breaker_open=self._breaker_is_open(),
            dead_letter_count=len(self._dead_letters),
            last_checkpoint=self._last_checkpoint,
        )

    def update_connection_status(self, *, relational: bool, qdrant: bool) -> None:
        self._relational_connected = relational
        self._qdrant_connected = qdrant
        if not relational and not qdrant:
            self._raise_alert(
                AlertType.STORAGE_UNAVAILABLE,
                AlertSeverity.ERROR,
                "No vector storage backend is connected",
            )

    def update_session_positions(self, positions: Mapping[str, int]) -> None:
        self._session_positions = dict(positions)

    def get_dead_letter_queue(self) -> list[DeadLetterItem]:
        return list(self._dead_letters)

    def retry_dead_letter_queue(self) -> int:
        items, self._dead_letters = self._dead_letters, []
        resubmitted = 0
        for item in items:
            task = dataclasses.replace(item.original_task, attempt_count=0)
            self._processed.pop(task.idempotency_key, None)
            if self._submit(task, retry=False):
                resubmitted += 1
            else:
                self._dead_letters.append(item)
        self._persist_dead_letters(immediate=False)
        logger.info("Resubmitted %d of %d dead-lettered task(s)", resubmitted, len(items))
        return resubmitted

    def clear_dead_letter_queue(self) -> int:
        count = len(self._dead_letters)
        self._dead_letters = []
        self._persist_dead_letters(immediate=False)
        return count

    def restore_checkpoint(self) -> Checkpoint | None:
        payload = self._checkpoint_file.load()
        if payload is None:
            return None
        try:
            checkpoint = Checkpoint.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed checkpoint %s: %s", self.checkpoint_path, exc)
            return None
        if checkpoint.version != CHECKPOINT_VERSION:
            logger.warning(
                "Checkpoint version %s does not match %s; starting cold",
                checkpoint.version,
                CHECKPOINT_VERSION,
            )
            return None
        self._session_positions = dict(checkpoint.session_positions)
        self._last_processed_id = checkpoint.last_processed_id
        self._last_checkpoint = checkpoint.timestamp
        logger.info("Restored checkpoint from %s", self.checkpoint_path)
        return checkpoint

    def restore_dead_letters(self) -> int:
        payload = self._dead_letter_file.load()
        if not isinstance(payload, list):
            return 0
        restored: list[DeadLetterItem] = []
        for raw in payload:
            try:
                restored.append(DeadLetterItem.from_dict(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed dead-letter entry: %s", exc)
        known = {item.original_task.idempotency_key for item in self._dead_letters}
        self._dead_letters.extend(item for item in restored if item.original_task.idempotency_key not in known)
        if restored:
            logger.info("Restored %d dead-lettered task(s)", len(restored))
        return len(restored)

    def save_dead_letters(self) -> None:
        self._persist_dead_letters(immediate=True)

    async def wait_until_idle(self) -> None:
        """Wait until the queue is empty and no retry is scheduled."""
        while True:
            await self._queue.on_idle()
            if not self._retry_timers:
                return
            await asyncio.sleep(0.05)

    def save_checkpoint(self) -> None:
        self._checkpoint_file.request_save(self._checkpoint_payload)
        self._checkpoint_file.flush()

    def _reset_counters(self) -> None:
        self._latencies: deque[float] = deque(maxlen=self.config.latency_window)
        self._completed_at: deque[float] = deque()
        self._metrics_started = time.monotonic()
        self._success_count = 0
        self._error_count = 0
        self._cache_hits = 0
        self._total_processed = 0
        self._since_checkpoint = 0
        self._submitted = 0
        self._finished = 0

    def _submit(self, task: EmbeddingTask, *, retry: bool) -> bool:
        if not self._enabled:
            logger.debug("Rejecting %s: pipeline is disabled", task.idempotency_key)
            return False
        if self._breaker_is_open():
            self._raise_alert(
                AlertType.HIGH_QUEUE_DEPTH,
                AlertSeverity.CRITICAL,
                "Circuit breaker open; rejecting new embedding tasks",
                {"queue_depth": self._queue.size + self._queue.pending},
            )
            return False

        key = task.idempotency_key
        if key in self._processed:
            return True
        if not retry and key in self._inflight:
            return True

        cached = self._cache_lookup(task)
        if cached is not None:
            self._cache_hits += 1
            self._mark_processed(key)
            self.events.publish(
                PipelineEvent(
                    kind="result",
                    payload=EmbeddingResult(
                        idempotency_key=key,
                        embedding=cached,
                        model=self.model_client.model_name,
                        processing_time=0.0,
                        cached=True,
                    ),
                    task=task,
                )
            )
            return True

        if task.priority is TaskPriority.LOW and self._queue.size > LOW_PRIORITY_SHED_RATIO * self.config.max_queue_depth:
            logger.debug("Shedding low-priority task %s", key)
            return False

        self._inflight.add(key)
        self._submitted += 1
        self._queue.add(
            functools.partial(self._process_task, task),
            priority=task.priority.rank,
            context=task,
            on_timeout=functools.partial(self._on_task_timeout, task),
        )
        self._check_backpressure()
        return True

    def _cache_lookup(self, task: EmbeddingTask) -> list[float] | None:
        try:
            return self.cache.get(task.text, self.model_client.model_name)
        except (CacheError, sqlite3.Error) as exc:
            logger.warning("Embedding cache lookup failed: %s", exc)
            return None

    def _check_backpressure(self) -> None:
        depth = self._queue.size + self._queue.pending
        limit = self.config.max_queue_depth
        context = {"queue_depth": depth, "max_queue_depth": limit}
        if depth > CIRCUIT_BREAKER_RATIO * limit and self._breaker_open_until is None:
            self._breaker_open_until = time.monotonic() + self.config.circuit_breaker_reset_seconds
            self._raise_alert(
                AlertType.HIGH_QUEUE_DEPTH,
                AlertSeverity.CRITICAL,
                f"Queue depth {depth} exceeded 90% of {limit}; circuit breaker open for "
                f"{self.config.circuit_breaker_reset_seconds:.0f}s",
                context,
            )
        elif depth > limit:
            self._raise_alert(
                AlertType.HIGH_QUEUE_DEPTH,
                AlertSeverity.WARNING,
                f"Queue depth {depth} exceeds the limit of {limit}",
                context,
            )

    def _breaker_is_open(self) -> bool:
        if self._breaker_open_until is None:
            return False
        if time.monotonic() >= self._breaker_open_until:
            self._breaker_open_until = None
            logger.info("Circuit breaker reset")
            return False
        return True

    async def _process_task(self, task: EmbeddingTask) -> None:
        key = task.idempotency_key
        self._running[key] = task
        started = time.perf_counter()
        try:
            try:
                if not self.model_client.get_status().healthy:
                    self._raise_alert(
                        AlertType.MODEL_UNHEALTHY,
                        AlertSeverity.ERROR,
                        "Embedding model server is unhealthy",
                    )
                    raise EmbeddingFailedError("Embedding model server is unhealthy")
                result = await self.model_client.embed(task.text)
                if result is None:
                    raise EmbeddingFailedError("Model server returned no embedding")
            except Exception as exc:
                self._handle_failure(task, exc)
                return
            self._handle_success(task, result, time.perf_counter() - started)
        finally:
            self._running.pop(key, None)

    def _handle_success(self, task: EmbeddingTask, result: EmbeddingResult, latency: float) -> None:
        self._latencies.append(latency)
        self._completed_at.append(time.monotonic())
        try:
            self.cache.set(task.text, result.model, result.embedding, self.model_client.model_digest)
        except (CacheError, sqlite3.Error) as exc:
            logger.warning("Failed to cache embedding for %s: %s", task.idempotency_key, exc)

        self._success_count += 1
        self._total_processed += 1
        self._mark_processed(task.idempotency_key)
        self.events.publish(
            PipelineEvent(
                kind="result",
                payload=dataclasses.replace(result, idempotency_key=task.idempotency_key),
                task=task,
            )
        )
        self._finish(task)
        self._check_latency()

        self._since_checkpoint += 1
        if self._since_checkpoint >= self.config.checkpoint_interval:
            self._since_checkpoint = 0
            self._checkpoint_file.request_save(self._checkpoint_payload)

    def _handle_failure(self, task: EmbeddingTask, exc: BaseException) -> None:
        self._error_count += 1
        self._check_error_rate()
        if task.attempt_count < self.config.max_retries:
            delay = self.config.base_backoff_seconds * self.config.backoff_multiplier**task.attempt_count
            retry = dataclasses.replace(task, attempt_count=task.attempt_count + 1)
            logger.debug(
                "Attempt %d for %s failed (%s); retrying in %.2fs",
                retry.attempt_count,
                task.idempotency_key,
                exc,
                delay,
            )
            handle = asyncio.get_running_loop().call_later(delay, self._resubmit, retry)
            self._retry_timers[task.idempotency_key] = (handle, retry)
            return
        self._dead_letter(task, exc)
        self._finish(task)

    def _on_task_timeout(self, task: EmbeddingTask) -> None:
        self._running.pop(task.idempotency_key, None)
        self._handle_failure(
            task,
            EmbeddingFailedError(f"Embedding timed out after {self.config.timeout_seconds:.1f}s"),
        )

    def _resubmit(self, task: EmbeddingTask) -> None:
        self._retry_timers.pop(task.idempotency_key, None)
        if self._submit(task, retry=True):
            return
        self._dead_letter(task, EmbeddingFailedError("Retry was rejected by the pipeline"))
        self._finish(task)

    def _dead_letter(self, task: EmbeddingTask, exc: BaseException) -> None:
        self._inflight.discard(task.idempotency_key)
        self._dead_letters.append(
            DeadLetterItem(
                original_task=task,
                error=str(exc) or type(exc).__name__,
                attempt_count=task.attempt_count,
                stack_trace="".join(traceback.format_exception(exc)) if exc.__traceback__ else None,
            )
        )
        logger.warning(
            "Task %s moved to the dead-letter queue after %d attempt(s): %s",
            task.idempotency_key,
            task.attempt_count + 1,
            exc,
        )
        if len(self._dead_letters) % self.config.dead_letter_persist_interval == 0:
            self._persist_dead_letters(immediate=False)

    def _mark_processed(self, key: str) -> None:
        self._inflight.discard(key)
        self._processed[key] = None
        self._processed.move_to_end(key)
        while len(self._processed) > self.config.processed_ids_limit:
            self._processed.popitem(last=False)
        self._last_processed_id = key

    def _finish(self, task: EmbeddingTask) -> None:
        self._finished += 1
        self.events.publish(
            PipelineEvent(
                kind="progress",
                payload=ProgressEvent(
                    processed=self._finished,
                    total=self._submitted,
                    current=task.idempotency_key,
                ),
            )
        )

    def _check_latency(self) -> None:
        if len(self._latencies) < 2:
            return
        p99 = percentile(sorted(self._latencies), 99)
        if p99 > self.config.latency_alert_threshold_seconds:
            self._raise_alert(
                AlertType.HIGH_LATENCY,
                AlertSeverity.WARNING,
                f"p99 embedding latency is {p99 * 1000:.0f}ms",
                {"p99_seconds": p99},
            )

    def _check_error_rate(self) -> None:
        attempts = self._success_count + self._error_count
        if not attempts:
            return
        rate = self._error_count / attempts
        if rate > self.config.error_rate_alert_threshold:
            self._raise_alert(
                AlertType.HIGH_ERROR_RATE,
                AlertSeverity.ERROR,
                f"Embedding error rate is {rate:.1%}",
                {"error_rate": rate, "errors": self._error_count, "attempts": attempts},
            )

    def _raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        now = time.monotonic()
        last = self._alert_sent_at.get(alert_type)
        if last is not None and now - last < self.config.alert_cooldown_seconds:
            return
        self._alert_sent_at[alert_type] = now
        log = logger.error if severity is not AlertSeverity.WARNING else logger.warning
        log("[%s] %s", alert_type.value, message)
        self.events.publish(
            PipelineEvent(
                kind="alert",
                payload=Alert(type=alert_type, message=message, severity=severity, context=dict(context or {})),
            )
        )

    def _checkpoint_payload(self) -> dict[str, Any]:
        checkpoint = Checkpoint(
            version=CHECKPOINT_VERSION,
            timestamp=now_epoch(),
            session_positions=dict(self._session_positions),
            last_processed_id=self._last_processed_id,
            metrics=self.get_metrics().to_dict(),
        )
        self._last_checkpoint = checkpoint.timestamp
        return checkpoint.to_dict()

    def _persist_dead_letters(self, *, immediate: bool) -> None:
        self._dead_letter_file.request_save(lambda: [item.to_dict() for item in self._dead_letters])
        if immediate:
            self._dead_letter_file.flush()

    def _on_state_write_error(self, exc: Exception) -> None:
        self._raise_alert(
            AlertType.CHECKPOINT_FAILED,
            AlertSeverity.ERROR,
            f"Failed to persist pipeline state: {exc}",
        )
