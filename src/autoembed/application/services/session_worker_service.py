from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from watchfiles import Change, awatch

from autoembed.core.config import AutoEmbedConfig
from autoembed.core.errors import ValidationError
from autoembed.core.time import now_epoch
from autoembed.domain.models.chunk import ContentType
from autoembed.domain.models.embedding import EmbeddingTask
from autoembed.domain.models.session import SessionEntry, SessionPosition
from autoembed.domain.models.status import WorkerStatus
from autoembed.infrastructure.state.json_state import JsonStateFile
from autoembed.infrastructure.vector.chunking import ContentChunker

logger = logging.getLogger(__name__)

CODE_INDICATORS = (
    re.compile(r"^(import|export|const|let|var|function|class|interface|type)\s+", re.MULTILINE),
    re.compile(r"^(def|class|import|from|async def)\s+", re.MULTILINE),
    re.compile(r"^(func|package|import|type|struct)\s+", re.MULTILINE),
    re.compile(r"^\s*(public|private|protected)\s+(static\s+)?(void|int|String|class)", re.MULTILINE),
    re.compile(r"\{\s*\n|\}\s*$", re.MULTILINE),
    re.compile(r"=>\s*\{"),
    re.compile(r"\(\)\s*\{"),
)

WATCH_STOP_TIMEOUT_SECONDS = 5.0


def looks_like_code(text: str) -> bool:
    return any(pattern.search(text) for pattern in CODE_INDICATORS)


def _read_from(path: Path, offset: int) -> bytes:
    with path.open("rb") as handle:
        handle.seek(offset)
        return handle.read()


class SessionEmbeddingWorker:
    """Tails JSONL session logs under ``watch_root`` and feeds new entries to the pipeline.

    Each file keeps a byte cursor that only moves past complete lines, so a
    line that is still being written is picked up on the next change. When
    the pipeline refuses a task the cursor stays on that line and the file is
    retried after ``backpressure_retry_seconds``.
    """

    def __init__(
        self,
        pipeline: Any,
        chunker: ContentChunker,
        config: AutoEmbedConfig | None = None,
        *,
        watch_root: Path,
        positions_path: Path,
        state_debounce_seconds: float = 1.0,
    ) -> None:
        self.pipeline = pipeline
        self.chunker = chunker
        self.config = config or AutoEmbedConfig()
        self.watch_root = watch_root
        self._positions_file = JsonStateFile(positions_path, debounce_seconds=state_debounce_seconds)
        self._positions: dict[str, SessionPosition] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._file_tasks: set[asyncio.Task[int]] = set()
        self._stop_event: asyncio.Event | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._running = False
        self._entries_submitted = 0
        self._lines_skipped = 0
        self._since_save = 0
        self._last_processed_at: float | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        if self._running:
            return True
        if not self.watch_root.is_dir():
            logger.warning("Session root %s does not exist; auto-embedding not started", self.watch_root)
            return False
        self.restore_positions()
        self._stop_event = asyncio.Event()
        self._running = True
        existing = [path for path in sorted(self.watch_root.rglob("*")) if path.is_file() and self._matches(path)]
        for path in existing:
            self._schedule(path, delay=0)
        self._watch_task = asyncio.create_task(self._watch_loop(), name="session-watcher")
        logger.info("Watching %s for session logs (%d existing file(s))", self.watch_root, len(existing))
        return True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        watch_task, self._watch_task = self._watch_task, None
        if watch_task is not None:
            try:
                await asyncio.wait_for(watch_task, timeout=WATCH_STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                watch_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watch_task
        if self._file_tasks:
            await asyncio.gather(*self._file_tasks, return_exceptions=True)
        self.save_positions()
        logger.info("Session watcher stopped")

    async def process_file(self, path: Path) -> int:
        """Submit every complete, unread line of ``path``; returns the number of tasks accepted."""
        key = str(path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                stat = path.stat()
            except FileNotFoundError:
                if self._positions.pop(key, None) is not None:
                    self._publish_positions()
                return 0

            position = self._positions.get(key) or SessionPosition(
                path=key,
                byte_offset=0,
                line_number=0,
                mtime=0.0,
                session_id=path.stem,
            )
            if stat.st_size < position.byte_offset:
                logger.info("%s was truncated; re-reading from the start", path)
                position.byte_offset = 0
                position.line_number = 0
            elif stat.st_size == position.byte_offset and stat.st_mtime == position.mtime:
                return 0

            data = await asyncio.to_thread(_read_from, path, position.byte_offset)
            submitted = 0
            cursor = 0
            rejected = False
            while True:
                newline = data.find(b"\n", cursor)
                if newline < 0:
                    break
                accepted = self._submit_line(data[cursor:newline], path, position)
                if accepted is None:
                    rejected = True
                    break
                submitted += accepted
                position.byte_offset += newline + 1 - cursor
                position.line_number += 1
                cursor = newline + 1

            if not rejected:
                position.mtime = stat.st_mtime
            self._positions[key] = position
            self._last_processed_at = now_epoch()
            self._publish_positions()

        if rejected:
            logger.info(
                "Pipeline is saturated; pausing %s at line %d for %.1fs",
                path,
                position.line_number + 1,
                self.config.backpressure_retry_seconds,
            )
            if self._running:
                self._schedule(path, delay=self.config.backpressure_retry_seconds)
        return submitted

    def get_status(self) -> WorkerStatus:
        return WorkerStatus(
            running=self._running,
            watch_root=str(self.watch_root),
            files_tracked=len(self._positions),
            entries_submitted=self._entries_submitted,
            lines_skipped=self._lines_skipped,
            last_processed_at=self._last_processed_at,
            pending_files=sorted(self._timers),
        )

    def get_positions(self) -> dict[str, SessionPosition]:
        return dict(self._positions)

    def reset_position(self, path: Path | str) -> bool:
        removed = self._positions.pop(str(path), None) is not None
        if removed:
            self.save_positions()
            self._publish_positions()
        return removed

    def reset_all_positions(self) -> int:
        count = len(self._positions)
        self._positions.clear()
        self.save_positions()
        self._publish_positions()
        return count

    def restore_positions(self) -> int:
        payload = self._positions_file.load()
        if not isinstance(payload, list):
            return 0
        restored = 0
        for raw in payload:
            try:
                position = SessionPosition.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed session position: %s", exc)
                continue
            if not Path(position.path).exists():
                continue
            self._positions[position.path] = position
            restored += 1
        if restored:
            logger.info("Restored %d session position(s)", restored)
            self._publish_positions()
        return restored

    def save_positions(self) -> None:
        self._positions_file.save(self._positions_payload())

    def _positions_payload(self) -> list[dict[str, Any]]:
        return [position.to_dict() for position in self._positions.values()]

    def _publish_positions(self) -> None:
        self.pipeline.update_session_positions(
            {path: position.byte_offset for path, position in self._positions.items()}
        )

    def _submit_line(self, raw: bytes, path: Path, position: SessionPosition) -> int | None:
        line = raw.strip()
        if not line:
            return 0
        try:
            entry = SessionEntry.from_json(json.loads(line))
        except (ValueError, ValidationError) as exc:
            self._lines_skipped += 1
            logger.debug("Skipping line %d of %s: %s", position.line_number + 1, path, exc)
            return 0

        try:
            tasks = self._tasks_for_entry(entry, path, position.session_id)
        except Exception:
            self._lines_skipped += 1
            logger.warning("Skipping line %d of %s", position.line_number + 1, path, exc_info=True)
            return 0
        for task in tasks:
            if not self.pipeline.add_task(task):
                return None
        if tasks:
            self._entries_submitted += 1
            self._since_save += 1
            if self._since_save >= self.config.position_save_interval:
                self._since_save = 0
                self._positions_file.request_save(self._positions_payload)
        return len(tasks)

    def _tasks_for_entry(self, entry: SessionEntry, path: Path, fallback_session_id: str) -> list[EmbeddingTask]:
        session_id = entry.session_id or fallback_session_id
        speaker: str | None = None
        tool_name: str | None = None
        if entry.message is not None:
            content = entry.message.extract_text()
            content_type = ContentType.CONVERSATION
            speaker = entry.message.role.value
        elif entry.tool_result is not None:
            if not self.config.enable_tool_results:
                return []
            content = entry.tool_result.content
            tool_name = entry.tool_result.name
            content_type = ContentType.CODE if content and looks_like_code(content) else ContentType.TOOL_RESULT
        else:
            return []

        if not content or len(content) < self.config.min_content_length:
            return []
        if content_type is ContentType.CONVERSATION and not self.config.enable_sessions:
            return []
        if content_type is ContentType.CODE and not self.config.enable_code:
            return []

        timestamp = entry.timestamp if entry.timestamp is not None else now_epoch()
        chunks = self.chunker.chunk(
            content,
            content_type,
            {
                "source_id": f"{session_id}-{int(timestamp * 1000)}",
                "timestamp": timestamp,
                "session_id": session_id,
                "speaker": speaker,
                "tool_name": tool_name,
                "project_path": str(path.parent),
                "file_path": str(path),
            },
        )
        return [EmbeddingTask.for_chunk(chunk, key_prefix=session_id) for chunk in chunks]

    def _matches(self, path: Path) -> bool:
        posix = path.as_posix()
        try:
            relative = path.relative_to(self.watch_root).as_posix()
        except ValueError:
            relative = posix
        if any(fnmatch(posix, pattern) or fnmatch(relative, pattern) for pattern in self.config.exclude_patterns):
            return False
        return any(
            fnmatch(path.name, pattern) or fnmatch(relative, pattern) for pattern in self.config.include_patterns
        )

    def _schedule(self, path: Path, *, delay: float | None = None) -> None:
        key = str(path)
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        wait = self.config.debounce_seconds if delay is None else delay
        self._timers[key] = asyncio.get_running_loop().call_later(wait, self._launch, path)

    def _launch(self, path: Path) -> None:
        self._timers.pop(str(path), None)
        if not self._running:
            return
        task = asyncio.create_task(self._process_safely(path), name=f"session-file:{path.name}")
        self._file_tasks.add(task)
        task.add_done_callback(self._file_tasks.discard)

    async def _process_safely(self, path: Path) -> int:
        try:
            return await self.process_file(path)
        except OSError as exc:
            logger.warning("Failed to read session file %s: %s", path, exc)
            return 0

    def _handle_change(self, change: Change, path: Path) -> None:
        if not self._matches(path):
            return
        if change == Change.deleted:
            if self._positions.pop(str(path), None) is not None:
                self._publish_positions()
            return
        self._schedule(path)

    async def _watch_loop(self) -> None:
        assert self._stop_event is not None
        try:
            async for changes in awatch(
                self.watch_root,
                stop_event=self._stop_event,
                recursive=True,
                ignore_permission_denied=True,
            ):
                for change, raw_path in changes:
                    self._handle_change(change, Path(raw_path))
        except asyncio.CancelledError:
            raise
        except Exception:
            if not self._stop_event.is_set():
                logger.exception("Session watcher stopped unexpectedly")
