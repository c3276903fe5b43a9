from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable

from autoembed.core.files import write_text_atomic
from autoembed.core.time import now_epoch

logger = logging.getLogger(__name__)


class JsonStateFile:
    """JSON document on disk with atomic replacement and debounced writes."""

    def __init__(
        self,
        path: Path,
        *,
        debounce_seconds: float = 1.0,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self.path = path
        self.debounce_seconds = debounce_seconds
        self._on_error = on_error
        self._producer: Callable[[], Any] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self.last_saved_at: float | None = None

    def load(self) -> Any | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return None

    def save(self, payload: Any) -> None:
        write_text_atomic(self.path, json.dumps(payload, ensure_ascii=False, indent=2))
        self.last_saved_at = now_epoch()

    def request_save(self, producer: Callable[[], Any]) -> None:
        """Schedule a write; repeated requests inside the debounce window coalesce."""
        self._producer = producer
        if self.debounce_seconds <= 0:
            self._write_pending()
            return
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.debounce_seconds, self._write_pending)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._producer is not None:
            self._write_pending()

    def _write_pending(self) -> None:
        self._timer = None
        producer, self._producer = self._producer, None
        if producer is None:
            return
        try:
            self.save(producer())
        except (OSError, TypeError, ValueError) as exc:
            logger.exception("Failed to write state file %s", self.path)
            if self._on_error is not None:
                self._on_error(exc)
