from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autoembed.application.services.manager_service import EmbeddingManager
from autoembed.core.config import AppPaths
from autoembed.domain.models.pipeline import CHECKPOINT_VERSION


@dataclass(slots=True)
class DoctorIssue:
    check: str
    level: str
    message: str


@dataclass(slots=True)
class DoctorReport:
    ok: bool
    checks_run: int
    issues: list[DoctorIssue]
    db_runtime: dict[str, object]


class HealthService:
    def __init__(self, manager: EmbeddingManager, paths: AppPaths) -> None:
        self.manager = manager
        self.paths = paths

    async def run_doctor(self) -> DoctorReport:
        issues: list[DoctorIssue] = []
        checks_run = 0

        # Check 1: cache database runtime pragmas support concurrent access.
        checks_run += 1
        db_runtime: dict[str, object] = dict(self.manager.cache.runtime_pragmas())
        journal_mode = str(db_runtime.get("journal_mode"))
        busy_timeout_ms = int(db_runtime.get("busy_timeout_ms") or 0)
        if journal_mode != "wal":
            issues.append(
                DoctorIssue(
                    check="cache_db",
                    level="error",
                    message=f"SQLite journal_mode is '{journal_mode}', expected 'wal' for concurrent access.",
                )
            )
        if busy_timeout_ms <= 0:
            issues.append(
                DoctorIssue(
                    check="cache_db",
                    level="error",
                    message="SQLite busy_timeout is disabled; concurrent writes may fail immediately.",
                )
            )
        elif busy_timeout_ms < 1_000:
            issues.append(
                DoctorIssue(
                    check="cache_db",
                    level="warning",
                    message=f"SQLite busy_timeout is low ({busy_timeout_ms}ms); consider >= 1000ms.",
                )
            )

        # Check 2: model server reachable and the model resolved to a digest.
        checks_run += 1
        client = self.manager.model_client
        if not await client.health_check():
            status = client.get_status()
            issues.append(
                DoctorIssue(
                    check="model_server",
                    level="error",
                    message=f"Model server at {client.config.base_url} is unreachable: {status.last_error}",
                )
            )
        elif client.model_digest is None:
            issues.append(
                DoctorIssue(
                    check="model_server",
                    level="warning",
                    message=f"Model {client.model_name} has no known digest; run `ollama pull {client.model_name}`.",
                )
            )

        # Check 3: every enabled vector backend is connected.
        checks_run += 1
        health = self.manager.vector_store.get_health()
        for backend in (health.relational, health.qdrant):
            if backend.enabled and not backend.connected:
                issues.append(
                    DoctorIssue(
                        check="vector_store",
                        level="error" if not health.initialized else "warning",
                        message=f"Vector backend {backend.name} is not connected: {backend.last_error}",
                    )
                )
        if not health.relational.enabled and not health.qdrant.enabled:
            issues.append(
                DoctorIssue(
                    check="vector_store",
                    level="error",
                    message="No vector backend is enabled; embeddings cannot be stored.",
                )
            )

        # Check 4: checkpoint file is readable and from a compatible version.
        checks_run += 1
        checkpoint = self._read_json(self.paths.checkpoint_path, issues, check="checkpoint")
        if isinstance(checkpoint, dict) and checkpoint.get("version") != CHECKPOINT_VERSION:
            issues.append(
                DoctorIssue(
                    check="checkpoint",
                    level="warning",
                    message=(
                        f"Checkpoint version {checkpoint.get('version')} does not match {CHECKPOINT_VERSION}; "
                        "the next start will be cold."
                    ),
                )
            )

        # Check 5: dead-lettered tasks are waiting for a retry.
        checks_run += 1
        if self.manager.pipeline.enabled:
            dead_letters = len(self.manager.get_dead_letter_queue())
        else:
            stored = self._read_json(self.paths.dead_letter_path, issues, check="dead_letter_queue")
            dead_letters = len(stored) if isinstance(stored, list) else 0
        if dead_letters:
            issues.append(
                DoctorIssue(
                    check="dead_letter_queue",
                    level="warning",
                    message=f"{dead_letters} task(s) in the dead-letter queue; run `autoembed dlq retry`.",
                )
            )

        ok = not any(issue.level == "error" for issue in issues)
        return DoctorReport(ok=ok, checks_run=checks_run, issues=issues, db_runtime=db_runtime)

    @staticmethod
    def _read_json(path: Path, issues: list[DoctorIssue], *, check: str) -> Any | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            issues.append(DoctorIssue(check=check, level="error", message=f"Unreadable state file {path}: {exc}"))
            return None
