from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from rich.console import Console

from autoembed.application.services.manager_service import EmbeddingManager
from autoembed.core.config import AppPaths, ManagerConfig
from autoembed.core.errors import ServiceUnavailableError


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    console: Console
    config: ManagerConfig

    @asynccontextmanager
    async def open_manager(self, *, initialize: bool = True) -> AsyncIterator[EmbeddingManager]:
        manager = EmbeddingManager.create(self.config, self.paths)
        try:
            if initialize and not await manager.initialize():
                raise ServiceUnavailableError(
                    f"Could not reach the model server at {self.config.ollama.base_url} "
                    "or any vector backend. Run 'autoembed doctor' for details."
                )
            yield manager
        finally:
            await manager.shutdown()
