from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Sequence

import httpx
import ollama

from autoembed.core.config import OllamaConfig, merge
from autoembed.core.errors import ModelServerError, TransientModelError
from autoembed.core.hashing import embedding_cache_key
from autoembed.domain.models.embedding import EmbeddingResult
from autoembed.domain.models.status import HealthState, OllamaStatus

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (ConnectionError, httpx.HTTPError, asyncio.TimeoutError)


def _is_transient_status(status_code: int) -> bool:
    if status_code == 429:
        return True
    return not 400 <= status_code < 500


def _model_matches(listed: str | None, model: str) -> bool:
    if not listed:
        return False
    if listed == model:
        return True
    return ":" not in model and listed == f"{model}:latest"


class OllamaEmbeddingClient:
    def __init__(self, config: OllamaConfig | None = None, *, client: Any | None = None) -> None:
        self.config = config or OllamaConfig()
        self._client = client
        self._owns_client = client is None
        self._state: HealthState = "unknown"
        self._model_loaded = False
        self._model_digest: str | None = None
        self._last_health_check: float | None = None
        self._last_error: str | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def model_digest(self) -> str | None:
        return self._model_digest

    @property
    def healthy(self) -> bool:
        return self._state == "healthy"

    async def initialize(self) -> bool:
        healthy = await self.health_check()
        if healthy and self.config.warmup_on_init:
            await self.warmup_model()
        self._start_health_loop()
        return healthy

    async def shutdown(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        if self._owns_client:
            await self._close_client()

    async def health_check(self) -> bool:
        self._last_health_check = time.time()
        try:
            response = await asyncio.wait_for(
                self._get_client().list(),
                timeout=self.config.health_check_timeout_seconds,
            )
        except (ollama.ResponseError, *_NETWORK_ERRORS) as exc:
            self._set_state("unhealthy", f"Health check failed: {exc or type(exc).__name__}")
            return False

        if self._find_model_entry(response) is None:
            logger.warning(
                "Model %s is not available on %s; pull it with `ollama pull %s`.",
                self.config.model,
                self.config.base_url,
                self.config.model,
            )
        self._set_state("healthy")
        return True

    async def warmup_model(self) -> bool:
        started = time.perf_counter()
        try:
            await self._get_client().embed(
                model=self.config.model,
                input="warmup",
                keep_alive=self.config.keep_alive,
            )
        except (ollama.ResponseError, *_NETWORK_ERRORS) as exc:
            self._model_loaded = False
            self._last_error = f"Warmup failed: {exc}"
            logger.warning("Failed to warm up model %s: %s", self.config.model, exc)
            return False
        self._model_loaded = True
        logger.info("Model %s loaded in %.2fs", self.config.model, time.perf_counter() - started)
        await self._refresh_model_digest()
        return True

    async def unload_model(self) -> bool:
        try:
            await self._get_client().embed(model=self.config.model, input="", keep_alive=0)
        except (ollama.ResponseError, *_NETWORK_ERRORS) as exc:
            logger.warning("Failed to unload model %s: %s", self.config.model, exc)
            return False
        self._model_loaded = False
        logger.info("Model %s unloaded", self.config.model)
        return True

    async def embed(self, text: str) -> EmbeddingResult | None:
        if not self.healthy:
            logger.debug("Skipping embed; model server is %s", self._state)
            return None
        started = time.perf_counter()
        try:
            vectors = await self._embed_with_retry(text)
        except ModelServerError as exc:
            self._last_error = str(exc)
            logger.warning("Embedding failed: %s", exc)
            return None
        if not vectors:
            logger.warning("Model server returned no embedding for a %d-char input", len(text))
            return None
        return EmbeddingResult(
            idempotency_key=embedding_cache_key(self.config.model, text),
            embedding=vectors[0],
            model=self.config.model,
            processing_time=time.perf_counter() - started,
            cached=False,
        )

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        if not texts:
            return []
        if not self.healthy:
            return [None] * len(texts)
        size = self.config.batch_size
        batches = [list(texts[start : start + size]) for start in range(0, len(texts), size)]
        results = await asyncio.gather(*(self._embed_sub_batch(batch) for batch in batches))
        return [vector for batch_result in results for vector in batch_result]

    def get_status(self) -> OllamaStatus:
        return OllamaStatus(
            state=self._state,
            model_loaded=self._model_loaded,
            model=self.config.model,
            model_digest=self._model_digest,
            last_health_check=self._last_health_check,
            last_error=self._last_error,
        )

    def get_config(self) -> OllamaConfig:
        return self.config

    async def update_config(self, **overrides: Any) -> OllamaConfig:
        previous = self.config
        self.config = merge(previous, overrides)
        if self.config.max_concurrent != previous.max_concurrent:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        if self._owns_client and (
            self.config.base_url != previous.base_url
            or self.config.max_concurrent != previous.max_concurrent
            or self.config.request_timeout_seconds != previous.request_timeout_seconds
        ):
            await self._close_client()
        if self.config.model != previous.model:
            logger.info("Embedding model changed from %s to %s", previous.model, self.config.model)
            self._model_loaded = False
            self._model_digest = None
            if self.healthy and self.config.warmup_on_init:
                await self.warmup_model()
        if self.config.health_check_interval_seconds != previous.health_check_interval_seconds and self._health_task:
            self._health_task.cancel()
            self._health_task = None
            self._start_health_loop()
        return self.config

    async def _embed_sub_batch(self, batch: list[str]) -> list[list[float] | None]:
        try:
            vectors = await self._embed_with_retry(batch)
        except ModelServerError as exc:
            self._last_error = str(exc)
            logger.warning("Embedding batch of %d failed: %s", len(batch), exc)
            return [None] * len(batch)
        if len(vectors) != len(batch):
            logger.warning("Model server returned %d embeddings for %d inputs", len(vectors), len(batch))
            return [None] * len(batch)
        return list(vectors)

    async def _embed_with_retry(self, payload: str | list[str]) -> list[list[float]]:
        attempts = self.config.max_retries + 1
        last_error: BaseException | None = None
        for attempt in range(attempts):
            try:
                async with self._semaphore:
                    response = await self._get_client().embed(
                        model=self.config.model,
                        input=payload,
                        keep_alive=self.config.keep_alive,
                    )
                return [[float(x) for x in row] for row in response["embeddings"]]
            except ollama.ResponseError as exc:
                if not _is_transient_status(exc.status_code):
                    raise ModelServerError(f"Model server rejected request ({exc.status_code}): {exc.error}") from exc
                last_error = exc
            except _NETWORK_ERRORS as exc:
                last_error = exc

            if attempt < attempts - 1:
                delay = self.config.retry_base_delay_seconds * self.config.retry_multiplier**attempt
                logger.debug(
                    "Transient embed failure (%s); retry %d/%d in %.2fs",
                    last_error,
                    attempt + 1,
                    attempts - 1,
                    delay,
                )
                await asyncio.sleep(delay)
        raise TransientModelError(f"Embedding failed after {attempts} attempt(s): {last_error}") from last_error

    async def _refresh_model_digest(self) -> None:
        try:
            response = await self._get_client().list()
        except (ollama.ResponseError, *_NETWORK_ERRORS) as exc:
            logger.debug("Could not read model digest: %s", exc)
            return
        entry = self._find_model_entry(response)
        digest = entry.get("digest") if entry is not None else None
        if digest:
            self._model_digest = str(digest)

    def _find_model_entry(self, response: Any) -> Any | None:
        for entry in response["models"] or []:
            name = entry.get("model") or entry.get("name")
            if _model_matches(name, self.config.model):
                return entry
        return None

    def _set_state(self, state: HealthState, error: str | None = None) -> None:
        previous = self._state
        self._state = state
        if error:
            self._last_error = error
        if state == "unhealthy":
            self._model_loaded = False
        if previous != state:
            if state == "healthy":
                logger.info("Model server at %s is healthy", self.config.base_url)
            else:
                logger.warning("Model server at %s is %s: %s", self.config.base_url, state, error)

    def _start_health_loop(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="ollama-health-check")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval_seconds)
            was_healthy = self.healthy
            try:
                ok = await self.health_check()
                if ok and not was_healthy and self.config.warmup_on_init:
                    logger.info("Model server recovered; re-warming %s", self.config.model)
                    await self.warmup_model()
            except Exception:
                logger.exception("Periodic model health check crashed")

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = ollama.AsyncClient(
                host=self.config.base_url,
                timeout=self.config.request_timeout_seconds,
                limits=httpx.Limits(
                    max_connections=self.config.max_concurrent,
                    max_keepalive_connections=self.config.max_concurrent,
                ),
            )
        return self._client
