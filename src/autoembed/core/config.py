from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, TypeVar

from autoembed.core.errors import ConfigurationError

DEFAULT_HOME_DIRNAME = ".autoembed"

ConfigT = TypeVar("ConfigT")


@dataclass(frozen=True)
class AppPaths:
    home: Path
    cache_db_path: Path
    vector_dir: Path
    vector_db_path: Path
    qdrant_dir: Path
    state_dir: Path
    checkpoint_path: Path
    dead_letter_path: Path
    positions_path: Path
    sessions_root: Path


def load_paths(home: Path | None = None) -> AppPaths:
    if home is not None:
        home_dir = home.expanduser().resolve()
    else:
        home_raw = os.getenv("AUTOEMBED_HOME")
        home_dir = (
            Path(home_raw).expanduser().resolve()
            if home_raw
            else (Path.home() / DEFAULT_HOME_DIRNAME).resolve()
        )

    sessions_raw = os.getenv("AUTOEMBED_SESSIONS_ROOT")
    sessions_root = Path(sessions_raw).expanduser().resolve() if sessions_raw else home_dir / "sessions"

    state_dir = home_dir / "state"
    vector_dir = home_dir / "vector"
    return AppPaths(
        home=home_dir,
        cache_db_path=home_dir / "cache" / "embeddings.db",
        vector_dir=vector_dir,
        vector_db_path=vector_dir / "embeddings.db",
        qdrant_dir=vector_dir / "qdrant",
        state_dir=state_dir,
        checkpoint_path=state_dir / "embedding-checkpoint.json",
        dead_letter_path=state_dir / "embedding-checkpoint-dlq.json",
        positions_path=state_dir / "session-positions.json",
        sessions_root=sessions_root,
    )


def _bounded(default: Any, *, min: float | None = None, max: float | None = None) -> Any:
    return field(default=default, metadata={"min": min, "max": max})


def validate_bounds(config: Any) -> None:
    for f in dataclasses.fields(config):
        lower = f.metadata.get("min")
        upper = f.metadata.get("max")
        if lower is None and upper is None:
            continue
        value = getattr(config, f.name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(
                f"{type(config).__name__}.{f.name} must be a number, got {value!r}"
            )
        if lower is not None and value < lower:
            raise ConfigurationError(
                f"{type(config).__name__}.{f.name}={value} is below the minimum of {lower}"
            )
        if upper is not None and value > upper:
            raise ConfigurationError(
                f"{type(config).__name__}.{f.name}={value} is above the maximum of {upper}"
            )


def merge(base: ConfigT, overrides: Mapping[str, Any] | None = None, **kwargs: Any) -> ConfigT:
    """Return a copy of ``base`` with ``overrides`` applied and validated.

    Nested config dataclasses accept a mapping of their own overrides.
    """
    if not dataclasses.is_dataclass(base) or isinstance(base, type):
        raise ConfigurationError(f"Cannot merge into non-config value {base!r}")
    changes: dict[str, Any] = {**(overrides or {}), **kwargs}
    if not changes:
        return base

    known = {f.name for f in dataclasses.fields(base)}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise ConfigurationError(f"Unknown {type(base).__name__} option(s): {', '.join(unknown)}")

    resolved: dict[str, Any] = {}
    for name, value in changes.items():
        current = getattr(base, name)
        if dataclasses.is_dataclass(current) and isinstance(value, Mapping):
            resolved[name] = merge(current, value)
        else:
            resolved[name] = value
    try:
        return dataclasses.replace(base, **resolved)
    except TypeError as exc:
        raise ConfigurationError(str(exc)) from exc


@dataclass(frozen=True, slots=True)
class OllamaConfig:
    base_url: str = "http://localhost:11434"
    model: str = "mxbai-embed-large"
    dimensions: int = _bounded(1024, min=1, max=8192)
    keep_alive: str | float = -1
    batch_size: int = _bounded(64, min=1, max=2048)
    max_concurrent: int = _bounded(4, min=1, max=64)
    health_check_interval_seconds: float = _bounded(30.0, min=0.1, max=3600)
    health_check_timeout_seconds: float = _bounded(5.0, min=0.1, max=120)
    request_timeout_seconds: float = _bounded(60.0, min=0.1, max=3600)
    warmup_on_init: bool = True
    max_retries: int = _bounded(3, min=0, max=10)
    retry_base_delay_seconds: float = _bounded(1.0, min=0, max=60)
    retry_multiplier: float = _bounded(2.0, min=1, max=10)

    def __post_init__(self) -> None:
        validate_bounds(self)
        if not self.model.strip():
            raise ConfigurationError("OllamaConfig.model must not be empty")


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    concurrency: int = _bounded(4, min=1, max=64)
    interval_cap: int = _bounded(10, min=1, max=100_000)
    interval_seconds: float = _bounded(1.0, min=0.001, max=3600)
    timeout_seconds: float = _bounded(30.0, min=0.1, max=3600)
    max_queue_depth: int = _bounded(1000, min=1, max=10_000_000)
    checkpoint_interval: int = _bounded(100, min=1, max=1_000_000)
    max_retries: int = _bounded(3, min=0, max=20)
    backoff_multiplier: float = _bounded(2.0, min=1, max=10)
    base_backoff_seconds: float = _bounded(1.0, min=0, max=300)
    circuit_breaker_reset_seconds: float = _bounded(30.0, min=0.01, max=3600)
    alert_cooldown_seconds: float = _bounded(300.0, min=0, max=86_400)
    latency_window: int = _bounded(1000, min=10, max=1_000_000)
    latency_alert_threshold_seconds: float = _bounded(1.0, min=0.001, max=3600)
    error_rate_alert_threshold: float = _bounded(0.05, min=0, max=1)
    shutdown_grace_seconds: float = _bounded(30.0, min=0, max=600)
    dead_letter_persist_interval: int = _bounded(10, min=1, max=100_000)
    processed_ids_limit: int = _bounded(100_000, min=100, max=10_000_000)
    event_channel_size: int = _bounded(10_000, min=1, max=1_000_000)
    state_save_debounce_seconds: float = _bounded(1.0, min=0, max=60)

    def __post_init__(self) -> None:
        validate_bounds(self)


@dataclass(frozen=True, slots=True)
class AutoEmbedConfig:
    enable_sessions: bool = True
    enable_code: bool = False
    enable_tool_results: bool = True
    include_patterns: tuple[str, ...] = ("*.jsonl",)
    exclude_patterns: tuple[str, ...] = ("**/node_modules/**", "**/.git/**")
    min_content_length: int = _bounded(50, min=0, max=1_000_000)
    debounce_seconds: float = _bounded(1.0, min=0, max=60)
    backpressure_retry_seconds: float = _bounded(5.0, min=0.01, max=3600)
    position_save_interval: int = _bounded(100, min=1, max=1_000_000)

    def __post_init__(self) -> None:
        validate_bounds(self)
        if not self.include_patterns:
            raise ConfigurationError("AutoEmbedConfig.include_patterns must not be empty")


@dataclass(frozen=True, slots=True)
class VectorStoreConfig:
    enable_relational: bool = True
    enable_qdrant: bool = True
    qdrant_url: str | None = None
    qdrant_api_key: str | None = None
    qdrant_collection: str = "autoembed_embeddings"
    qdrant_timeout_seconds: float = _bounded(10.0, min=0.1, max=600)
    batch_size: int = _bounded(100, min=1, max=10_000)
    reconnect_interval_seconds: float = _bounded(30.0, min=0, max=3600)

    def __post_init__(self) -> None:
        validate_bounds(self)


@dataclass(frozen=True, slots=True)
class ChunkConfig:
    chunk_size: int = _bounded(400, min=1, max=100_000)
    overlap_size: int = _bounded(25, min=0, max=100_000)

    def __post_init__(self) -> None:
        validate_bounds(self)
        if self.overlap_size >= self.chunk_size:
            raise ConfigurationError(
                f"ChunkConfig.overlap_size ({self.overlap_size}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )


DEFAULT_CHUNK_CONFIGS: dict[str, ChunkConfig] = {
    "code": ChunkConfig(chunk_size=400, overlap_size=25),
    "conversation": ChunkConfig(chunk_size=300, overlap_size=75),
    "tool_result": ChunkConfig(chunk_size=200, overlap_size=20),
    "learning": ChunkConfig(chunk_size=500, overlap_size=50),
    "documentation": ChunkConfig(chunk_size=800, overlap_size=80),
}


@dataclass(frozen=True, slots=True)
class ManagerConfig:
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    auto_embed: AutoEmbedConfig = field(default_factory=AutoEmbedConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    chunking: Mapping[str, ChunkConfig] = field(default_factory=lambda: dict(DEFAULT_CHUNK_CONFIGS))
    auto_start: bool = False


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_str_env(name: str, default: str | None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def load_manager_config(base: ManagerConfig | None = None) -> ManagerConfig:
    config = base or ManagerConfig()
    return merge(
        config,
        ollama={
            "base_url": _read_str_env("AUTOEMBED_OLLAMA_URL", config.ollama.base_url),
            "model": _read_str_env("AUTOEMBED_MODEL", config.ollama.model),
            "dimensions": _read_int_env("AUTOEMBED_DIMENSIONS", config.ollama.dimensions),
        },
        vector_store={
            "qdrant_url": _read_str_env("AUTOEMBED_QDRANT_URL", config.vector_store.qdrant_url),
            "qdrant_api_key": _read_str_env("AUTOEMBED_QDRANT_API_KEY", config.vector_store.qdrant_api_key),
            "qdrant_collection": _read_str_env(
                "AUTOEMBED_QDRANT_COLLECTION", config.vector_store.qdrant_collection
            ),
            "enable_qdrant": _read_bool_env("AUTOEMBED_ENABLE_QDRANT", config.vector_store.enable_qdrant),
            "enable_relational": _read_bool_env(
                "AUTOEMBED_ENABLE_SQLITE_VEC", config.vector_store.enable_relational
            ),
        },
        auto_start=_read_bool_env("AUTOEMBED_AUTO_START", config.auto_start),
    )
