"""Configuration module for lgrep.

Loads configuration from environment variables with sensible defaults.
Values passed explicitly to ``Config.from_env`` (usually CLI flags) take
precedence over the environment, which takes precedence over built-in defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from lgrep.errors import ConfigError

INDEX_DIR_NAME = ".lgrep"

DEFAULT_MODEL = "minilm"
DEFAULT_MAX_COUNT = 10
DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 64
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_BATCH_SIZE = 32
DEFAULT_DEBOUNCE_MS = 500
DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"

EMBEDDER_CHOICES = ("hash", "ollama", "sentence-transformers")


@dataclass(frozen=True)
class EmbeddingModel:
    """An embedding model known to lgrep."""

    name: str  # short name used on the command line
    model_name: str  # upstream model identifier
    dimension: int
    description: str = ""


MODELS: dict[str, EmbeddingModel] = {
    "minilm": EmbeddingModel(
        name="minilm",
        model_name="sentence-transformers/all-MiniLM-L6-v2",
        dimension=384,
        description="Fast, lightweight model (384 dims, ~30MB)",
    ),
    "bge": EmbeddingModel(
        name="bge",
        model_name="BAAI/bge-small-en-v1.5",
        dimension=384,
        description="High quality retrieval model (384 dims, ~90MB)",
    ),
    "nomic": EmbeddingModel(
        name="nomic",
        model_name="nomic-ai/nomic-embed-text-v1.5",
        dimension=768,
        description="Optimized for code and technical content (768 dims, ~90MB)",
    ),
    "multilingual": EmbeddingModel(
        name="multilingual",
        model_name="intfloat/multilingual-e5-small",
        dimension=384,
        description="Supports 100+ languages (384 dims, ~470MB)",
    ),
}

MODEL_ALIASES = {
    "all-minilm-l6-v2": "minilm",
    "default": "minilm",
    "bge-small": "bge",
    "bge-small-en-v1.5": "bge",
    "nomic-embed": "nomic",
    "nomic-embed-text-v1.5": "nomic",
    "e5": "multilingual",
    "multilingual-e5-small": "multilingual",
}


def resolve_model(name: str) -> EmbeddingModel:
    """Look up a model by short name, alias or upstream identifier."""
    key = name.strip().lower()
    key = MODEL_ALIASES.get(key, key)
    if key in MODELS:
        return MODELS[key]
    for model in MODELS.values():
        if model.model_name.lower() == key:
            return model
    raise ConfigError(
        f"Unknown model: {name}. Valid options: {', '.join(MODELS)}"
    )


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError(f"{name} must be >= {minimum}, got {value}")
    except ValueError as e:
        raise ConfigError(f"Invalid {name} value '{raw}': {e}") from e
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration."""

    root_path: Path
    index_dir: Path
    model: EmbeddingModel
    embedder: str
    ollama_url: str
    max_count: int
    show_content: bool
    json_output: bool
    sync_before_search: bool
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    workers: int = 1
    batch_size: int = DEFAULT_BATCH_SIZE
    debounce_ms: int = DEFAULT_DEBOUNCE_MS

    @classmethod
    def from_env(
        cls,
        root_path: Path | str | None = None,
        *,
        model: str | None = None,
        max_count: int | None = None,
        show_content: bool | None = None,
        json_output: bool | None = None,
        sync_before_search: bool | None = None,
        embedder: str | None = None,
        workers: int | None = None,
    ) -> "Config":
        """Load configuration from environment variables.

        Args:
            root_path: Project root to index. Defaults to the current directory.
            model, max_count, show_content, json_output, sync_before_search,
            embedder, workers: Explicit overrides (CLI flags). ``None`` means
                "not given", falling back to the environment and then to the
                built-in default.
        """
        root = Path(root_path if root_path is not None else ".").expanduser().resolve()

        model_name = model if model is not None else os.getenv("LGREP_MODEL", DEFAULT_MODEL)
        resolved_model = resolve_model(model_name)

        embedder_name = (
            embedder if embedder is not None else os.getenv("LGREP_EMBEDDER", "hash")
        ).lower()
        if embedder_name not in EMBEDDER_CHOICES:
            raise ConfigError(
                f"Invalid LGREP_EMBEDDER value '{embedder_name}': "
                f"expected one of {', '.join(EMBEDDER_CHOICES)}"
            )

        if max_count is None:
            max_count = _env_int("LGREP_MAX_COUNT", DEFAULT_MAX_COUNT, minimum=1)
        elif max_count < 1:
            raise ConfigError(f"Result count must be >= 1, got {max_count}")

        if workers is None:
            workers = _env_int("LGREP_WORKERS", os.cpu_count() or 1, minimum=1)
        elif workers < 1:
            raise ConfigError(f"Worker count must be >= 1, got {workers}")

        return cls(
            root_path=root,
            index_dir=root / INDEX_DIR_NAME,
            model=resolved_model,
            embedder=embedder_name,
            ollama_url=os.getenv("LGREP_OLLAMA_URL", DEFAULT_OLLAMA_URL).rstrip("/"),
            max_count=max_count,
            show_content=(
                show_content
                if show_content is not None
                else _env_bool("LGREP_CONTENT", False)
            ),
            json_output=(
                json_output if json_output is not None else _env_bool("LGREP_JSON", False)
            ),
            sync_before_search=(
                sync_before_search
                if sync_before_search is not None
                else _env_bool("LGREP_SYNC", False)
            ),
            workers=workers,
            debounce_ms=_env_int("LGREP_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS, minimum=0),
        )


# Global config instance (lazily initialized)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None
