"""Configuration management for kbsmith.

KB discovery, tunable constants and the settings model. Constants are
documented here rather than scattered across modules.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


KBCONFIG_FILENAME = ".kbconfig"
INDEX_DIRNAME = ".indices"


def _discover_project_config(start_dir: Path | None = None, max_depth: int = 10) -> tuple[Path, Path] | None:
    """Walk up from start_dir looking for .kbconfig with kb_path.

    Returns:
        Tuple of (config_path, kb_path) if found, None otherwise.
    """
    current = Path(start_dir or os.getcwd()).resolve()

    for _ in range(max_depth):
        config_file = current / KBCONFIG_FILENAME
        if config_file.exists():
            try:
                data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            except (OSError, yaml.YAMLError) as e:
                log.warning("Ignoring unreadable %s: %s", config_file, e)
                data = {}
            if isinstance(data, dict) and "kb_path" in data:
                kb_path = (current / str(data["kb_path"])).resolve()
                if kb_path.is_dir():
                    return config_file, kb_path

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def get_kb_root() -> Path:
    """Get the knowledge base root directory.

    Discovery order:
    1. KBSMITH_KB_ROOT environment variable
    2. Walk up from cwd looking for .kbconfig with a kb_path field

    Raises:
        ConfigurationError: If no KB can be found.
    """
    root = os.environ.get("KBSMITH_KB_ROOT")
    if root:
        return Path(root)

    project = _discover_project_config()
    if project:
        return project[1]

    raise ConfigurationError(
        "No knowledge base found. Either set KBSMITH_KB_ROOT or add a "
        ".kbconfig with 'kb_path: .' at the root of your notes directory."
    )


def get_index_root(kb_root: Path | None = None) -> Path:
    """Get the directory holding indices and persisted stores.

    Discovery order:
    1. KBSMITH_INDEX_ROOT environment variable
    2. {kb_root}/.indices/
    """
    root = os.environ.get("KBSMITH_INDEX_ROOT")
    if root:
        return Path(root)
    return (kb_root or get_kb_root()) / INDEX_DIRNAME


# =============================================================================
# Knowledge Types
# =============================================================================

KnowledgeType = Literal["Domain", "Issue", "Theory", "Entity", "Mechanism"]

KNOWLEDGE_TYPES: tuple[str, ...] = ("Domain", "Issue", "Theory", "Entity", "Mechanism")

# Where new notes of each type land, relative to the KB root
DEFAULT_DIRECTORY_SCHEME: dict[str, str] = {
    "Domain": "domains",
    "Issue": "issues",
    "Theory": "theories",
    "Entity": "entities",
    "Mechanism": "mechanisms",
}


# =============================================================================
# Embeddings
# =============================================================================

# Sentence-transformers model used by the "local" embedding provider.
# MiniLM produces 384-dimensional vectors and runs fine on CPU.
EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_DIMENSION = 384


# =============================================================================
# Duplicate Detection
# =============================================================================

# Minimum cosine similarity for two same-type notes to be recorded as a
# candidate duplicate pair. Below ~0.8 MiniLM starts pairing notes that merely
# share a topic.
DUPLICATE_SIMILARITY_THRESHOLD = 0.85

# Neighbours considered per search
DEFAULT_TOP_K = 10

# Separator between the two sorted node ids of a pair id
PAIR_ID_SEPARATOR = "--"


# =============================================================================
# Task Queue
# =============================================================================

# Attempts per task for transient provider failures
DEFAULT_MAX_RETRY_ATTEMPTS = 3

# Attempts per task when the model returned unparsable or invalid output
MODEL_OUTPUT_MAX_ATTEMPTS = 3

# Tasks executing at once. 1 means fully serialized.
DEFAULT_CONCURRENCY = 1


# =============================================================================
# Snapshots
# =============================================================================

# Largest note content that will be snapshotted (10 MB)
SNAPSHOT_MAX_CONTENT_BYTES = 10 * 1024 * 1024

# Retention: whichever limit is hit first prunes the oldest snapshots
SNAPSHOT_MAX_COUNT = 100
SNAPSHOT_MAX_AGE_DAYS = 30


# =============================================================================
# Input Validation
# =============================================================================

# Longest concept description accepted by `define`
MAX_USER_INPUT_LENGTH = 10_000


# =============================================================================
# Settings
# =============================================================================

ProviderKind = Literal["anthropic", "openrouter", "openai", "local"]


class ProviderConfig(BaseModel):
    """One configured LLM or embedding provider."""

    kind: ProviderKind = "anthropic"
    api_key_env: str | None = None  # Env var holding the key; defaults per kind
    base_url: str | None = None  # Override for OpenAI-compatible gateways
    timeout: float = 60.0  # Seconds; the only execution ceiling a task has
    enabled: bool = True


class TaskModelConfig(BaseModel):
    """Model selection for one task type."""

    provider_id: str = ""  # Empty means settings.default_provider_id
    model: str = "claude-3.5-haiku"
    temperature: float = 0.3
    top_p: float | None = None
    max_tokens: int = 2000


def _default_task_models() -> dict[str, TaskModelConfig]:
    return {
        "define": TaskModelConfig(temperature=0.2, max_tokens=1000),
        "tag": TaskModelConfig(temperature=0.3, max_tokens=800),
        "write": TaskModelConfig(model="claude-sonnet-4", temperature=0.5, max_tokens=4000),
        "merge": TaskModelConfig(model="claude-sonnet-4", temperature=0.3, max_tokens=4000),
        "verify": TaskModelConfig(temperature=0.1, max_tokens=2000),
    }


class Settings(BaseModel):
    """Runtime settings, read from the `kbsmith:` section of .kbconfig."""

    max_retry_attempts: int = Field(default=DEFAULT_MAX_RETRY_ATTEMPTS, ge=1)
    enable_auto_verify: bool = False
    similarity_threshold: float = Field(default=DUPLICATE_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1)
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    directory_scheme: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_DIRECTORY_SCHEME))
    naming_template: str = "{{english}}"  # Placeholders: english, chinese, type, alias
    language: str = "en"

    providers: dict[str, ProviderConfig] = Field(
        default_factory=lambda: {
            "anthropic": ProviderConfig(kind="anthropic"),
            "local": ProviderConfig(kind="local"),
        }
    )
    default_provider_id: str = "anthropic"
    task_models: dict[str, TaskModelConfig] = Field(default_factory=_default_task_models)

    embedding_provider_id: str = "local"
    embedding_model: str = EMBEDDING_MODEL
    embedding_dimension: int = EMBEDDING_DIMENSION
    vector_backend: Literal["json", "chroma"] = "json"

    snapshot_max_count: int = SNAPSHOT_MAX_COUNT
    snapshot_max_age_days: int = SNAPSHOT_MAX_AGE_DAYS

    def model_for(self, task_type: str) -> TaskModelConfig:
        """Model config for a task type, falling back to defaults."""
        config = self.task_models.get(task_type) or TaskModelConfig()
        if not config.provider_id:
            config = config.model_copy(update={"provider_id": self.default_provider_id})
        return config


class SettingsStore:
    """Synchronous access to settings loaded from .kbconfig.

    The file is read once; `update` changes the in-memory copy and, when
    `persist` is set, writes the `kbsmith:` section back.
    """

    def __init__(self, kb_root: Path, settings: Settings | None = None) -> None:
        self._kb_root = kb_root
        self._settings = settings if settings is not None else self._load()

    @property
    def config_path(self) -> Path:
        return self._kb_root / KBCONFIG_FILENAME

    def _load(self) -> Settings:
        path = self.config_path
        if not path.exists():
            return Settings()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e

        section: Any = data.get("kbsmith", {}) if isinstance(data, dict) else {}
        try:
            return Settings.model_validate(section or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid kbsmith settings in {path}:\n{e}") from e

    def get_settings(self) -> Settings:
        return self._settings

    def update(self, persist: bool = False, **changes: Any) -> Settings:
        merged = self._settings.model_dump() | changes
        try:
            self._settings = Settings.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings update: {e}") from e

        if persist:
            path = self.config_path
            data: dict[str, Any] = {}
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            data["kbsmith"] = self._settings.model_dump(mode="json", exclude_defaults=True)
            path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
        return self._settings
