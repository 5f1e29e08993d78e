"""Configuration management for contextmax."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, TomlConfigSettingsSource

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def find_git_root(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for a ``.git`` directory.

    Returns the containing directory or ``None`` if no ``.git`` is found.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / ".git").exists():
            return current
        parent = current.parent
        if parent == current:
            return None
        current = parent


def _default_project_root() -> Path:
    """Git root if found, otherwise cwd."""
    return find_git_root() or Path.cwd()


def _find_contextmax_toml() -> Path | None:
    """Walk up from cwd looking for ``contextmax.toml``."""
    current = Path.cwd().resolve()
    while True:
        candidate = current / "contextmax.toml"
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


class ScopeSettings(BaseSettings):
    """Which project files are scanned."""

    exclude_patterns: list[str] = Field(
        default_factory=list, description="Additional gitignore-style patterns to exclude beyond .gitignore."
    )
    max_file_bytes: int = Field(default=1_048_576, description="Files larger than this are skipped when scanning.")


class EmbeddingSettings(BaseSettings):
    """Embedding settings; routes through litellm for any provider."""

    model: str = Field(default="nomic-ai/nomic-embed-code", description="Embedding model name.")
    base_url: str = Field(default="http://localhost:8080", description="OpenAI-compatible embedding endpoint URL.")
    batch_size: int = Field(default=32, description="Max texts per embedding API call.")
    timeout_s: float = Field(default=30.0, description="Timeout in seconds for embedding API calls.")
    max_chars: int = Field(default=3000, description="Max characters of embed text per file.")
    head_chars: int = Field(default=1000, description="Characters of file content placed after the path.")
    workers: int = Field(default=4, ge=1, description="Files embedded concurrently during batch embedding.")
    query_cache_size: int = Field(default=128, description="Max cached query embeddings (LRU eviction).")


class CacheSettings(BaseSettings):
    """Embedding cache backend settings."""

    backend: Literal["disk", "valkey", "memory"] = Field(default="disk", description="Cache backend.")
    directory: Path | None = Field(
        default=None, description="Disk cache directory (default: <project_root>/.contextmax/embeddings)."
    )
    ttl_days: int = Field(default=30, description="Entry TTL in days for Valkey; 0 keeps entries forever.")
    host: str = Field(default="localhost", description="Valkey host.")
    port: int = Field(default=6379, description="Valkey port.")
    db: int = Field(default=0, description="Valkey database number.")
    password: str = Field(default="", description="Valkey password.")
    key_prefix: str = Field(default="contextmax:embed", description="Prefix for Valkey keys.")


class SearchSettings(BaseSettings):
    """Hybrid ranking settings."""

    ast_weight: float = Field(default=0.4, description="Weight of the structural score in the final score.")
    llm_weight: float = Field(default=0.6, description="Weight of the semantic score in the final score.")
    synergy_multiplier: float = Field(default=2.0, description="Multiplier applied when both signals agree.")
    max_final_score: float = Field(default=5.0, description="Upper bound of the final score.")
    synergy_min_score: float = Field(
        default=0.2, description="Both astScore and llmScore must reach this for a synergy match."
    )
    min_token_length: int = Field(default=3, description="Query tokens shorter than this are ignored.")
    limit: int = Field(default=20, description="Default number of results returned.")
    tokenizer: str = Field(default="cl100k_base", description="Tiktoken encoding name for token counting.")
    unrelated_below: float = Field(default=0.05, description="Results scoring below this are classified unrelated.")

    @model_validator(mode="after")
    def _check_weights(self) -> SearchSettings:
        if self.ast_weight < 0 or self.llm_weight < 0:
            msg = "ast_weight and llm_weight must be non-negative"
            raise ValueError(msg)
        return self


class ExportSettings(BaseSettings):
    """Working copy / export settings."""

    filename: str = Field(default="context-sets.json", description="Working copy file name in the project root.")
    schema_version: str = Field(default="1.0", description="Schema version written to exported documents.")


class ContextMaxSettings(BaseSettings):
    """Root configuration for contextmax."""

    model_config = SettingsConfigDict(
        toml_file="contextmax.toml",
        env_prefix="CONTEXTMAX_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_path = _find_contextmax_toml()
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        if toml_path:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=toml_path))
        sources.append(file_secret_settings)
        return tuple(sources)

    project_root: Path = Field(default_factory=_default_project_root, description="Project root path.")
    scope: ScopeSettings = Field(default_factory=ScopeSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)

    @property
    def working_copy_path(self) -> Path:
        return self.project_root / self.export.filename

    @property
    def cache_directory(self) -> Path:
        return self.cache.directory or self.project_root / ".contextmax" / "embeddings"
