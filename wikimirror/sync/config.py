"""
Sync configuration for the wiki mirror.

One SyncConfig describes where data lives (database, blobs, mirrors), how
the engine behaves (renderer, cache, run lock, retry) and how each upstream
source is reached (endpoints, politeness delay, pool size, timeouts,
strategy limits). Configuration is loaded from YAML and validated with
pydantic.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator

from ..config import DEFAULT_DATA_DIRECTORY, USER_AGENT, RUN_LOCK_TTL_SECONDS
from .error_tracker import ConfigurationError


class SourceName(str, Enum):
    """Upstream sources known to the mirror."""
    OSRS = "osrs"
    NLAB = "nlab"
    WIKIPEDIA = "wikipedia"
    VINTAGE_MACHINERY = "vintage_machinery"


class SyncStrategy(str, Enum):
    """How the candidate list of a run is obtained."""
    FULL = "full"
    CATEGORY = "category"
    INCREMENTAL = "incremental"
    SEARCH = "search"
    REFRESH = "refresh"


class RendererKind(str, Enum):
    """Markup renderer used for sources that ship markdown."""
    MARKDOWN = "markdown"  # Python-Markdown
    REGEX = "regex"  # built-in minimal converter


class SourceSettings(BaseModel):
    """Connection and scheduling settings for one source."""
    enabled: bool = Field(default=True, description="Whether the source may be synced")
    base_url: str = Field(..., description="Upstream API or site root")
    upstream_base: str = Field(..., description="Prefix for public upstream article URLs")
    license: str = Field(..., description="License recorded on every article")
    user_agent: str = Field(default=USER_AGENT, description="User-Agent header sent upstream")
    rate_limit_ms: int = Field(default=1000, ge=0, description="Minimum delay between upstream requests")
    request_timeout: int = Field(default=30, description="Per-request timeout in seconds")
    max_concurrency: int = Field(default=4, ge=1, description="Worker pool size for a run")
    task_timeout_seconds: float = Field(default=60.0, gt=0, description="Per-candidate timeout")
    default_lookback_days: int = Field(default=7, ge=1, description="Incremental window when no run completed yet")
    full_sync_limit: int = Field(default=10_000, ge=1, description="Cap on full sync candidates")
    category_limit: int = Field(default=5_000, ge=1, description="Cap on category candidates")
    search_limit: int = Field(default=50, ge=1, description="Cap on search-driven candidates")
    refresh_limit: int = Field(default=1_000, ge=1, description="Cap on refresh candidates")
    changes_limit: int = Field(default=500, ge=1, description="Cap on incremental candidates")
    categories: List[str] = Field(default_factory=list, description="Partitions walked by a full sync")
    local_path: Optional[str] = Field(None, description="Local checkout or mirror directory")
    repo_url: Optional[str] = Field(None, description="Git repository URL")
    branch: str = Field(default="master", description="Git branch")
    include_paths: List[str] = Field(default_factory=list, description="Mirror include directories")

    @field_validator('base_url', 'upstream_base')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        result = urlparse(v)
        if not all([result.scheme, result.netloc]):
            raise ValueError('Invalid URL format')
        return v


def _default_sources(data_directory: str) -> Dict[SourceName, SourceSettings]:
    data = Path(data_directory)
    return {
        SourceName.OSRS: SourceSettings(
            base_url="https://oldschool.runescape.wiki/api.php",
            upstream_base="https://oldschool.runescape.wiki/w/",
            license="CC BY-NC-SA 3.0",
            rate_limit_ms=1000,
            max_concurrency=4,
            default_lookback_days=7,
            full_sync_limit=10_000,
            categories=["Items", "Monsters", "NPCs", "Quests", "Locations"],
        ),
        SourceName.NLAB: SourceSettings(
            base_url="https://ncatlab.org/nlab",
            upstream_base="https://ncatlab.org/nlab/show/",
            license="CC BY-SA 4.0",
            rate_limit_ms=0,
            max_concurrency=4,
            default_lookback_days=7,
            full_sync_limit=10_000,
            repo_url="https://github.com/ncatlab/nlab-content.git",
            branch="master",
            local_path=str(data / "nlab-content"),
        ),
        SourceName.WIKIPEDIA: SourceSettings(
            base_url="https://en.wikipedia.org/api/rest_v1",
            upstream_base="https://en.wikipedia.org/wiki/",
            license="CC BY-SA 4.0",
            rate_limit_ms=1000,
            max_concurrency=2,
            default_lookback_days=7,
            search_limit=10,
            refresh_limit=1_000,
        ),
        SourceName.VINTAGE_MACHINERY: SourceSettings(
            base_url="https://vintagemachinery.org",
            upstream_base="https://vintagemachinery.org/",
            license="Used with permission",
            rate_limit_ms=2000,
            max_concurrency=4,
            default_lookback_days=30,
            full_sync_limit=50_000,
            local_path=str(data / "vintage_machinery"),
            include_paths=["pubs/", "mfgindex/"],
        ),
    }


class SyncConfig(BaseModel):
    """Main configuration for the wiki mirror."""
    version: str = Field(default="1.0.0", description="Configuration version")
    name: str = Field(default="wikimirror", description="Configuration name")

    # Storage configuration
    data_directory: str = Field(default=DEFAULT_DATA_DIRECTORY, description="Root for all local state")
    database_path: Optional[str] = Field(None, description="SQLite database (defaults under data_directory)")
    blob_directory: Optional[str] = Field(None, description="Blob root (defaults under data_directory)")

    # Engine configuration
    renderer: RendererKind = Field(default=RendererKind.MARKDOWN, description="Markdown renderer strategy")
    cache_ttl_seconds: float = Field(default=900.0, gt=0, description="Content cache TTL")
    cache_max_entries: int = Field(default=10_000, ge=1, description="Content cache capacity")
    lock_ttl_seconds: float = Field(default=float(RUN_LOCK_TTL_SECONDS), gt=0, description="Per-source run lock TTL")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for transient upstream failures")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, description="First retry delay, doubled per attempt")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")

    sources: Dict[SourceName, SourceSettings] = Field(default_factory=dict, description="Per-source settings")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f'Unknown log level: {v}')
        return v.upper()

    def resolved_database_path(self) -> Path:
        return Path(self.database_path) if self.database_path else Path(self.data_directory) / "wikimirror.sqlite"

    def resolved_blob_directory(self) -> Path:
        return Path(self.blob_directory) if self.blob_directory else Path(self.data_directory) / "blobs"

    def get_source(self, name: Union[str, SourceName]) -> SourceSettings:
        """Settings for one source; unknown or disabled sources are a ConfigurationError."""
        try:
            key = SourceName(name)
        except ValueError:
            raise ConfigurationError(f"Unknown source: {name}", source_id=str(name))
        settings = self.sources.get(key)
        if settings is None:
            raise ConfigurationError(f"Source {key.value} is not configured", source_id=key.value,
                                     recovery_suggestion="Add the source under `sources` in the sync config.")
        if not settings.enabled:
            raise ConfigurationError(f"Source {key.value} is disabled", source_id=key.value)
        return settings

    def get_enabled_sources(self) -> List[SourceName]:
        return [name for name, settings in self.sources.items() if settings.enabled]

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file. Sources missing from the file keep their defaults."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        defaults = _default_sources(data.get('data_directory', DEFAULT_DATA_DIRECTORY))
        merged = {name.value: settings.model_dump() for name, settings in defaults.items()}
        for name, overrides in (data.get('sources') or {}).items():
            merged.setdefault(name, {}).update(overrides or {})
        data['sources'] = merged
        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode='json')
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)


def create_default_config(data_directory: Optional[str] = None) -> SyncConfig:
    """Configuration with every known source enabled and its usual limits."""
    data_directory = data_directory or DEFAULT_DATA_DIRECTORY
    return SyncConfig(data_directory=data_directory, sources=_default_sources(data_directory))


def load_config(path: Optional[Union[str, Path]] = None) -> SyncConfig:
    """Load the YAML config at ``path`` if it exists, otherwise the defaults."""
    if path and Path(path).exists():
        return SyncConfig.from_yaml(path)
    return create_default_config()
