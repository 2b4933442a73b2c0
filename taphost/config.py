"""taphost — Host configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. System config: /etc/taphost/config.yaml
    3. User config:   ~/.taphost/config.yaml
    4. An explicit config file passed to ``Settings.load()``
    5. Environment variables prefixed with TAPHOST_ (``__`` for nesting,
       e.g. ``TAPHOST_ENGINE__EPOCH_BUDGET=5``)

All numeric sandbox limits live here: memory ceiling, live-instance ceiling,
epoch budget and statement timeout are policy knobs, not constants.
"""

from __future__ import annotations

from contextvars import ContextVar
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

# YAML files read by the settings currently being built by ``Settings.load()``.
_yaml_files: ContextVar[tuple[Path, ...]] = ContextVar("taphost_yaml_files", default=())


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class EngineConfig(BaseModel):
    max_instances: Annotated[int, Field(ge=1, le=100_000)] = Field(
        default=1000,
        description="Maximum number of concurrently live execution contexts.",
    )
    max_memory_mb: Annotated[int, Field(ge=1, le=4096)] = Field(
        default=64,
        description="Linear memory ceiling per execution context, in MiB.",
    )
    max_tables: Annotated[int, Field(ge=1, le=1000)] = 10
    max_table_elements: Annotated[int, Field(ge=1)] = 100_000
    epoch_budget: Annotated[int, Field(ge=1, le=3600)] = Field(
        default=10,
        description="Epoch ticks a single call may run before it traps.",
    )
    epoch_tick_seconds: Annotated[float, Field(gt=0, le=60)] = Field(
        default=1.0,
        description="Interval of the background epoch clock.",
    )
    instantiate_timeout: Annotated[float, Field(ge=0, le=300)] = Field(
        default=5.0,
        description="Seconds to wait for a free execution slot before failing the step.",
    )
    max_payload_bytes: Annotated[int, Field(ge=1)] = 4 * 1024 * 1024
    max_output_bytes: Annotated[int, Field(ge=1)] = 4 * 1024 * 1024
    optimize: Literal["none", "speed", "speed_and_size"] = "speed"

    @property
    def max_memory_bytes(self) -> int:
        return self.max_memory_mb * 1024 * 1024


class BridgeConfig(BaseModel):
    statement_timeout_ms: Annotated[int, Field(ge=1, le=600_000)] = Field(
        default=2000,
        description="Server-side timeout applied to every bridge query on its connection.",
    )
    max_query_rows: Annotated[int, Field(ge=1, le=1_000_000)] = 1000
    max_key_bytes: Annotated[int, Field(ge=1, le=65_536)] = 256
    max_value_bytes: Annotated[int, Field(ge=1)] = 1024 * 1024
    max_query_bytes: Annotated[int, Field(ge=1)] = 64 * 1024
    max_log_bytes: Annotated[int, Field(ge=1)] = 8 * 1024
    protected_tables: list[str] = Field(
        default_factory=lambda: ["plugin_status", "plugin_migration"],
        description="Tables no plugin may touch, whatever its capabilities.",
    )
    table_allowlist: list[str] = Field(
        default_factory=list,
        description="When non-empty, the only tables reachable through the bridge.",
    )
    cache_max_entries: Annotated[int, Field(ge=1)] = 10_000
    cache_default_ttl: Annotated[int, Field(ge=0)] = Field(
        default=300, description="Seconds; 0 means entries never expire."
    )
    schema_cache_ttl: Annotated[int, Field(ge=0)] = 300


class DatabaseConfig(BaseModel):
    url: str = Field(
        default="sqlite:///~/.taphost/taphost.db",
        validate_default=True,
        description="SQLAlchemy URL shared by plugin status tracking and the bridge.",
    )
    pool_size: Annotated[int, Field(ge=1, le=200)] = 5
    max_overflow: Annotated[int, Field(ge=0, le=200)] = 10
    echo: bool = False

    @field_validator("url")
    @classmethod
    def expand_sqlite_path(cls, v: str) -> str:
        prefix = "sqlite:///"
        if v.startswith(prefix) and v[len(prefix):].startswith("~"):
            return prefix + str(Path(v[len(prefix):]).expanduser())
        return v


class PluginsConfig(BaseModel):
    directory: Path = Path("plugins")
    disabled: list[str] = Field(
        default_factory=list,
        description="Plugins that stay disabled whatever their persisted status.",
    )
    strict_taps: bool = Field(
        default=True,
        description="Reject manifests implementing taps without a known contract.",
    )

    @field_validator("directory", mode="before")
    @classmethod
    def expand_directory(cls, v: object) -> object:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class TapContractConfig(BaseModel):
    aggregation: Literal["accumulate", "dominance", "transform"] = "accumulate"
    mandatory: bool = False
    payload_mode: Literal["serialized", "handle"] = "serialized"


class TapsConfig(BaseModel):
    contracts: dict[str, TapContractConfig] = Field(
        default_factory=dict,
        description="Extra or overridden tap contracts, keyed by tap name.",
    )
    mandatory: list[str] = Field(
        default_factory=list,
        description="Taps whose steps must all succeed, in addition to the built-ins.",
    )


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TAPHOST_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    taps: TapsConfig = Field(default_factory=TapsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources win: environment beats every YAML file.
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=list(_yaml_files.get())),
        )

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from YAML files + environment variables."""
        candidates = [
            Path("/etc/taphost/config.yaml"),
            Path.home() / ".taphost" / "config.yaml",
        ]
        if config_file:
            candidates.append(config_file)

        token = _yaml_files.set(tuple(path for path in candidates if path.exists()))
        try:
            return cls()
        finally:
            _yaml_files.reset(token)


# Module-level singleton — replaced by ``Settings.load()`` at host startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings) -> None:
    """Replace the module-level singleton. Used in tests."""
    global _settings
    _settings = settings
