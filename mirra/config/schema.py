"""Pydantic models for the Mirra.toml configuration file.

Nested section models use plain ``BaseModel`` so that fields like ``path``
or ``host`` are never read from the environment. Only the top-level
:class:`MirraConfig` extends ``BaseSettings`` and picks up ``MIRRA_``
overrides such as ``MIRRA_NODE__PORT=7000``.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mirra.registry import DEFAULT_PORT


class NodeSection(BaseModel):
    """This mirra instance."""

    name: str = "no name"
    host: str = "0.0.0.0"
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)


class SyncSection(BaseModel):
    """Timeouts, queue sizes and retry policy of the sync engine."""

    handshake_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=60.0, gt=0)
    debounce: float = Field(default=0.25, gt=0)
    max_delay: float = Field(default=2.0, gt=0)
    outbox_size: int = Field(default=64, gt=0)
    inbox_size: int = Field(default=256, gt=0)
    stall_timeout: float = Field(default=5.0, gt=0)
    heartbeat_interval: float = Field(default=15.0, gt=0)
    reconcile_interval: float = Field(default=300.0, gt=0)
    backoff_initial: float = Field(default=1.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=60.0, gt=0)


class LoggingSection(BaseModel):
    """Log output."""

    level: str = "INFO"
    console_level: str = "INFO"
    log_to_file: bool = True


class ModuleSection(BaseModel):
    """One ``[modules.<name>]`` table.

    A table with a ``host`` (``ip`` is accepted too) is synced from that
    root; a table with only a ``path`` is served.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    path: str | None = None
    host: str | None = Field(default=None, validation_alias=AliasChoices("host", "ip"))
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    public_key: str | None = None
    reshare: bool = False

    @model_validator(mode="after")
    def _check_role(self) -> ModuleSection:
        if self.host is None and self.path is None:
            raise ValueError("a module needs a path (served) or a host (synced)")
        if self.reshare and self.host is None:
            raise ValueError("only synced modules can be reshared")
        return self

    @property
    def is_synced(self) -> bool:
        return self.host is not None


class MirraConfig(BaseSettings):
    """Top-level Mirra configuration model.

    Maps to the TOML structure:
        [node] / [sync] / [logging] / [modules.<name>]

    Environment variables take precedence over the file.
    """

    model_config = SettingsConfigDict(env_prefix="MIRRA_", env_nested_delimiter="__")

    node: NodeSection = Field(default_factory=NodeSection)
    sync: SyncSection = Field(default_factory=SyncSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    modules: dict[str, ModuleSection] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return env_settings, init_settings, dotenv_settings, file_secret_settings
