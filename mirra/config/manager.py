"""Configuration manager for reading/writing the Mirra.toml file."""

from __future__ import annotations

import tomllib
from pathlib import Path

import tomli_w
from pydantic import ValidationError

from mirra.config.schema import MirraConfig, ModuleSection
from mirra.errors import ConfigError
from mirra.logging import get_logger
from mirra.registry import Module, ModuleRole, PeerEndpoint
from mirra.store import MIRRA_DIR

logger = get_logger("config")

CONFIG_FILE = "Mirra.toml"
STATE_FILE = "state.json"
LOG_FILE = "mirra.log"


class ConfigManager:
    """Manages reading, writing and locating the Mirra config file.

    The config lives at ``<base_dir>/.mirra/Mirra.toml``; relative module
    paths are resolved against ``base_dir``. If the file does not exist,
    :meth:`load` returns a :class:`MirraConfig` populated from defaults.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = Path(base_dir or Path.cwd()).resolve()

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    @property
    def data_dir(self) -> Path:
        """The ``.mirra`` directory holding keys, config and state."""
        return self.base_dir / MIRRA_DIR

    def get_config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE

    def get_state_path(self) -> Path:
        return self.data_dir / STATE_FILE

    def get_log_path(self) -> Path:
        return self.data_dir / LOG_FILE

    def exists(self) -> bool:
        """Return ``True`` if the config file exists on disk."""
        return self.get_config_path().is_file()

    def resolve_path(self, path: str) -> Path:
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = self.base_dir / resolved
        return resolved

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> MirraConfig:
        """Load configuration from disk, falling back to defaults.

        Raises:
            ConfigError: if the file is not valid TOML or fails validation
        """
        path = self.get_config_path()
        if not path.is_file():
            logger.debug(f"Config file not found at {path}, using defaults")
            return MirraConfig()

        try:
            with open(path, "rb") as fh:
                raw = tomllib.load(fh)
        except (tomllib.TOMLDecodeError, OSError) as exc:
            raise ConfigError(f"Failed to read config at {path}: {exc}") from exc

        try:
            return MirraConfig(**raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid config at {path}: {exc}") from exc

    def save(self, config: MirraConfig) -> None:
        """Persist configuration to disk as TOML."""
        path = self.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        data = config.model_dump(exclude_none=True)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "wb") as fh:
            tomli_w.dump(data, fh)
        tmp.replace(path)

        logger.debug(f"Config saved to {path}")

    def add_module(self, name: str, section: ModuleSection) -> MirraConfig:
        """Add or replace one ``[modules.<name>]`` table and save."""
        config = self.load()
        config.modules[name] = section
        # Validate before writing
        self.to_modules(config)
        self.save(config)
        logger.info(f"Module {name} written to {self.get_config_path()}")
        return config

    def remove_module(self, name: str) -> MirraConfig:
        config = self.load()
        if config.modules.pop(name, None) is None:
            raise ConfigError(f"module {name!r} is not configured")
        self.save(config)
        return config

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    def to_module(self, name: str, section: ModuleSection) -> Module:
        """Turn one config table into a registry Module."""
        if section.host is not None:
            return Module(
                name=name,
                path=self.resolve_path(section.path or name),
                role=ModuleRole.SYNCED,
                peer=PeerEndpoint(
                    host=section.host, port=section.port, public_key=section.public_key
                ),
                reshare=section.reshare,
            )
        assert section.path is not None
        return Module(name=name, path=self.resolve_path(section.path), role=ModuleRole.SERVED)

    def to_modules(self, config: MirraConfig) -> list[Module]:
        return [self.to_module(name, section) for name, section in sorted(config.modules.items())]
