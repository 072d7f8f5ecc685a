"""Application-wide configuration loading and validation."""

from __future__ import annotations

import configparser
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("/etc/asterisk/agi.conf")

# INI section -> (field prefix, key aliases)
_INI_SECTIONS: dict[str, tuple[str, dict[str, str]]] = {
    "asmanager": ("ami_", {"server": "host"}),
    "agi": ("agi_", {}),
    "fastagi": ("fastagi_", {}),
}


class IniSettingsSource(PydanticBaseSettingsSource):
    """Reads the legacy INI config file (``[asmanager]``, ``[agi]``, ``[fastagi]``)."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls)
        self._values = self._load(path)

    @staticmethod
    def _load(path: Path) -> dict[str, str]:
        if not path.is_file():
            return {}

        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as exc:
            LOGGER.warning("Ignoring unreadable config file %s: %s", path, exc)
            return {}

        values: dict[str, str] = {}
        for section, (prefix, aliases) in _INI_SECTIONS.items():
            if not parser.has_section(section):
                continue
            for key, value in parser.items(section):
                values[prefix + aliases.get(key, key)] = value.strip().strip('"')
        return values

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {name: value for name, value in self._values.items() if name in self.settings_cls.model_fields}


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    config_file: Path = Field(
        default=DEFAULT_CONFIG_FILE,
        description="Optional INI file with [asmanager], [agi] and [fastagi] sections.",
    )

    # Asterisk Manager Interface
    ami_host: str = Field(default="localhost", description="Manager host, optionally host:port.")
    ami_port: int = Field(default=5038)
    ami_username: str = Field(default="manager")
    ami_secret: str = Field(default="manager")
    ami_connect_timeout: float = Field(default=10.0, gt=0)
    ami_action_timeout: float | None = Field(
        default=None,
        description="Deadline in seconds for each action response; None waits indefinitely.",
    )

    # AGI channel
    agi_debug: bool = Field(default=False, description="Mirror diagnostics to the Asterisk console.")
    agi_option_delimiter: str = Field(default=",")
    agi_command_timeout: float | None = Field(default=None)

    # FastAGI server
    fastagi_host: str = Field(default="0.0.0.0")
    fastagi_port: int = Field(default=4573)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # The INI path itself may come from the constructor or the environment.
        explicit = init_settings().get("config_file") or env_settings().get("config_file")
        if not explicit:
            explicit = dotenv_settings().get("config_file")
        path = Path(explicit) if explicit else DEFAULT_CONFIG_FILE
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            IniSettingsSource(settings_cls, path),
            file_secret_settings,
        )


@dataclass(frozen=True, slots=True)
class ManagerConfig:
    host: str = "localhost"
    port: int = 5038
    username: str = "manager"
    secret: str = "manager"
    connect_timeout: float = 10.0
    action_timeout: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ManagerConfig:
        return cls(
            host=settings.ami_host,
            port=settings.ami_port,
            username=settings.ami_username,
            secret=settings.ami_secret,
            connect_timeout=settings.ami_connect_timeout,
            action_timeout=settings.ami_action_timeout,
        )


@dataclass(frozen=True, slots=True)
class AgiConfig:
    debug: bool = False
    option_delimiter: str = ","
    command_timeout: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> AgiConfig:
        return cls(
            debug=settings.agi_debug,
            option_delimiter=settings.agi_option_delimiter,
            command_timeout=settings.agi_command_timeout,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
