"""Thread-safe configuration management."""

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, cast

import yaml

from ..exceptions import ConfigurationError
from ..services import IConfigurationManager


class ConfigurationManager(IConfigurationManager):
    """Configuration from a YAML/JSON file, overridable from the environment.

    Keys use dot notation (``openrouter.api_key``); the environment variable
    ``OPENROUTER_API_KEY`` takes precedence over the file value.
    """

    def __init__(
        self,
        config_file: Optional[Path | str] = None,
        auto_reload: bool = False,
        environ: Optional[Mapping[str, str]] = None,
    ):
        if isinstance(config_file, str):
            config_path: Optional[Path] = Path(config_file)
        else:
            config_path = config_file

        self._config_file: Optional[Path] = config_path
        self._auto_reload = auto_reload
        self._environ = environ if environ is not None else os.environ
        self._lock = threading.RLock()
        self._config: Dict[str, Any] = {}
        self._loaded = False

        if config_file:
            self.reload()

    @property
    def config_file(self) -> Optional[Path]:
        return self._config_file

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        with self._lock:
            if self._auto_reload and not self._loaded:
                self.reload()

            env_key = key.upper().replace(".", "_")
            env_value = self._environ.get(env_key)
            if env_value is not None:
                return self._parse_env_value(env_value)

            current: Any = self._config
            for part in key.split("."):
                if not isinstance(current, Mapping):
                    return default
                current_map = cast(Mapping[str, Any], current)
                if current_map.get(part) is None:
                    return default
                current = current_map[part]
            return current

    def set(self, key: str, value: Any) -> None:
        """Set an in-memory value; the file is never written."""
        with self._lock:
            keys = key.split(".")
            config = self._config
            for part in keys[:-1]:
                child = config.get(part)
                if not isinstance(child, dict):
                    child = {}
                    config[part] = child
                config = cast(Dict[str, Any], child)
            config[keys[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        value = self.get(section, {})
        if isinstance(value, dict):
            return cast(Dict[str, Any], value)
        return {}

    def reload(self) -> None:
        """Reload configuration from file."""
        with self._lock:
            if not self._config_file:
                self._config = {}
                self._loaded = True
                return

            if not self._config_file.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {self._config_file}",
                    context={"path": str(self._config_file)},
                )

            suffix = self._config_file.suffix.lower()
            data: Any
            with open(self._config_file, "r", encoding="utf-8") as handle:
                try:
                    if suffix in {".yaml", ".yml"}:
                        data = yaml.safe_load(handle)
                    elif suffix == ".json":
                        data = json.load(handle)
                    else:
                        raise ConfigurationError(f"Unsupported configuration file format: {suffix}")
                except (yaml.YAMLError, json.JSONDecodeError) as exc:
                    raise ConfigurationError(
                        f"Failed to parse configuration file: {exc}",
                        context={"path": str(self._config_file)},
                    ) from exc

            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ConfigurationError("Configuration file must contain a mapping/object")

            self._config = dict(cast(Dict[str, Any], data))
            self._loaded = True

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            if self._auto_reload and not self._loaded:
                self.reload()
            return self._config.copy()

    def merge(self, config: Mapping[str, Any]) -> None:
        """Deep merge a mapping into the current configuration."""
        with self._lock:
            self._deep_merge(self._config, {str(key): value for key, value in config.items()})

    @staticmethod
    def _deep_merge(target: Dict[str, Any], source: Mapping[str, Any]) -> None:
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                ConfigurationManager._deep_merge(target[key], cast(Mapping[str, Any], value))
            else:
                target[key] = value

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return value


@dataclass(frozen=True)
class GatewaySettings:
    """Resolved settings for the upstream gateway and its rate limiter."""

    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    timeout: float = 120.0
    referer: str = "https://github.com/model-kombat/model-kombat"
    title: str = "Model Kombat"
    max_concurrent: int = 5
    min_time: float = 0.1
    reservoir: Optional[int] = 50
    reservoir_refresh_amount: Optional[int] = 50
    reservoir_refresh_interval: float = 60.0
    catalog_ttl: float = 24 * 60 * 60

    @classmethod
    def from_config(cls, config: IConfigurationManager, *, require_api_key: bool = True) -> "GatewaySettings":
        """Read the ``openrouter`` and ``rate_limit`` sections."""
        api_key = config.get("openrouter.api_key")
        if require_api_key and not api_key:
            raise ConfigurationError(
                "OpenRouter API key is not configured",
                context={"key": "openrouter.api_key", "env": "OPENROUTER_API_KEY"},
            )

        def number(key: str, default: float) -> float:
            value = config.get(key, default)
            try:
                return float(value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"{key} must be a number", context={"value": value}) from exc

        reservoir_value = config.get("rate_limit.reservoir", cls.reservoir)
        reservoir = int(reservoir_value) if reservoir_value is not None else None
        refresh_value = config.get("rate_limit.reservoir_refresh_amount", reservoir)
        return cls(
            api_key=str(api_key or ""),
            base_url=str(config.get("openrouter.base_url", cls.base_url)),
            timeout=number("openrouter.timeout", cls.timeout),
            referer=str(config.get("openrouter.referer", cls.referer)),
            title=str(config.get("openrouter.title", cls.title)),
            max_concurrent=int(number("rate_limit.max_concurrent", cls.max_concurrent)),
            min_time=number("rate_limit.min_time", cls.min_time),
            reservoir=reservoir,
            reservoir_refresh_amount=int(refresh_value) if refresh_value is not None else None,
            reservoir_refresh_interval=number("rate_limit.reservoir_refresh_interval", cls.reservoir_refresh_interval),
            catalog_ttl=number("catalog.ttl_seconds", cls.catalog_ttl),
        )


__all__ = ["ConfigurationManager", "GatewaySettings"]
