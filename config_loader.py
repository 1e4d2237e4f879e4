"""
Configuration for the access-log loader.

Settings live in a JSON file (config.json, or the file named by ETL_CONFIG);
credentials are only referenced there by environment variable name and read
from the environment, which etl.py fills from .env.
"""
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

REQUIRED_SECTIONS = ["warehouse", "source", "paths", "identity_service", "load"]


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _non_negative(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


def _http_url(value) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


# (key path, default when absent, check, what the check requires)
CHECKS: List[Tuple[str, Any, Callable[[Any], bool], str]] = [
    ("warehouse.database_path", None, bool, "must be set"),
    ("source.database_path", None, bool, "must be set"),
    ("warehouse.reconnect_retries", 5, _positive_int, "must be a positive integer"),
    ("warehouse.reconnect_interval_seconds", 60, _non_negative, "must be non-negative"),
    ("identity_service.base_url", None, _http_url, "must be an http(s) URL"),
    ("identity_service.max_attempts", 3, _positive_int, "must be a positive integer"),
]


class ConfigLoader:
    """Singleton configuration loader with validation."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._loaded:
            config_path = os.getenv("ETL_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Copy config.json or point ETL_CONFIG at one."
            )
        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        missing = [s for s in REQUIRED_SECTIONS if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        for key_path, default, check, requirement in CHECKS:
            value = self.get(key_path, default)
            if not check(value):
                raise ValueError(f"{key_path} {requirement}, got {value!r}")

        # Reservations are served from memory, so a block of zero never refills
        for name, size in (self.get("load.sequence_batch_sizes") or {}).items():
            if not _positive_int(size):
                raise ValueError(
                    f"load.sequence_batch_sizes.{name} must be a positive integer, got {size!r}"
                )

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value by dot-separated path, e.g.
        config.get('warehouse.reconnect_retries', 5).
        """
        value = self._config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def batch_size(self, sequence: str, default: int) -> int:
        """Reservation block size for a key sequence (load.sequence_batch_sizes)."""
        return self.get(f"load.sequence_batch_sizes.{sequence}", default)

    def get_env_value(self, config_key: str, required: bool = True) -> str:
        """
        Read the environment variable whose name is stored at config_key,
        e.g. identity_service.username_env -> $IDENTITY_SERVICE_USER.
        """
        env_var_name = self.get(config_key)
        if not env_var_name:
            raise ValueError(f"Config key '{config_key}' not found")

        value = os.getenv(env_var_name)
        if required and not value:
            raise ValueError(
                f"{config_key} names ${env_var_name}, which is not set "
                "(add it to .env or the environment)"
            )
        return value

    def get_path(
        self, path_key: str, create: bool = False, base_dir: str = None
    ) -> Path:
        """
        Absolute path for a paths.* entry, relative entries being taken from
        base_dir (default: the working directory). With create=True the
        directory is made if missing.
        """
        path_str = self.get(path_key)
        if not path_str:
            raise ValueError(f"Path key '{path_key}' not found in config")

        path = Path(path_str)
        if not path.is_absolute():
            path = Path(base_dir or Path.cwd()) / path

        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path


_loader = None


def load_config() -> ConfigLoader:
    """Process-wide ConfigLoader, created on first use."""
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
