"""Configuration loader for the JWT session client

Values are resolved in this order:
1. ``JWT_SESSION_<NAME>`` environment variable
2. ``<NAME>`` environment variable (including values loaded from ``.env``)
3. The default passed by the caller

Environment values are strings; they are converted to the type of the
default so that ``settings.py`` stays a plain list of constants.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "JWT_SESSION_"

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(f"expected one of {TRUE_VALUES + FALSE_VALUES}")


# bool first: bool is an int subclass
PARSERS: Dict[type, Callable[[str], Any]] = {
    bool: _parse_bool,
    int: int,
    float: float,
}


class ConfigLoader:
    """Reads settings from the environment with typed defaults"""

    def __init__(self, env_path: Optional[str] = None, prefix: str = ENV_PREFIX):
        """Initialize the config loader

        Args:
            env_path: Path to a .env file (default: ``.env`` in the working directory)
            prefix: Prefix checked before the bare variable name
        """
        self.env_path = Path(env_path) if env_path else Path(".env")
        self.prefix = prefix
        self.loaded_env_file = self._load_env_file()

    def _load_env_file(self) -> bool:
        if not self.env_path.exists():
            logger.debug(f"No .env file at {self.env_path}, using environment and defaults")
            return False
        # Variables already set in the environment are not overridden
        load_dotenv(dotenv_path=self.env_path, override=False)
        logger.debug(f"Loaded environment variables from {self.env_path}")
        return True

    def raw(self, name: str) -> Optional[str]:
        """Environment value for ``name``, prefixed form first"""
        for key in (self.prefix + name, name):
            value = os.getenv(key)
            if value is not None:
                return value
        return None

    def get(self, name: str, default: Any) -> Any:
        """Value for ``name`` converted to the type of ``default``

        Unparseable numbers and booleans log a warning and fall back to the
        default. Strings starting with ``~/`` are expanded.
        """
        raw = self.raw(name)
        if raw is None:
            return self._expand(default)

        for kind, parse in PARSERS.items():
            if isinstance(default, kind):
                try:
                    return parse(raw)
                except ValueError:
                    logger.warning(
                        f"Invalid {kind.__name__} for {name}: {raw!r}, using default {default!r}"
                    )
                    return default
        return self._expand(raw)

    def get_url(self, name: str, default: str) -> str:
        """HTTP(S) URL without a trailing slash; invalid values fall back to the default"""
        value = str(self.get(name, default)).strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            logger.warning(f"{name}={value!r} is not an http(s) URL, using default {default!r}")
            return default.rstrip("/")
        return value

    def get_path(self, name: str, default: Path) -> Path:
        """Filesystem path with ``~`` expanded"""
        return Path(str(self.get(name, str(default)))).expanduser()

    @staticmethod
    def _expand(value: Any) -> Any:
        if isinstance(value, str) and value.startswith("~/"):
            return str(Path(value).expanduser())
        return value


_config_loader = None


def get_config_loader() -> ConfigLoader:
    """Get or create the shared ConfigLoader instance"""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader
