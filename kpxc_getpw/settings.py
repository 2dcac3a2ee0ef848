from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from kpxc_getpw.errors import ConfigLoadError
from kpxc_getpw.protocol import DEFAULT_ASSOCIATE_TIMEOUT
from kpxc_getpw.transport import DEFAULT_TIMEOUT

APP_DIR = "kpxc-getpw"
STORE_FILE = "associations.json"

ENV_VARS = {
    "config_path": "KPXC_GETPW_CONFIG",
    "socket_path": "KPXC_GETPW_SOCKET",
    "proxy": "KPXC_GETPW_PROXY",
    "timeout": "KPXC_GETPW_TIMEOUT",
    "associate_timeout": "KPXC_GETPW_ASSOCIATE_TIMEOUT",
    "passphrase": "KPXC_GETPW_PASSPHRASE",
}


def default_config_path() -> str:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, APP_DIR, STORE_FILE)


@dataclass(frozen=True)
class Settings:
    config_path: str
    socket_path: Optional[str] = None
    proxy: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    associate_timeout: float = DEFAULT_ASSOCIATE_TIMEOUT
    passphrase: Optional[str] = None


class SettingsResolver:
    """
    Resolution order:
      1) explicit overrides (CLI flags); None means "not given"
      2) os.environ (after optional .env loading)
      3) defaults
    """
    def __init__(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        auto_dotenv: bool = True,
        dotenv_path: Optional[str] = None,
    ):
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=False)
        self._overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def get(self, name: str) -> Optional[Any]:
        if name in self._overrides:
            return self._overrides[name]
        env = ENV_VARS.get(name)
        if env and os.environ.get(env):
            return os.environ[env]
        return None

    def _seconds(self, name: str, default: float) -> float:
        v = self.get(name)
        if v is None:
            return default
        try:
            seconds = float(v)
        except (TypeError, ValueError) as e:
            raise ConfigLoadError(f"{name} must be a number of seconds, got {v!r}") from e
        if seconds <= 0:
            raise ConfigLoadError(f"{name} must be positive, got {v!r}")
        return seconds

    def resolve(self) -> Settings:
        return Settings(
            config_path=os.path.expanduser(self.get("config_path") or default_config_path()),
            socket_path=self.get("socket_path"),
            proxy=self.get("proxy"),
            timeout=self._seconds("timeout", DEFAULT_TIMEOUT),
            associate_timeout=self._seconds("associate_timeout", DEFAULT_ASSOCIATE_TIMEOUT),
            passphrase=self.get("passphrase"),
        )


def load_settings(overrides: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Settings:
    return SettingsResolver(overrides, **kwargs).resolve()
