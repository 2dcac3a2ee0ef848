import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from kpxc_getpw.errors import ConfigLoadError
from kpxc_getpw.settings import ENV_VARS, default_config_path, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS.values():
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    s = load_settings(auto_dotenv=False)
    assert s.config_path == os.path.join(str(tmp_path), "kpxc-getpw", "associations.json")
    assert s.socket_path is None
    assert s.proxy is None
    assert s.timeout == 10.0
    assert s.associate_timeout == 120.0
    assert s.passphrase is None


def test_default_config_path_without_xdg(monkeypatch):
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    assert default_config_path().endswith(os.path.join(".config", "kpxc-getpw", "associations.json"))


def test_environment_then_overrides(monkeypatch):
    monkeypatch.setenv("KPXC_GETPW_SOCKET", "/run/user/1000/kpxc.sock")
    monkeypatch.setenv("KPXC_GETPW_TIMEOUT", "2.5")
    monkeypatch.setenv("KPXC_GETPW_PASSPHRASE", "hunter22")

    s = load_settings({"timeout": None, "socket_path": None}, auto_dotenv=False)
    assert s.socket_path == "/run/user/1000/kpxc.sock"
    assert s.timeout == 2.5
    assert s.passphrase == "hunter22"

    s = load_settings({"timeout": 7.0, "socket_path": "/tmp/other.sock"}, auto_dotenv=False)
    assert s.socket_path == "/tmp/other.sock"
    assert s.timeout == 7.0


def test_dotenv_file_is_loaded(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("KPXC_GETPW_PROXY=keepassxc-proxy\n", encoding="utf-8")
    # Register the variable with monkeypatch so the value loaded from .env is undone.
    monkeypatch.setenv("KPXC_GETPW_PROXY", "placeholder")
    monkeypatch.delenv("KPXC_GETPW_PROXY")

    s = load_settings(dotenv_path=str(env_file))
    assert s.proxy == "keepassxc-proxy"


@pytest.mark.parametrize("value", ["soon", "0", "-3"])
def test_invalid_timeout_is_config_error(monkeypatch, value):
    monkeypatch.setenv("KPXC_GETPW_TIMEOUT", value)
    with pytest.raises(ConfigLoadError):
        load_settings(auto_dotenv=False)
