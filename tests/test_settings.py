from __future__ import annotations

from pathlib import Path

import pytest

from config.settings import AgiConfig, ManagerConfig, Settings

INI = """\
[asmanager]
server = "pbx.internal"
port = 5039
username = ops
secret = hunter2

[agi]
debug = true
option_delimiter = |

[fastagi]
port = 4574
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("AMI_HOST", "AMI_PORT", "AMI_SECRET", "AGI_DEBUG", "CONFIG_FILE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path: Path) -> None:
    settings = Settings(config_file=tmp_path / "missing.conf")

    assert settings.ami_host == "localhost"
    assert settings.ami_port == 5038
    assert settings.agi_option_delimiter == ","
    assert settings.fastagi_port == 4573
    assert ManagerConfig.from_settings(settings) == ManagerConfig()
    assert AgiConfig.from_settings(settings) == AgiConfig()


def test_ini_file_supplies_values(tmp_path: Path) -> None:
    path = tmp_path / "agi.conf"
    path.write_text(INI)

    settings = Settings(config_file=path)

    assert settings.ami_host == "pbx.internal"
    assert settings.ami_port == 5039
    assert settings.ami_username == "ops"
    assert settings.ami_secret == "hunter2"
    assert settings.agi_debug is True
    assert settings.agi_option_delimiter == "|"
    assert settings.fastagi_port == 4574


def test_environment_beats_ini_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "agi.conf"
    path.write_text(INI)
    monkeypatch.setenv("CONFIG_FILE", str(path))
    monkeypatch.setenv("AMI_SECRET", "from-env")

    settings = Settings()

    assert settings.ami_secret == "from-env"
    assert settings.ami_username == "ops"


def test_manager_config_is_frozen() -> None:
    config = ManagerConfig()

    with pytest.raises(AttributeError):
        config.host = "elsewhere"  # type: ignore[misc]
