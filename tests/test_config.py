from __future__ import annotations

from pathlib import Path

import pytest

from civreg.config import CONFIG_FILENAME, DATA_DIR_ENV, RegistryConfig, find_config, load_config, parse_config
from civreg.service import Registry


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_file(tmp_path: Path) -> None:
    config = load_config(None, env={})
    assert config == RegistryConfig()
    assert config.notification_window_days == 14
    assert config.conflict_retries == 0
    assert config.audit is True


def test_toml_sections_and_relative_paths(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "etc" / CONFIG_FILENAME,
        """
[registry]
data_dir = "var/registry"
ruleset = "rules/local.toml"
notification_window_days = 30
conflict_retries = 2
audit = false

[logging]
level = "debug"
""",
    )
    config = load_config(path, env={})
    base = (tmp_path / "etc").resolve()
    assert config.data_dir == base / "var" / "registry"
    assert config.ruleset == base / "rules" / "local.toml"
    assert config.notification_window_days == 30
    assert config.conflict_retries == 2
    assert config.audit is False
    assert config.log_level == "DEBUG"


def test_env_overrides_data_dir(tmp_path: Path) -> None:
    config = parse_config({"registry": {"data_dir": "ignored"}}, base=tmp_path, env={DATA_DIR_ENV: str(tmp_path / "env")})
    assert config.data_dir == tmp_path / "env"


@pytest.mark.parametrize(
    "section",
    [
        {"notification_window_days": -1},
        {"conflict_retries": "3"},
        {"conflict_retries": True},
        {"audit": "yes"},
        {"data_dir": ""},
    ],
)
def test_invalid_registry_values(tmp_path: Path, section: dict) -> None:
    with pytest.raises(ValueError):
        parse_config({"registry": section}, base=tmp_path, env={})


def test_invalid_log_level(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="logging.level"):
        parse_config({"logging": {"level": "chatty"}}, base=tmp_path, env={})


def test_malformed_toml(tmp_path: Path) -> None:
    path = _write(tmp_path / CONFIG_FILENAME, "[registry\n")
    with pytest.raises(ValueError, match="parse"):
        load_config(path, env={})


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.toml", env={})


def test_find_config_walks_up(tmp_path: Path) -> None:
    path = _write(tmp_path / CONFIG_FILENAME, "[registry]\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_config(nested) == path.resolve()


def test_registry_uses_configured_window(tmp_path: Path) -> None:
    config = RegistryConfig(data_dir=tmp_path / "reg", notification_window_days=30, audit=False)
    registry = Registry(config=config)
    assert registry.data_dir == (tmp_path / "reg").resolve()
    assert registry.engine.notification_window_days == 30
    assert registry.audit_entries() == []
