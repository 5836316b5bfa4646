# tests/test_config.py
from __future__ import annotations

import json
from dataclasses import replace

import pytest

from edgewire.config import (
    default_edge_config,
    edge_config_from_env,
    load_edge_config,
    read_edge_config_file,
    validate_edge_config,
)
from edgewire.env import reset_dotenv_state

_ENV_KEYS = (
    "EDGE_CONFIG_PATH",
    "EDGE_MODE",
    "EDGE_LEGACY_DISPATCH",
    "EDGE_MAX_ENVELOPE_BYTES",
    "EDGE_PORT_MODE",
    "EDGE_HELLO_FLAG",
    "EDGE_LOG_LEVEL",
    "EDGE_DOTENV_PATH",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # setenv first so monkeypatch restores an unset variable even if a .env load sets it
    for k in _ENV_KEYS:
        monkeypatch.setenv(k, "x")
        monkeypatch.delenv(k)
    monkeypatch.chdir(tmp_path)
    reset_dotenv_state()
    yield monkeypatch
    reset_dotenv_state()


def test_defaults_are_valid() -> None:
    cfg = default_edge_config()
    validate_edge_config(cfg)
    assert cfg.mode == "prod"
    assert cfg.legacy_dispatch is False
    assert cfg.hello_flag == 1000
    assert cfg.port_mode == "rw"


def test_environment_overrides(clean_env) -> None:
    clean_env.setenv("EDGE_LEGACY_DISPATCH", "yes")
    clean_env.setenv("EDGE_MAX_ENVELOPE_BYTES", "65536")
    clean_env.setenv("EDGE_PORT_MODE", "r")
    clean_env.setenv("EDGE_LOG_LEVEL", "debug")
    cfg = load_edge_config()
    assert cfg.legacy_dispatch is True
    assert cfg.max_envelope_bytes == 65536
    assert cfg.port_mode == "r"
    assert cfg.log_level == "DEBUG"


def test_unparseable_env_values_fall_back_to_defaults() -> None:
    cfg = edge_config_from_env({"EDGE_HELLO_FLAG": "lots", "EDGE_LEGACY_DISPATCH": "maybe"})
    assert cfg.hello_flag == 1000
    assert cfg.legacy_dispatch is False


def test_json_file(clean_env, tmp_path) -> None:
    p = tmp_path / "edge.json"
    p.write_text(json.dumps({"mode": "dev", "hello_flag": 7}), encoding="utf-8")
    clean_env.setenv("EDGE_CONFIG_PATH", str(p))
    cfg = load_edge_config()
    assert cfg.mode == "dev"
    assert cfg.hello_flag == 7
    assert cfg.port_mode == "rw"


def test_yaml_file(tmp_path) -> None:
    p = tmp_path / "edge.yaml"
    p.write_text("legacy_dispatch: true\nport_mode: w\nmax_envelope_bytes: 1024\n", encoding="utf-8")
    cfg = read_edge_config_file(str(p))
    assert cfg.legacy_dispatch is True
    assert cfg.port_mode == "w"
    assert cfg.max_envelope_bytes == 1024


@pytest.mark.parametrize(
    "body",
    [
        {"unknown_key": 1},
        {"max_envelope_bytes": 0},
        {"mode": "chaos"},
        {"port_mode": "x"},
        {"log_level": "LOUD"},
    ],
)
def test_bad_files_fail_fast(tmp_path, body) -> None:
    p = tmp_path / "edge.json"
    p.write_text(json.dumps(body), encoding="utf-8")
    with pytest.raises(ValueError):
        read_edge_config_file(str(p))


def test_file_must_be_a_mapping(tmp_path) -> None:
    p = tmp_path / "edge.yml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_edge_config_file(str(p))


def test_validate_rejects_tiny_envelope_limit() -> None:
    with pytest.raises(ValueError):
        validate_edge_config(replace(default_edge_config(), max_envelope_bytes=10))


def test_dotenv_is_loaded_once(clean_env, tmp_path) -> None:
    env_file = tmp_path / "edge.env"
    env_file.write_text("EDGE_PORT_MODE=r\n", encoding="utf-8")
    clean_env.setenv("EDGE_DOTENV_PATH", str(env_file))

    assert load_edge_config().port_mode == "r"

    env_file.write_text("EDGE_PORT_MODE=w\n", encoding="utf-8")
    assert load_edge_config().port_mode == "r"
