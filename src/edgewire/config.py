# src/edgewire/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from edgewire.env import load_dotenv_if_present

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class EdgeConfig:
    mode: str  # "dev" | "prod"

    # Byte-sniffing dispatch for servers that predate structural dispatch.
    legacy_dispatch: bool

    # Inbound envelopes larger than this are rejected before decoding.
    max_envelope_bytes: int

    port_mode: str  # "rw" | "r" | "w"
    hello_flag: int

    log_level: str


_ALLOWED_MODES = {"dev", "prod"}
_ALLOWED_PORT_MODES = {"rw", "r", "w"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class EdgeConfigFile(BaseModel):
    """Schema for JSON/YAML config files. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    mode: Optional[str] = None
    legacy_dispatch: Optional[bool] = None
    max_envelope_bytes: Optional[int] = Field(default=None, gt=0)
    port_mode: Optional[str] = None
    hello_flag: Optional[int] = Field(default=None, ge=0)
    log_level: Optional[str] = None


def validate_edge_config(cfg: EdgeConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if int(cfg.max_envelope_bytes) < 64:
        raise ValueError(f"max_envelope_bytes must be >= 64; got: {cfg.max_envelope_bytes}")

    if cfg.port_mode not in _ALLOWED_PORT_MODES:
        raise ValueError(f"port_mode must be one of {_ALLOWED_PORT_MODES}; got: {cfg.port_mode!r}")

    if int(cfg.hello_flag) < 0:
        raise ValueError(f"hello_flag must be >= 0; got: {cfg.hello_flag}")

    if str(cfg.log_level).upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {_ALLOWED_LOG_LEVELS}; got: {cfg.log_level!r}")


def default_edge_config() -> EdgeConfig:
    return EdgeConfig(
        mode="prod",
        legacy_dispatch=False,
        max_envelope_bytes=4 * 1024 * 1024,
        port_mode="rw",
        hello_flag=1000,
        log_level="INFO",
    )


def _load_raw(p: Path) -> Any:
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        return yaml.safe_load(text)
    return json.loads(text)


def _merge(raw: Json, d: EdgeConfig) -> EdgeConfig:
    return EdgeConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        legacy_dispatch=_as_bool(raw.get("legacy_dispatch"), d.legacy_dispatch),
        max_envelope_bytes=_as_int(raw.get("max_envelope_bytes"), d.max_envelope_bytes),
        port_mode=_as_str(raw.get("port_mode"), d.port_mode).strip(),
        hello_flag=_as_int(raw.get("hello_flag"), d.hello_flag),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )


def read_edge_config_file(path: str) -> EdgeConfig:
    """Read a JSON or YAML (by suffix) config file; missing keys take defaults."""
    raw = _load_raw(Path(path))
    if not isinstance(raw, dict):
        raise ValueError("edge config must be a mapping")

    try:
        parsed = EdgeConfigFile.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"invalid edge config {path!r}: {e}") from e

    cfg = _merge(parsed.model_dump(exclude_none=True), default_edge_config())
    validate_edge_config(cfg)
    return cfg


def edge_config_from_env(environ: Optional[Dict[str, str]] = None) -> EdgeConfig:
    env = os.environ if environ is None else environ
    raw: Json = {
        "mode": env.get("EDGE_MODE"),
        "legacy_dispatch": env.get("EDGE_LEGACY_DISPATCH"),
        "max_envelope_bytes": env.get("EDGE_MAX_ENVELOPE_BYTES"),
        "port_mode": env.get("EDGE_PORT_MODE"),
        "hello_flag": env.get("EDGE_HELLO_FLAG"),
        "log_level": env.get("EDGE_LOG_LEVEL"),
    }
    cfg = _merge(raw, default_edge_config())
    validate_edge_config(cfg)
    return cfg


def load_edge_config(*, config_path: Optional[str] = None) -> EdgeConfig:
    load_dotenv_if_present()
    p = config_path or os.environ.get("EDGE_CONFIG_PATH")
    if p:
        return read_edge_config_file(p)
    return edge_config_from_env()
