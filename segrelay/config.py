#!/usr/bin/env python3
"""
Unified configuration loader for segment-relay.

Every file found below is deep-merged over the built-in defaults, lowest
priority first, so a key set in a higher-priority file wins while keys it
leaves out fall through to the next layer:
  1) SEGRELAY_CONFIG (env, absolute or relative to CWD)  [highest]
  2) /etc/segrelay/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)           [lowest]

active_config_path() reports the highest-priority file that exists.
Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

log = logging.getLogger("segrelay.config")

_DEFAULTS: Dict[str, Any] = {
    "recorder": {
        "rotation_interval_sec": 30.0,
        "mode": "audio",
        "extensions": {"audio": "wav", "screen": "webm"},
        "sample_rate": 48000,
        "channels": 1,
        "wrap_wav": True,
    },
    "capture": {
        "audio_command": [
            "arecord",
            "-q",
            "-D",
            "default",
            "-f",
            "S16_LE",
            "-r",
            "48000",
            "-c",
            "1",
            "-t",
            "raw",
        ],
        "screen_command": [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "x11grab",
            "-i",
            ":0.0",
            "-f",
            "pulse",
            "-i",
            "default",
            "-c:v",
            "libvpx-vp9",
            "-c:a",
            "libopus",
            "-f",
            "webm",
            "pipe:1",
        ],
        "read_size": 4096,
    },
    "crypto": {
        "key": "",
    },
    "storage": {
        "backend": "memory",
        "recordings_dir": "./recordings",
        "keep_decrypted_copy": True,
        "requeue_on_startup": True,
    },
    "upload": {
        "endpoint": "",
        "field_name": "file",
        "timeout_sec": 60.0,
        "pacing_delay_sec": 0.5,
        "retry_base_delay_sec": 5.0,
        "retry_max_delay_sec": 300.0,
        "max_attempts": None,
        "drain_timeout_sec": 120.0,
        "token": "",
        "require_token": False,
        "headers": {},
    },
    "network": {
        "min_quality": "fair",
        "probe": {
            "enabled": False,
            "host": "",
            "port": 443,
            "interval_sec": 15.0,
            "timeout_sec": 3.0,
        },
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SEGRELAY_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/segrelay/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "ENCRYPTION_KEY" in os.environ:
        value = os.environ["ENCRYPTION_KEY"]
        if value:
            cfg.setdefault("crypto", {})["key"] = value

    if "REC_DIR" in os.environ:
        cfg.setdefault("storage", {})["recordings_dir"] = os.environ["REC_DIR"]

    env_map = {
        "STORAGE_BACKEND": ("storage", "backend", lambda s: s.strip().lower()),
        "STORAGE_KEEP_DECRYPTED": ("storage", "keep_decrypted_copy", _parse_bool),
        "ROTATION_INTERVAL_SEC": ("recorder", "rotation_interval_sec", float),
        "RECORDING_MODE": ("recorder", "mode", lambda s: s.strip().lower()),
        "UPLOAD_ENDPOINT": ("upload", "endpoint", str.strip),
        "UPLOAD_TOKEN": ("upload", "token", str.strip),
        "UPLOAD_MAX_ATTEMPTS": ("upload", "max_attempts", int),
        "UPLOAD_PACING_DELAY_SEC": ("upload", "pacing_delay_sec", float),
        "NETWORK_MIN_QUALITY": ("network", "min_quality", lambda s: s.strip().lower()),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (segrelay/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if _cfg_cache is None:
        get_cfg()
    return list(_search_paths)
