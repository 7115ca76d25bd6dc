#!/usr/bin/env python3
"""
Unified configuration loader for yaptabber.

Load order (first found wins):
  1) YAPTABBER_CONFIG (env, absolute or relative to CWD)
  2) /etc/yaptabber/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present; command-line values
are applied on top through apply_overrides().
"""
from __future__ import annotations

import copy
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "sample_rate": 44100,
        "channels": 2,
        "block_ms": 100,
        "command": None,
    },
    "capture": {
        "ffmpeg": "ffmpeg",
        "input_format": "avfoundation",
        "webcam_device": "",
        "screen_device": "",
        "audio_device": "0",
        "screen": {"framerate": 5, "size": "1280x720"},
        "webcam": {"framerate": 30, "size": "640x360"},
        "audio": {"sample_rate": 44100},
    },
    "recording": {
        "level_threshold_db": 50.0,
        "silence_grace_sec": 5.0,
        "min_session_sec": 15.0,
        "max_session_sec": 600.0,
        "force_kill_timeout_sec": 10.0,
        "upload_settle_sec": 2.0,
    },
    "paths": {
        "tmp_dir": tempfile.gettempdir(),
    },
    "storage": {
        "backend": "s3",
        "bucket": "yaptabber",
        "s3": {
            "endpoint": "",
            "region": "",
            "access_key_id": "",
            "secret_access_key": "",
            "force_path_style": True,
            "part_size_bytes": 5 * 1024 * 1024,
            "queue_size": 4,
        },
        "directory": {"target_dir": ""},
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


class ConfigError(Exception):
    """Raised when the configuration is missing required values."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("YAPTABBER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/yaptabber/config.yaml"),
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


def _deep_merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "TMP_DIR" in os.environ:
        cfg.setdefault("paths", {})["tmp_dir"] = os.environ["TMP_DIR"]

    storage_env = {
        "STORAGE_BACKEND": ("backend",),
        "STORAGE_BUCKET": ("bucket",),
        "S3_ENDPOINT": ("s3", "endpoint"),
        "S3_REGION": ("s3", "region"),
        "AWS_ACCESS_KEY_ID": ("s3", "access_key_id"),
        "AWS_SECRET_ACCESS_KEY": ("s3", "secret_access_key"),
    }
    for env_key, path in storage_env.items():
        value = os.environ.get(env_key, "").strip()
        if not value:
            continue
        section = cfg.setdefault("storage", {})
        for key in path[:-1]:
            section = section.setdefault(key, {})
        section[path[-1]] = value

    capture_env = {
        "WEBCAM_DEVICE": "webcam_device",
        "SCREEN_DEVICE": "screen_device",
    }
    for env_key, key in capture_env.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault("capture", {})[key] = value


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (yaptabber/ -> project root)
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

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
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def apply_overrides(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge command-line values (highest precedence) into the cached config."""
    global _cfg_cache
    _cfg_cache = _deep_merge(get_cfg(), overrides)
    return _cfg_cache


def require_storage_credentials(cfg: Mapping[str, Any]) -> None:
    storage = cfg.get("storage") or {}
    backend = str(storage.get("backend", "s3")).strip().lower()
    if backend == "s3":
        s3_cfg = storage.get("s3") or {}
        missing = [
            key
            for key in ("endpoint", "region", "access_key_id", "secret_access_key")
            if not str(s3_cfg.get(key) or "").strip()
        ]
        if missing:
            raise ConfigError(
                "storage.s3 requires " + ", ".join(f"storage.s3.{key}" for key in missing)
            )
    elif backend == "directory":
        target = str((storage.get("directory") or {}).get("target_dir") or "").strip()
        if not target:
            raise ConfigError("directory backend requires storage.directory.target_dir")
    else:
        raise ConfigError(f"unknown storage backend: {backend}")
    if not str(storage.get("bucket") or "").strip():
        raise ConfigError("storage.bucket must not be empty")
