"""JSON-backed overrides for the outbox settings."""
from __future__ import annotations

import json
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH, OUTBOX, OutboxSettings
from services.errors import ConfigError


_KNOWN_KEYS = {f.name for f in fields(OutboxSettings)}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _coerce(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    return value


def load_settings(path: Optional[Path] = None, base: OutboxSettings = OUTBOX) -> OutboxSettings:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    changes = {key: _coerce(key, value) for key, value in data.items() if key in _KNOWN_KEYS}
    try:
        return replace(base, **changes)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def save_settings(settings: OutboxSettings, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps(asdict(settings), ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_settings(path: Optional[Path] = None, **changes: Any) -> OutboxSettings:
    target = path or CONFIG_PATH
    current = load_settings(target)
    unknown = set(changes) - _KNOWN_KEYS
    if unknown:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
    try:
        updated = replace(current, **{k: _coerce(k, v) for k, v in changes.items()})
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    save_settings(updated, target)
    return updated


__all__ = ["load_settings", "save_settings", "update_settings"]
