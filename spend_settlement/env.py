from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Dict, List, Optional


DEFAULT_ENV_FILE = ".env.settlement.local"

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _unquote(value: str) -> str:
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def parse_env_file(path: str) -> Dict[str, str]:
    """KEY=VALUE lines; blank lines, comments and ``export`` prefixes allowed."""
    target = Path(path)
    if not target.is_file():
        return {}
    values: Dict[str, str] = {}
    for raw in target.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.lower().startswith("export "):
            line = line[7:].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        values[key] = _unquote(value)
    return values


def load_env_file(path: str, *, override: bool = False) -> Dict[str, str]:
    parsed = parse_env_file(path)
    for key, value in parsed.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return parsed


def bootstrap_env_file(argv: Optional[List[str]]) -> str:
    """Load the env file before the real parser is built so its defaults see it."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=os.environ.get("ENV_FILE", DEFAULT_ENV_FILE))
    known, _ = pre.parse_known_args(argv)
    env_file = str(known.env_file).strip() or DEFAULT_ENV_FILE
    load_env_file(env_file)
    return env_file


def _raw(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def env_str(name: str, default: str = "", *fallbacks: str) -> str:
    for key in (name, *fallbacks):
        text = _raw(key)
        if text is not None:
            return text
    return default


def env_float(name: str, default: float) -> float:
    text = _raw(name)
    try:
        return float(text) if text is not None else float(default)
    except ValueError:
        return float(default)


def env_int(name: str, default: int) -> int:
    text = _raw(name)
    try:
        return int(text) if text is not None else int(default)
    except ValueError:
        return int(default)


def env_bool(name: str, default: bool) -> bool:
    text = _raw(name)
    if text is None:
        return bool(default)
    lowered = text.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return bool(default)
