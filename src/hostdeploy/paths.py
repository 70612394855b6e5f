from __future__ import annotations

import os
from pathlib import Path


def agent_home() -> Path:
    configured = os.environ.get("HOSTDEPLOY_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".hostdeploy"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    logs = base / "logs"
    for path in (base, logs):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "logs": logs}


def env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    if value < 0:
        return fallback
    return value
