from __future__ import annotations

"""Append-only deployment event log with sanitization and size-based rotation."""

import json
import platform
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any, TextIO

from .security import sanitize_event_data


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "run.started",
    "run.completed",
    "run.failed",
    "step.started",
    "installer.invoked",
    "action.applied",
    "action.skipped",
    "action.failed",
    "profiles.warning",
    "risk.flagged",
}
DEFAULT_MAX_BYTES = 1024 * 1024
DEFAULT_BACKUPS = 3


def _utc_now_rfc3339() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def detect_agent_version() -> str:
    """Resolve installed package version with local fallback."""

    try:
        return package_version("hostdeploy")
    except PackageNotFoundError:
        return "0.1.0"


@dataclass(frozen=True)
class BuildInfo:
    """Static build/runtime metadata attached to every event."""

    agent_version: str
    python_version: str
    platform: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_version": self.agent_version,
            "python_version": self.python_version,
            "platform": self.platform,
        }


class DeploymentLogger:
    """Durable JSONL record of every decision and action, plus console step lines."""

    def __init__(
        self,
        events_path: Path,
        *,
        actor_id: str = "unknown",
        max_bytes: int = DEFAULT_MAX_BYTES,
        backups: int = DEFAULT_BACKUPS,
        console: TextIO | None = None,
    ) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.actor_id = actor_id
        self.max_bytes = max_bytes
        self.backups = backups
        self.console = console if console is not None else sys.stdout
        self.build = BuildInfo(
            agent_version=detect_agent_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def _backup_path(self, index: int) -> Path:
        return self.events_path.with_name(f"{self.events_path.name}.{index}")

    def _rotate_if_needed(self, incoming: int) -> None:
        if self.max_bytes <= 0 or not self.events_path.exists():
            return
        if self.events_path.stat().st_size + incoming <= self.max_bytes:
            return
        if self.backups <= 0:
            self.events_path.unlink()
            return
        oldest = self._backup_path(self.backups)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.backups - 1, 0, -1):
            source = self._backup_path(index)
            if source.exists():
                source.replace(self._backup_path(index + 1))
        self.events_path.replace(self._backup_path(1))

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        line = _safe_json(payload) + "\n"
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed(len(line.encode("utf-8")))
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(line)

    def _base_event(self, *, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            data = {"reason": "invalid_event_type", "requested_event_type": event_type}
            event_type = "risk.flagged"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "actor": {"kind": "system", "id": self.actor_id},
            "build": self.build.to_dict(),
            "data": data,
        }

    def log_event(self, event_type: str, *, data: dict[str, Any], _emit_sanitize_flag: bool = True) -> None:
        """Write one sanitized event and an optional sanitization risk flag."""

        try:
            sanitized_data, stats = sanitize_event_data(data)
            self._append_jsonl(self._base_event(event_type=event_type, data=sanitized_data))
            if _emit_sanitize_flag and (stats.redacted_fields or stats.truncated_fields):
                self.log_event(
                    "risk.flagged",
                    data={
                        "reason": "log_sanitized",
                        "trigger_event_type": event_type,
                        "fields_redacted_count": stats.redacted_fields,
                        "fields_truncated_count": stats.truncated_fields,
                    },
                    _emit_sanitize_flag=False,
                )
        except Exception as exc:  # noqa: BLE001
            print(f"[hostdeploy] failed to append event: {exc}", file=sys.stderr)

    def step(self, message: str) -> None:
        """Print one human-readable progress line."""

        print(f"[{_utc_now_rfc3339()}] {message}", file=self.console)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events
