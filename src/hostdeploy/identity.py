from __future__ import annotations

"""Caller identity and privilege resolution, computed once per run."""

import csv
import getpass
import io
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Protocol


SERVICE_ACCOUNT_SID = "S-1-5-18"


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable privilege snapshot passed explicitly to every component."""

    is_elevated_service_account: bool
    has_admin_rights: bool
    caller_identity_label: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_elevated_service_account": self.is_elevated_service_account,
            "has_admin_rights": self.has_admin_rights,
            "caller_identity_label": self.caller_identity_label,
        }


class IdentityProbe(Protocol):
    def caller_sid(self) -> str | None:  # pragma: no cover - protocol
        ...

    def caller_label(self) -> str:  # pragma: no cover - protocol
        ...

    def is_admin(self) -> bool:  # pragma: no cover - protocol
        ...


def _parse_whoami_user(output: str) -> tuple[str, str] | None:
    for row in csv.reader(io.StringIO(output)):
        if len(row) >= 2 and row[1].strip().upper().startswith("S-"):
            return row[0].strip(), row[1].strip().upper()
    return None


class WindowsIdentityProbe:
    """Reads the caller's account identifier and admin role from the running host."""

    def __init__(self) -> None:
        self._whoami: tuple[str, str] | None = None
        self._queried = False

    def _query_whoami(self) -> tuple[str, str] | None:
        if self._queried:
            return self._whoami
        self._queried = True
        try:
            output = subprocess.run(  # noqa: S603
                ["whoami", "/user", "/fo", "csv", "/nh"],
                check=False,
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if output.returncode != 0:
            return None
        self._whoami = _parse_whoami_user(output.stdout)
        return self._whoami

    def caller_sid(self) -> str | None:
        parsed = self._query_whoami()
        return parsed[1] if parsed else None

    def caller_label(self) -> str:
        parsed = self._query_whoami()
        if parsed:
            return parsed[0]
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return "unknown"

    def is_admin(self) -> bool:
        if sys.platform != "win32":
            return False
        try:
            import ctypes

            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False


def resolve_execution_context(probe: IdentityProbe | None = None) -> ExecutionContext:
    """Query the host once and freeze the result; never raises, admin check fails closed."""

    probe = probe or WindowsIdentityProbe()
    try:
        sid = probe.caller_sid()
    except OSError:
        sid = None
    try:
        has_admin = bool(probe.is_admin())
    except OSError:
        has_admin = False
    try:
        label = probe.caller_label() or "unknown"
    except OSError:
        label = "unknown"
    return ExecutionContext(
        is_elevated_service_account=(sid or "").upper() == SERVICE_ACCOUNT_SID,
        has_admin_rights=has_admin,
        caller_identity_label=label,
    )
