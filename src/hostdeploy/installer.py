from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .errors import DeploymentError, ErrorKind


DEFAULT_SUCCESS_EXIT_CODES = frozenset({0, 3010, 1641})
SUPPORTED_EXTENSIONS = (".msi", ".exe")


@dataclass(frozen=True)
class InstallerOutcome:
    command: str
    exit_code: int
    succeeded: bool


def _quoted(path: Path) -> str:
    return f'"{path}"'


def check_artifact(artifact: Path) -> None:
    """Fail before any mutation when the installer is missing or of an unknown kind."""

    if artifact.suffix.lower() not in SUPPORTED_EXTENSIONS:
        raise DeploymentError(
            ErrorKind.UNSUPPORTED,
            f"Unsupported installer type '{artifact.suffix or '<none>'}': {artifact}",
            hint=f"Supported extensions: {', '.join(SUPPORTED_EXTENSIONS)}",
        )
    if not artifact.is_file():
        raise DeploymentError(ErrorKind.NOT_FOUND, f"Installer artifact not found: {artifact}", path=artifact)


def build_command(artifact: Path, arguments: str, *, uninstall: bool = False) -> str:
    """Command line for CreateProcess; `arguments` is appended exactly as configured."""

    suffix = artifact.suffix.lower()
    if suffix == ".msi":
        head = f"msiexec.exe {'/x' if uninstall else '/i'} {_quoted(artifact)}"
    elif suffix == ".exe":
        head = _quoted(artifact)
    else:
        raise DeploymentError(ErrorKind.UNSUPPORTED, f"Unsupported installer type '{suffix}': {artifact}")
    extra = arguments.strip()
    return f"{head} {extra}" if extra else head


def _run_blocking(command: str) -> int:
    completed = subprocess.run(command, check=False)  # noqa: S603
    return completed.returncode


class InstallerInvoker:
    """Runs the vendor install/uninstall tool to completion and judges its exit code."""

    def __init__(self, runner: Callable[[str], int] | None = None) -> None:
        self._run = runner or _run_blocking

    def invoke(
        self,
        artifact: Path,
        arguments: str,
        *,
        success_codes: frozenset[int] = DEFAULT_SUCCESS_EXIT_CODES,
        uninstall: bool = False,
    ) -> InstallerOutcome:
        check_artifact(artifact)
        command = build_command(artifact, arguments, uninstall=uninstall)
        try:
            exit_code = self._run(command)
        except FileNotFoundError as exc:
            raise DeploymentError(ErrorKind.NOT_FOUND, f"Cannot start installer: {exc}", path=artifact) from exc
        except OSError as exc:
            raise DeploymentError(ErrorKind.IO_ERROR, f"Cannot start installer: {exc}", path=artifact) from exc
        return InstallerOutcome(command=command, exit_code=exit_code, succeeded=exit_code in success_codes)
