from __future__ import annotations

"""Logical target templates, per-user placeholder substitution, and protected-location policy."""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence

from .registry import RegistryPath, is_hive_root


class ResourceKind(str, Enum):
    FILE = "file"
    REGISTRY = "registry"


class Placeholder(str, Enum):
    ROAMING_DATA = "%APPDATA%"
    LOCAL_DATA = "%LOCALAPPDATA%"
    HOME = "%USERPROFILE%"


PER_USER_HIVE = "HKCU"
MACHINE_HIVES = frozenset({"HKLM"})
PROTECTED_DIRECTORY_DEFAULTS = (
    ("ProgramFiles", r"C:\Program Files"),
    ("ProgramFiles(x86)", r"C:\Program Files (x86)"),
    ("SystemRoot", r"C:\Windows"),
    ("ProgramData", r"C:\ProgramData"),
)


@dataclass(frozen=True)
class LogicalTarget:
    """A configured location exactly as authored; data only, never evaluated."""

    template: str
    kind: ResourceKind = ResourceKind.FILE

    def __str__(self) -> str:
        return self.template


def find_placeholders(template: str) -> list[Placeholder]:
    folded = template.casefold()
    return [token for token in Placeholder if token.value.casefold() in folded]


def _split_segments(text: str) -> list[str]:
    return [part for part in text.replace("/", "\\").split("\\") if part]


def caller_roots(environ: Mapping[str, str] | None = None) -> dict[Placeholder, Path]:
    """Placeholder roots for the invoking identity, from its own environment."""

    env = os.environ if environ is None else environ
    home_raw = env.get("USERPROFILE", "").strip()
    home = Path(home_raw) if home_raw else Path.home()
    roaming_raw = env.get("APPDATA", "").strip()
    local_raw = env.get("LOCALAPPDATA", "").strip()
    return {
        Placeholder.HOME: home,
        Placeholder.ROAMING_DATA: Path(roaming_raw) if roaming_raw else home / "AppData" / "Roaming",
        Placeholder.LOCAL_DATA: Path(local_raw) if local_raw else home / "AppData" / "Local",
    }


def profile_roots(home: Path) -> dict[Placeholder, Path]:
    return {
        Placeholder.HOME: home,
        Placeholder.ROAMING_DATA: home / "AppData" / "Roaming",
        Placeholder.LOCAL_DATA: home / "AppData" / "Local",
    }


def validate_template(target: LogicalTarget) -> None:
    """Reject templates that cannot be substituted safely."""

    if target.kind == ResourceKind.REGISTRY:
        if is_hive_root(RegistryPath.parse(target.template)):
            raise ValueError(f"Registry targets must name a key below the hive root: {target.template}")
        return
    segments = _split_segments(target.template)
    if ".." in segments:
        raise ValueError(f"Parent-directory segments are not allowed in targets: {target.template}")
    tokens = find_placeholders(target.template)
    if not tokens:
        return
    if len(tokens) > 1 or not segments or segments[0].casefold() != tokens[0].value.casefold():
        raise ValueError(f"A per-user target must start with exactly one placeholder: {target.template}")
    if any(find_placeholders(segment) for segment in segments[1:]):
        raise ValueError(f"A per-user target must start with exactly one placeholder: {target.template}")


def substitute(target: LogicalTarget, roots: Mapping[Placeholder, Path]) -> Path:
    """Replace the leading placeholder segment with a concrete root."""

    validate_template(target)
    tokens = find_placeholders(target.template)
    if not tokens:
        return Path(target.template)
    segments = _split_segments(target.template)
    return roots[tokens[0]].joinpath(*segments[1:])


def substitute_key(target: LogicalTarget, stable_id: str | None) -> RegistryPath:
    """Map an HKCU key onto a loaded user hive, or keep it for the current caller."""

    validate_template(target)
    key = RegistryPath.parse(target.template)
    if key.hive != PER_USER_HIVE or stable_id is None:
        return key
    return RegistryPath(hive="HKU", subkey=stable_id).child(key.subkey)


def default_protected_roots(environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    lookup = {key.upper(): value for key, value in env.items()}
    roots: list[str] = []
    for name, fallback in PROTECTED_DIRECTORY_DEFAULTS:
        for candidate in (lookup.get(name.upper(), "").strip(), fallback):
            if candidate and candidate not in roots:
                roots.append(candidate)
    return roots


def _normalize(location: str | Path) -> str:
    return str(location).replace("/", "\\").rstrip("\\").casefold()


class LocationClassifier:
    """Single place that decides fan-out eligibility and elevation requirements."""

    def __init__(self, protected_roots: Sequence[str | Path] | None = None) -> None:
        roots = default_protected_roots() if protected_roots is None else protected_roots
        self.protected_roots = [_normalize(root) for root in roots if str(root).strip()]

    def is_per_user_template(self, target: LogicalTarget) -> bool:
        if target.kind == ResourceKind.REGISTRY:
            try:
                return RegistryPath.parse(target.template).hive == PER_USER_HIVE
            except ValueError:
                return False
        return bool(find_placeholders(target.template))

    def requires_elevation(self, location: Path | RegistryPath) -> bool:
        """Check a fully resolved location against machine-wide protected roots."""

        if isinstance(location, RegistryPath):
            return location.hive in MACHINE_HIVES
        normalized = _normalize(location)
        for root in self.protected_roots:
            if normalized == root or normalized.startswith(root + "\\"):
                return True
        return False
