from __future__ import annotations

"""Discovery of real user profiles, separately for disk roots and loaded registry hives."""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from .registry import RegistryBackend, RegistryPath


PROFILE_LIST_KEY = RegistryPath.parse(r"HKLM:\SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList")
LOADED_HIVES_KEY = RegistryPath(hive="HKU", subkey="")
PROFILE_PATH_VALUE = "ProfileImagePath"

DOMAIN_JOINED_SID = re.compile(r"^S-1-5-21-\d+-\d+-\d+-\d+$", re.IGNORECASE)
CLOUD_JOINED_SID = re.compile(r"^S-1-12-1-\d+-\d+-\d+-\d+$", re.IGNORECASE)
ENV_REFERENCE = re.compile(r"%([^%]+)%")


class ProfileEnumerationError(OSError):
    """Raised when the host refuses or fails to list profiles."""


@dataclass(frozen=True)
class UserProfile:
    stable_id: str
    filesystem_root: Path | None
    has_loaded_config_hive: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "stable_id": self.stable_id,
            "filesystem_root": str(self.filesystem_root) if self.filesystem_root else None,
            "has_loaded_config_hive": self.has_loaded_config_hive,
        }


def is_real_user_sid(value: str) -> bool:
    """True only for domain-joined or cloud-identity-joined account identifiers."""

    candidate = value.strip()
    return bool(DOMAIN_JOINED_SID.match(candidate) or CLOUD_JOINED_SID.match(candidate))


def expand_env_references(value: str, environ: Mapping[str, str]) -> str:
    lookup = {key.upper(): val for key, val in environ.items()}

    def _replace(match: re.Match[str]) -> str:
        return lookup.get(match.group(1).upper(), match.group(0))

    return ENV_REFERENCE.sub(_replace, value)


class ProfileEnumerator:
    """Recomputes profile views on every call; results are sorted by stable id."""

    def __init__(
        self,
        registry: RegistryBackend,
        *,
        environ: Mapping[str, str] | None = None,
        path_exists: Callable[[Path], bool] | None = None,
    ) -> None:
        self.registry = registry
        self.environ = environ if environ is not None else os.environ
        self.path_exists = path_exists or (lambda path: path.is_dir())

    def _profile_list(self) -> dict[str, Path]:
        roots: dict[str, Path] = {}
        try:
            sids = self.registry.subkeys(PROFILE_LIST_KEY)
        except OSError as exc:
            raise ProfileEnumerationError(f"Cannot enumerate profile list: {exc}") from exc
        for sid in sids:
            if not is_real_user_sid(sid):
                continue
            try:
                found = self.registry.get_value(PROFILE_LIST_KEY.child(sid), PROFILE_PATH_VALUE)
            except OSError:
                continue
            if found is None or not isinstance(found[0], str) or not found[0].strip():
                continue
            roots[sid.upper()] = Path(expand_env_references(found[0].strip(), self.environ))
        return roots

    def _loaded_hives(self) -> list[str]:
        try:
            names = self.registry.subkeys(LOADED_HIVES_KEY)
        except OSError as exc:
            raise ProfileEnumerationError(f"Cannot enumerate loaded user hives: {exc}") from exc
        return sorted({name.upper() for name in names if is_real_user_sid(name)})

    def list_filesystem_profiles(self) -> list[UserProfile]:
        """Profiles from the machine profile list whose root folder exists right now."""

        roots = self._profile_list()
        try:
            loaded = set(self._loaded_hives())
        except ProfileEnumerationError:
            loaded = set()
        profiles: list[UserProfile] = []
        for sid in sorted(roots):
            root = roots[sid]
            if not self.path_exists(root):
                continue
            profiles.append(UserProfile(stable_id=sid, filesystem_root=root, has_loaded_config_hive=sid in loaded))
        return profiles

    def list_registry_profiles(self) -> list[UserProfile]:
        """Profiles with a currently loaded configuration hive, regardless of disk state."""

        loaded = self._loaded_hives()
        try:
            roots = self._profile_list()
        except ProfileEnumerationError:
            roots = {}
        return [
            UserProfile(stable_id=sid, filesystem_root=roots.get(sid), has_loaded_config_hive=True)
            for sid in loaded
        ]
