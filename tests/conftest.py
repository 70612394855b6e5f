from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any

import pytest

from hostdeploy.engine import FanOutEngine
from hostdeploy.eventlog import DeploymentLogger
from hostdeploy.identity import ExecutionContext
from hostdeploy.profiles import PROFILE_LIST_KEY, PROFILE_PATH_VALUE, ProfileEnumerator
from hostdeploy.registry import RegistryPath, ValueType, is_hive_root
from hostdeploy.targets import LocationClassifier


DOMAIN_SID = "S-1-5-21-1111111111-2222222222-3333333333-1001"
CLOUD_SID = "S-1-12-1-1234567890-1234567890-1234567890-1234567890"
OTHER_DOMAIN_SID = "S-1-5-21-1111111111-2222222222-3333333333-1002"


def _parts(path: RegistryPath) -> tuple[str, ...]:
    return (path.hive, *[part for part in path.subkey.split("\\") if part])


class MemoryRegistry:
    """In-memory registry double keyed by exact path components."""

    def __init__(self) -> None:
        self.keys: dict[tuple[str, ...], dict[str, tuple[Any, ValueType]]] = {}
        self.failing_hives: set[str] = set()
        self.read_only_hives: set[str] = set()
        self.writes: list[str] = []

    def _ensure(self, parts: tuple[str, ...]) -> dict[str, tuple[Any, ValueType]]:
        for end in range(2, len(parts) + 1):
            self.keys.setdefault(parts[:end], {})
        return self.keys.setdefault(parts, {})

    def _check_write(self, path: RegistryPath) -> None:
        if path.hive in self.read_only_hives:
            raise PermissionError(f"Access is denied: {path}")
        self.writes.append(str(path))

    def subkeys(self, path: RegistryPath) -> list[str]:
        if path.hive in self.failing_hives:
            raise OSError(f"enumeration refused for {path.hive}")
        parts = _parts(path)
        if len(parts) > 1 and parts not in self.keys:
            raise FileNotFoundError(str(path))
        return [key[len(parts)] for key in self.keys if len(key) == len(parts) + 1 and key[: len(parts)] == parts]

    def key_exists(self, path: RegistryPath) -> bool:
        return _parts(path) in self.keys

    def get_value(self, path: RegistryPath, name: str) -> tuple[Any, ValueType] | None:
        return self.keys.get(_parts(path), {}).get(name)

    def set_value(self, path: RegistryPath, name: str, value: Any, value_type: ValueType) -> None:
        self._check_write(path)
        self._ensure(_parts(path))[name] = (value, value_type)

    def delete_value(self, path: RegistryPath, name: str) -> bool:
        self._check_write(path)
        values = self.keys.get(_parts(path))
        if values is None or name not in values:
            return False
        del values[name]
        return True

    def delete_key_tree(self, path: RegistryPath) -> bool:
        if is_hive_root(path):
            raise ValueError(f"Refusing to delete registry hive root: {path}")
        self._check_write(path)
        parts = _parts(path)
        if parts not in self.keys:
            return False
        for key in [key for key in self.keys if key[: len(parts)] == parts]:
            del self.keys[key]
        return True

    def add_profile(self, sid: str, root: Path | str) -> None:
        self._ensure(_parts(PROFILE_LIST_KEY.child(sid)))[PROFILE_PATH_VALUE] = (str(root), ValueType.EXPAND_SZ)

    def load_hive(self, sid: str) -> None:
        self._ensure(("HKU", sid))


class FixedProbe:
    def __init__(self, sid: str | None, admin: bool, label: str = "CONTOSO\\deploy") -> None:
        self.sid = sid
        self.admin = admin
        self.label = label

    def caller_sid(self) -> str | None:
        return self.sid

    def caller_label(self) -> str:
        return self.label

    def is_admin(self) -> bool:
        return self.admin


@pytest.fixture
def registry() -> MemoryRegistry:
    return MemoryRegistry()


@pytest.fixture
def console() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(tmp_path: Path, console: io.StringIO) -> DeploymentLogger:
    return DeploymentLogger(tmp_path / "logs" / "events.jsonl", actor_id="test", console=console)


@pytest.fixture
def caller_home(tmp_path: Path) -> Path:
    home = tmp_path / "caller"
    home.mkdir()
    return home


@pytest.fixture
def protected_root(tmp_path: Path) -> Path:
    root = tmp_path / "ProgramFiles"
    root.mkdir()
    return root


@pytest.fixture
def make_engine(registry: MemoryRegistry, logger: DeploymentLogger, caller_home: Path, protected_root: Path):
    def _make(*, elevated: bool, admin: bool) -> FanOutEngine:
        context = ExecutionContext(
            is_elevated_service_account=elevated,
            has_admin_rights=admin,
            caller_identity_label="NT AUTHORITY\\SYSTEM" if elevated else "CONTOSO\\alice",
        )
        environ = {"USERPROFILE": str(caller_home)}
        return FanOutEngine(
            context,
            classifier=LocationClassifier([str(protected_root)]),
            enumerator=ProfileEnumerator(registry, environ=environ),
            registry=registry,
            logger=logger,
            environ=environ,
        )

    return _make


def read_events(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
