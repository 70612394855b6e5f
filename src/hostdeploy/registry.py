from __future__ import annotations

"""Registry path parsing, typed values, and the winreg-backed accessor."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

try:  # Windows-only module; the accessor refuses to start without it
    import winreg  # type: ignore
except ImportError:  # pragma: no cover - not available on Linux runners
    winreg = None  # type: ignore


HIVE_ALIASES = {
    "HKLM": "HKLM",
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKCU": "HKCU",
    "HKEY_CURRENT_USER": "HKCU",
    "HKU": "HKU",
    "HKEY_USERS": "HKU",
    "HKCR": "HKCR",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKCC": "HKCC",
    "HKEY_CURRENT_CONFIG": "HKCC",
}


class ValueType(str, Enum):
    SZ = "SZ"
    EXPAND_SZ = "EXPAND_SZ"
    DWORD = "DWORD"
    QWORD = "QWORD"
    MULTI_SZ = "MULTI_SZ"
    BINARY = "BINARY"


INTEGER_LIMITS = {ValueType.DWORD: 0xFFFFFFFF, ValueType.QWORD: 0xFFFFFFFFFFFFFFFF}


@dataclass(frozen=True)
class RegistryPath:
    """Canonical `HIVE:\\sub\\key` location with a short hive name."""

    hive: str
    subkey: str

    @classmethod
    def parse(cls, text: str) -> "RegistryPath":
        cleaned = text.strip().replace("/", "\\")
        if ":\\" in cleaned:
            hive_name, subkey = cleaned.split(":\\", 1)
        elif cleaned.endswith(":"):
            hive_name, subkey = cleaned[:-1], ""
        else:
            hive_name, _, subkey = cleaned.partition("\\")
        hive = HIVE_ALIASES.get(hive_name.strip().upper())
        if hive is None:
            raise ValueError(f"Unsupported registry hive in path: {text}")
        parts = [part for part in subkey.split("\\") if part]
        return cls(hive=hive, subkey="\\".join(parts))

    def child(self, *parts: str) -> "RegistryPath":
        segments = [self.subkey] if self.subkey else []
        for part in parts:
            segments.extend(piece for piece in part.replace("/", "\\").split("\\") if piece)
        return RegistryPath(hive=self.hive, subkey="\\".join(segments))

    def __str__(self) -> str:
        return f"{self.hive}:\\{self.subkey}"


def coerce_value(value: Any, value_type: ValueType) -> Any:
    """Normalize a configured value to the Python type stored for `value_type`."""

    if value_type in INTEGER_LIMITS:
        if isinstance(value, bool):
            number = int(value)
        elif isinstance(value, str):
            number = int(value.strip(), 0)
        else:
            number = int(value)
        if not 0 <= number <= INTEGER_LIMITS[value_type]:
            raise ValueError(f"{number} is outside the {value_type.value} range 0..{INTEGER_LIMITS[value_type]}")
        return number
    if value_type == ValueType.MULTI_SZ:
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]
    if value_type == ValueType.BINARY:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return bytes.fromhex(str(value).replace(" ", ""))
    return str(value)


def is_hive_root(path: RegistryPath) -> bool:
    """True for a hive itself or a user hive loaded directly under HKU."""

    if not path.subkey:
        return True
    return path.hive == "HKU" and "\\" not in path.subkey


class RegistryBackend(Protocol):
    def subkeys(self, path: RegistryPath) -> list[str]:  # pragma: no cover - protocol
        ...

    def key_exists(self, path: RegistryPath) -> bool:  # pragma: no cover - protocol
        ...

    def get_value(self, path: RegistryPath, name: str) -> tuple[Any, ValueType] | None:  # pragma: no cover - protocol
        ...

    def set_value(self, path: RegistryPath, name: str, value: Any, value_type: ValueType) -> None:  # pragma: no cover - protocol
        ...

    def delete_value(self, path: RegistryPath, name: str) -> bool:  # pragma: no cover - protocol
        ...

    def delete_key_tree(self, path: RegistryPath) -> bool:  # pragma: no cover - protocol
        ...


class WindowsRegistry:
    """Registry accessor backed by winreg."""

    def __init__(self) -> None:
        if winreg is None:
            raise RuntimeError("winreg not available on this platform")
        self._hives = {
            "HKLM": winreg.HKEY_LOCAL_MACHINE,
            "HKCU": winreg.HKEY_CURRENT_USER,
            "HKU": winreg.HKEY_USERS,
            "HKCR": winreg.HKEY_CLASSES_ROOT,
            "HKCC": winreg.HKEY_CURRENT_CONFIG,
        }
        self._types = {
            ValueType.SZ: winreg.REG_SZ,
            ValueType.EXPAND_SZ: winreg.REG_EXPAND_SZ,
            ValueType.DWORD: winreg.REG_DWORD,
            ValueType.QWORD: winreg.REG_QWORD,
            ValueType.MULTI_SZ: winreg.REG_MULTI_SZ,
            ValueType.BINARY: winreg.REG_BINARY,
        }

    def _hive(self, path: RegistryPath) -> Any:
        return self._hives[path.hive]

    def subkeys(self, path: RegistryPath) -> list[str]:
        names: list[str] = []
        with winreg.OpenKey(self._hive(path), path.subkey) as key:
            index = 0
            while True:
                try:
                    names.append(winreg.EnumKey(key, index))
                except OSError:
                    break
                index += 1
        return names

    def key_exists(self, path: RegistryPath) -> bool:
        try:
            with winreg.OpenKey(self._hive(path), path.subkey):
                return True
        except FileNotFoundError:
            return False

    def get_value(self, path: RegistryPath, name: str) -> tuple[Any, ValueType] | None:
        try:
            with winreg.OpenKey(self._hive(path), path.subkey) as key:
                value, raw_type = winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return None
        for value_type, code in self._types.items():
            if code == raw_type:
                return value, value_type
        return value, ValueType.BINARY

    def set_value(self, path: RegistryPath, name: str, value: Any, value_type: ValueType) -> None:
        with winreg.CreateKeyEx(self._hive(path), path.subkey, 0, winreg.KEY_WRITE) as key:
            winreg.SetValueEx(key, name, 0, self._types[value_type], coerce_value(value, value_type))

    def delete_value(self, path: RegistryPath, name: str) -> bool:
        try:
            with winreg.OpenKey(self._hive(path), path.subkey, 0, winreg.KEY_SET_VALUE) as key:
                winreg.DeleteValue(key, name)
        except FileNotFoundError:
            return False
        return True

    def delete_key_tree(self, path: RegistryPath) -> bool:
        if is_hive_root(path):
            raise ValueError(f"Refusing to delete registry hive root: {path}")
        if not self.key_exists(path):
            return False
        for name in self.subkeys(path):
            self.delete_key_tree(path.child(name))
        parent, _, leaf = path.subkey.rpartition("\\")
        with winreg.OpenKey(self._hive(path), parent, 0, winreg.KEY_WRITE) as key:
            winreg.DeleteKey(key, leaf)
        return True
