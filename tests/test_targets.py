from __future__ import annotations

from pathlib import Path

import pytest

from hostdeploy.registry import RegistryPath
from hostdeploy.targets import (
    LocationClassifier,
    LogicalTarget,
    Placeholder,
    ResourceKind,
    caller_roots,
    default_protected_roots,
    profile_roots,
    substitute,
    substitute_key,
    validate_template,
)


@pytest.mark.parametrize(
    "template",
    [
        r"%APPDATA%\Contoso\agent.ini",
        r"%LOCALAPPDATA%\Contoso\cache",
        r"%USERPROFILE%\Desktop\Contoso.lnk",
        r"%appdata%\Contoso\lowercase.ini",
    ],
)
def test_placeholder_targets_are_per_user(template: str) -> None:
    assert LocationClassifier([]).is_per_user_template(LogicalTarget(template))


@pytest.mark.parametrize(
    "template",
    [
        r"C:\ProgramData\Contoso\agent.ini",
        r"C:\Users\alice\AppData\Roaming\Contoso\agent.ini",
        r"C:\Users\Public\APPDATA\agent.ini",
        r"%APPDATA\Contoso\agent.ini",
        r"D:\USERPROFILE%\notes.txt",
    ],
)
def test_fixed_targets_are_not_per_user(template: str) -> None:
    assert not LocationClassifier([]).is_per_user_template(LogicalTarget(template))


def test_registry_targets_are_per_user_only_under_current_user_hive() -> None:
    classifier = LocationClassifier([])
    assert classifier.is_per_user_template(LogicalTarget(r"HKCU:\Software\Contoso", ResourceKind.REGISTRY))
    assert classifier.is_per_user_template(LogicalTarget(r"HKEY_CURRENT_USER\Software\Contoso", ResourceKind.REGISTRY))
    assert not classifier.is_per_user_template(LogicalTarget(r"HKLM:\SOFTWARE\Contoso", ResourceKind.REGISTRY))


def test_substitute_uses_profile_roots(tmp_path: Path) -> None:
    home = tmp_path / "alice"
    roots = profile_roots(home)
    assert substitute(LogicalTarget(r"%APPDATA%\Contoso\agent.ini"), roots) == home / "AppData" / "Roaming" / "Contoso" / "agent.ini"
    assert substitute(LogicalTarget(r"%LOCALAPPDATA%/Contoso"), roots) == home / "AppData" / "Local" / "Contoso"
    assert substitute(LogicalTarget(r"%USERPROFILE%\notes.txt"), roots) == home / "notes.txt"


def test_substitute_leaves_fixed_targets_alone(tmp_path: Path) -> None:
    fixed = tmp_path / "fixed.ini"
    assert substitute(LogicalTarget(str(fixed)), profile_roots(tmp_path)) == fixed


def test_caller_roots_fall_back_to_home_layout(tmp_path: Path) -> None:
    roots = caller_roots({"USERPROFILE": str(tmp_path)})
    assert roots[Placeholder.HOME] == tmp_path
    assert roots[Placeholder.ROAMING_DATA] == tmp_path / "AppData" / "Roaming"
    assert roots[Placeholder.LOCAL_DATA] == tmp_path / "AppData" / "Local"

    explicit = caller_roots({"USERPROFILE": str(tmp_path), "APPDATA": str(tmp_path / "roam")})
    assert explicit[Placeholder.ROAMING_DATA] == tmp_path / "roam"


@pytest.mark.parametrize(
    "template",
    [
        r"%APPDATA%\..\..\Windows\evil.dll",
        r"C:\Data\%APPDATA%\agent.ini",
        r"%APPDATA%\%LOCALAPPDATA%\agent.ini",
    ],
)
def test_unsafe_templates_are_rejected(template: str) -> None:
    with pytest.raises(ValueError):
        validate_template(LogicalTarget(template))


def test_substitute_key_maps_current_user_to_loaded_hive() -> None:
    target = LogicalTarget(r"HKCU:\Software\Contoso", ResourceKind.REGISTRY)
    sid = "S-1-5-21-1-2-3-1001"
    assert str(substitute_key(target, sid)) == rf"HKU:\{sid}\Software\Contoso"
    assert str(substitute_key(target, None)) == r"HKCU:\Software\Contoso"
    machine = LogicalTarget(r"HKLM:\SOFTWARE\Contoso", ResourceKind.REGISTRY)
    assert str(substitute_key(machine, sid)) == r"HKLM:\SOFTWARE\Contoso"


def test_requires_elevation_matches_protected_prefixes() -> None:
    classifier = LocationClassifier([r"C:\Program Files", r"C:\Windows"])
    assert classifier.requires_elevation(Path(r"C:\Program Files\Contoso\agent.exe"))
    assert classifier.requires_elevation(Path(r"c:\windows"))
    assert not classifier.requires_elevation(Path(r"C:\Program FilesX\agent.exe"))
    assert not classifier.requires_elevation(Path(r"C:\Users\alice\AppData\Roaming\agent.ini"))


def test_requires_elevation_for_machine_registry_root() -> None:
    classifier = LocationClassifier([])
    assert classifier.requires_elevation(RegistryPath.parse(r"HKLM:\SOFTWARE\Contoso"))
    assert classifier.requires_elevation(RegistryPath.parse(r"HKEY_LOCAL_MACHINE\SOFTWARE\Contoso"))
    assert not classifier.requires_elevation(RegistryPath.parse(r"HKCU:\Software\Contoso"))
    assert not classifier.requires_elevation(RegistryPath.parse(r"HKU:\S-1-5-21-1-2-3-1001\Software\Contoso"))


def test_default_protected_roots_prefer_environment() -> None:
    roots = default_protected_roots({"ProgramFiles": r"D:\Apps", "SystemRoot": r"C:\Windows"})
    assert roots[0] == r"D:\Apps"
    assert r"C:\Program Files" in roots
    assert r"C:\ProgramData" in roots
    assert roots.count(r"C:\Windows") == 1


@pytest.mark.parametrize("template", ["HKCU:", "HKEY_LOCAL_MACHINE", r"HKU:\S-1-5-21-1-2-3-1001"])
def test_registry_targets_must_name_a_key_below_the_hive(template: str) -> None:
    with pytest.raises(ValueError, match="below the hive root"):
        validate_template(LogicalTarget(template, ResourceKind.REGISTRY))
