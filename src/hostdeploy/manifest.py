from __future__ import annotations

"""Deployment manifest loading, schema validation, and conversion to engine operations."""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .engine import CopyFile, DeleteFile, Operation, RemoveEntry, RemoveMode, SetEntry
from .installer import DEFAULT_SUCCESS_EXIT_CODES
from .registry import ValueType, coerce_value
from .targets import LogicalTarget, ResourceKind, validate_template


class Lifecycle(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"


@dataclass(frozen=True)
class Step:
    operation: Operation
    target: LogicalTarget


@dataclass(frozen=True)
class PackageSpec:
    name: str
    installer: Path | None = None
    install_arguments: str = ""
    uninstall_arguments: str = ""
    success_exit_codes: frozenset[int] = DEFAULT_SUCCESS_EXIT_CODES


@dataclass(frozen=True)
class Manifest:
    path: Path
    package: PackageSpec
    files: dict[Lifecycle, list[Step]] = field(default_factory=dict)
    registry: dict[Lifecycle, list[Step]] = field(default_factory=dict)

    def file_steps(self, lifecycle: Lifecycle) -> list[Step]:
        return list(self.files.get(lifecycle, []))

    def entry_steps(self, lifecycle: Lifecycle) -> list[Step]:
        return list(self.registry.get(lifecycle, []))


def _schema_path() -> Path:
    return Path(__file__).resolve().parent / "schema" / "manifest.schema.json"


def _load_schema() -> dict[str, Any]:
    path = _schema_path()
    if not path.exists():
        raise ValueError(f"Manifest schema file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Manifest schema is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Manifest schema must be a JSON object: {path}")
    return payload


def _package_file(package_dir: Path, relative: str, manifest_path: Path) -> Path:
    candidate = (package_dir / relative).resolve()
    if Path(relative).is_absolute() or not candidate.is_relative_to(package_dir.resolve()):
        raise ValueError(f"Package file must stay inside the package directory ({manifest_path}): {relative}")
    return candidate


def _file_target(template: str, manifest_path: Path) -> LogicalTarget:
    target = LogicalTarget(template=template, kind=ResourceKind.FILE)
    try:
        validate_template(target)
    except ValueError as exc:
        raise ValueError(f"{manifest_path}: {exc}") from exc
    return target


def _entry_step(item: dict[str, Any], manifest_path: Path, where: str) -> Step:
    target = LogicalTarget(template=item["key"], kind=ResourceKind.REGISTRY)
    try:
        validate_template(target)
    except ValueError as exc:
        raise ValueError(f"{manifest_path} at {where}: {exc}") from exc
    action = item["action"]
    name = item.get("name")
    if action == "set":
        missing = [key for key in ("name", "value", "type") if key not in item]
        if missing:
            raise ValueError(f"{manifest_path} at {where}: action 'set' requires {', '.join(missing)}")
        value_type = ValueType(item["type"])
        try:
            value = coerce_value(item["value"], value_type)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{manifest_path} at {where}: value does not fit type {value_type.value}: {exc}") from exc
        return Step(operation=SetEntry(name=name, value=value, value_type=value_type), target=target)
    if action == "delete_value":
        if not name:
            raise ValueError(f"{manifest_path} at {where}: action 'delete_value' requires name")
        return Step(operation=RemoveEntry(mode=RemoveMode.VALUE, name=name), target=target)
    return Step(operation=RemoveEntry(mode=RemoveMode.KEY), target=target)


def load_manifest(path: Path) -> Manifest:
    """Load and validate a deployment manifest YAML file."""

    if not path.is_file():
        raise ValueError(f"Manifest file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Manifest is not valid YAML: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Manifest file must be a mapping: {path}")
    validator = Draft202012Validator(_load_schema())
    errors = sorted(validator.iter_errors(payload), key=lambda err: [str(part) for part in err.path])
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Manifest schema validation failed for {path} at {where}: {first.message}")

    package_dir = path.resolve().parent
    raw_package = payload["package"]
    installer = raw_package.get("installer")
    package = PackageSpec(
        name=raw_package["name"],
        installer=_package_file(package_dir, installer, path) if installer else None,
        install_arguments=raw_package.get("install_arguments", ""),
        uninstall_arguments=raw_package.get("uninstall_arguments", ""),
        success_exit_codes=frozenset(raw_package.get("success_exit_codes", DEFAULT_SUCCESS_EXIT_CODES)),
    )

    install = payload.get("install", {})
    uninstall = payload.get("uninstall", {})
    files = {
        Lifecycle.INSTALL: [
            Step(
                operation=CopyFile(source=_package_file(package_dir, item["source"], path)),
                target=_file_target(item["destination"], path),
            )
            for item in install.get("files", [])
        ],
        Lifecycle.UNINSTALL: [
            Step(operation=DeleteFile(), target=_file_target(item["path"], path))
            for item in uninstall.get("files", [])
        ],
    }
    registry = {
        Lifecycle.INSTALL: [
            _entry_step(item, path, f"install.registry.{index}")
            for index, item in enumerate(install.get("registry", []))
        ],
        Lifecycle.UNINSTALL: [
            _entry_step(item, path, f"uninstall.registry.{index}")
            for index, item in enumerate(uninstall.get("registry", []))
        ],
    }
    return Manifest(path=path, package=package, files=files, registry=registry)
