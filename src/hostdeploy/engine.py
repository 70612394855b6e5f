from __future__ import annotations

"""Fan-out engine: resolves one logical operation into concrete per-location actions and applies them."""

import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Mapping, Union

from .errors import ErrorKind, SkipReason, error_kind_for
from .eventlog import DeploymentLogger
from .identity import ExecutionContext
from .profiles import ProfileEnumerationError, ProfileEnumerator, UserProfile
from .registry import RegistryBackend, RegistryPath, ValueType, coerce_value
from .security import is_secret_like_name
from .targets import (
    LocationClassifier,
    LogicalTarget,
    ResourceKind,
    caller_roots,
    profile_roots,
    substitute,
    substitute_key,
)


CURRENT_CALLER = "current-caller"


class RemoveMode(str, Enum):
    VALUE = "delete_value"
    KEY = "delete_key"


@dataclass(frozen=True)
class CopyFile:
    source: Path

    kind: ClassVar[ResourceKind] = ResourceKind.FILE
    label: ClassVar[str] = "copy_file"


@dataclass(frozen=True)
class DeleteFile:
    kind: ClassVar[ResourceKind] = ResourceKind.FILE
    label: ClassVar[str] = "delete_file"


@dataclass(frozen=True)
class SetEntry:
    name: str
    value: Any
    value_type: ValueType = ValueType.SZ

    kind: ClassVar[ResourceKind] = ResourceKind.REGISTRY
    label: ClassVar[str] = "set_entry"


@dataclass(frozen=True)
class RemoveEntry:
    mode: RemoveMode = RemoveMode.KEY
    name: str | None = None

    kind: ClassVar[ResourceKind] = ResourceKind.REGISTRY
    label: ClassVar[str] = "remove_entry"

    def __post_init__(self) -> None:
        if self.mode == RemoveMode.VALUE and not self.name:
            raise ValueError("Removing a single value requires a value name.")


Operation = Union[CopyFile, DeleteFile, SetEntry, RemoveEntry]


@dataclass(frozen=True)
class ResolvedAction:
    location: Path | RegistryPath
    applies_to: str
    requires_elevation: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": str(self.location),
            "applies_to": self.applies_to,
            "requires_elevation": self.requires_elevation,
        }


@dataclass(frozen=True)
class OperationResult:
    operation: str
    location: str | None
    applies_to: str | None
    succeeded: bool
    skipped_reason: SkipReason = SkipReason.NONE
    error_kind: ErrorKind = ErrorKind.NONE
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_hard_failure(self) -> bool:
        return not self.succeeded and self.error_kind != ErrorKind.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "location": self.location,
            "applies_to": self.applies_to,
            "succeeded": self.succeeded,
            "skipped_reason": self.skipped_reason.value,
            "error_kind": self.error_kind.value,
            "message": self.message,
        }


def first_failure(results: list[OperationResult]) -> OperationResult | None:
    for result in results:
        if result.is_hard_failure:
            return result
    return None


class FanOutEngine:
    """Applies operations one resolved action at a time, in profile enumeration order."""

    def __init__(
        self,
        context: ExecutionContext,
        *,
        classifier: LocationClassifier,
        enumerator: ProfileEnumerator,
        registry: RegistryBackend,
        logger: DeploymentLogger,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.context = context
        self.classifier = classifier
        self.enumerator = enumerator
        self.registry = registry
        self.logger = logger
        self.environ = os.environ if environ is None else environ

    def fans_out(self, target: LogicalTarget) -> bool:
        # Fixed targets never fan out, even when run as the service account.
        return self.context.is_elevated_service_account and self.classifier.is_per_user_template(target)

    def _profiles_for(self, kind: ResourceKind) -> list[UserProfile]:
        if kind == ResourceKind.REGISTRY:
            return self.enumerator.list_registry_profiles()
        return self.enumerator.list_filesystem_profiles()

    def _locate(self, target: LogicalTarget, profile: UserProfile | None) -> Path | RegistryPath:
        if target.kind == ResourceKind.REGISTRY:
            return substitute_key(target, profile.stable_id if profile else None)
        if profile is None:
            return substitute(target, caller_roots(self.environ))
        if profile.filesystem_root is None:
            raise ValueError(f"Profile {profile.stable_id} has no filesystem root.")
        return substitute(target, profile_roots(profile.filesystem_root))

    def _action(self, target: LogicalTarget, profile: UserProfile | None) -> ResolvedAction:
        location = self._locate(target, profile)
        return ResolvedAction(
            location=location,
            applies_to=profile.stable_id if profile else CURRENT_CALLER,
            requires_elevation=self.classifier.requires_elevation(location),
        )

    def resolve(self, operation: Operation, target: LogicalTarget) -> list[ResolvedAction]:
        """Expand a logical target into zero, one, or one-per-profile concrete actions."""

        if operation.kind != target.kind:
            raise ValueError(f"{operation.label} cannot act on a {target.kind.value} target: {target.template}")
        if not self.fans_out(target):
            return [self._action(target, None)]
        return [self._action(target, profile) for profile in self._profiles_for(target.kind)]

    def apply(self, operation: Operation, target: LogicalTarget) -> list[OperationResult]:
        """Resolve and apply; stops at the first hard failure and reports it in the results."""

        try:
            actions = self.resolve(operation, target)
        except ProfileEnumerationError as exc:
            self.logger.log_event(
                "profiles.warning",
                data={"operation": operation.label, "target": target.template, "reason": str(exc)},
            )
            self.logger.step(f"WARNING: profile enumeration failed, treating audience as empty: {exc}")
            actions = []

        if not actions:
            result = OperationResult(
                operation=operation.label,
                location=target.template,
                applies_to=None,
                succeeded=True,
                skipped_reason=SkipReason.NO_PROFILES_FOUND,
                message="no user profiles found for per-user target",
            )
            self._report(result)
            return [result]

        results: list[OperationResult] = []
        for action in actions:
            if action.requires_elevation and not self.context.has_admin_rights:
                result = self._failure(
                    operation,
                    action,
                    ErrorKind.ACCESS_DENIED,
                    f"Administrator rights are required to modify {action.location}",
                )
            else:
                result = self._execute(operation, action)
            self._report(result)
            results.append(result)
            if result.is_hard_failure:
                break
        return results

    def _failure(self, operation: Operation, action: ResolvedAction, kind: ErrorKind, message: str) -> OperationResult:
        return OperationResult(
            operation=operation.label,
            location=str(action.location),
            applies_to=action.applies_to,
            succeeded=False,
            error_kind=kind,
            message=message,
        )

    def _execute(self, operation: Operation, action: ResolvedAction) -> OperationResult:
        try:
            applied, details = self._perform(operation, action.location)
        except OSError as exc:
            kind = error_kind_for(exc)
            if isinstance(operation, CopyFile) and kind == ErrorKind.NOT_FOUND and not operation.source.exists():
                message = f"Source file not found: {operation.source}"
            else:
                message = f"{operation.label} failed at {action.location}: {exc}"
            return self._failure(operation, action, kind, message)
        except (ValueError, OverflowError, TypeError) as exc:
            message = f"{operation.label} rejected at {action.location}: {exc}"
            return self._failure(operation, action, ErrorKind.IO_ERROR, message)
        return OperationResult(
            operation=operation.label,
            location=str(action.location),
            applies_to=action.applies_to,
            succeeded=True,
            skipped_reason=SkipReason.NONE if applied else SkipReason.NOT_APPLICABLE,
            message="applied" if applied else "already absent",
            details=details,
        )

    def _perform(self, operation: Operation, location: Path | RegistryPath) -> tuple[bool, dict[str, Any]]:
        if isinstance(operation, CopyFile):
            assert isinstance(location, Path)
            location.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(operation.source, location)
            return True, {"source": str(operation.source)}
        if isinstance(operation, DeleteFile):
            assert isinstance(location, Path)
            if location.is_dir() and not location.is_symlink():
                shutil.rmtree(location)
                return True, {}
            if location.exists() or location.is_symlink():
                location.unlink()
                return True, {}
            return False, {}
        assert isinstance(location, RegistryPath)
        if isinstance(operation, SetEntry):
            value = coerce_value(operation.value, operation.value_type)
            self.registry.set_value(location, operation.name, value, operation.value_type)
            shown = "[redacted]" if is_secret_like_name(operation.name) else value
            return True, {"name": operation.name, "type": operation.value_type.value, "value": shown}
        if operation.mode == RemoveMode.VALUE:
            return self.registry.delete_value(location, operation.name or ""), {"name": operation.name}
        return self.registry.delete_key_tree(location), {"mode": operation.mode.value}

    def _report(self, result: OperationResult) -> None:
        if result.is_hard_failure:
            event_type = "action.failed"
        elif result.skipped_reason != SkipReason.NONE:
            event_type = "action.skipped"
        else:
            event_type = "action.applied"
        data = result.to_dict()
        data["identity"] = self.context.caller_identity_label
        if result.details:
            data["details"] = result.details
        self.logger.log_event(event_type, data=data)
