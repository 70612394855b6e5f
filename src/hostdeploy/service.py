from __future__ import annotations

"""Run-level state machine: installer, then files, then registry entries, fail-fast."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence, TextIO

from .engine import CopyFile, FanOutEngine, OperationResult, first_failure
from .errors import DeploymentError, ErrorKind
from .eventlog import DEFAULT_BACKUPS, DEFAULT_MAX_BYTES, DeploymentLogger
from .identity import ExecutionContext, IdentityProbe, resolve_execution_context
from .installer import InstallerInvoker, check_artifact
from .manifest import Lifecycle, Manifest, Step
from .paths import agent_home, ensure_home_dirs, env_int
from .profiles import ProfileEnumerationError, ProfileEnumerator
from .registry import RegistryBackend, WindowsRegistry
from .targets import LocationClassifier


class RunState(str, Enum):
    IDLE = "Idle"
    INSTALLING_OR_UNINSTALLING = "InstallingOrUninstalling"
    APPLYING_FILES = "ApplyingFiles"
    APPLYING_REGISTRY = "ApplyingRegistry"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED})


@dataclass
class RunReport:
    lifecycle: Lifecycle
    state: RunState = RunState.IDLE
    results: list[OperationResult] = field(default_factory=list)
    installer_exit_code: int | None = None
    error: DeploymentError | None = None

    @property
    def exit_status(self) -> int:
        return 0 if self.state == RunState.COMPLETED else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "lifecycle": self.lifecycle.value,
            "state": self.state.value,
            "exit_status": self.exit_status,
            "installer_exit_code": self.installer_exit_code,
            "results": [result.to_dict() for result in self.results],
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class DeploymentService:
    """Drives one lifecycle transition synchronously to a terminal state."""

    context: ExecutionContext
    engine: FanOutEngine
    enumerator: ProfileEnumerator
    installer: InstallerInvoker
    logger: DeploymentLogger
    state: RunState = RunState.IDLE

    @classmethod
    def create(
        cls,
        *,
        registry: RegistryBackend | None = None,
        probe: IdentityProbe | None = None,
        installer: InstallerInvoker | None = None,
        environ: Mapping[str, str] | None = None,
        protected_roots: Sequence[str] | None = None,
        console: TextIO | None = None,
    ) -> "DeploymentService":
        """Resolve the execution context once and wire every component to it."""

        dirs = ensure_home_dirs(agent_home())
        context = resolve_execution_context(probe)
        env = os.environ if environ is None else environ
        registry = registry or WindowsRegistry()
        logger = DeploymentLogger(
            dirs["logs"] / "events.jsonl",
            actor_id=context.caller_identity_label,
            max_bytes=env_int("HOSTDEPLOY_LOG_MAX_BYTES", DEFAULT_MAX_BYTES),
            backups=env_int("HOSTDEPLOY_LOG_BACKUPS", DEFAULT_BACKUPS),
            console=console,
        )
        enumerator = ProfileEnumerator(registry, environ=env)
        engine = FanOutEngine(
            context,
            classifier=LocationClassifier(protected_roots),
            enumerator=enumerator,
            registry=registry,
            logger=logger,
            environ=env,
        )
        return cls(
            context=context,
            engine=engine,
            enumerator=enumerator,
            installer=installer or InstallerInvoker(),
            logger=logger,
        )

    def _transition(self, state: RunState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Run already finished in state {self.state.value}.")
        self.state = state
        if state not in TERMINAL_STATES and state != RunState.IDLE:
            self.logger.log_event("step.started", data={"state": state.value})

    def preflight(self, manifest: Manifest, lifecycle: Lifecycle) -> None:
        """Check every input artifact before the first mutation."""

        if manifest.package.installer is not None:
            check_artifact(manifest.package.installer)
        for step in manifest.file_steps(lifecycle):
            if isinstance(step.operation, CopyFile) and not step.operation.source.is_file():
                raise DeploymentError(
                    ErrorKind.NOT_FOUND,
                    f"Source file not found: {step.operation.source}",
                    path=step.operation.source,
                )

    def _run_installer(self, manifest: Manifest, lifecycle: Lifecycle, report: RunReport) -> None:
        package = manifest.package
        if package.installer is None:
            self.logger.step("Installer: none configured, skipping")
            self.logger.log_event(
                "action.skipped",
                data={"operation": "installer", "skipped_reason": "NOT_APPLICABLE", "package": package.name},
            )
            return
        uninstall = lifecycle == Lifecycle.UNINSTALL
        arguments = package.uninstall_arguments if uninstall else package.install_arguments
        self.logger.step(f"Installer: running {lifecycle.value} for {package.name}")
        outcome = self.installer.invoke(
            package.installer,
            arguments,
            success_codes=package.success_exit_codes,
            uninstall=uninstall,
        )
        report.installer_exit_code = outcome.exit_code
        self.logger.log_event(
            "installer.invoked",
            data={
                "command": outcome.command,
                "exit_code": outcome.exit_code,
                "succeeded": outcome.succeeded,
                "lifecycle": lifecycle.value,
            },
        )
        if not outcome.succeeded:
            raise DeploymentError(
                ErrorKind.INSTALLER_FAILED,
                f"Installer exited with code {outcome.exit_code}, outside the success set "
                f"{sorted(package.success_exit_codes)}",
                exit_code=outcome.exit_code,
            )

    def _apply_steps(self, steps: list[Step], label: str, report: RunReport) -> None:
        self.logger.step(f"{label}: {len(steps)} configured step(s)")
        for step in steps:
            results = self.engine.apply(step.operation, step.target)
            report.results.extend(results)
            failure = first_failure(results)
            if failure is not None:
                raise DeploymentError(failure.error_kind, failure.message, path=failure.location)

    def run(self, manifest: Manifest, lifecycle: Lifecycle) -> RunReport:
        """Execute the lifecycle transition; any hard failure moves straight to Failed."""

        if self.state != RunState.IDLE:
            raise RuntimeError(f"Service already used for a run (state {self.state.value}).")
        report = RunReport(lifecycle=lifecycle)
        self.logger.log_event(
            "run.started",
            data={"lifecycle": lifecycle.value, "package": manifest.package.name, "context": self.context.to_dict()},
        )
        self.logger.step(
            f"Starting {lifecycle.value} of {manifest.package.name} as {self.context.caller_identity_label} "
            f"(service account: {self.context.is_elevated_service_account}, admin: {self.context.has_admin_rights})"
        )
        try:
            self.preflight(manifest, lifecycle)
            self._transition(RunState.INSTALLING_OR_UNINSTALLING)
            self._run_installer(manifest, lifecycle, report)
            self._transition(RunState.APPLYING_FILES)
            self._apply_steps(manifest.file_steps(lifecycle), "Files", report)
            self._transition(RunState.APPLYING_REGISTRY)
            self._apply_steps(manifest.entry_steps(lifecycle), "Registry", report)
        except DeploymentError as exc:
            self._transition(RunState.FAILED)
            report.state = self.state
            report.error = exc
            self.logger.log_event("run.failed", data={"lifecycle": lifecycle.value, "error": exc.to_dict()})
            self.logger.step(f"FAILED: {lifecycle.value} of {manifest.package.name}: {exc.message}")
            return report

        self._transition(RunState.COMPLETED)
        report.state = self.state
        self.logger.log_event(
            "run.completed",
            data={"lifecycle": lifecycle.value, "actions": len(report.results)},
        )
        self.logger.step(f"SUCCESS: {lifecycle.value} of {manifest.package.name} ({len(report.results)} action(s))")
        return report

    def plan(self, manifest: Manifest, lifecycle: Lifecycle) -> list[dict[str, Any]]:
        """Resolve every configured step without applying anything."""

        planned: list[dict[str, Any]] = []
        for step in [*manifest.file_steps(lifecycle), *manifest.entry_steps(lifecycle)]:
            entry: dict[str, Any] = {
                "operation": step.operation.label,
                "target": step.target.template,
                "fans_out": self.engine.fans_out(step.target),
            }
            try:
                actions = self.engine.resolve(step.operation, step.target)
            except ProfileEnumerationError as exc:
                actions = []
                entry["warning"] = str(exc)
            entry["actions"] = [action.to_dict() for action in actions]
            planned.append(entry)
        return planned

    def profiles(self) -> dict[str, Any]:
        return {
            "filesystem": [profile.to_dict() for profile in self.enumerator.list_filesystem_profiles()],
            "registry": [profile.to_dict() for profile in self.enumerator.list_registry_profiles()],
        }
