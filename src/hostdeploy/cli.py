from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .manifest import Lifecycle, load_manifest
from .profiles import ProfileEnumerationError
from .service import DeploymentService


def _service() -> DeploymentService:
    return DeploymentService.create()


def main() -> int:
    parser = argparse.ArgumentParser(description="hostdeploy per-user deployment agent")
    sub = parser.add_subparsers(dest="command", required=True)

    install_cmd = sub.add_parser("install", help="Install the package and apply configured files and entries")
    install_cmd.add_argument("--manifest", required=True, help="Path to the deployment manifest YAML")

    uninstall_cmd = sub.add_parser("uninstall", help="Uninstall the package and remove configured files and entries")
    uninstall_cmd.add_argument("--manifest", required=True, help="Path to the deployment manifest YAML")

    plan_cmd = sub.add_parser("plan", help="Show resolved actions without applying them")
    plan_cmd.add_argument("--manifest", required=True, help="Path to the deployment manifest YAML")
    plan_cmd.add_argument("--lifecycle", choices=["install", "uninstall"], default="install")

    sub.add_parser("context", help="Print the resolved execution context")
    sub.add_parser("profiles", help="Print filesystem and registry profile views")

    events_cmd = sub.add_parser("events", help="Print the most recent deployment log events")
    events_cmd.add_argument("--limit", type=int, default=20, help="Number of events to print")

    args = parser.parse_args()

    manifest = None
    if args.command in {"install", "uninstall", "plan"}:
        try:
            manifest = load_manifest(Path(args.manifest))
        except ValueError as exc:
            print(f"Invalid manifest: {exc}", file=sys.stderr)
            return 2

    service = _service()

    if args.command in {"install", "uninstall"}:
        report = service.run(manifest, Lifecycle(args.command))
        print(json.dumps(report.to_dict(), indent=2))
        return report.exit_status

    if args.command == "plan":
        print(json.dumps(service.plan(manifest, Lifecycle(args.lifecycle)), indent=2))
        return 0

    if args.command == "context":
        print(json.dumps(service.context.to_dict(), indent=2))
        return 0

    if args.command == "events":
        events = service.logger.iter_events()
        print(json.dumps(events[-args.limit :] if args.limit > 0 else [], indent=2))
        return 0

    if args.command == "profiles":
        try:
            views = service.profiles()
        except ProfileEnumerationError as exc:
            print(f"Profile enumeration failed: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(views, indent=2))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
