from __future__ import annotations

from pathlib import Path

import pytest

from hostdeploy.engine import CopyFile, DeleteFile, RemoveEntry, RemoveMode, SetEntry
from hostdeploy.installer import DEFAULT_SUCCESS_EXIT_CODES
from hostdeploy.manifest import Lifecycle, load_manifest
from hostdeploy.registry import ValueType
from hostdeploy.targets import ResourceKind


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")
    return path


def test_manifest_converts_to_engine_steps(tmp_path: Path) -> None:
    manifest_path = _write(
        tmp_path / "pkg" / "deploy.yaml",
        r"""
schema_version: "0.1"
package:
  name: Contoso Agent
  installer: setup.exe
  install_arguments: /S
  success_exit_codes: [0, 1]
install:
  files:
    - source: payload/agent.ini
      destination: '%APPDATA%\Contoso\agent.ini'
  registry:
    - key: 'HKCU:\Software\Contoso'
      name: Servers
      value: [a.contoso.example, b.contoso.example]
      type: MULTI_SZ
      action: set
uninstall:
  files:
    - path: '%APPDATA%\Contoso'
  registry:
    - key: 'HKCU:\Software\Contoso'
      name: Servers
      action: delete_value
    - key: 'HKLM:\SOFTWARE\Contoso'
      action: delete_key
""",
    )

    manifest = load_manifest(manifest_path)

    assert manifest.package.name == "Contoso Agent"
    assert manifest.package.installer == (tmp_path / "pkg" / "setup.exe").resolve()
    assert manifest.package.success_exit_codes == frozenset({0, 1})

    [copy_step] = manifest.file_steps(Lifecycle.INSTALL)
    assert isinstance(copy_step.operation, CopyFile)
    assert copy_step.operation.source == (tmp_path / "pkg" / "payload" / "agent.ini").resolve()
    assert copy_step.target.kind == ResourceKind.FILE

    [set_step] = manifest.entry_steps(Lifecycle.INSTALL)
    assert set_step.operation == SetEntry(
        name="Servers", value=["a.contoso.example", "b.contoso.example"], value_type=ValueType.MULTI_SZ
    )
    assert set_step.target.kind == ResourceKind.REGISTRY

    [delete_step] = manifest.file_steps(Lifecycle.UNINSTALL)
    assert isinstance(delete_step.operation, DeleteFile)
    removals = [step.operation for step in manifest.entry_steps(Lifecycle.UNINSTALL)]
    assert removals == [RemoveEntry(mode=RemoveMode.VALUE, name="Servers"), RemoveEntry(mode=RemoveMode.KEY)]


def test_minimal_manifest_uses_defaults(tmp_path: Path) -> None:
    manifest = load_manifest(_write(tmp_path / "deploy.yaml", 'schema_version: "0.1"\npackage:\n  name: Tools\n'))
    assert manifest.package.installer is None
    assert manifest.package.success_exit_codes == DEFAULT_SUCCESS_EXIT_CODES
    assert manifest.file_steps(Lifecycle.INSTALL) == []
    assert manifest.entry_steps(Lifecycle.UNINSTALL) == []


def test_schema_errors_name_the_location(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "deploy.yaml",
        """
schema_version: "0.1"
package:
  name: Tools
install:
  registry:
    - key: 'HKCU:\\Software\\Tools'
      action: rename
""",
    )
    with pytest.raises(ValueError, match=r"install\.registry\.0\.action"):
        load_manifest(path)


def test_set_requires_name_value_and_type(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "deploy.yaml",
        """
schema_version: "0.1"
package:
  name: Tools
install:
  registry:
    - key: 'HKCU:\\Software\\Tools'
      name: Enabled
      value: 1
      action: set
""",
    )
    with pytest.raises(ValueError, match="requires type"):
        load_manifest(path)


def test_package_files_cannot_escape_package_dir(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "pkg" / "deploy.yaml",
        """
schema_version: "0.1"
package:
  name: Tools
install:
  files:
    - source: ../outside.ini
      destination: '%APPDATA%\\Tools\\outside.ini'
""",
    )
    with pytest.raises(ValueError, match="inside the package directory"):
        load_manifest(path)


def test_misplaced_placeholder_is_rejected(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "deploy.yaml",
        """
schema_version: "0.1"
package:
  name: Tools
uninstall:
  files:
    - path: 'D:\\Data\\%USERPROFILE%\\notes.txt'
""",
    )
    with pytest.raises(ValueError, match="exactly one placeholder"):
        load_manifest(path)


def test_missing_and_non_mapping_manifests(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not found"):
        load_manifest(tmp_path / "absent.yaml")
    with pytest.raises(ValueError, match="mapping"):
        load_manifest(_write(tmp_path / "list.yaml", "- one\n- two\n"))


@pytest.mark.parametrize("value", [-1, 4294967296])
def test_out_of_range_dword_is_rejected(tmp_path: Path, value: int) -> None:
    path = _write(
        tmp_path / "deploy.yaml",
        f"""
schema_version: "0.1"
package:
  name: Tools
install:
  registry:
    - key: 'HKCU:\\Software\\Tools'
      name: Retries
      value: {value}
      type: DWORD
      action: set
""",
    )
    with pytest.raises(ValueError, match="does not fit type DWORD"):
        load_manifest(path)


def test_hive_root_delete_key_is_rejected(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "deploy.yaml",
        """
schema_version: "0.1"
package:
  name: Tools
uninstall:
  registry:
    - key: 'HKCU:'
      action: delete_key
""",
    )
    with pytest.raises(ValueError, match="below the hive root"):
        load_manifest(path)


def test_malformed_yaml_is_a_value_error(tmp_path: Path) -> None:
    path = _write(tmp_path / "deploy.yaml", 'schema_version: "0.1"\npackage: [name\n')
    with pytest.raises(ValueError, match="not valid YAML"):
        load_manifest(path)
