"""
Unit tests for the entity type CLI.

Tests cover:
- Loading type files (YAML, JSON, single type and lists)
- Evolution check reports and exit codes
- Id derivation
"""

import json

import pytest

from service.entity_server.data import derive_entity_id
from service.entity_server.schema import TypedValue
from service.entity_server.tools import TypesCLI, load_types
from service.entity_server.tools.types_cli import main

V1 = """
entity_types:
  - name: K8S_POD
    attributes:
      - {name: external_id, kind: string, identifying: true}
      - {name: phase, kind: string}
"""

V2_APPEND = """
entity_types:
  - name: K8S_POD
    attributes:
      - {name: external_id, kind: string, identifying: true}
      - {name: phase, kind: string}
      - {name: labels, kind: string}
  - name: HOST
    attributes:
      - {name: fqdn, kind: string, identifying: true}
"""

V2_BREAKING = """
entity_types:
  - name: K8S_POD
    attributes:
      - {name: external_id, kind: string, identifying: true}
      - {name: phase, kind: int64}
"""


@pytest.fixture
def files(tmp_path):
    paths = {}
    for name, text in (("v1", V1), ("append", V2_APPEND), ("breaking", V2_BREAKING)):
        path = tmp_path / f"{name}.yaml"
        path.write_text(text)
        paths[name] = str(path)
    return paths


class TestLoadTypes:
    """Tests for load_types."""

    def test_list_under_key(self, files):
        types = load_types(files["append"])

        assert sorted(types) == ["HOST", "K8S_POD"]

    def test_single_type_json(self, tmp_path):
        path = tmp_path / "pod.json"
        path.write_text(json.dumps({
            "name": "K8S_POD",
            "attributes": [{"name": "external_id", "kind": "string", "identifying": True}],
        }))

        assert list(load_types(str(path))) == ["K8S_POD"]

    def test_duplicate_type(self, tmp_path):
        path = tmp_path / "dup.yaml"
        path.write_text(V1 + V1.replace("entity_types:\n", ""))

        with pytest.raises(ValueError, match="declared twice"):
            load_types(str(path))

    def test_invalid_type(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: T\nattributes:\n  - {name: a, kind: string}\n")

        with pytest.raises(ValueError, match="identifying"):
            load_types(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="Cannot read"):
            load_types(str(tmp_path / "nope.yaml"))


class TestCheck:
    """Tests for the check command."""

    def test_compatible(self, files):
        ok, report = TypesCLI().check(files["v1"], files["append"])

        assert ok
        assert {r["kind"] for r in report} == {"ATTRIBUTE_APPENDED", "TYPE_ADDED"}

    def test_breaking(self, files):
        ok, report = TypesCLI().check(files["v1"], files["breaking"])

        assert not ok
        assert report[0]["kind"] == "ATTRIBUTE_KIND_CHANGED"
        assert report[0]["is_breaking"]

    def test_removed_type_is_not_breaking(self, files):
        ok, report = TypesCLI().check(files["append"], files["v1"])

        removed = [r for r in report if r["kind"] == "TYPE_REMOVED"]
        assert [r["path"] for r in removed] == ["HOST"]
        assert not any(r["is_breaking"] for r in removed)
        # Dropping "labels" from K8S_POD is still breaking
        assert not ok

    def test_main_exit_codes(self, files, capsys):
        assert main(["check", files["v1"], files["append"]]) == 0
        assert "Compatible" in capsys.readouterr().out

        assert main(["check", files["v1"], files["breaking"]]) == 1
        assert "[BREAKING] ATTRIBUTE_KIND_CHANGED" in capsys.readouterr().out

    def test_main_json_output(self, files, capsys):
        main(["check", "--format", "json", files["v1"], files["breaking"]])

        output = json.loads(capsys.readouterr().out)
        assert output["compatible"] is False
        assert output["changes"][0]["path"] == "K8S_POD.phase"

    def test_main_usage_error(self, files, tmp_path, capsys):
        assert main(["check", files["v1"], str(tmp_path / "missing.yaml")]) == 2
        assert "Error:" in capsys.readouterr().err


class TestDeriveId:
    """Tests for the derive-id command."""

    def test_derive_id(self, files):
        types = load_types(files["v1"])

        entity_id = TypesCLI().derive_id(files["v1"], "t1", "K8S_POD", {"external_id": "pod-a"})

        assert entity_id == derive_entity_id(
            "t1", types["K8S_POD"], {"external_id": TypedValue.string("pod-a")}
        )

    def test_wire_form_values(self, files):
        cli = TypesCLI()

        plain = cli.derive_id(files["v1"], "t1", "K8S_POD", {"external_id": "pod-a"})
        wire = cli.derive_id(
            files["v1"], "t1", "K8S_POD", {"external_id": {"kind": "string", "value": "pod-a"}}
        )

        assert plain == wire

    def test_unknown_type(self, files):
        with pytest.raises(ValueError, match="not found"):
            TypesCLI().derive_id(files["v1"], "t1", "HOST", {"fqdn": "a"})

    def test_main(self, files, capsys):
        code = main([
            "derive-id", files["v1"], "--tenant", "t1", "--type", "K8S_POD",
            "--attributes", '{"external_id": "pod-a"}',
        ])

        assert code == 0
        assert len(capsys.readouterr().out.strip()) == 36

    def test_main_incomplete_identity(self, files, capsys):
        code = main([
            "derive-id", files["v1"], "--tenant", "t1", "--type", "K8S_POD",
            "--attributes", '{"phase": "Running"}',
        ])

        assert code == 2
        assert "external_id" in capsys.readouterr().err

    def test_main_bad_json(self, files):
        code = main([
            "derive-id", files["v1"], "--tenant", "t1", "--type", "K8S_POD",
            "--attributes", "{",
        ])

        assert code == 2
