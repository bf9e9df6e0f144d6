"""
Entity type CLI tool.

This tool works on entity type declaration files (YAML or JSON) offline:
- check: Verify that NEW is an allowed evolution of OLD
- derive-id: Print the entity id a set of attributes resolves to

A type file holds either one entity type or a list under ``entity_types``:

    entity_types:
      - name: K8S_POD
        attributes:
          - {name: external_id, kind: string, identifying: true}
          - {name: phase, kind: string}

Usage:
    entity-types check types.v1.yaml types.v2.yaml
    entity-types check --format json types.v1.yaml types.v2.yaml
    entity-types derive-id types.yaml --tenant t1 --type K8S_POD \\
        --attributes '{"external_id": "pod-a"}'

Invariants:
    - Breaking changes cause a non-zero exit code
    - Output format is stable for CI parsing
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

import yaml

from ..data.identity import derive_entity_id
from ..errors import EntityServiceError
from ..schema import EntityType, TypedValue, check_evolution

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BREAKING = 1
EXIT_USAGE = 2


def load_types(path: str) -> Dict[str, EntityType]:
    """Load entity types from a YAML or JSON file, keyed by name.

    Raises:
        ValueError: If the file is unreadable or malformed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ValueError(f"Cannot read {path}: {e}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML/JSON in {path}: {e}")

    if isinstance(data, dict) and "entity_types" in data:
        raw_types = data["entity_types"]
    elif isinstance(data, dict):
        raw_types = [data]
    elif isinstance(data, list):
        raw_types = data
    else:
        raise ValueError(f"{path} does not contain entity types")

    types: Dict[str, EntityType] = {}
    for raw in raw_types:
        try:
            entity_type = EntityType.from_dict(raw)
        except EntityServiceError as e:
            raise ValueError(f"{path}: {e.message}")
        if entity_type.name in types:
            raise ValueError(f"{path}: entity type '{entity_type.name}' declared twice")
        types[entity_type.name] = entity_type
    return types


class TypesCLI:
    """CLI commands for entity type files.

    Example:
        >>> cli = TypesCLI()
        >>> ok, report = cli.check("types.v1.yaml", "types.v2.yaml")
    """

    def check(self, old_path: str, new_path: str) -> tuple[bool, List[Dict[str, Any]]]:
        """Compare two type files.

        Types only present in NEW are additions; types only present in OLD
        are reported but are not breaking (deleting a type is a separate,
        guarded operation).

        Returns:
            Tuple of (is_compatible, list_of_change_dicts)
        """
        old_types = load_types(old_path)
        new_types = load_types(new_path)

        report: List[Dict[str, Any]] = []
        for name in sorted(old_types.keys() | new_types.keys()):
            if name not in new_types:
                report.append(_entry("TYPE_REMOVED", name, f"Type '{name}' is absent", False))
                continue
            if name not in old_types:
                report.append(_entry("TYPE_ADDED", name, f"Type '{name}' is new", False))
                continue
            for change in check_evolution(old_types[name], new_types[name]):
                report.append({
                    "kind": change.kind.name,
                    "path": change.path,
                    "old_value": change.old_value,
                    "new_value": change.new_value,
                    "message": change.message,
                    "is_breaking": change.is_breaking,
                })

        return not any(r["is_breaking"] for r in report), report

    def derive_id(
        self,
        types_path: str,
        tenant_id: str,
        type_name: str,
        attributes: Dict[str, Any],
    ) -> str:
        """Derive the id of an entity.

        Attribute values may be plain JSON values (kind inferred) or the wire
        form ``{"kind": ..., "value": ...}``.
        """
        types = load_types(types_path)
        entity_type = types.get(type_name)
        if entity_type is None:
            raise ValueError(f"Type '{type_name}' not found in {types_path}")
        typed = {
            name: TypedValue.from_dict(value) if _is_wire_value(value) else TypedValue.of(value)
            for name, value in attributes.items()
        }
        return derive_entity_id(tenant_id, entity_type, typed)


def _entry(kind: str, path: str, message: str, breaking: bool) -> Dict[str, Any]:
    return {
        "kind": kind,
        "path": path,
        "old_value": None,
        "new_value": None,
        "message": message,
        "is_breaking": breaking,
    }


def _is_wire_value(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {"kind", "value"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entity-types", description="Entity type declaration tool"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser("check", help="Check evolution from OLD to NEW")
    check_parser.add_argument("old", help="Stored (baseline) type file")
    check_parser.add_argument("new", help="Requested type file")
    check_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    derive_parser = subparsers.add_parser("derive-id", help="Print the derived entity id")
    derive_parser.add_argument("types", help="Type file")
    derive_parser.add_argument("--tenant", required=True, help="Tenant identifier")
    derive_parser.add_argument("--type", required=True, dest="type_name", help="Type name")
    derive_parser.add_argument(
        "--attributes", required=True, help="JSON object of attribute values"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point for the type tool."""
    args = build_parser().parse_args(argv)
    cli = TypesCLI()

    try:
        if args.command == "check":
            ok, report = cli.check(args.old, args.new)
            if args.format == "json":
                print(json.dumps({"compatible": ok, "changes": report}, indent=2, sort_keys=True))
            else:
                for r in report:
                    status = "BREAKING" if r["is_breaking"] else "OK"
                    print(f"[{status}] {r['kind']}: {r['path']} - {r['message']}")
                print("Compatible" if ok else "Incompatible")
            return EXIT_OK if ok else EXIT_BREAKING

        if args.command == "derive-id":
            try:
                attributes = json.loads(args.attributes)
            except json.JSONDecodeError as e:
                raise ValueError(f"--attributes is not valid JSON: {e}")
            if not isinstance(attributes, dict):
                raise ValueError("--attributes must be a JSON object")
            print(cli.derive_id(args.types, args.tenant, args.type_name, attributes))
            return EXIT_OK
    except EntityServiceError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_USAGE
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
