"""
Operational tools for the entity service.

- types_cli: offline evolution check and id derivation for type files
"""

from .types_cli import TypesCLI, load_types

__all__ = ["TypesCLI", "load_types"]
