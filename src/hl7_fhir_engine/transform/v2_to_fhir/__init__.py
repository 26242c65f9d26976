# src/hl7_fhir_engine/transform/v2_to_fhir/__init__.py
"""
Packaged HL7 v2 -> FHIR templates.

YAML documents live in three subdirectories of this package:

- messages/: one file per message structure (events, groups, entries)
- resources/: one file per referenced resource template
- datatypes/: one file per inline datatype template

They are discovered by registry.load_all(); nothing here is imported for
side effects.
"""

from __future__ import annotations

from importlib import resources
from pathlib import Path


def template_root() -> Path:
    """Directory holding the packaged template subdirectories."""
    return Path(str(resources.files(__name__)))


__all__ = ["template_root"]
