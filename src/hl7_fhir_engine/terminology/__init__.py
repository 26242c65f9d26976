# src/hl7_fhir_engine/terminology/__init__.py
"""
Terminology tables and coded-value resolution.
"""

from __future__ import annotations

from .resolver import (
    CodedConcept,
    CodeSystem,
    Coding,
    TerminologyResolver,
    default_resolver,
    load_terminology,
    system_id,
)

__all__ = [
    "CodedConcept",
    "CodeSystem",
    "Coding",
    "TerminologyResolver",
    "default_resolver",
    "load_terminology",
    "system_id",
]
