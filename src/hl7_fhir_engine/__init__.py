# src/hl7_fhir_engine/__init__.py
"""
hl7_fhir_engine: template-driven HL7 v2 -> FHIR R5 conversion.

This package provides:
- HL7ToFHIRConverter, which turns one HL7 v2 message into a FHIR Bundle.
- Declarative YAML templates per trigger event, resource and datatype.
- An expression language and terminology resolver used by the templates.
- A CLI (hl7-fhir-engine) for converting message files.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import AppConfig, ConverterOptions, load_config  # noqa: E402
from .converter import HL7ToFHIRConverter, convert  # noqa: E402

__all__ = [
    "__version__",
    "AppConfig",
    "ConverterOptions",
    "HL7ToFHIRConverter",
    "convert",
    "load_config",
]
