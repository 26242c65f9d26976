# src/hl7_fhir_engine/transform/__init__.py
"""
Template-driven HL7 v2 to FHIR transformation.

Submodules:
- base: template data model
- loader: YAML template parsing and validation
- registry: process-wide template registry and discovery
- scope: immutable scope stack for ``$name`` references
- builder: resource construction and deduplication
- engine: runs one message template against one message
- bundle: Bundle assembly and serialization

Templates are loaded lazily via ``registry.load_all()``.
"""
