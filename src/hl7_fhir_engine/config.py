# src/hl7_fhir_engine/config.py
"""
Configuration utilities for hl7_fhir_engine.

Provides two immutable value objects:

- AppConfig: process-wide settings read from an optional YAML file
  (template overrides, extra terminology, default time zone, ...).
- ConverterOptions: per-conversion options handed to the converter
  (validation, pretty-printing, bundle type, time zone, property bag).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

import yaml

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

BUNDLE_TYPES = ("collection", "batch", "transaction", "message", "document")

_EMPTY: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True)
class ConverterOptions:
    """
    Immutable options for one conversion.

    Attributes
    ----------
    validate : bool
        Validate the assembled Bundle with the fhir.resources models.
    pretty : bool
        Indent the serialized JSON.
    bundle_type : str
        FHIR Bundle.type, one of BUNDLE_TYPES.
    default_timezone : str or None
        IANA zone applied to source timestamps that carry no UTC offset.
    properties : Mapping[str, str]
        Named strings visible to templates as ``$name`` variables
        (e.g., ``tenant``).
    """

    validate: bool = False
    pretty: bool = False
    bundle_type: str = "collection"
    default_timezone: Optional[str] = None
    properties: Mapping[str, str] = field(default_factory=lambda: _EMPTY)

    def __post_init__(self) -> None:
        if self.bundle_type not in BUNDLE_TYPES:
            raise ValueError(
                f"bundle_type must be one of {', '.join(BUNDLE_TYPES)}, "
                f"got {self.bundle_type!r}"
            )
        # Freeze the bag so shared options cannot be mutated between conversions.
        object.__setattr__(
            self, "properties", MappingProxyType(dict(self.properties or {}))
        )


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Attributes
    ----------
    default_output_dir : Path
        Directory where converted bundles are written by the CLI.
    default_timezone : str or None
        Zone used when a source timestamp has no offset.
    template_dir : Path or None
        Extra template directory; files override packaged templates with the
        same name.
    additional_concept_map : Path or None
        YAML mapping of extra coding-system tokens to system URIs.
    supported_messages : tuple of str
        Trigger events accepted for conversion. Empty means every registered
        event.
    bundle_type : str
        Default Bundle.type.
    properties : Mapping[str, str]
        Default template properties.
    """

    default_output_dir: Path = Path("outputs")
    default_timezone: Optional[str] = None
    template_dir: Optional[Path] = None
    additional_concept_map: Optional[Path] = None
    supported_messages: Tuple[str, ...] = ()
    bundle_type: str = "collection"
    properties: Mapping[str, str] = field(default_factory=lambda: _EMPTY)

    def converter_options(self, **overrides: Any) -> ConverterOptions:
        """
        Build ConverterOptions seeded from this configuration.

        Parameters
        ----------
        **overrides : Any
            Fields of ConverterOptions to override. ``properties`` given here
            are merged over the configured ones.

        Returns
        -------
        ConverterOptions
        """
        props = dict(self.properties)
        props.update(overrides.pop("properties", None) or {})
        base: dict[str, Any] = {
            "bundle_type": self.bundle_type,
            "default_timezone": self.default_timezone,
            "properties": props,
        }
        base.update({k: v for k, v in overrides.items() if v is not None})
        return ConverterOptions(**base)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def _string_tuple(value: Any, key: str, path: Path) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise TypeError(
            f"{key} must be a list of strings, got {type(value).__name__}. "
            f"Config file: {path}"
        )
    return tuple(str(v).strip() for v in value)


def _string_mapping(value: Any, key: str, path: Path) -> Mapping[str, str]:
    if value is None:
        return _EMPTY
    if not isinstance(value, Mapping):
        raise TypeError(
            f"{key} must be a mapping, got {type(value).__name__}. "
            f"Config file: {path}"
        )
    return {str(k): str(v) for k, v in value.items()}


def load_config(path: Optional[Path]) -> AppConfig:
    """
    Load application configuration from a YAML file.

    Parameters
    ----------
    path : Path or None
        Path to a YAML config file. If None, defaults are used.

    Returns
    -------
    AppConfig
        The loaded configuration.

    Raises
    ------
    TypeError
        If the YAML file does not parse to a mapping at the top level, or a
        key has the wrong shape.
    yaml.YAMLError
        If the file is not valid YAML.
    """
    if path is None:
        return AppConfig()

    data: Any = yaml.safe_load(path.read_text())

    if data is None:
        return AppConfig()

    if not isinstance(data, Mapping):
        raise TypeError(
            f"Config file must contain a mapping at top level, "
            f"got {type(data).__name__}. "
            f"Config file: {path}"
        )

    tz = data.get("default_timezone")
    return AppConfig(
        default_output_dir=Path(data.get("default_output_dir", "outputs")),
        default_timezone=str(tz) if tz else None,
        template_dir=_optional_path(data.get("template_dir")),
        additional_concept_map=_optional_path(data.get("additional_concept_map")),
        supported_messages=_string_tuple(
            data.get("supported_messages"), "supported_messages", path
        ),
        bundle_type=str(data.get("bundle_type", "collection")),
        properties=_string_mapping(data.get("properties"), "properties", path),
    )
