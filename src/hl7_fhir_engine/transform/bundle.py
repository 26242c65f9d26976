# src/hl7_fhir_engine/transform/bundle.py
"""
Bundle assembly and serialization.

The assembler only collects retained resources (in creation order) and wraps
them in a FHIR Bundle; deduplication happens in the builder's arena and
validation is delegated to the fhir.resources models.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fhir.resources.bundle import Bundle
from pydantic import ValidationError

from ..config import BUNDLE_TYPES
from ..exceptions import BundleValidationError
from .builder import BuiltResource

LOG = logging.getLogger(__name__)

_REQUEST_TYPES = ("transaction", "batch")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def assemble(
    resources: Iterable[BuiltResource], bundle_type: str = "collection"
) -> Dict[str, Any]:
    """
    Wrap resources into a Bundle.

    Parameters
    ----------
    resources : Iterable[BuiltResource]
        Retained resources in creation order.
    bundle_type : str, default "collection"
        Bundle.type. Transaction and batch bundles get a POST request per
        entry.

    Returns
    -------
    dict
        Wire-shaped Bundle.

    Raises
    ------
    ValueError
        If bundle_type is not a known Bundle.type.
    """
    if bundle_type not in BUNDLE_TYPES:
        raise ValueError(f"Unsupported bundle type: {bundle_type!r}")

    stamp = _now()
    entries: List[Dict[str, Any]] = []
    for res in resources:
        entry: Dict[str, Any] = {
            "fullUrl": f"urn:uuid:{res.id}",
            "resource": res.to_dict(),
        }
        if bundle_type in _REQUEST_TYPES:
            entry["request"] = {"method": "POST", "url": res.resource_type}
        entries.append(entry)

    bundle: Dict[str, Any] = {
        "resourceType": "Bundle",
        "id": str(uuid.uuid4()),
        "meta": {"lastUpdated": stamp},
        "type": bundle_type,
        "timestamp": stamp,
    }
    if entries:
        bundle["entry"] = entries
    return bundle


def validate_bundle(bundle: Mapping[str, Any], message_id: Optional[str] = None) -> Any:
    """
    Validate a Bundle dict with the fhir.resources models.

    Returns
    -------
    fhir.resources.bundle.Bundle
        The validated model.

    Raises
    ------
    BundleValidationError
        If the bundle does not validate.
    """
    try:
        validate = getattr(Bundle, "model_validate", None)
        if callable(validate):
            return validate(dict(bundle))
        # pydantic v1 models
        return Bundle.parse_obj(dict(bundle))
    except (ValidationError, ValueError) as e:
        raise BundleValidationError(
            f"Bundle failed FHIR validation: {e}", message_id=message_id
        ) from e


def _model_to_json(model: Any, indent: Optional[int]) -> str:
    dump_json = getattr(model, "model_dump_json", None)
    if callable(dump_json):
        return str(dump_json(indent=indent, by_alias=True, exclude_none=True))
    # pydantic v1 models
    data = model.dict(by_alias=True, exclude_none=True)
    return json.dumps(data, indent=indent, default=str)


def serialize(
    bundle: Mapping[str, Any],
    pretty: bool = False,
    validate: bool = False,
    message_id: Optional[str] = None,
) -> str:
    """
    Serialize a Bundle to JSON.

    Parameters
    ----------
    bundle : Mapping[str, Any]
        Output of ``assemble``.
    pretty : bool, default False
        Indent the JSON.
    validate : bool, default False
        Validate with fhir.resources first and serialize from the model.
    message_id : str or None
        Control id attached to validation errors.

    Returns
    -------
    str

    Raises
    ------
    BundleValidationError
        If ``validate`` is set and the bundle does not validate.
    """
    indent = 2 if pretty else None
    if validate:
        return _model_to_json(validate_bundle(bundle, message_id), indent)
    # assembled bundles hold only JSON types; unvalidated output stays as built
    return json.dumps(bundle, indent=indent)


class BundleAssembler:
    """
    Collects retained resources for one conversion.

    ``add`` is handed to the builder as its retention callback, so the
    resource list follows creation order.
    """

    def __init__(self) -> None:
        self._resources: List[BuiltResource] = []

    def add(self, resource: BuiltResource) -> None:
        self._resources.append(resource)

    @property
    def resources(self) -> List[BuiltResource]:
        return list(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def assemble(self, bundle_type: str = "collection") -> Dict[str, Any]:
        LOG.debug("Assembling %s bundle with %d resources", bundle_type, len(self))
        return assemble(self._resources, bundle_type)
