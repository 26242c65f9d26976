# src/hl7_fhir_engine/exceptions.py
"""
Custom exceptions for hl7_fhir_engine.

All exceptions inherit from HL7FHIREngineError so that callers can catch
engine-specific errors without grabbing unrelated built-in exceptions.

Absence of data is never an exception in this package; expressions that find
nothing evaluate to an empty result. Only the categories below are raised:

- ParseError: raw text could not be parsed into a message tree.
- ConversionError (and subclasses): fatal to the conversion of one message.
- TemplateError: a template is malformed; raised at load time.
- ScopeError: push/pop pairing on the scope stack was violated.
"""

from __future__ import annotations

from typing import Optional


class HL7FHIREngineError(Exception):
    """Base class for all hl7_fhir_engine exceptions."""

    pass


class ParseError(HL7FHIREngineError):
    """Raised when an HL7 v2 message cannot be parsed correctly."""

    pass


class ConversionError(HL7FHIREngineError):
    """
    Raised when a single message cannot be converted.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    message_id : str or None, default None
        Control id (MSH-10) of the offending message, when known.
    """

    def __init__(self, message: str, message_id: Optional[str] = None):
        self.message_id = message_id
        if message_id:
            message = f"{message} (message {message_id})"
        super().__init__(message)


class UnsupportedMessageTypeError(ConversionError):
    """Raised when no templates are registered for a message's trigger event."""

    pass


class MissingRequiredResourceError(ConversionError):
    """Raised when a mandatory resource (e.g., the Patient) cannot be built."""

    pass


class BundleValidationError(ConversionError):
    """Raised when the assembled Bundle fails FHIR model validation."""

    pass


class TemplateError(HL7FHIREngineError):
    """
    Raised when a template cannot be loaded.

    Parameters
    ----------
    message : str
        Description of the authoring problem.
    source : str or None, default None
        Template file (or logical name) where the problem was found.
    location : str or None, default None
        Dotted location within the template, e.g. "fields.birthDate.value".
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        location: Optional[str] = None,
    ):
        self.source = source
        self.location = location
        where = ":".join(p for p in (source, location) if p)
        super().__init__(f"{where}: {message}" if where else message)


class ScopeError(HL7FHIREngineError):
    """Raised when scopes are popped out of order."""

    pass
