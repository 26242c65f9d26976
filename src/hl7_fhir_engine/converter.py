# src/hl7_fhir_engine/converter.py
"""
HL7 v2 -> FHIR Bundle converter entry point.

Typical use::

    converter = HL7ToFHIRConverter()
    bundle_json = converter.convert(raw_text, ConverterOptions(pretty=True))

A converter loads the templates and terminology tables once; each call to
``convert`` is independent and thread-safe.
"""

from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hl7apy.core import Message

from .config import AppConfig, ConverterOptions
from .exceptions import HL7FHIREngineError, UnsupportedMessageTypeError
from .hl7_parser import parse_hl7_v2
from .logging_utils import message_context
from .terminology import TerminologyResolver, load_terminology
from .transform import registry
from .transform.base import MessageTemplate, ResourceTemplate
from .transform.bundle import serialize
from .transform.engine import MessageEngine
from .tree import MessageTree

LOG = logging.getLogger(__name__)


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """
    Return the IANA zone called ``name``.

    Raises
    ------
    HL7FHIREngineError
        If the zone is unknown.
    """
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise HL7FHIREngineError(f"Unknown time zone: {name!r}") from e


class HL7ToFHIRConverter:
    """
    Convert HL7 v2 messages into FHIR R5 Bundles.

    Parameters
    ----------
    config : AppConfig, optional
        Template overrides, extra terminology, supported events and the
        defaults used when ``convert`` gets no options.

    Raises
    ------
    TemplateError
        If a packaged or user template is malformed.

    Notes
    -----
    Without ``template_dir`` the converter reads the process-wide registry.
    With one it loads a private TemplateSet, so converters with different
    template directories can run side by side.
    """

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or AppConfig()
        self._templates: Optional[registry.TemplateSet] = None
        if self.config.template_dir:
            LOG.info("Loading user templates from %s", self.config.template_dir)
            self._templates = registry.load_template_set([self.config.template_dir])
        else:
            registry.load_all()
        self.terminology: TerminologyResolver = load_terminology(
            self.config.additional_concept_map
        )
        self._supported = {e.upper() for e in self.config.supported_messages}

    # --------------------------------------------------------------------------
    # templates
    # --------------------------------------------------------------------------

    def available_events(self) -> List[str]:
        """Sorted trigger events this converter has templates for."""
        if self._templates is not None:
            return self._templates.available_events()
        return registry.available_events()

    def _message_template(self, event: Optional[str]) -> Optional[MessageTemplate]:
        if self._templates is not None:
            return self._templates.message_template(event)
        return registry.message_template(event)

    def _resource_template(self, name: str) -> Optional[ResourceTemplate]:
        if self._templates is not None:
            return self._templates.resource_template(name)
        return registry.resource_template(name)

    # --------------------------------------------------------------------------
    # helpers
    # --------------------------------------------------------------------------

    def _tree(self, message: Union[str, Message]) -> MessageTree:
        if isinstance(message, Message):
            return MessageTree.from_message(message)
        # hl7apy checks the structure and raises ParseError
        parsed = parse_hl7_v2(message, strict=False)
        return MessageTree.from_message(parsed)

    def _engine(self, tree: MessageTree, options: ConverterOptions) -> MessageEngine:
        event = tree.message_type
        if self._supported and event not in self._supported:
            raise UnsupportedMessageTypeError(
                f"Message type {event} is not enabled in this configuration",
                message_id=tree.control_id,
            )
        template = self._message_template(event)
        if template is None:
            raise UnsupportedMessageTypeError(
                f"No templates registered for message type {event}",
                message_id=tree.control_id,
            )
        return MessageEngine(
            template,
            self._resource_template,
            terminology=self.terminology,
            timezone=resolve_timezone(options.default_timezone),
            properties=options.properties,
        )

    # --------------------------------------------------------------------------
    # public API
    # --------------------------------------------------------------------------

    def convert_to_bundle(
        self,
        message: Union[str, Message],
        options: Optional[ConverterOptions] = None,
    ) -> Dict[str, Any]:
        """
        Convert one message into a Bundle dict.

        Parameters
        ----------
        message : str or hl7apy Message
            Raw ER7 text or an already parsed message.
        options : ConverterOptions, optional
            Defaults come from the converter's configuration.

        Returns
        -------
        dict
            Wire-shaped FHIR Bundle.

        Raises
        ------
        ParseError
            If the text cannot be parsed.
        UnsupportedMessageTypeError
            If no template handles the message's trigger event.
        MissingRequiredResourceError
            If a required resource (e.g., the Patient) cannot be built.
        """
        options = options or self.config.converter_options()
        return self._convert(message, options)[1]

    def _convert(
        self, message: Union[str, Message], options: ConverterOptions
    ) -> Tuple[Optional[str], Dict[str, Any]]:
        tree = self._tree(message)
        with message_context(tree.control_id):
            run = self._engine(tree, options).run(tree)
            return tree.control_id, run.assembler.assemble(options.bundle_type)

    def convert(
        self,
        message: Union[str, Message],
        options: Optional[ConverterOptions] = None,
    ) -> str:
        """
        Convert one message into serialized Bundle JSON.

        Raises
        ------
        BundleValidationError
            If ``options.validate`` is set and the Bundle fails validation.

        See Also
        --------
        convert_to_bundle : for the other errors raised.
        """
        options = options or self.config.converter_options()
        control_id, bundle = self._convert(message, options)
        with message_context(control_id):
            return serialize(
                bundle,
                pretty=options.pretty,
                validate=options.validate,
                message_id=control_id,
            )


def convert(
    message: Union[str, Message],
    options: Optional[ConverterOptions] = None,
    config: Optional[AppConfig] = None,
) -> str:
    """Convert one message with a throwaway converter."""
    return HL7ToFHIRConverter(config).convert(message, options)
