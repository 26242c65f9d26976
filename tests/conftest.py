# tests/conftest.py
# Silences Conda warnings during test runs without requiring user config.
# Also provides small builders for HL7 v2 test messages.
import warnings
import logging

import pytest

from hl7_fhir_engine.config import ConverterOptions
from hl7_fhir_engine.converter import HL7ToFHIRConverter
from hl7_fhir_engine.tree import MessageTree


def pytest_configure(config):
    warnings.filterwarnings(
        "ignore",
        message=r"Adding 'defaults' to channel list implicitly is deprecated.*",
        category=FutureWarning,
        module=r"conda\.base\.context",
    )

    logging.getLogger("conda.cli.main_config").setLevel(logging.ERROR)
    logging.getLogger("conda.base.context").setLevel(logging.ERROR)

    warnings.filterwarnings(
        "ignore",
        category=FutureWarning,
        module=r"conda\..*",
    )


# ------------------------------------------------------------------------------
# message builders
# ------------------------------------------------------------------------------


def build_segment(name, fields=None):
    """
    Build one ER7 segment from a {field number: text} mapping.

    Field numbers are HL7 positions, so {3: "x"} puts "x" in PID-3. Not for
    MSH, whose first field is the separator itself.
    """
    fields = fields or {}
    last = max(fields) if fields else 0
    return "|".join([name] + [fields.get(i, "") for i in range(1, last + 1)])


def build_msh(event="ADT^A01", control_id="MSG00001"):
    return f"MSH|^~\\&|HIS|RIH|EKG|EKG|20250101123000||{event}|{control_id}|P|2.5.1"


def build_message(*segments, event="ADT^A01", control_id="MSG00001"):
    """Join an MSH plus the given segment lines with CR separators."""
    return "\r".join((build_msh(event, control_id),) + segments)


PID = build_segment(
    "PID",
    {
        1: "1",
        3: "12345^^^HOSP^MR",
        5: "Doe^John^Q^^^^L",
        7: "19700101",
        8: "M",
        11: "123 Main St^^Springfield^IL^62701^USA^H",
        13: "^PRN^PH^^^555^5551234",
    },
)

PV1 = build_segment(
    "PV1",
    {
        1: "1",
        2: "I",
        3: "2000^2012^01",
        19: "V100^^^HOSP^VN",
        44: "20250101120000-0500",
    },
)


def dg1(set_id, code, text):
    return build_segment("DG1", {1: str(set_id), 3: f"{code}^{text}^I10"})


def in1(set_id, plan="PLAN1", company="INS001^^^PAYER", name="Acme Health"):
    return build_segment(
        "IN1",
        {1: str(set_id), 2: plan, 3: company, 4: name, 17: "SEL", 36: f"POL{set_id}"},
    )


# ------------------------------------------------------------------------------
# fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def converter():
    return HL7ToFHIRConverter()


@pytest.fixture
def utc_options():
    return ConverterOptions(default_timezone="UTC")


@pytest.fixture
def tree_of():
    """Factory: ER7 text -> MessageTree (no hl7apy round trip)."""
    return MessageTree.from_er7


def resources_of(bundle, resource_type=None):
    """Resources in a Bundle dict, optionally of one type."""
    out = [e["resource"] for e in bundle.get("entry", [])]
    if resource_type is None:
        return out
    return [r for r in out if r["resourceType"] == resource_type]
