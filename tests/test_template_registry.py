# tests/test_template_registry.py
"""
Tests for hl7_fhir_engine.transform.registry.
"""

import pytest

from hl7_fhir_engine.expression.nodes import Literal
from hl7_fhir_engine.transform import registry
from hl7_fhir_engine.transform.base import (
    FieldSpec,
    GroupEntry,
    InlineTemplate,
    MessageTemplate,
    ResourceEntry,
    ResourceTemplate,
)
from hl7_fhir_engine.tree import GroupSpec

# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_registry():
    """
    Snapshot the process-wide registry and restore it after each test, so
    tests can register throwaway templates without affecting the others.
    """
    saved = (
        dict(registry._MESSAGES),
        dict(registry._RESOURCES),
        dict(registry._DATATYPES),
        registry._LOADED,
    )
    registry.reset()
    yield
    registry.reset()
    registry._MESSAGES.update(saved[0])
    registry._RESOURCES.update(saved[1])
    registry._DATATYPES.update(saved[2])
    registry._LOADED = saved[3]


def _message(*events, entries=None):
    return MessageTemplate(
        name="test",
        events=tuple(events),
        entries=entries or (ResourceEntry(name="Patient", template="Patient"),),
    )


FIELD = FieldSpec(("active",), "active", Literal(True))


# ------------------------------------------------------------------------------
# register
# ------------------------------------------------------------------------------


def test_register_rejects_non_template():
    with pytest.raises(TypeError, match=r"^Only MessageTemplate objects"):
        registry.register("ADT^A01")


def test_register_binds_every_event():
    tmpl = registry.register(_message("ADT^A01", "ADT^A04"))
    assert registry.message_template("ADT^A01") is tmpl
    assert registry.message_template("adt^a04") is tmpl
    assert registry.available_events() == ["ADT^A01", "ADT^A04"]


def test_register_rejects_duplicate_event_atomically():
    registry.register(_message("ADT^A01"))
    with pytest.raises(ValueError, match=r"already registered for event 'ADT\^A01'"):
        registry.register(_message("ADT^A08", "ADT^A01"))
    assert registry.available_events() == ["ADT^A01"]


def test_register_resource_and_datatype():
    res = ResourceTemplate(name="Patient", resource_type="Patient", fields=(FIELD,))
    dt = InlineTemplate(name="HumanName", fields=(FIELD,))
    assert registry.register_resource(res) is res
    assert registry.register_datatype(dt) is dt
    assert registry.resource_template("Patient") is res
    assert registry.datatype_template("HumanName") is dt
    assert registry.resource_template("Nope") is None

    with pytest.raises(TypeError, match=r"^Only ResourceTemplate objects"):
        registry.register_resource(dt)
    with pytest.raises(TypeError, match=r"^Only InlineTemplate objects"):
        registry.register_datatype(res)


# ------------------------------------------------------------------------------
# lookup
# ------------------------------------------------------------------------------


@pytest.mark.parametrize("event", [None, "", "ORM^O01"])
def test_message_template_unknown(event):
    registry.register(_message("ADT^A01"))
    assert registry.message_template(event) is None
    assert registry.templates_for(event) == []


def test_templates_for_flattens_groups():
    entries = (
        ResourceEntry(name="Patient", template="Patient", segment="PID"),
        GroupEntry(
            group=GroupSpec("ORDER", "OBR", ("OBX",)),
            entries=(
                ResourceEntry(name="Report", template="DiagnosticReport", segment="OBR"),
                ResourceEntry(
                    name="Observation", template="Observation", segment="OBX", repeats=True
                ),
            ),
        ),
    )
    registry.register(_message("ORU^R01", entries=entries))
    flat = registry.templates_for("ORU^R01")
    assert [e.name for e in flat] == ["Patient", "Report", "Observation"]
    assert [e.groups for e in flat] == [(), ("ORDER",), ("ORDER",)]
    assert [e.repeats for e in flat] == [False, False, True]


# ------------------------------------------------------------------------------
# load_all
# ------------------------------------------------------------------------------


def test_load_all_registers_packaged_templates():
    assert not registry.is_loaded()
    registry.load_all()
    assert registry.is_loaded()
    assert registry.available_events() == [
        "ADT^A01",
        "ADT^A03",
        "ADT^A04",
        "ADT^A08",
        "ORM^O01",
        "ORU^R01",
        "PPR^PC1",
    ]
    assert registry.resource_template("Patient").resource_type == "Patient"
    assert registry.datatype_template("HumanName") is not None


def test_load_all_is_idempotent():
    registry.load_all()
    before = registry.message_template("ADT^A01")
    registry.load_all()
    assert registry.message_template("ADT^A01") is before


def test_load_all_extra_dir_overrides_packaged(tmp_path):
    resources = tmp_path / "resources"
    resources.mkdir()
    (resources / "Organization.yml").write_text(
        "resourceType: Organization\n"
        "identity:\n"
        "  fields: [name]\n"
        "fields:\n"
        "  name: .4 | 'Overridden'\n",
        encoding="utf-8",
    )
    registry.load_all([tmp_path])
    tmpl = registry.resource_template("Organization")
    assert tmpl.source == str(resources / "Organization.yml")
    assert [f.key for f in tmpl.fields] == ["name"]


def test_reset_forgets_everything():
    registry.load_all()
    registry.reset()
    assert not registry.is_loaded()
    assert registry.available_events() == []
    assert registry.resource_template("Patient") is None


# ------------------------------------------------------------------------------
# load_template_set
# ------------------------------------------------------------------------------


def test_load_template_set_is_independent_of_registry(tmp_path):
    resources = tmp_path / "resources"
    resources.mkdir()
    (resources / "Organization.yml").write_text(
        "resourceType: Organization\n"
        "identity:\n"
        "  fields: [name]\n"
        "fields:\n"
        "  name: .4 | 'Overridden'\n",
        encoding="utf-8",
    )
    templates = registry.load_template_set([tmp_path])

    assert not registry.is_loaded()
    assert registry.resource_template("Organization") is None
    assert templates.resource_template("Organization").source == str(
        resources / "Organization.yml"
    )
    assert templates.resource_template("Patient").resource_type == "Patient"
    assert templates.message_template("oru^r01").events == ("ORU^R01",)
    assert templates.message_template(None) is None
    assert "ADT^A01" in templates.available_events()


def test_load_template_set_rejects_duplicate_events(tmp_path):
    messages = tmp_path / "messages"
    messages.mkdir()
    (messages / "extra_a01.yml").write_text(
        "events: [ADT^A01]\n"
        "entries:\n"
        "  - name: Patient\n"
        "    template: Patient\n"
        "    segment: PID\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match=r"already registered for event 'ADT\^A01'"):
        registry.load_template_set([tmp_path])
