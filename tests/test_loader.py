# tests/test_loader.py
"""
Tests for hl7_fhir_engine.transform.loader.
"""

import pytest

from hl7_fhir_engine.exceptions import TemplateError
from hl7_fhir_engine.expression.nodes import EmptinessPolicy, Literal, PathRef
from hl7_fhir_engine.transform.base import GroupEntry
from hl7_fhir_engine.transform.loader import TemplateLoader, read_template_file
from hl7_fhir_engine.transform.v2_to_fhir import template_root


PATIENT = {
    "resourceType": "Patient",
    "identity": {"fields": ["identifier"]},
    "fields": {"identifier": {"repeats": True, "fields": {"value": "PID.3.1"}}},
}

MESSAGE = {
    "events": ["adt^a01", "ADT^A04^ADT_A01"],
    "entries": [{"name": "Patient", "template": "Patient", "segment": "PID"}],
}


def _loader(messages=None, resources=None, datatypes=None):
    def docs(kind, data):
        return {name: (doc, f"{kind}/{name}.yml") for name, doc in (data or {}).items()}

    return TemplateLoader(
        docs("messages", messages),
        docs("resources", resources),
        docs("datatypes", datatypes),
    )


def _resource(fields, **extra):
    return {"Patient": dict({"resourceType": "Patient", "fields": fields}, **extra)}


# ------------------------------------------------------------------------------
# successful loads
# ------------------------------------------------------------------------------


def test_load_message_and_resource():
    messages, resources, datatypes = _loader(
        messages={"adt": MESSAGE}, resources={"Patient": PATIENT}
    ).load()

    (msg,) = messages
    assert msg.events == ("ADT^A01", "ADT^A04")
    assert msg.source == "messages/adt.yml"
    assert resources["Patient"].identity.fields == ("identifier",)
    assert datatypes == {}


def test_field_shorthands():
    (_, resources, _) = _loader(
        resources=_resource({"active": True, "gender": "PID.8", "deceased": {"const": "x"}})
    ).load()
    fields = {f.key: f for f in resources["Patient"].fields}
    assert fields["active"].expression == Literal(True)
    assert fields["gender"].expression == PathRef("PID", (8,))
    assert fields["deceased"].expression == Literal("x")


def test_const_list_becomes_tuple():
    (_, resources, _) = _loader(
        resources=_resource({"category": {"const": ["a", "b"], "repeats": True}})
    ).load()
    assert resources["Patient"].fields[0].expression == Literal(("a", "b"))


def test_target_suffix_is_stripped_from_path():
    (_, resources, _) = _loader(
        resources=_resource({"identifier@mrn": "PID.3", "identifier@ssn": "PID.19"})
    ).load()
    paths = [f.path for f in resources["Patient"].fields]
    assert paths == [("identifier",), ("identifier",)]


def test_empty_policy_and_vars():
    (_, resources, _) = _loader(
        resources=_resource(
            {"gender": {"value": "$g", "empty": "absent"}},
            vars={"g": "PID.8", "h": {"value": "PID.9", "empty": "absent"}},
        )
    ).load()
    tmpl = resources["Patient"]
    assert tmpl.fields[0].policy is EmptinessPolicy.ABSENT
    assert [v.name for v in tmpl.vars] == ["g", "h"]
    assert tmpl.vars[1].policy is EmptinessPolicy.ABSENT


def test_groups_nest_entries():
    message = {
        "events": ["ORU^R01"],
        "groups": {"ORDER": {"anchor": "OBR", "members": ["OBX"]}},
        "entries": [
            {"name": "Patient", "template": "Patient", "segment": "PID"},
            {
                "group": "ORDER",
                "entries": [{"template": "Patient", "segment": "OBX", "repeats": True}],
            },
        ],
    }
    (msg,), _, _ = _loader(messages={"oru": message}, resources={"Patient": PATIENT}).load()
    group = msg.entries[1]
    assert isinstance(group, GroupEntry)
    assert group.group.anchor == "OBR"
    assert [e.groups for e in msg.flatten()] == [(), ("ORDER",)]
    assert msg.flatten()[1].name == "Patient"


def test_packaged_templates_load():
    loader = TemplateLoader.from_directories([template_root()])
    messages, resources, datatypes = loader.load()
    events = sorted(e for m in messages for e in m.events)
    assert events == [
        "ADT^A01",
        "ADT^A03",
        "ADT^A04",
        "ADT^A08",
        "ORM^O01",
        "ORU^R01",
        "PPR^PC1",
    ]
    assert {"Patient", "Encounter", "Observation"} <= set(resources)
    assert "HumanName" in datatypes


# ------------------------------------------------------------------------------
# authoring errors
# ------------------------------------------------------------------------------


@pytest.mark.parametrize(
    "fields, pattern",
    [
        ({"gender": {"valeu": "PID.8"}}, r"unknown key\(s\) valeu"),
        ({"gender": {"value": "PID.8", "const": "x"}}, r"either value or const"),
        (
            {"name": {"datatype": "X", "fields": {"a": ".1"}}},
            r"datatype and fields are mutually exclusive",
        ),
        ({"gender": {"value": "PID.8", "deferred": True, "required": True}}, r"cannot be required"),
        ({"gender": {"value": "PID.8", "empty": "sometimes"}}, r"empty must be 'blank' or 'absent'"),
        ({"gender": {"value": "PID.8", "repeats": "yes"}}, r"'repeats' must be true or false"),
        ({"gender": {"repeats": True}}, r"field needs value, const"),
        ({"gender": "PID.0"}, r"zero index"),
        ({"gender": "nosuch(PID.8)"}, r"unknown function 'nosuch'"),
        ({"gender": ["PID.8"]}, r"field spec must be an expression or a mapping"),
        ({"city": 0.3}, r"bare number 0.3 is ambiguous"),
        ({"count": 2}, r"bare number 2 is ambiguous"),
        ({"bad-name": "PID.8"}, r"invalid target field path"),
        ({"name": {"datatype": "Missing"}}, r"unknown datatype template 'Missing'"),
        ({"link": {"resource": "Missing"}}, r"unknown resource template 'Missing'"),
        ({}, r"fields must be a non-empty mapping"),
    ],
)
def test_field_errors(fields, pattern):
    with pytest.raises(TemplateError, match=pattern):
        _loader(resources=_resource(fields)).load()


def test_error_names_source_and_location():
    with pytest.raises(TemplateError) as exc:
        _loader(resources=_resource({"gender": {"value": "PID.0"}})).load()
    assert exc.value.source == "resources/Patient.yml"
    assert exc.value.location == "fields.gender.value"
    assert str(exc.value).startswith("resources/Patient.yml:fields.gender.value: ")


def test_deferred_not_allowed_inline():
    datatypes = {"Name": {"fields": {"family": {"value": ".1", "deferred": True}}}}
    with pytest.raises(TemplateError, match=r"only allowed in resource templates"):
        _loader(datatypes=datatypes).load()


def test_identity_must_name_a_produced_field():
    with pytest.raises(TemplateError, match=r"identity field 'name' is not produced"):
        _loader(resources=_resource({"gender": "PID.8"}, identity={"fields": ["name"]})).load()


def test_identity_shape():
    with pytest.raises(TemplateError, match=r"identity must be 'position'"):
        _loader(resources=_resource({"gender": "PID.8"}, identity="first")).load()


def test_resource_type_required():
    with pytest.raises(TemplateError, match=r"resourceType is required"):
        _loader(resources={"Patient": {"fields": {"gender": "PID.8"}}}).load()


def test_circular_datatypes():
    datatypes = {
        "A": {"fields": {"x": {"value": ".1", "datatype": "B"}}},
        "B": {"fields": {"y": {"value": ".1", "datatype": "A"}}},
    }
    with pytest.raises(TemplateError, match=r"circular datatype reference: A -> B -> A"):
        _loader(datatypes=datatypes).load()


def test_circular_resources():
    resources = {
        "A": {"resourceType": "Patient", "fields": {"link": {"resource": "B"}}},
        "B": {"resourceType": "Person", "fields": {"link": {"resource": "A"}}},
    }
    with pytest.raises(TemplateError, match=r"circular resource reference: A -> B -> A"):
        _loader(resources=resources).load()


@pytest.mark.parametrize(
    "message, pattern",
    [
        ({"entries": MESSAGE["entries"]}, r"events must be a non-empty list"),
        ({"events": ["ADT"], "entries": MESSAGE["entries"]}, r"event must look like 'ADT\^A01'"),
        ({"events": ["ADT^A01"], "entries": []}, r"entries must be a non-empty list"),
        (
            {"events": ["ADT^A01"], "entries": [{"group": "NOPE", "entries": []}]},
            r"unknown group 'NOPE'",
        ),
        (
            {"events": ["ADT^A01"], "entries": [{"template": "Patient", "segment": "pid"}]},
            r"invalid segment id 'pid'",
        ),
        (
            {"events": ["ADT^A01"], "entries": [{"template": "Missing"}]},
            r"unknown resource template 'Missing'",
        ),
        (
            {"events": ["ADT^A01"], "entries": [{"name": "Patient"}]},
            r"entry needs a template name",
        ),
        (
            {
                "events": ["ADT^A01"],
                "groups": {"G": {"anchor": "obr"}},
                "entries": MESSAGE["entries"],
            },
            r"invalid segment id 'obr'",
        ),
        (dict(MESSAGE, trigger="x"), r"unknown key\(s\) trigger"),
    ],
)
def test_message_errors(message, pattern):
    with pytest.raises(TemplateError, match=pattern):
        _loader(messages={"adt": message}, resources={"Patient": PATIENT}).load()


# ------------------------------------------------------------------------------
# files and directories
# ------------------------------------------------------------------------------


def test_read_template_file_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("fields: [unclosed\n", encoding="utf-8")
    with pytest.raises(TemplateError, match=r"invalid YAML"):
        read_template_file(path)


def test_read_template_file_non_mapping(tmp_path):
    path = tmp_path / "list.yml"
    path.write_text("- a\n", encoding="utf-8")
    with pytest.raises(TemplateError, match=r"mapping at top level, got list"):
        read_template_file(path)


def test_from_directories_later_roots_override(tmp_path):
    first = tmp_path / "first" / "resources"
    second = tmp_path / "second" / "resources"
    first.mkdir(parents=True)
    second.mkdir(parents=True)
    (first / "Patient.yml").write_text(
        "resourceType: Patient\nfields:\n  gender: PID.8\n", encoding="utf-8"
    )
    (second / "Patient.yml").write_text(
        "resourceType: Patient\nfields:\n  birthDate: date(PID.7)\n", encoding="utf-8"
    )
    (second / "_draft.yml").write_text("not: [valid\n", encoding="utf-8")
    (second / "notes.txt").write_text("ignored", encoding="utf-8")

    _, resources, _ = TemplateLoader.from_directories(
        [tmp_path / "first", tmp_path / "second"]
    ).load()
    assert [f.key for f in resources["Patient"].fields] == ["birthDate"]
    assert resources["Patient"].source.endswith("Patient.yml")


def test_unquoted_relative_path_in_yaml_is_rejected(tmp_path):
    datatypes = tmp_path / "datatypes"
    datatypes.mkdir()
    (datatypes / "Address.yml").write_text("fields:\n  city: .3\n", encoding="utf-8")
    with pytest.raises(TemplateError, match=r"quote relative paths") as exc:
        TemplateLoader.from_directories([tmp_path]).load()
    assert exc.value.location == "fields.city"


def test_quoted_relative_path_in_yaml_is_a_path(tmp_path):
    datatypes = tmp_path / "datatypes"
    datatypes.mkdir()
    (datatypes / "Address.yml").write_text("fields:\n  city: '.3'\n", encoding="utf-8")
    _, _, loaded = TemplateLoader.from_directories([tmp_path]).load()
    (city,) = loaded["Address"].fields
    assert isinstance(city.expression, PathRef)


def test_unquoted_relative_path_in_vars_is_rejected(tmp_path):
    datatypes = tmp_path / "datatypes"
    datatypes.mkdir()
    (datatypes / "ContactPoint.yml").write_text(
        "vars:\n  email: .4\nfields:\n  value: $email\n", encoding="utf-8"
    )
    with pytest.raises(TemplateError, match=r"bare number 0.4 is ambiguous") as exc:
        TemplateLoader.from_directories([tmp_path]).load()
    assert exc.value.location == "vars.email"
