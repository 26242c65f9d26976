# tests/test_cli.py
"""
Tests for hl7_fhir_engine/cli.
"""

import io
import json as _json
import os
import runpy
import sys
import types
from pathlib import Path

import pytest

from conftest import PID, PV1, build_message
from hl7_fhir_engine import cli


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

HL7_TEXT = build_message(PID, PV1).replace("\r", "\n") + "\n"

MDM_TEXT = build_message(PID, event="MDM^T02", control_id="MSG00002").replace("\r", "\n")


def write_hl7(tmp_path: Path, name: str = "msg.hl7", text: str = HL7_TEXT) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def _bundles(out: str):
    return [_json.loads(line) for line in out.splitlines() if line.strip()]


# ------------------------------------------------------------------------------
# Happy paths
# ------------------------------------------------------------------------------


def test_parse_hl7_ok(tmp_path, capsys):
    p = write_hl7(tmp_path)
    code = cli.main(["parse-hl7", str(p)])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert "MSH|" in out and "PID|" in out


def test_parse_hl7_stdin(monkeypatch, capsys):
    monkeypatch.setattr(sys, "stdin", io.StringIO(HL7_TEXT))
    code = cli.main(["parse-hl7", "-"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert out.splitlines()[0].startswith("MSH|")


def test_convert_stdout_ndjson(tmp_path, capsys):
    p = write_hl7(tmp_path, text=HL7_TEXT + HL7_TEXT.replace("MSG00001", "MSG00003"))
    code = cli.main(["convert", str(p), "--stdout", "--tz", "UTC"])
    out, err = capsys.readouterr()
    assert code == cli.EXIT_OK
    bundles = _bundles(out)
    assert len(bundles) == 2
    assert all(b["resourceType"] == "Bundle" for b in bundles)
    assert "resourceType" not in err


def test_convert_stdout_pretty(tmp_path, capsys):
    p = write_hl7(tmp_path)
    code = cli.main(["convert", str(p), "--stdout", "--pretty", "--validate"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert out.startswith("{\n")
    assert _json.loads(out)["type"] == "collection"


def test_convert_writes_one_file_per_message(tmp_path):
    p = write_hl7(tmp_path, "batch.hl7", HL7_TEXT + HL7_TEXT.replace("MSG00001", "MSG00003"))
    outdir = tmp_path / "out"
    code = cli.main(["convert", str(p), "-o", str(outdir), "--tz", "UTC"])
    assert code == cli.EXIT_OK
    assert sorted(f.name for f in outdir.iterdir()) == ["batch_001.json", "batch_002.json"]


def test_convert_single_message_file_name(tmp_path):
    p = write_hl7(tmp_path, "adt.hl7")
    outdir = tmp_path / "out"
    code = cli.main(["convert", str(p), "-o", str(outdir), "--bundle-type", "transaction"])
    assert code == cli.EXIT_OK
    bundle = _json.loads((outdir / "adt.json").read_text(encoding="utf-8"))
    assert bundle["type"] == "transaction"
    assert bundle["entry"][0]["request"]["method"] == "POST"


def test_convert_properties_reach_templates(tmp_path, capsys, monkeypatch):
    seen = {}
    real = cli.HL7ToFHIRConverter.convert

    def spy(self, raw, options=None):
        seen.update(options.properties)
        return real(self, raw, options)

    monkeypatch.setattr(cli.HL7ToFHIRConverter, "convert", spy)
    p = write_hl7(tmp_path)
    code = cli.main(["convert", str(p), "--stdout", "--property", "tenant=acme"])
    assert code == cli.EXIT_OK
    assert seen == {"tenant": "acme"}


def test_convert_list_prints_and_exits_ok(capsys):
    code = cli.main(["convert", "--list"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert "ADT^A01" in out
    assert "ORU^R01" in out


def test_convert_list_includes_user_templates(tmp_path, capsys):
    messages = tmp_path / "templates" / "messages"
    messages.mkdir(parents=True)
    (messages / "mdm_t02.yml").write_text(
        "events: [MDM^T02]\n"
        "entries:\n"
        "  - name: Patient\n"
        "    template: Patient\n"
        "    segment: PID\n",
        encoding="utf-8",
    )
    cfg = tmp_path / "config.yaml"
    cfg.write_text(f"template_dir: {tmp_path / 'templates'}\n", encoding="utf-8")

    code = cli.main(["--config", str(cfg), "convert", "--list"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert "MDM^T02" in out
    assert "ADT^A01" in out


def test_convert_default_output_dir_from_config(tmp_path):
    p = write_hl7(tmp_path)
    default_dir = tmp_path / "default_out"
    cfg = tmp_path / "config.yaml"
    cfg.write_text(f"default_output_dir: {default_dir}\n", encoding="utf-8")
    code = cli.main(["--config", str(cfg), "convert", str(p)])
    assert code == cli.EXIT_OK
    assert (default_dir / "msg.json").exists()


# ------------------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------------------


def test_convert_unsupported_message_fails(tmp_path, capsys):
    p = write_hl7(tmp_path, text=MDM_TEXT)
    code = cli.main(["convert", str(p), "--stdout"])
    out, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert out == ""
    assert "No templates registered for message type MDM^T02" in err


def test_convert_keep_going(tmp_path, capsys):
    p = write_hl7(tmp_path, text=MDM_TEXT + "\n" + HL7_TEXT)
    code = cli.main(["convert", str(p), "--stdout", "--keep-going"])
    out, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert len(_bundles(out)) == 1
    assert "1 message(s) failed, 1 converted" in err


def test_convert_unknown_timezone(tmp_path, capsys):
    p = write_hl7(tmp_path)
    code = cli.main(["convert", str(p), "--stdout", "--tz", "Mars/Olympus"])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "Unknown time zone" in err


def test_convert_empty_file(tmp_path, capsys):
    p = write_hl7(tmp_path, text="\n\n")
    code = cli.main(["convert", str(p), "--stdout"])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "No HL7 v2 content" in err


def test_convert_requires_paths():
    with pytest.raises(SystemExit) as e:
        cli.main(["convert"])
    assert e.value.code == cli.EXIT_CLI


def test_convert_bad_property_is_usage_error(tmp_path):
    p = write_hl7(tmp_path)
    with pytest.raises(SystemExit) as e:
        cli.main(["convert", str(p), "--property", "novalue"])
    assert e.value.code == cli.EXIT_CLI


def test_convert_bad_bundle_type_is_usage_error(tmp_path):
    p = write_hl7(tmp_path)
    with pytest.raises(SystemExit) as e:
        cli.main(["convert", str(p), "--bundle-type", "bogus"])
    assert e.value.code == cli.EXIT_CLI


def test_invalid_config_file(tmp_path, capsys):
    p = write_hl7(tmp_path)
    cfg = tmp_path / "config.yaml"
    cfg.write_text("- not\n- a mapping\n", encoding="utf-8")
    code = cli.main(["--config", str(cfg), "convert", str(p), "--stdout"])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "Invalid configuration" in err


def test_missing_config_file(tmp_path):
    p = write_hl7(tmp_path)
    code = cli.main(["--config", str(tmp_path / "nope.yaml"), "convert", str(p)])
    assert code == cli.EXIT_ERR


# ------------------------------------------------------------------------------
# _validate_existing_file
# ------------------------------------------------------------------------------


def test_parse_hl7_file_not_found(tmp_path):
    missing = tmp_path / "nope.hl7"
    code = cli.main(["parse-hl7", str(missing)])
    assert code == cli.EXIT_ERR


def test_parse_hl7_path_is_directory(tmp_path):
    d = tmp_path / "adir"
    d.mkdir()
    code = cli.main(["parse-hl7", str(d)])
    assert code == cli.EXIT_ERR


def test_parse_hl7_not_readable(tmp_path, monkeypatch):
    p = write_hl7(tmp_path)
    real_access = os.access
    # force unreadable
    monkeypatch.setattr(
        os,
        "access",
        lambda path, mode: (
            False if Path(path) == p and (mode & os.R_OK) else real_access(path, mode)
        ),
    )
    code = cli.main(["parse-hl7", str(p)])
    assert code == cli.EXIT_ERR


# ------------------------------------------------------------------------------
# _validate_output_dir
# ------------------------------------------------------------------------------


def test_validate_output_dir_mkdir_raises_oserror(tmp_path, monkeypatch):
    p = write_hl7(tmp_path)
    bad = tmp_path / "nope"

    def boom_mkdir(self, parents=False, exist_ok=False):
        raise OSError("mkdir-fail")

    monkeypatch.setattr(Path, "mkdir", boom_mkdir)
    code = cli.main(["convert", str(p), "-o", str(bad)])
    assert code == cli.EXIT_ERR


def test_validate_output_dir_not_writable(tmp_path, monkeypatch):
    p = write_hl7(tmp_path)
    outdir = tmp_path / "outdir"
    outdir.mkdir(parents=True, exist_ok=True)
    real_access = os.access
    # deny W_OK for this directory
    monkeypatch.setattr(
        os,
        "access",
        lambda path, mode: (
            False
            if Path(path) == outdir and (mode & os.W_OK)
            else real_access(path, mode)
        ),
    )
    code = cli.main(["convert", str(p), "-o", str(outdir)])
    assert code == cli.EXIT_ERR


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def test_read_text_input_file_not_found(tmp_path, monkeypatch):
    p = tmp_path / "ghost.hl7"
    # Make _read_text_input raise FileNotFoundError
    monkeypatch.setattr(
        Path,
        "read_text",
        lambda self, **k: (_ for _ in ()).throw(FileNotFoundError("nope")),
    )
    with pytest.raises(cli.HL7FHIREngineError, match=r"^File not found"):
        cli._read_text_input(p)


def test_read_text_input_permission_error(tmp_path, monkeypatch):
    p = tmp_path / "x.hl7"
    p.write_text("x", encoding="utf-8")

    def boom(*a, **k):
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "read_text", boom)
    with pytest.raises(cli.HL7FHIREngineError, match=r"^Permission denied"):
        cli._read_text_input(p)


def test_read_text_input_oserror(tmp_path, monkeypatch):
    p = tmp_path / "x.hl7"
    p.write_text("x", encoding="utf-8")

    def boom(*a, **k):
        raise OSError("disk")

    monkeypatch.setattr(Path, "read_text", boom)
    with pytest.raises(cli.HL7FHIREngineError, match=r"^Failed to read"):
        cli._read_text_input(p)


def test_write_bundle_to_dir_oserror(tmp_path, monkeypatch):
    def boom(*a, **k):
        raise OSError("full")

    monkeypatch.setattr(Path, "write_text", boom)
    with pytest.raises(cli.HL7FHIREngineError, match=r"^Failed to write"):
        cli._write_bundle_to_dir("{}", tmp_path / "x.json")


def test_write_bundle_to_stdout_separates_pretty_bundles(capsys):
    cli._write_bundle_to_stdout("{\n}", first=True, pretty=True)
    cli._write_bundle_to_stdout("{\n}", first=False, pretty=True)
    out, _ = capsys.readouterr()
    assert out == "{\n}\n\n{\n}\n"


@pytest.mark.parametrize(
    "items, expected",
    [
        ([], {}),
        (["a=1", "b = two"], {"a": "1", "b": " two"}),
        (["url=http://x?a=b"], {"url": "http://x?a=b"}),
    ],
)
def test_parse_properties(items, expected):
    assert cli._parse_properties(items) == expected


@pytest.mark.parametrize("item", ["novalue", "=x"])
def test_parse_properties_rejects(item):
    with pytest.raises(ValueError, match=r"^--property expects KEY=VALUE"):
        cli._parse_properties([item])


@pytest.mark.parametrize(
    "path, index, total, expected",
    [
        (Path("in/adt.hl7"), 1, 1, "adt.json"),
        (Path("in/adt.hl7"), 2, 3, "adt_002.json"),
        (Path("-"), 1, 1, "stdin.json"),
    ],
)
def test_output_name(path, index, total, expected):
    assert cli._output_name(path, index, total) == expected


# ------------------------------------------------------------------------------
# main()
# ------------------------------------------------------------------------------


def test_main_keyboardinterrupt(tmp_path, monkeypatch):
    p = write_hl7(tmp_path)
    monkeypatch.setattr(
        "hl7_fhir_engine.cli._cmd_parse_hl7",
        lambda _: (_ for _ in ()).throw(KeyboardInterrupt),
    )
    code = cli.main(["parse-hl7", str(p)])
    assert code == cli.EXIT_ERR


def test_main_unknown_command_path(monkeypatch):
    # Build a dummy parser
    class DummyParser:
        def parse_args(self, argv=None):
            # main() reads verbose and config before dispatching
            return types.SimpleNamespace(cmd="weird", verbose=0, config=None)

        def error(self, msg):
            # override to NOT raise SystemExit so main() reaches return EXIT_CLI
            return None

    monkeypatch.setattr("hl7_fhir_engine.cli._build_parser", lambda: DummyParser())
    code = cli.main([])
    assert code == cli.EXIT_CLI


# ------------------------------------------------------------------------------
# __main__
# ------------------------------------------------------------------------------


@pytest.mark.filterwarnings("ignore::RuntimeWarning")
def test_main_dunder_name_runs_ok(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["hl7-fhir-engine", "parse-hl7", "-"])
    monkeypatch.setattr(sys, "stdin", io.StringIO(HL7_TEXT))
    with pytest.raises(SystemExit) as e:
        runpy.run_module("hl7_fhir_engine.cli", run_name="__main__")
    assert e.value.code == 0
