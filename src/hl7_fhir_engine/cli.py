# src/hl7_fhir_engine/cli.py
"""
Command-line interface for hl7_fhir_engine.

Subcommands
-----------
parse-hl7
    Pretty-print parsed HL7 v2 segments from a file (or stdin with "-").

convert
    Convert HL7 v2 messages into FHIR R5 Bundles and either:
        - list supported event codes (with --list), or
        - write one Bundle per message to files (default), or
        - print Bundles to stdout (with --stdout).

Exit codes
----------
0  success
1  handled, expected error (HL7FHIREngineError or KeyboardInterrupt)
2  CLI usage error (argparse or validation failure)
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import yaml

from . import __version__
from .config import BUNDLE_TYPES, AppConfig, load_config
from .converter import HL7ToFHIRConverter
from .exceptions import HL7FHIREngineError
from .hl7_parser import parse_hl7_v2, split_messages, to_pretty_segments
from .logging_utils import configure_logging

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger("hl7_fhir_engine")

EXIT_OK = 0
EXIT_ERR = 1
EXIT_CLI = 2

# ------------------------------------------------------------------------------
# Parser construction
# ------------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argparse parser and subcommands.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with subcommands: parse-hl7, convert.
    """
    parser = argparse.ArgumentParser(
        prog="hl7-fhir-engine",
        description="Convert HL7 v2 messages into FHIR R5 Bundles.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (overrides defaults).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv).",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"hl7-fhir-engine {__version__}",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    # parse-hl7
    s1 = sub.add_parser("parse-hl7", help="Parse an HL7 v2 message file.")
    s1.add_argument(
        "path",
        type=Path,
        help='Path to HL7 v2 message file. Use "-" to read from stdin.',
    )

    # convert
    s2 = sub.add_parser("convert", help="Convert HL7 v2 messages to FHIR Bundles.")
    s2.add_argument(
        "paths",
        type=Path,
        nargs="*",
        help='HL7 v2 message files (one or more messages each). Use "-" for stdin.',
    )
    s2.add_argument(
        "--list",
        action="store_true",
        help="List supported HL7 v2 event codes and exit.",
    )
    s2.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Directory to write Bundles (defaults to config.default_output_dir).",
    )
    s2.add_argument(
        "--stdout",
        action="store_true",
        help="Write Bundles to stdout (NDJSON unless --pretty).",
    )
    s2.add_argument(
        "--pretty",
        action="store_true",
        help="Pretty-print JSON output (for stdout or files).",
    )
    s2.add_argument(
        "--validate",
        action="store_true",
        help="Validate each Bundle with the fhir.resources R5 models.",
    )
    s2.add_argument(
        "--bundle-type",
        choices=BUNDLE_TYPES,
        default=None,
        help="Bundle.type (defaults to config.bundle_type).",
    )
    s2.add_argument(
        "--tz",
        default=None,
        metavar="ZONE",
        help="IANA time zone for timestamps without an offset.",
    )
    s2.add_argument(
        "--property",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Template property (repeatable), visible to templates as $KEY.",
    )
    s2.add_argument(
        "--keep-going",
        action="store_true",
        help="Log failed messages and continue with the rest.",
    )

    return parser


# ------------------------------------------------------------------------------
# Validation helpers
# ------------------------------------------------------------------------------


def _validate_existing_file(path: Path, allow_stdin: bool = False) -> None:
    """
    Validate that a path exists and is a readable file, or is "-" if
    allow_stdin is True.

    Raises
    ------
    HL7FHIREngineError
        If the path does not exist, is not a file, is not readable,
        or if "-" is used but allow_stdin is False.
    """
    if allow_stdin and str(path) == "-":
        return
    if not path.exists():
        raise HL7FHIREngineError(f"File not found: {path}")
    if not path.is_file():
        raise HL7FHIREngineError(f"Not a file: {path}")
    if not os.access(path, os.R_OK):
        raise HL7FHIREngineError(f"File is not readable: {path}")


def _validate_output_dir(output_dir: Path) -> None:
    """
    Create ``output_dir`` if needed and check that it is writable.

    Raises
    ------
    HL7FHIREngineError
        If the directory cannot be created or is not writable.
    """
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise HL7FHIREngineError(
            f"Cannot create output directory: {output_dir} ({e})"
        ) from e
    if not os.access(output_dir, os.W_OK):
        raise HL7FHIREngineError(f"Output directory not writable: {output_dir}")


def _parse_properties(items: Sequence[str]) -> Dict[str, str]:
    """
    Turn repeated ``KEY=VALUE`` options into a mapping.

    Raises
    ------
    ValueError
        If an item has no "=" or an empty key.
    """
    props: Dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"--property expects KEY=VALUE, got {item!r}")
        props[key.strip()] = value
    return props


def _read_text_input(path: Path) -> str:
    """
    Read text either from a file or from stdin when path is "-".

    Raises
    ------
    HL7FHIREngineError
        On missing files, permission errors, or OS read failures.
    """
    try:
        if str(path) == "-":
            return sys.stdin.read()
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise HL7FHIREngineError(f"File not found: {path}") from e
    except PermissionError as e:
        raise HL7FHIREngineError(f"Permission denied: {path}") from e
    except OSError as e:
        raise HL7FHIREngineError(f"Failed to read {path}: {e}") from e


def _read_messages(path: Path) -> List[str]:
    """
    Read the messages held in a file (or stdin).

    Raises
    ------
    HL7FHIREngineError
        If the input is unreadable or holds no text.
    """
    content = _read_text_input(path)
    if not content.strip():
        raise HL7FHIREngineError(f"No HL7 v2 content in {path}")
    return split_messages(content) or [content]


# ------------------------------------------------------------------------------
# Output helpers
# ------------------------------------------------------------------------------


def _output_name(path: Path, index: int, total: int) -> str:
    stem = "stdin" if str(path) == "-" else path.stem
    return f"{stem}.json" if total == 1 else f"{stem}_{index:03d}.json"


def _write_bundle_to_dir(text: str, out_path: Path) -> None:
    """
    Write one serialized Bundle.

    Raises
    ------
    HL7FHIREngineError
        If the write fails.
    """
    try:
        out_path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise HL7FHIREngineError(f"Failed to write {out_path}: {e}") from e
    LOG.info("Wrote %s", out_path)


def _write_bundle_to_stdout(text: str, first: bool, pretty: bool) -> None:
    """
    Write one serialized Bundle to stdout.

    Compact Bundles are written one per line (NDJSON); pretty ones are
    separated by a blank line.
    """
    if pretty and not first:
        sys.stdout.write("\n")
    sys.stdout.write(text)
    sys.stdout.write("\n")
    sys.stdout.flush()


# ------------------------------------------------------------------------------
# Command handlers
# ------------------------------------------------------------------------------


def _cmd_parse_hl7(path: Path) -> int:
    """
    Parse-hl7: pretty-print HL7 v2 segments.

    Raises
    ------
    HL7FHIREngineError
        If input is invalid or unreadable.
    """
    _validate_existing_file(path, allow_stdin=True)
    for i, raw in enumerate(_read_messages(path)):
        if i:
            print()
        for line in to_pretty_segments(parse_hl7_v2(raw, strict=False)):
            print(line)
    return EXIT_OK


def _cmd_convert(args: argparse.Namespace, cfg: AppConfig) -> int:
    """
    Convert: turn every message of every input into a Bundle.

    Returns
    -------
    int
        EXIT_OK when every message converted, EXIT_ERR when --keep-going
        skipped at least one.

    Raises
    ------
    HL7FHIREngineError
        For invalid input, unwritable output or (without --keep-going) the
        first message that fails to convert.
    """
    converter = HL7ToFHIRConverter(cfg)

    if args.list:
        print("Registered HL7 v2 → FHIR events:")
        for evt in converter.available_events():
            print(f"    {evt}")
        return EXIT_OK

    options = cfg.converter_options(
        validate=args.validate,
        pretty=args.pretty,
        bundle_type=args.bundle_type,
        default_timezone=args.tz,
        properties=_parse_properties(args.property),
    )

    for path in args.paths:
        _validate_existing_file(path, allow_stdin=True)
    out_dir = args.output_dir or cfg.default_output_dir
    if not args.stdout:
        _validate_output_dir(out_dir)

    inputs: List[Tuple[Path, List[str]]] = [
        (path, _read_messages(path)) for path in args.paths
    ]

    failures = 0
    written = 0
    for path, messages in inputs:
        for i, raw in enumerate(messages, start=1):
            try:
                text = converter.convert(raw, options)
            except HL7FHIREngineError as e:
                if not args.keep_going:
                    raise
                failures += 1
                LOG.error("%s (message %d): %s", path, i, e)
                continue
            if args.stdout:
                _write_bundle_to_stdout(text, first=written == 0, pretty=args.pretty)
            else:
                _write_bundle_to_dir(text, out_dir / _output_name(path, i, len(messages)))
            written += 1

    if failures:
        LOG.error("%d message(s) failed, %d converted", failures, written)
        return EXIT_ERR
    return EXIT_OK


# ------------------------------------------------------------------------------
# Entrypoint
# ------------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entrypoint.

    Parameters
    ----------
    argv : list[str] or None, default None
        Argument list for testing; None uses sys.argv[1:].

    Returns
    -------
    int
        Process exit code (EXIT_OK, EXIT_ERR, or EXIT_CLI).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # stdout carries the Bundles
    configure_logging(args.verbose, stream=sys.stderr)

    if args.cmd == "convert":
        if not args.list and not args.paths:
            parser.error("convert needs at least one PATH (or --list)")
        try:
            _parse_properties(args.property)
        except ValueError as e:
            parser.error(str(e))

    try:
        cfg = load_config(args.config)
    except (OSError, TypeError, yaml.YAMLError) as e:
        LOG.error("Invalid configuration: %s", e)
        return EXIT_ERR

    try:
        if args.cmd == "parse-hl7":
            return _cmd_parse_hl7(args.path)
        if args.cmd == "convert":
            return _cmd_convert(args, cfg)
        parser.error("Unknown command")
        return EXIT_CLI

    except HL7FHIREngineError as e:
        LOG.error("%s", e)
        return EXIT_ERR
    except KeyboardInterrupt:
        LOG.error("Interrupted")
        return EXIT_ERR


if __name__ == "__main__":
    raise SystemExit(main())
