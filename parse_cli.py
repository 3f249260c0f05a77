#!/usr/bin/env python3
"""CLI for the OFX statement parser."""

from __future__ import annotations

import argparse
import codecs
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from ofx_statement_parser import EncodingError, ParseError, parse_statement, render_json

EXIT_OK = 0
EXIT_PARSE_FAILED = 1
EXIT_ENCODE_FAILED = 2
EXIT_INPUT_UNREADABLE = 3
EXIT_OUTPUT_UNWRITABLE = 4

LOG_LEVEL_ENV = "OFX_PARSER_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def resolve_log_level(level: Optional[str]) -> int:
    raw = level or os.getenv(LOG_LEVEL_ENV) or "WARNING"
    raw = raw.strip().upper()
    if raw.isdigit():
        return int(raw)
    numeric = getattr(logging, raw, None)
    return numeric if isinstance(numeric, int) else logging.WARNING


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=resolve_log_level(level), format=LOG_FORMAT, stream=sys.stderr)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Parse an OFX bank statement into JSON."
    )
    parser.add_argument(
        "ofx_path", type=Path, nargs="?", help="Path to statement file (default: stdin)"
    )
    parser.add_argument("-o", "--output", type=Path, help="Output JSON file path")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument(
        "--exact-amounts",
        action="store_true",
        help="Parse amounts as exact decimals instead of via floating point",
    )
    parser.add_argument("--encoding", default="utf-8", help="Input text encoding")
    parser.add_argument("--log-level", help=f"Log level (default: ${LOG_LEVEL_ENV} or WARNING)")
    args = parser.parse_args(argv)
    try:
        codecs.lookup(args.encoding)
    except LookupError:
        parser.error(f"unknown encoding: {args.encoding}")

    configure_logging(args.log_level)

    try:
        if args.ofx_path is None:
            statement = parse_statement(
                sys.stdin.buffer, encoding=args.encoding, exact_amounts=args.exact_amounts
            )
        else:
            with args.ofx_path.open("rb") as fh:
                statement = parse_statement(
                    fh, encoding=args.encoding, exact_amounts=args.exact_amounts
                )
    except OSError as exc:
        print(f"ERROR: cannot read input: {exc}", file=sys.stderr)
        return EXIT_INPUT_UNREADABLE
    except ParseError as exc:
        print(f"ERROR: failed to parse input: {exc}", file=sys.stderr)
        return EXIT_PARSE_FAILED

    indent = 2 if args.pretty or args.output else None
    try:
        rendered = render_json(statement, indent=indent)
    except EncodingError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_ENCODE_FAILED

    if args.output:
        try:
            args.output.write_text(rendered + ("\n" if indent is not None else ""), encoding="utf-8")
        except OSError as exc:
            print(f"ERROR: cannot write output: {exc}", file=sys.stderr)
            return EXIT_OUTPUT_UNWRITABLE
    else:
        print(rendered)

    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
