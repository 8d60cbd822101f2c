#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from inkbook.env import read_env
from inkbook.epub import EpubGenerationError, EpubInputError, epub_filename, generate_epub
from inkbook.verify import verify_epub

logger = logging.getLogger("inkbook.cli")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export a manuscript (JSON with title, author and HTML chapters) to EPUB."
    )
    parser.add_argument("input", help="Input manuscript JSON path")
    parser.add_argument("-o", "--output", help="Output EPUB file path")
    parser.add_argument("--css", help="Stylesheet file replacing the default one")
    parser.add_argument(
        "--repair-markup",
        action="store_true",
        help="Re-serialize chapter HTML as well-formed XHTML before packaging",
    )
    parser.add_argument("--check", action="store_true", help="Verify the archive structure after export")
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    logging.basicConfig(level=(read_env("INKBOOK_LOG_LEVEL", "WARNING") or "WARNING").upper())
    args = parse_args(argv)
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Input file not found: {input_path}", file=sys.stderr)
        return 1

    try:
        manuscript = json.loads(input_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        print(f"Manuscript is not valid JSON: {exc}", file=sys.stderr)
        return 1
    if not isinstance(manuscript, dict):
        print("Manuscript must be a JSON object", file=sys.stderr)
        return 1

    css_text = None
    if args.css:
        try:
            css_text = Path(args.css).read_text(encoding="utf-8")
        except OSError as exc:
            print(f"Stylesheet not readable: {exc}", file=sys.stderr)
            return 1
    try:
        blob = generate_epub(
            manuscript,
            manuscript.get("chapters") or [],
            css_text=css_text,
            repair_markup=args.repair_markup,
        )
    except EpubInputError as exc:
        print(f"Invalid manuscript: {exc}", file=sys.stderr)
        return 1
    except EpubGenerationError:
        logger.exception("epub export failed for %s", input_path)
        return 1

    if args.check:
        report = verify_epub(blob)
        if not report.ok:
            for problem in report.problems:
                print(f"EPUB check failed: {problem}", file=sys.stderr)
            return 1

    output_path = Path(args.output) if args.output else input_path.with_name(epub_filename(manuscript.get("title")))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(blob)
    print(f"EPUB saved to: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
