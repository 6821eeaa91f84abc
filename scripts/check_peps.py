#!/usr/bin/env python3
"""
Offline consistency check for a directory of proposal sources.

Usage:
    python scripts/check_peps.py path/to/peps [--warnings]

No database is needed. Exit status is 1 when any file fails to parse or
the collection has errors (duplicate numbers, dangling header references,
status fields out of step); warnings alone exit 0.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.peptrack.modules.proposals.errors import MalformedHeader
from app.peptrack.modules.proposals.header import parse_document
from app.peptrack.modules.proposals.service import validate_collection
from scripts.import_peps import collect_sources, read_source


def main() -> None:
    parser = argparse.ArgumentParser(description="Check proposal sources for collection-wide consistency")
    parser.add_argument("paths", nargs="+", help="Source files or directories containing pep-NNNN files")
    parser.add_argument("--warnings", action="store_true", help="Also print warnings")
    args = parser.parse_args()

    try:
        files = collect_sources(args.paths)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(2)

    parsed = []
    failures = 0
    for path in files:
        try:
            parsed.append(parse_document(read_source(path), filename=path.name))
        except UnicodeDecodeError:
            failures += 1
            print(f"{path.name}: error encoding: not valid UTF-8", flush=True)
        except MalformedHeader as e:
            failures += 1
            print(f"{path.name}: error malformed-header: {e}", flush=True)

    issues = validate_collection(parsed)
    errors = [i for i in issues if i.severity == "error"]
    warnings = [i for i in issues if i.severity == "warning"]
    for i in issues:
        if i.severity == "error" or args.warnings:
            print(f"PEP {i.number}: {i.severity} {i.code}: {i.message}", flush=True)

    print(
        f"Checked {len(files)} file(s): {failures + len(errors)} error(s), {len(warnings)} warning(s).",
        flush=True,
    )
    if failures or errors:
        sys.exit(1)


if __name__ == "__main__":
    main()
