#!/usr/bin/env python3
"""
Bulk-import proposal source files into the tracker.

Usage:
    python scripts/import_peps.py path/to/peps
    python scripts/import_peps.py pep-0008.rst pep-0020.rst --dry-run

Directories are scanned for pep-NNNN.rst / pep-NNNN.txt. The whole batch is
validated first (numbers, status fields, header references) and then
imported in one transaction; nothing is written if any file is rejected.
The import is attributed to ADMIN_EMAIL.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.peptrack import create_app
from app.peptrack.db import session_scope
from app.peptrack.models import User
from app.peptrack.modules.proposals.errors import ProposalError
from app.peptrack.modules.proposals.service import import_proposals, parse_sources

SOURCE_PATTERNS = ("pep-*.rst", "pep-*.txt")


def collect_sources(paths: list[str]) -> list[Path]:
    files: list[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            found = {f for pattern in SOURCE_PATTERNS for f in p.glob(pattern)}
            files.extend(sorted(found))
        elif p.is_file():
            files.append(p)
        else:
            raise FileNotFoundError(f"No such file or directory: {raw}")
    return files


def read_source(path: Path) -> str:
    # newline="" keeps CRLF and CR headers intact
    with path.open("r", encoding="utf-8", newline="") as fh:
        return fh.read()


def read_sources(files: list[Path]) -> list[tuple[str, str]]:
    return [(f.name, read_source(f)) for f in files]


def main() -> None:
    parser = argparse.ArgumentParser(description="Import proposal source files")
    parser.add_argument("paths", nargs="+", help="Source files or directories containing pep-NNNN files")
    parser.add_argument("--dry-run", action="store_true", help="Parse and report; do not write")
    args = parser.parse_args()

    try:
        files = collect_sources(args.paths)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(2)
    if not files:
        print("No proposal source files found.", flush=True)
        sys.exit(1)

    try:
        documents = read_sources(files)
    except UnicodeDecodeError as e:
        print(f"REJECTED: not UTF-8: {e}", flush=True)
        sys.exit(1)
    print(f"Found {len(documents)} source file(s).", flush=True)

    if args.dry_run:
        try:
            parsed = parse_sources(documents)
        except ProposalError as e:
            print(f"REJECTED: {e}", flush=True)
            sys.exit(1)
        for doc in parsed:
            print(f"  PEP {doc.number:>5}  {doc.status:<11} {doc.metadata.title}", flush=True)
        print("[DRY RUN] No changes written.", flush=True)
        return

    app = create_app()
    admin_email = app.config["ADMIN_EMAIL"]
    with app.app_context():
        try:
            with session_scope(app) as s:
                user = s.query(User).filter(User.email == admin_email).one_or_none()
                if not user:
                    print(f"ERROR: No user {admin_email}. Run scripts/init_db.py first.", flush=True)
                    sys.exit(1)
                imported = import_proposals(s, documents, user=user)
                numbers = [p.number for p in imported]
        except ProposalError as e:
            print(f"REJECTED: {e}", flush=True)
            sys.exit(1)

    print(f"Imported {len(numbers)} proposal(s): {', '.join(str(n) for n in numbers)}", flush=True)


if __name__ == "__main__":
    main()
