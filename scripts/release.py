"""
Release step for a deploy: bring the schema to head, seed roles and the
admin user, then report on the stored collection.

Usage:
  python scripts/release.py [--strict]

DATABASE_URL is required; production refuses SQLite. The collection report
lists every error found by `validate_collection` over the stored proposals
(dangling Superseded-By / Requires / Replaces, Final without Resolution,
duplicate numbers). With --strict any such error fails the release.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.peptrack.config import PRODUCTION_ENVS, load_settings
from app.peptrack.models import Proposal
from app.peptrack.modules.proposals.service import CollectionIssue, validate_collection
from scripts._db_utils import script_session


class ReleaseCheckFailed(RuntimeError):
    def __init__(self, issues: list[CollectionIssue]):
        self.issues = issues
        super().__init__(f"{len(issues)} collection error(s); refusing release in strict mode.")


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def check_collection(db_url: str) -> list[CollectionIssue]:
    """Errors (not warnings) in the stored proposal collection."""
    with script_session(db_url) as s:
        proposals = s.query(Proposal).order_by(Proposal.number).all()
        issues = validate_collection(proposals)
    return [i for i in issues if i.severity == "error"]


def run_release(*, strict: bool = False) -> list[CollectionIssue]:
    # No SQLite fallback for releases.
    if not (os.environ.get("DATABASE_URL") or "").strip():
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    settings = load_settings()
    db_url = settings.database_url
    if settings.env.lower() in PRODUCTION_ENVS and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print(f"=== peptrack release start (ENV={settings.env}) ===", flush=True)
    migrate(db_url)
    print("Migrations complete.", flush=True)

    from scripts import init_db

    init_db.seed_only(database_url=db_url)

    errors = check_collection(db_url)
    for i in errors:
        print(f"PEP {i.number}: {i.code}: {i.message}", flush=True)
    print(f"Collection check: {len(errors)} error(s).", flush=True)
    if errors and strict:
        raise ReleaseCheckFailed(errors)

    print("=== peptrack release done ===", flush=True)
    return errors


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate, seed and check the proposal collection")
    parser.add_argument("--strict", action="store_true", help="Fail if the stored collection has errors")
    args = parser.parse_args()
    try:
        run_release(strict=args.strict)
    except ReleaseCheckFailed as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
