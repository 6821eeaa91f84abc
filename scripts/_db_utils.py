from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.peptrack.db import _engine_kwargs, make_sessionmaker


def create_script_engine(db_url: str):
    return create_engine(db_url, **_engine_kwargs(db_url))


@contextmanager
def script_session(db_url: str):
    """Commit-or-rollback session for scripts that run without the Flask app."""
    engine = create_script_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
