import sys

import pytest

from app.peptrack.models import Base, Permission, Proposal, Role, User
from scripts import check_peps, import_peps, init_db, release
from scripts._db_utils import create_script_engine, script_session


def _pep(number, *, status="Draft", extra=""):
    return (
        f"PEP: {number}\n"
        f"Title: Proposal {number}\n"
        "Author: Jane Doe <jane@example.com>\n"
        f"Status: {status}\n"
        "Type: Standards Track\n"
        "Created: 01-Jan-2020\n"
        f"{extra}"
        "\n"
        "Abstract\n========\n"
    )


@pytest.fixture()
def db_url(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    url = f"sqlite:///{tmp_path/'scripts.db'}"
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("ADMIN_EMAIL", "Admin@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")
    return url


def _sources(tmp_path, *docs):
    d = tmp_path / "peps"
    d.mkdir()
    for number, text in docs:
        (d / f"pep-{number:04d}.txt").write_text(text, encoding="utf-8", newline="")
    return str(d)


def _run(monkeypatch, module, *args):
    monkeypatch.setattr(sys, "argv", [f"{module.__name__.rsplit('.', 1)[-1]}.py", *args])
    module.main()


def _create_tables(url):
    engine = create_script_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()


def _count(url, model):
    with script_session(url) as s:
        return s.query(model).count()


# ---------- check_peps ----------

def test_check_passes_consistent_directory(tmp_path, monkeypatch, capsys):
    src = _sources(tmp_path, (1, _pep(1)), (2, _pep(2, extra="Requires: 1\n")))
    _run(monkeypatch, check_peps, src)
    assert "Checked 2 file(s): 0 error(s)" in capsys.readouterr().out


def test_check_fails_on_dangling_superseded_by(tmp_path, monkeypatch, capsys):
    src = _sources(tmp_path, (1, _pep(1, status="Superseded", extra="Superseded-By: 9\n")))
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, check_peps, src)
    assert exc.value.code == 1
    assert "dangling-superseded-by" in capsys.readouterr().out


def test_check_fails_on_malformed_file(tmp_path, monkeypatch, capsys):
    src = _sources(tmp_path, (1, _pep(1)), (3, _pep("³")))
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, check_peps, src)
    assert exc.value.code == 1
    out = capsys.readouterr().out
    assert "pep-0003.txt: error malformed-header" in out
    assert "Checked 2 file(s): 1 error(s)" in out


def test_check_missing_path_exits_2(tmp_path, monkeypatch):
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, check_peps, str(tmp_path / "nowhere"))
    assert exc.value.code == 2


# ---------- init_db ----------

def test_seed_is_idempotent(db_url):
    _create_tables(db_url)
    init_db.seed_only()
    init_db.seed_only()

    assert _count(db_url, Permission) == len(init_db.PERMISSION_NAMES)
    assert _count(db_url, Role) == 3
    with script_session(db_url) as s:
        users = s.query(User).all()
        assert [u.email for u in users] == ["admin@example.com"]
        assert [r.key for r in users[0].roles] == ["admin"]


# ---------- import_peps ----------

def test_import_dry_run_writes_nothing(tmp_path, db_url, monkeypatch, capsys):
    _create_tables(db_url)
    src = _sources(tmp_path, (1, _pep(1)), (2, _pep(2)))
    _run(monkeypatch, import_peps, src, "--dry-run")
    out = capsys.readouterr().out
    assert "[DRY RUN]" in out
    assert "Proposal 2" in out
    assert _count(db_url, Proposal) == 0


def test_import_writes_batch_as_admin(tmp_path, db_url, monkeypatch, capsys):
    _create_tables(db_url)
    init_db.seed_only()
    src = _sources(tmp_path, (1, _pep(1)), (2, _pep(2, extra="Requires: 1\n")))
    _run(monkeypatch, import_peps, src)
    assert "Imported 2 proposal(s): 1, 2" in capsys.readouterr().out
    with script_session(db_url) as s:
        admin = s.query(User).one()
        assert {p.created_by_user_id for p in s.query(Proposal).all()} == {admin.id}
    assert (tmp_path / "storage" / "proposals" / "pep-0002.txt").read_text(encoding="utf-8") == _pep(
        2, extra="Requires: 1\n"
    )


def test_import_rejects_whole_batch(tmp_path, db_url, monkeypatch):
    _create_tables(db_url)
    init_db.seed_only()
    src = _sources(tmp_path, (1, _pep(1)), (2, _pep(2, extra="Requires: 77\n")))
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, import_peps, src)
    assert exc.value.code == 1
    assert _count(db_url, Proposal) == 0


def test_import_storage_root_from_env(tmp_path, db_url, monkeypatch):
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "sources"))
    _create_tables(db_url)
    init_db.seed_only()
    _run(monkeypatch, import_peps, _sources(tmp_path, (5, _pep(5))))
    assert (tmp_path / "sources" / "proposals" / "pep-0005.txt").exists()
    assert not (tmp_path / "storage").exists()


# ---------- release ----------

def test_release_migrates_and_seeds_fresh_database(db_url, capsys):
    assert release.run_release() == []
    assert _count(db_url, User) == 1
    assert _count(db_url, Proposal) == 0
    assert "Collection check: 0 error(s)." in capsys.readouterr().out

    # Second run is a no-op.
    assert release.run_release(strict=True) == []
    assert _count(db_url, Role) == 3


def test_release_strict_fails_on_collection_errors(tmp_path, db_url, monkeypatch):
    release.run_release()
    _run(monkeypatch, import_peps, _sources(tmp_path, (1, _pep(1)), (2, _pep(2))))
    with script_session(db_url) as s:
        s.query(Proposal).filter(Proposal.number == 1).update({"superseded_by": 42})

    errors = release.run_release()
    assert {e.code for e in errors} >= {"dangling-superseded-by", "superseded-by-without-status"}

    with pytest.raises(release.ReleaseCheckFailed) as exc:
        release.run_release(strict=True)
    assert exc.value.issues == errors

    with pytest.raises(SystemExit) as sys_exit:
        _run(monkeypatch, release, "--strict")
    assert sys_exit.value.code == 1


def test_release_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        release.run_release()
