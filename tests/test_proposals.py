import io
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from app.peptrack import create_app
from app.peptrack.db import session_scope
from app.peptrack.models import AuditEvent, Base, Permission, Role, User
from app.peptrack.modules.proposals import service
from app.peptrack.modules.proposals.errors import DanglingReference, DuplicateNumber, InvalidTransition, MalformedHeader
from app.peptrack.modules.proposals.header import Author
from app.peptrack.modules.proposals.models import Proposal, ProposalStatusChange
from app.peptrack.modules.proposals.service import change_status, create_proposal, import_proposal, import_proposals
from app.peptrack.rbac import PROPOSAL_PERMISSIONS, ROLE_PERMISSIONS

PEP_8 = (
    "PEP: 8\r\n"
    "Title: Style Guide for Python Code\r\n"
    "Author: Guido van Rossum <guido@python.org>,\r\n"
    "        Barry Warsaw <barry@python.org>\r\n"
    "Status: Active\r\n"
    "Type: Process\r\n"
    "Created: 05-Jul-2001\r\n"
    "Post-History: 05-Jul-2001, 01-Aug-2013\r\n"
    "\r\n"
    "Introduction\r\n"
    "============\r\n"
    "\r\n"
    "See PEP 257 for docstrings [1]_.\r\n"
    "\r\n"
    ".. [1] https://peps.python.org/pep-0257/\r\n"
)

PEP_3000 = (
    "PEP: 3000\n"
    "Title: Python 3000\n"
    "Author: Guido van Rossum <guido@python.org>\n"
    "Status: Accepted\n"
    "Type: Process\n"
    "Created: 05-Apr-2006\n"
    "\n"
    "Body mentions PEP 8.\n"
)


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
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {"admin.view": Permission(key="admin.view", name="Admin: view shell")}
        perms.update({k: Permission(key=k, name=v) for k, v in PROPOSAL_PERMISSIONS.items()})
        roles = {}
        for role_key, keys in ROLE_PERMISSIONS.items():
            r = Role(key=role_key, name=role_key.title())
            r.permissions.extend(perms[k] for k in keys)
            roles[role_key] = r
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(roles["admin"])
        author = User(
            email="author@example.com",
            display_name="Jane Author",
            password_hash=generate_password_hash("pw"),
            is_active=True,
        )
        author.roles.append(roles["author"])
        s.add_all(list(perms.values()) + list(roles.values()) + [admin, author])

    return app.test_client()


def _login(client, email="admin@example.com"):
    r = client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        return sess["csrf_token"]


def _import(client, *files):
    data = {"csrf_token": _csrf(client), "files": [(io.BytesIO(text.encode("utf-8")), name) for name, text in files]}
    return client.post("/admin/proposals/import", data=data, content_type="multipart/form-data")


def _admin(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def test_create_draft_allocates_number_and_stores_source(client):
    _login(client)
    r = client.post(
        "/admin/proposals/new",
        data={
            "csrf_token": _csrf(client),
            "title": "Pattern Matching",
            "pep_type": "Standards Track",
            "authors": "Jane Doe <jane@example.com>\nBob Smith",
            "created": "2020-06-23",
            "python_version": "3.10",
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/proposals/1")

    app = client.application
    with session_scope(app) as s:
        p = s.query(Proposal).filter(Proposal.number == 1).one()
        assert p.status == "Draft"
        assert [a.name for a in p.authors] == ["Jane Doe", "Bob Smith"]
        assert p.header_text.startswith(
            "PEP: 1\nTitle: Pattern Matching\nAuthor: Jane Doe <jane@example.com>, Bob Smith\nStatus: Draft\n"
        )
        assert "Created: 23-Jun-2020\n" in p.header_text
        assert p.storage_key == "proposals/pep-0001.txt"
        ev = s.query(AuditEvent).filter(AuditEvent.action == "proposal.create").one()
        assert ev.entity_id == "1"

    stored = Path("storage") / "proposals" / "pep-0001.txt"
    assert stored.read_text(encoding="utf-8").startswith("PEP: 1\n")

    r = client.get("/admin/proposals/1")
    assert r.status_code == 200
    assert b"Pattern Matching" in r.data

    # next draft takes max + 1
    r = client.post(
        "/admin/proposals/new",
        data={"csrf_token": _csrf(client), "title": "Second", "pep_type": "Process", "authors": "Jane Doe"},
    )
    with session_scope(app) as s:
        assert s.query(Proposal).filter(Proposal.title == "Second").one().number == 2


def test_create_with_taken_number_is_rejected(client):
    _login(client)
    _import(client, ("pep-0008.rst", PEP_8))
    r = client.post(
        "/admin/proposals/new",
        data={"csrf_token": _csrf(client), "title": "Clash", "pep_type": "Process", "authors": "X", "number": "8"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"PEP 8 already exists" in r.data
    with session_scope(client.application) as s:
        assert s.query(Proposal).count() == 1


def test_import_round_trips_source_byte_for_byte(client):
    _login(client)
    r = _import(client, ("pep-0008.rst", PEP_8))
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/proposals/8")

    with session_scope(client.application) as s:
        p = s.query(Proposal).filter(Proposal.number == 8).one()
        assert p.status == "Active"
        assert p.pep_type == "Process"
        assert [a.contact for a in p.authors] == ["guido@python.org", "barry@python.org"]
        assert p.storage_key == "proposals/pep-0008.rst"

    r = client.get("/admin/proposals/8/source")
    assert r.status_code == 200
    assert r.data == PEP_8.encode("utf-8")
    assert "pep-0008.rst" in r.headers["Content-Disposition"]

    with session_scope(client.application) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "proposal.download").count() == 1

    r = client.get("/admin/proposals/8")
    assert r.status_code == 200
    # PEP 257 is not in the collection
    assert b'class="dangling-ref"' in r.data


def test_import_batch_is_all_or_nothing(client):
    _login(client)
    r = _import(
        client,
        ("pep-0001.txt", _pep(1)),
        ("pep-0002.txt", _pep(2, extra="Requires: 77\n")),
    )
    assert r.status_code == 302
    r = client.get(r.headers["Location"])
    assert b"Import rejected" in r.data
    with session_scope(client.application) as s:
        assert s.query(Proposal).count() == 0


def test_import_batch_may_reference_its_own_members(client):
    _login(client)
    r = _import(
        client,
        ("pep-0100.txt", _pep(100, status="Superseded", extra="Superseded-By: 101\n")),
        ("pep-0101.txt", _pep(101, extra="Replaces: 100\n")),
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        assert sorted(n for (n,) in s.query(Proposal.number).all()) == [100, 101]
        assert s.query(Proposal).filter(Proposal.number == 100).one().superseded_by == 101


def test_status_change_rewrites_only_status_fields(client):
    _login(client)
    _import(client, ("pep-3000.txt", PEP_3000))

    r = client.post(
        "/admin/proposals/3000/status",
        data={"csrf_token": _csrf(client), "target": "Final", "resolution": "https://example.org/decision"},
    )
    assert r.status_code == 302

    with session_scope(client.application) as s:
        p = s.query(Proposal).filter(Proposal.number == 3000).one()
        assert p.status == "Final"
        assert p.resolution == "https://example.org/decision"
        expected = PEP_3000.replace("Status: Accepted\n", "Status: Final\n").replace(
            "Created: 05-Apr-2006\n", "Created: 05-Apr-2006\nResolution: https://example.org/decision\n"
        )
        assert p.header_text + p.separator + p.body == expected
        change = s.query(ProposalStatusChange).one()
        assert (change.from_status, change.to_status, change.is_override) == ("Accepted", "Final", False)
        ev = s.query(AuditEvent).filter(AuditEvent.action == "proposal.status_change").one()
        assert ev.entity_id == "3000"

    r = client.get("/admin/proposals/3000/source")
    assert r.data == expected.encode("utf-8")


def test_missing_resolution_is_rejected(client):
    _login(client)
    _import(client, ("pep-0001.txt", _pep(1)))
    r = client.post(
        "/admin/proposals/1/status",
        data={"csrf_token": _csrf(client), "target": "Final"},
        follow_redirects=True,
    )
    assert b"requires a resolution reference" in r.data
    with session_scope(client.application) as s:
        assert s.query(Proposal).filter(Proposal.number == 1).one().status == "Draft"
        assert s.query(ProposalStatusChange).count() == 0


def test_supersede_requires_existing_proposal(client):
    _login(client)
    _import(client, ("pep-0001.txt", _pep(1, status="Accepted")))
    r = client.post(
        "/admin/proposals/1/status",
        data={"csrf_token": _csrf(client), "target": "Superseded", "superseded_by": "42"},
        follow_redirects=True,
    )
    assert b"references PEP 42, which does not exist" in r.data

    _import(client, ("pep-0042.txt", _pep(42)))
    r = client.post(
        "/admin/proposals/1/status",
        data={"csrf_token": _csrf(client), "target": "Superseded", "superseded_by": "42"},
    )
    with session_scope(client.application) as s:
        p = s.query(Proposal).filter(Proposal.number == 1).one()
        assert p.status == "Superseded"
        assert p.superseded_by == 42
        assert "Superseded-By: 42\n" in p.header_text


def test_override_needs_permission_and_reason(client):
    _login(client)
    _import(client, ("pep-0001.txt", _pep(1, status="Withdrawn")))

    r = client.post(
        "/admin/proposals/1/status",
        data={"csrf_token": _csrf(client), "target": "Draft"},
        follow_redirects=True,
    )
    assert b"terminal" in r.data

    r = client.post(
        "/admin/proposals/1/status",
        data={"csrf_token": _csrf(client), "target": "Draft", "override": "1", "reason": "Author resumed work"},
    )
    assert r.status_code == 302
    with session_scope(client.application) as s:
        p = s.query(Proposal).filter(Proposal.number == 1).one()
        assert p.status == "Draft"
        change = s.query(ProposalStatusChange).one()
        assert change.is_override is True
        assert change.reason == "Author resumed work"


def test_author_cannot_transition(client):
    _login(client)
    _import(client, ("pep-0001.txt", _pep(1)))
    client.get("/auth/logout")

    _login(client, "author@example.com")
    r = client.get("/admin/proposals/1")
    assert r.status_code == 200
    r = client.post("/admin/proposals/1/status", data={"csrf_token": _csrf(client), "target": "Accepted"})
    assert r.status_code == 403


def test_list_filters_check_and_catalog(client):
    _login(client)
    _import(client, ("pep-0008.rst", PEP_8), ("pep-3000.txt", PEP_3000), ("pep-0001.txt", _pep(1)))

    r = client.get("/admin/proposals/")
    assert r.status_code == 200
    assert b"Proposals" in r.data
    assert b"Style Guide for Python Code" in r.data

    r = client.get("/admin/proposals/?status=Accepted")
    assert b"Python 3000" in r.data
    assert b"Style Guide" not in r.data

    r = client.get("/admin/proposals/?q=8")
    assert b"Style Guide" in r.data
    assert b"Python 3000" not in r.data

    r = client.get("/admin/proposals/check")
    assert r.status_code == 200
    assert b"dangling-cross-reference" in r.data  # PEP 257 in PEP 8's body

    r = client.get("/admin/proposals/catalog")
    assert r.status_code == 200
    assert b"Meta-PEPs" in r.data
    assert b"Open PEPs" in r.data


def test_unknown_proposal_is_404(client):
    _login(client)
    assert client.get("/admin/proposals/999").status_code == 404


def test_service_rejects_duplicate_and_dangling_imports(client):
    app = client.application
    with app.app_context():
        with session_scope(app) as s:
            import_proposal(s, _pep(1), user=_admin(s))

        with session_scope(app) as s:
            with pytest.raises(DuplicateNumber):
                import_proposal(s, _pep(1), user=_admin(s))

        with session_scope(app) as s:
            with pytest.raises(DuplicateNumber):
                import_proposals(s, [("a.txt", _pep(5)), ("b.txt", _pep(5))], user=_admin(s))

        with session_scope(app) as s:
            with pytest.raises(DanglingReference) as exc:
                import_proposal(s, _pep(2, extra="Requires: 9\n"), user=_admin(s))
            assert exc.value.number == 9

        with session_scope(app) as s:
            p = s.query(Proposal).filter(Proposal.number == 1).one()
            with pytest.raises(InvalidTransition):
                change_status(s, p, "Draft", user=_admin(s), override=True)
            assert s.query(Proposal).count() == 1


def test_resolution_with_line_break_leaves_proposal_untouched(client):
    _login(client)
    _import(client, ("pep-3000.txt", PEP_3000))
    r = client.post(
        "/admin/proposals/3000/status",
        data={"csrf_token": _csrf(client), "target": "Final", "resolution": "https://example.org\nSuperseded-By: 8"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"must not contain line breaks" in r.data

    app = client.application
    with app.app_context():
        with session_scope(app) as s:
            p = s.query(Proposal).filter(Proposal.number == 3000).one()
            with pytest.raises(MalformedHeader):
                change_status(s, p, "Rejected", user=_admin(s), resolution="https://example.org\r")
            assert p.status == "Accepted"
            assert p.resolution is None
            assert p.header_text + p.separator + p.body == PEP_3000
            assert s.query(ProposalStatusChange).count() == 0

    assert client.get("/admin/proposals/3000/source").data == PEP_3000.encode("utf-8")


def test_create_rejects_line_breaks_in_header_values(client):
    _login(client)
    r = client.post(
        "/admin/proposals/new",
        data={"csrf_token": _csrf(client), "title": "Sneaky\nStatus: Final", "pep_type": "Process", "authors": "X"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"must not contain line breaks" in r.data

    app = client.application
    with app.app_context():
        with session_scope(app) as s:
            with pytest.raises(MalformedHeader) as exc:
                create_proposal(
                    s,
                    title="Fine",
                    authors=[Author("Jane Doe", "jane@example.com\rResolution: x")],
                    pep_type="Process",
                    user=_admin(s),
                )
            assert exc.value.field == "Author"
            assert s.query(Proposal).count() == 0


def test_import_with_non_ascii_number_is_rejected_not_500(client):
    _login(client)
    r = _import(client, ("pep-0002.txt", _pep("²")))
    assert r.status_code == 302
    r = client.get(r.headers["Location"])
    assert r.status_code == 200
    assert b"Import rejected" in r.data

    r = client.post(
        "/admin/proposals/new",
        data={"csrf_token": _csrf(client), "title": "T", "pep_type": "Process", "authors": "X", "number": "²"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert client.get("/admin/proposals/", query_string={"q": "²"}).status_code == 200
    with session_scope(client.application) as s:
        assert s.query(Proposal).count() == 0


def test_whitespace_separator_survives_import(client):
    _login(client)
    text = _pep(7).replace("\n\nAbstract", "\n \t   \t\nAbstract")
    _import(client, ("pep-0007.txt", text))
    with session_scope(client.application) as s:
        assert s.query(Proposal).filter(Proposal.number == 7).one().separator == " \t   \t\n"
    assert client.get("/admin/proposals/7/source").data == text.encode("utf-8")


def test_create_takes_next_number_when_allocated_one_was_claimed(client, monkeypatch):
    app = client.application
    with app.app_context():
        with session_scope(app) as s:
            import_proposal(s, _pep(1), user=_admin(s))

        real_allocate = service.allocate_number
        calls = []

        def allocate_after_race(s, requested=None):
            calls.append(requested)
            # First call sees a stale max: another session has since committed PEP 1.
            return 1 if len(calls) == 1 else real_allocate(s, requested)

        monkeypatch.setattr(service, "allocate_number", allocate_after_race)
        with session_scope(app) as s:
            p = create_proposal(s, title="Late", authors=[Author("Jane Doe")], pep_type="Process", user=_admin(s))
            assert p.number == 2

        assert calls == [None, None]
        with session_scope(app) as s:
            assert sorted(n for (n,) in s.query(Proposal.number).all()) == [1, 2]
            assert s.query(AuditEvent).filter(AuditEvent.action == "proposal.create").count() == 1
