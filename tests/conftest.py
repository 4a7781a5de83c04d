"""
Shared pytest fixtures for the Request Desk test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: departments and one user per role
    - auth: builds Authorization headers for a user
    - make_user: creates extra users
"""

from types import SimpleNamespace

import pytest

from reqdesk import create_app
from reqdesk.models import db as _db
from reqdesk.models.org import Department, User
from reqdesk.services.identity import ActingUser
from reqdesk.services.jwt_service import generate_token_for


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Organisation fixtures ────────────────────────────────────────────────


def _user(username, role, department=None, **kwargs):
    first, _, last = username.partition("_")
    user = User(
        username=username,
        email=f"{username}@example.com",
        first_name=first.title(),
        last_name=last.title() or None,
        role=role,
        department_id=department.id if department else None,
        **kwargs,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


@pytest.fixture()
def make_user():
    """Factory: make_user(username, role, department=None, **fields) -> User."""
    def _make(username, role="requestor", department=None, **kwargs):
        user = _user(username, role, department, **kwargs)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def org():
    """Two departments plus the dispatch department, one user per role."""
    it = Department(name="Information Technology")
    finance = Department(name="Finance")
    odhc = Department(name="ODHC")
    _db.session.add_all([it, finance, odhc])
    _db.session.flush()

    ns = SimpleNamespace(
        it=it,
        finance=finance,
        odhc=odhc,
        requestor=_user("rita_requestor", "requestor", finance),
        dept_approver=_user("dan_approver", "department_approver", finance),
        other_approver=_user("olga_approver", "department_approver", it),
        it_manager=_user("ivan_manager", "it_manager", it),
        service_desk=_user("sam_desk", "service_desk", it),
        dispatcher=_user("dora_dispatch", "department_approver", odhc),
        admin=_user("ada_admin", "super_administrator", it),
        outsider=_user("oscar_outsider", "requestor", it),
    )
    _db.session.commit()
    return ns


@pytest.fixture()
def auth():
    """auth(user) -> headers carrying a bearer token for ``user``."""
    def _headers(user):
        return {"Authorization": f"Bearer {generate_token_for(user)}"}
    return _headers


@pytest.fixture()
def acting():
    """acting(user) -> ActingUser for service-level calls."""
    return ActingUser.from_user
