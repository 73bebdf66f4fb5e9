import contextlib
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from snaglink.auth import issue_owner_token
from snaglink.config import Settings
from snaglink.db import SqliteStore
from snaglink.main import create_app
from snaglink.models import AccessLevel, MagicLink
from snaglink.pin_gate import hash_pin_with_salt
from snaglink.tokens import generate_salt, generate_token
from snaglink.util import generate_id

TEST_JWT_SECRET = "test-only-owner-token-secret-0123456789"
START = 1_700_000_000


class FakeClock:
    """Controllable epoch-second clock."""

    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "snaglink.db"))
    s.init()
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="test",
        db_path=str(tmp_path / "snaglink.db"),
        base_url="https://snaglist.test",
        jwt_secret=TEST_JWT_SECRET,
        pin_max_attempts=5,
        pin_lockout_seconds=300,
        pin_hash_scheme="sha256",
        rate_limits={
            "token_lookup": (20, 60),
            "pin_attempt": (5, 300),
            "api_call": (100, 60),
        },
        rate_limit_sweep_seconds=0,
        audit_sink="sqlite",
        notify_webhook_url="",
    )


@pytest.fixture
def make_client(settings, store, clock):
    """Build a TestClient over create_app, optionally overriding settings."""
    with contextlib.ExitStack() as stack:
        def factory(**overrides) -> TestClient:
            app = create_app(settings.with_overrides(**overrides), store=store, clock=clock,
                             configure_logs=False)
            return stack.enter_context(TestClient(app))
        yield factory


@pytest.fixture
def client(make_client):
    return make_client()


def owner_headers(user_id: str = "owner-1") -> dict:
    return {"Authorization": f"Bearer {issue_owner_token(user_id, TEST_JWT_SECRET)}"}


@pytest.fixture
def headers_for():
    return owner_headers


@pytest.fixture
def owner():
    return owner_headers("owner-1")


@pytest.fixture
def other_owner():
    return owner_headers("owner-2")


@pytest.fixture
def create_link(clock):
    """POST a new magic link; returns the response JSON."""
    def _create(client, headers, pin=None, expires_in=7 * 86400, snag_ids=None, **fields):
        body = {
            "access_level": "view",
            "expires_at": datetime.fromtimestamp(clock.now + expires_in, tz=timezone.utc).isoformat(),
            "snag_ids": snag_ids or ["snag-1", "snag-2"],
            "project_id": "project-1",
            "contractor_name": "Acme Plumbing",
        }
        if pin is not None:
            body["pin"] = pin
        body.update(fields)
        r = client.post("/api/v1/magic-links", json=body, headers=headers)
        assert r.status_code == 201, r.text
        return r.json()
    return _create


@pytest.fixture
def link_factory(store, clock):
    """Insert a magic link directly into the store."""
    def _make(pin=None, expires_in=3600, **fields) -> MagicLink:
        pin_hash = pin_salt = pin_scheme = None
        if pin is not None:
            pin_salt = generate_salt()
            pin_scheme = "sha256"
            pin_hash = hash_pin_with_salt(pin, pin_salt, pin_scheme)
        link = MagicLink(
            id=generate_id(),
            token=generate_token(),
            access_level=AccessLevel.VIEW,
            expires_at=clock.now + expires_in,
            snag_ids=["snag-1"],
            project_id="project-1",
            created_by_id="owner-1",
            pin_hash=pin_hash,
            pin_salt=pin_salt,
            pin_scheme=pin_scheme,
            created_at=clock.now,
        )
        for key, value in fields.items():
            setattr(link, key, value)
        assert store.insert_link(link)
        return link
    return _make
