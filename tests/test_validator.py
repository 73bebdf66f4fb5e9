from snaglink.models import AccessLevel, CallerInfo, MagicLink
from snaglink.validator import LinkStatus, LinkValidator, evaluate

NOW = 1_700_000_000


def make_link(**fields):
    link = MagicLink(
        id="link-1",
        token="t" * 43,
        access_level=AccessLevel.VIEW,
        expires_at=NOW + 3600,
        snag_ids=["snag-1"],
        project_id="project-1",
        created_by_id="owner-1",
    )
    for key, value in fields.items():
        setattr(link, key, value)
    return link


def test_active():
    result = evaluate(make_link(), NOW)
    assert result.status == LinkStatus.ACTIVE
    assert result.valid
    assert result.error() is None


def test_not_found():
    result = evaluate(None, NOW)
    assert result.status == LinkStatus.NOT_FOUND
    assert result.error().code == "NOT_FOUND"


def test_revoked_wins_over_expired_and_locked():
    link = make_link(revoked_at=NOW - 10, expires_at=NOW - 5, locked_until=NOW + 100)
    assert evaluate(link, NOW).status == LinkStatus.REVOKED


def test_expired_wins_over_locked():
    link = make_link(expires_at=NOW - 5, locked_until=NOW + 100)
    result = evaluate(link, NOW)
    assert result.status == LinkStatus.EXPIRED
    assert result.error().status_code == 410


def test_locked_reports_retry_after():
    result = evaluate(make_link(locked_until=NOW + 120), NOW)
    assert result.status == LinkStatus.LOCKED
    assert result.retry_after == 120
    assert result.error().to_dict()["retry_after_seconds"] == 120


def test_expiry_boundary():
    link = make_link(expires_at=NOW)
    assert evaluate(link, NOW).status == LinkStatus.ACTIVE
    assert evaluate(link, NOW + 1).status == LinkStatus.EXPIRED


def test_lock_boundary():
    link = make_link(locked_until=NOW)
    assert evaluate(link, NOW).status == LinkStatus.ACTIVE
    assert evaluate(link, NOW - 1).status == LinkStatus.LOCKED


def test_validate_by_token_and_slug(store, clock, link_factory):
    link = link_factory(slug="acm-x7k2m3")
    validator = LinkValidator(store, clock=clock)
    assert validator.validate(link.token).status == LinkStatus.ACTIVE
    assert validator.validate_slug("acm-x7k2m3").link.id == link.id
    assert validator.validate("A" * 43).status == LinkStatus.NOT_FOUND
    assert validator.validate("../etc").status == LinkStatus.NOT_FOUND
    assert validator.validate_slug("nope").status == LinkStatus.NOT_FOUND


def test_validate_sees_revocation(store, clock, link_factory):
    link = link_factory()
    store.revoke_link(link.id, clock.now)
    assert LinkValidator(store, clock=clock).validate(link.token).status == LinkStatus.REVOKED


def test_record_access_updates_counters(store, clock, link_factory):
    link = link_factory()
    validator = LinkValidator(store, clock=clock)
    validator.record_access(link, CallerInfo("203.0.113.7", "curl/8"), pin_verified=False)
    clock.advance(30)
    validator.record_access(link, CallerInfo("198.51.100.2"), pin_verified=True)

    stored = store.get_link(link.id)
    assert stored.open_count == 2
    assert stored.last_opened_at == clock.now

    accesses = store.list_accesses(link.id)
    assert [a.ip_address for a in accesses] == ["198.51.100.2", "203.0.113.7"]
    assert [a.pin_verified for a in accesses] == [True, False]
    assert accesses[1].user_agent == "curl/8"
