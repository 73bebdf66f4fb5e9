import threading
from dataclasses import replace

from snaglink.audit import AuditRecorder, SqliteAuditSink
from snaglink.dispatch import BackgroundDispatcher
from snaglink.links import LinkService
from snaglink.models import AccessRecord, AuditEntry, AuditEventType, ResourceType
from snaglink.pin_gate import PinGate
from snaglink.tokens import generate_token
from snaglink.util import generate_id


def run_concurrently(fn, n):
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        r = fn()
        with lock:
            results.append(r)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_duplicate_slug_is_rejected(store, link_factory):
    link = link_factory(slug="acm-aaaaaa")
    assert store.slug_exists("acm-aaaaaa")
    assert not store.slug_exists("acm-bbbbbb")
    assert store.insert_link(replace(link, id=generate_id(), token=generate_token())) is False
    assert store.insert_link(replace(link, id=generate_id())) is False


def test_revoke_happens_once(store, clock, link_factory):
    link = link_factory()
    assert store.revoke_link(link.id, clock.now)
    assert not store.revoke_link(link.id, clock.now + 10)
    assert store.get_link(link.id).revoked_at == clock.now
    assert not store.revoke_link("missing", clock.now)


def test_concurrent_rate_limit_increments_never_exceed_limit(store, clock):
    results = run_concurrently(
        lambda: store.increment_if_below("ip:1", "token_lookup", 20, 60, clock.now).allowed, 40
    )
    assert results.count(True) == 20
    assert results.count(False) == 20


def test_concurrent_pin_failures_lock_exactly_once(store, clock, link_factory):
    link = link_factory(pin="4821")
    updates = run_concurrently(
        lambda: store.increment_failure_and_maybe_lock(link.id, 5, clock.now + 300, clock.now), 12
    )
    applied = [u for u in updates if u.applied]
    assert len(applied) == 5
    stored = store.get_link(link.id)
    assert stored.failed_pin_attempts == 5
    assert stored.locked_until == clock.now + 300


def test_concurrent_access_records_count_every_open(store, clock, link_factory):
    link = link_factory()

    def open_link():
        store.record_access(AccessRecord(generate_id(), link.id, "203.0.113.7", None, False, clock.now))

    run_concurrently(open_link, 25)
    assert store.get_link(link.id).open_count == 25
    assert len(store.list_accesses(link.id)) == 25


def test_purge_cascades_to_accesses_and_audit(store, clock, link_factory):
    old = link_factory(expires_in=60)
    live = link_factory(expires_in=90 * 86400)
    store.record_access(AccessRecord(generate_id(), old.id, "203.0.113.7", None, False, clock.now))
    store.append_audit(AuditEntry(
        id=generate_id(), event_type=AuditEventType.MAGIC_LINK_VALIDATED,
        resource_type=ResourceType.MAGIC_LINK, resource_id=old.id,
        ip_address="203.0.113.7", success=True, created_at=clock.now,
    ))

    clock.advance(31 * 86400)
    dispatcher = BackgroundDispatcher()
    service = LinkService(store, PinGate(store), AuditRecorder(SqliteAuditSink(store), dispatcher),
                          clock=clock)
    assert service.purge_links(30) == 1
    dispatcher.close()

    assert store.get_link(old.id) is None
    assert store.get_link(live.id) is not None
    assert store.list_accesses(old.id) == []
    assert store.list_audit(resource_id=old.id) == []


def test_reset_clears_tables(store, link_factory):
    link_factory()
    store.reset()
    assert store.stats() == {
        "magic_links_count": 0,
        "magic_link_accesses_count": 0,
        "rate_limit_entries_count": 0,
        "audit_logs_count": 0,
    }
