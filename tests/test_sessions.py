from datetime import timedelta

from learnity.service.audit import AuditLogger
from learnity.service.sessions import SESSION_LIMIT_REASON, SessionManager
from learnity.storage.memory import MemoryStore
from learnity.storage.models import utcnow


def _manager(**kwargs):
    store = MemoryStore()
    audit = AuditLogger(store)
    return store, SessionManager(store, audit=audit, **kwargs)


def test_new_session_is_active_until_terminated():
    store, sessions = _manager()
    session = sessions.create_session("subject-1", "laptop", ip_address="10.0.0.1")

    assert sessions.is_active(session.id)
    assert sessions.terminate_session(session.id, "logout") is True
    assert not sessions.is_active(session.id)
    # Second termination is a no-op
    assert sessions.terminate_session(session.id, "logout") is False
    assert store.get_session(session.id).termination_reason == "logout"


def test_unknown_session_is_inactive():
    _, sessions = _manager()
    assert not sessions.is_active("missing")
    assert sessions.terminate_session("missing", "logout") is False


def test_expired_session_is_inactive():
    store, sessions = _manager()
    session = sessions.create_session("subject-1")
    store.sessions[session.id].expires_at = utcnow() - timedelta(seconds=1)
    assert not sessions.is_active(session.id)


def test_terminate_all_sessions_kills_every_device():
    _, sessions = _manager()
    created = [sessions.create_session("subject-1", f"device-{i}") for i in range(3)]
    other = sessions.create_session("subject-2")

    assert sessions.terminate_all_sessions("subject-1", "logout_all_devices") == 3
    assert not any(sessions.is_active(s.id) for s in created)
    assert sessions.is_active(other.id)
    assert sessions.list_active_sessions("subject-1") == []


def test_session_created_after_terminate_all_survives():
    _, sessions = _manager()
    sessions.create_session("subject-1")
    sessions.terminate_all_sessions("subject-1", "logout_all_devices")

    fresh = sessions.create_session("subject-1")
    assert sessions.is_active(fresh.id)


def test_stale_generation_session_is_inactive():
    """A session published before a generation bump is dead even if unstamped."""
    store, sessions = _manager()
    session = sessions.create_session("subject-1")
    store.bump_subject_generation("subject-1")

    assert store.get_session(session.id).terminated_at is None
    assert not sessions.is_active(session.id)


def test_session_limit_evicts_least_recently_seen():
    store, sessions = _manager(max_sessions_per_subject=2)
    oldest = sessions.create_session("subject-1", "a")
    second = sessions.create_session("subject-1", "b")
    store.sessions[oldest.id].last_seen_at = utcnow() - timedelta(hours=1)

    third = sessions.create_session("subject-1", "c")

    assert not sessions.is_active(oldest.id)
    assert store.get_session(oldest.id).termination_reason == SESSION_LIMIT_REASON
    assert sessions.is_active(second.id)
    assert sessions.is_active(third.id)


def test_touch_updates_last_seen():
    store, sessions = _manager()
    session = sessions.create_session("subject-1")
    store.sessions[session.id].last_seen_at = utcnow() - timedelta(hours=1)
    sessions.touch(session.id)
    assert store.get_session(session.id).last_seen_at > utcnow() - timedelta(minutes=1)


def test_session_stats():
    _, sessions = _manager()
    sessions.create_session("subject-1", "phone")
    sessions.create_session("subject-1", "laptop")
    sessions.create_session("subject-2", "phone")
    doomed = sessions.create_session("subject-3")
    sessions.terminate_session(doomed.id, "logout")

    stats = sessions.get_session_stats()
    assert stats["active_sessions"] == 3
    assert stats["unique_subjects"] == 2
    assert stats["sessions_by_device"] == {"phone": 2, "laptop": 1}


def test_termination_is_audited_once():
    store, sessions = _manager()
    session = sessions.create_session("subject-1")
    sessions.terminate_session(session.id, "logout")
    sessions.terminate_session(session.id, "logout")

    records = store.list_audit_records(action="session_terminated")
    assert len(records) == 1
    assert records[0].actor_id == "subject-1"
    assert records[0].new_values == {"reason": "logout"}
