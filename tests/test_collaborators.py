"""Tests for the collaborators around the engine: terms, users, reserved names,
audit log, configuration, locks and notifications."""

import json

import httpx
import pytest
import redis

from id_nodes.core.config import Settings, find_config_file, load_settings
from id_nodes.core.errors import PolicyError, StorageUnavailable
from id_nodes.core.locks import LocalUserLocks, RedisUserLocks, make_user_locks
from id_nodes.core.log import AuditLog
from id_nodes.core.notify import (
    LogDispatcher, Notification, WebhookDispatcher, dispatch_all, make_dispatcher,
)
from id_nodes.graph.backend import PropertyGraph, transaction
from id_nodes.graph.schema import VT, audit_vid, term_vid
from id_nodes.nodes.catalog import FieldSpec
from id_nodes.nodes.terms import Term, TermStatus, TermTracker, gate_passes, term_properties
from id_nodes.users.directory import UserDirectory, lock_designators
from id_nodes.users.reserved import ReservedNames


# ============================================================
# Helpers
# ============================================================

def make_users() -> tuple[PropertyGraph, UserDirectory]:
    graph = PropertyGraph()
    users = UserDirectory(graph)
    with transaction(graph) as uow:
        users.create_user(uow, 1, {"name": "kim", "student_id": ""}, ["Kim@SNU.ac.kr"])
    return graph, users


def make_terms() -> tuple[PropertyGraph, TermTracker]:
    graph, _ = make_users()
    graph.add_vertex(term_vid(0), VT.TERM, term_properties(
        Term(0, "privacy-policy", {"en": "Privacy policy"}, current_revision=0, contents=("r0",))))
    return graph, TermTracker(graph)


class CountingGraph:
    """Counts every call that reaches the graph."""

    def __init__(self, graph):
        self.graph = graph
        self.calls = 0

    def __getattr__(self, name):
        self.calls += 1
        return getattr(self.graph, name)


class FakeLock:
    def __init__(self, acquired=True, acquire_error=None, release_error=None):
        self.acquired = acquired
        self.acquire_error = acquire_error
        self.release_error = release_error
        self.released = False

    def acquire(self):
        if self.acquire_error:
            raise self.acquire_error
        return self.acquired

    def release(self):
        self.released = True
        if self.release_error:
            raise self.release_error


class FakeRedis:
    def __init__(self, lock):
        self._lock = lock
        self.names = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.names.append(name)
        return self._lock


# ============================================================
# Terms
# ============================================================

def test_term_status_defaults_to_pending():
    graph, terms = make_terms()
    assert terms.get_status(1, 0) == TermStatus.PENDING
    assert terms.get_status(1, 42) == TermStatus.PENDING
    assert terms.statuses(1) == {0: TermStatus.PENDING}
    print("  ✓ term_status_defaults_to_pending")


def test_new_revision_resets_acceptance():
    graph, terms = make_terms()
    with transaction(graph) as uow:
        assert terms.set_status(uow, 1, 0, 0, TermStatus.OK).ok
    assert terms.get_status(1, 0) == TermStatus.OK

    graph.add_vertex(term_vid(0), VT.TERM, term_properties(
        Term(0, "privacy-policy", current_revision=1, contents=("r0", "r1"))))
    assert terms.get_status(1, 0) == TermStatus.PENDING
    assert terms.statuses(1)[0] == TermStatus.PENDING

    with transaction(graph) as uow:
        assert terms.set_status(uow, 1, 0, 0, TermStatus.OK).error == PolicyError.E_STALE
        assert terms.set_status(uow, 2, 0, 1, TermStatus.OK).error == PolicyError.E_NOT_FOUND
        assert terms.set_status(uow, 1, 9, 0, TermStatus.OK).error == PolicyError.E_NOT_FOUND
    print("  ✓ new_revision_resets_acceptance")


def test_may_accept_check():
    graph, _ = make_terms()
    terms = TermTracker(graph, may_accept=lambda user_id, term_id: False)
    with transaction(graph) as uow:
        assert terms.set_status(uow, 1, 0, 0, TermStatus.NO).error == PolicyError.E_TRANSITION
        assert terms.set_status(uow, 1, 0, 0, TermStatus.PENDING).ok
    print("  ✓ may_accept_check")


def test_gate_passes():
    statuses = {0: TermStatus.OK, 1: TermStatus.PENDING, 2: TermStatus.NO}
    assert gate_passes(statuses, (), "ok")
    assert gate_passes(statuses, (0,), "ok")
    assert not gate_passes(statuses, (0, 1), "ok")
    assert gate_passes(statuses, (0, 1), "not_no")
    assert not gate_passes(statuses, (2,), "not_no")
    assert gate_passes(statuses, (7,), "not_no")
    print("  ✓ gate_passes")


# ============================================================
# Users
# ============================================================

def test_user_fields_and_locks():
    graph, users = make_users()
    assert not users.field_supplied(1, FieldSpec(users="student_id"))
    assert users.field_supplied(1, FieldSpec(users="name"))

    with transaction(graph) as uow:
        assert users.create_user(uow, 1).error == PolicyError.E_DUPLICATE
        users.set_locks(uow, 1, [FieldSpec(users="name")])
        assert users.update_field(uow, 1, "name", "lee").error == PolicyError.E_LOCKED
        assert users.update_field(uow, 1, "student_id", "2020-1").ok
        assert users.update_field(uow, 9, "name", "x").error == PolicyError.E_NOT_FOUND
    assert users.field_supplied(1, FieldSpec(users="student_id"))
    print("  ✓ user_fields_and_locks")


def test_class_fields():
    graph, users = make_users()
    spec = FieldSpec(classes="semester")
    assert not users.field_supplied(1, spec)
    with transaction(graph) as uow:
        users.add_class(uow, 5, "Networks", {"semester": "2024-2"})
        assert users.enroll(uow, 1, 5).ok
        assert users.enroll(uow, 1, 6).error == PolicyError.E_NOT_FOUND
    assert users.field_supplied(1, spec)
    assert users.missing_fields(1, [spec, FieldSpec(users_classes="grade")]) == \
        [FieldSpec(users_classes="grade")]
    print("  ✓ class_fields")


def test_verified_email_domains():
    graph, users = make_users()
    assert users.missing_verified_email(1, ["snu.ac.kr"]) == []
    assert users.missing_verified_email(1, ["snu.ac.kr", "example.com"]) == ["example.com"]
    with transaction(graph) as uow:
        users.add_verified_email(uow, 1, "kim@example.com")
    assert users.missing_verified_email(1, ["example.com"]) == []
    print("  ✓ verified_email_domains")


def test_lock_designators():
    locks = lock_designators([FieldSpec(users="a"), FieldSpec(classes="b", users_classes="c")])
    assert locks == {"users.a", "classes.b", "users_classes.c"}
    print("  ✓ lock_designators")


# ============================================================
# Reserved names
# ============================================================

def test_empty_name_rejected_before_any_query():
    counting = CountingGraph(PropertyGraph())
    reserved = ReservedNames(counting)
    assert reserved.insert("").error == PolicyError.E_EMPTY
    assert reserved.remove("").error == PolicyError.E_EMPTY
    assert counting.calls == 0
    print("  ✓ empty_name_rejected_before_any_query")


def test_host_name_blocks_reservation():
    reserved = ReservedNames(PropertyGraph())
    assert reserved.add_host("ftp").ok
    assert reserved.is_reserved("ftp")
    result = reserved.insert("ftp")
    assert result.error == PolicyError.E_DUPLICATE
    assert reserved.list() == []
    print("  ✓ host_name_blocks_reservation")


def test_reserve_and_release():
    reserved = ReservedNames(PropertyGraph())
    assert reserved.insert("root").ok
    assert reserved.insert("root").error == PolicyError.E_DUPLICATE
    assert reserved.list() == ["root"]
    assert reserved.remove("root").ok
    assert reserved.remove("root").error == PolicyError.E_NOT_FOUND
    assert not reserved.is_reserved("root")
    print("  ✓ reserve_and_release")


# ============================================================
# Audit log
# ============================================================

def test_audit_chain_detects_tampering():
    graph = PropertyGraph()
    audit = AuditLog(graph)
    with transaction(graph) as uow:
        audit.append(uow, "grant", 1, {"node_id": 3}, "admin")
        audit.append(uow, "revoke", 1, {"node_id": 3}, "admin")
    assert audit.length == 2
    assert audit.head.prev_hash == audit.entries()[0].entry_hash
    assert audit.verify_chain()

    graph.update_vertex(audit_vid(0), actor="mallory")
    assert not audit.verify_chain()
    print("  ✓ audit_chain_detects_tampering")


def test_audit_rollback_leaves_no_entry():
    graph = PropertyGraph()
    audit = AuditLog(graph)
    with pytest.raises(ValueError):
        with transaction(graph) as uow:
            audit.append(uow, "grant", 1, {"node_id": 3})
            raise ValueError("abort")
    assert audit.length == 0
    assert audit.head is None
    print("  ✓ audit_rollback_leaves_no_entry")


# ============================================================
# Configuration
# ============================================================

def test_settings_from_env():
    s = Settings.from_env({
        "IDN_BACKEND": "falkordb",
        "FALKORDB_HOST": "graph.internal",
        "FALKORDB_PORT": "6380",
        "IDN_LOCK_TIMEOUT_S": "2.5",
        "UNRELATED": "x",
    })
    assert s.backend == "falkordb"
    assert s.falkordb_host == "graph.internal"
    assert s.falkordb_port == 6380
    assert s.lock_timeout_s == 2.5
    assert s.storage_retries == 3
    # IDN_* wins over the shared variable
    s = Settings.from_env({"FALKORDB_HOST": "a", "IDN_FALKORDB_HOST": "b"})
    assert s.falkordb_host == "b"
    print("  ✓ settings_from_env")


def test_settings_validation():
    with pytest.raises(ValueError):
        Settings(backend="postgres")
    with pytest.raises(ValueError):
        Settings(lock_backend="zookeeper")
    with pytest.raises(ValueError):
        Settings.from_mapping({"no_such_key": 1})
    print("  ✓ settings_validation")


def test_settings_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"backend": "memory", "catalog_path": "catalog.json",
                                "storage_retries": 5}))
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_config_file(nested) == path
    s = load_settings(path)
    assert s.catalog_path == "catalog.json"
    assert s.storage_retries == 5

    (tmp_path / "bad.json").write_text("[1, 2]")
    with pytest.raises(ValueError):
        Settings.from_file(tmp_path / "bad.json")
    with pytest.raises(ValueError):
        Settings.from_file(tmp_path / "missing.json")
    print("  ✓ settings_from_file")


# ============================================================
# Locks
# ============================================================

def test_local_locks_are_per_user():
    locks = LocalUserLocks(timeout_s=0.01)
    with locks.hold(1):
        with locks.hold(2):
            pass
        with pytest.raises(StorageUnavailable):
            with locks.hold(1):
                pass
    with locks.hold(1):
        pass
    print("  ✓ local_locks_are_per_user")


def test_redis_locks():
    lock = FakeLock()
    client = FakeRedis(lock)
    locks = RedisUserLocks(client, timeout_s=1.0)
    with locks.hold(7):
        pass
    assert client.names == ["id_nodes:user-lock:7"]
    assert lock.released
    print("  ✓ redis_locks")


def test_redis_lock_failures():
    with pytest.raises(StorageUnavailable):
        with RedisUserLocks(FakeRedis(FakeLock(acquired=False))).hold(1):
            pass
    with pytest.raises(StorageUnavailable):
        with RedisUserLocks(FakeRedis(FakeLock(
                acquire_error=redis.exceptions.ConnectionError("down")))).hold(1):
            pass
    # An expired lock on release is logged, not raised
    with RedisUserLocks(FakeRedis(FakeLock(
            release_error=redis.exceptions.LockError("expired")))).hold(1):
        pass
    print("  ✓ redis_lock_failures")


def test_make_user_locks():
    assert isinstance(make_user_locks(Settings()), LocalUserLocks)
    assert isinstance(make_user_locks(Settings(lock_backend="redis")), RedisUserLocks)
    print("  ✓ make_user_locks")


# ============================================================
# Notifications
# ============================================================

def test_webhook_dispatcher_posts_payload():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    dispatcher = WebhookDispatcher("https://hooks.example/notify", client=client)
    failed = dispatch_all(dispatcher, [
        Notification(1, 3, "lab-pc", "granted", {"en": "Welcome"}),
    ])
    assert failed == 0
    assert received == [{"user_id": 1, "node_id": 3, "node": "lab-pc",
                         "event": "granted", "message": {"en": "Welcome"}}]
    print("  ✓ webhook_dispatcher_posts_payload")


def test_dispatch_failures_are_counted():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    dispatcher = WebhookDispatcher("https://hooks.example/notify", client=client)
    notifications = [Notification(1, n, f"n{n}", "revoked") for n in range(3)]
    assert dispatch_all(dispatcher, notifications) == 3
    print("  ✓ dispatch_failures_are_counted")


def test_log_dispatcher_keeps_recent():
    dispatcher = LogDispatcher(keep=2)
    dispatch_all(dispatcher, [Notification(1, n, f"n{n}", "granted") for n in range(5)])
    assert [n.node_id for n in dispatcher.sent] == [3, 4]
    assert isinstance(make_dispatcher(Settings()), LogDispatcher)
    assert isinstance(make_dispatcher(Settings(notify_webhook_url="https://x.example")),
                      WebhookDispatcher)
    print("  ✓ log_dispatcher_keeps_recent")
