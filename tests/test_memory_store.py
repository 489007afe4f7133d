import pytest

from bastion.storage.errors import ConstraintViolation
from bastion.storage.memory import MemorySessionStore, MemoryStore


def test_memory_store_persists_users_and_refresh_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist@Example.com", "hash", role="admin")
    store.insert_refresh_token(user.id, "sel-1", "vhash", 5000)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.role == "admin"
    assert reloaded_user.created_at == user.created_at
    record = reloaded.get_refresh_token("sel-1")
    assert record.user_id == user.id
    assert record.expires_at == 5000

    # sequences continue after reload
    second = reloaded.create_user("second@example.com", "hash")
    assert second.id == user.id + 1


def test_consumed_token_stays_gone_after_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("consume@example.com", "hash")
    store.insert_refresh_token(user.id, "sel-1", "vhash", 5000)
    assert store.consume_refresh_token("sel-1").selector == "sel-1"
    assert store.consume_refresh_token("sel-1") is None

    assert MemoryStore(fs_root=str(tmp_path)).get_refresh_token("sel-1") is None


def test_duplicate_email_is_constraint_violation():
    store = MemoryStore()
    store.create_user("dup@example.com", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_user(" DUP@example.com ", "hash")


def test_refresh_token_requires_existing_user_and_unique_selector():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.insert_refresh_token(99, "sel", "vhash", 100)
    user = store.create_user("sel@example.com", "hash")
    store.insert_refresh_token(user.id, "sel", "vhash", 100)
    with pytest.raises(ConstraintViolation):
        store.insert_refresh_token(user.id, "sel", "other", 100)


def test_delete_user_cascades_refresh_tokens():
    store = MemoryStore()
    keep = store.create_user("keep@example.com", "hash")
    drop = store.create_user("drop@example.com", "hash")
    store.insert_refresh_token(keep.id, "keep-sel", "vhash", 100)
    store.insert_refresh_token(drop.id, "drop-1", "vhash", 100)
    store.insert_refresh_token(drop.id, "drop-2", "vhash", 100)

    assert store.delete_user(drop.id) is True
    assert store.delete_user(drop.id) is False
    assert store.list_refresh_tokens(drop.id) == []
    assert [r.selector for r in store.list_refresh_tokens(keep.id)] == ["keep-sel"]


def test_update_user_role_and_list_order():
    store = MemoryStore()
    first = store.create_user("a@example.com", "hash")
    store.create_user("b@example.com", "hash")
    assert store.update_user_role(first.id, "admin").role == "admin"
    assert store.update_user_role(999, "admin") is None
    assert [u.email for u in store.list_users(limit=1)] == ["a@example.com"]


def test_purge_keeps_tokens_expiring_now():
    store = MemoryStore()
    user = store.create_user("purge@example.com", "hash")
    store.insert_refresh_token(user.id, "old", "vhash", 99)
    store.insert_refresh_token(user.id, "edge", "vhash", 100)
    assert store.purge_expired_refresh_tokens(100) == 1
    assert store.get_refresh_token("edge") is not None


def test_session_store_returns_copies():
    store = MemorySessionStore()
    sess = store.create_session(60, 1000, meta={"csrf_token": "abc"})
    fetched = store.get_session(sess.id)
    fetched.meta["csrf_token"] = "changed"
    assert store.get_session(sess.id).meta["csrf_token"] == "abc"

    store.set_session_meta(sess.id, {"csrf_token": "new"})
    assert store.get_session(sess.id).meta == {"csrf_token": "new"}


def test_session_store_purge_expired():
    store = MemorySessionStore()
    old = store.create_session(10, 1000)
    fresh = store.create_session(100, 1000)
    assert store.purge_expired_sessions(1010) == 1
    assert store.get_session(old.id) is None
    assert store.get_session(fresh.id) is not None
