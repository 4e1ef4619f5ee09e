"""Tests for the in-process store's uniqueness and conditional-write guarantees."""

from datetime import timedelta

import pytest

from tessera.storage.errors import ConstraintViolation
from tessera.storage.memory import MemoryStore
from tessera.storage.models import PermanentBan, ProviderLink, TemporaryBan, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def account(store):
    profile = store.create_user_profile("alice")
    return store.create_account(profile.id, "Alice@Example.com", "digest")


@pytest.fixture
def device(store):
    return store.create_device("device-1", platform="ios")


class TestAccounts:
    def test_email_is_normalized_and_unique(self, store, account):
        assert account.email == "alice@example.com"
        profile = store.create_user_profile("alice2")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_account(profile.id, "ALICE@example.com", "digest")
        assert exc.value.field == "email"

    def test_lookup_by_email_ignores_case(self, store, account):
        assert store.get_account_by_email("ALICE@EXAMPLE.COM").id == account.id

    def test_username_is_unique_case_insensitively(self, store, account):
        assert not store.is_username_available("ALICE")
        with pytest.raises(ConstraintViolation):
            store.create_user_profile("Alice")

    def test_returned_records_are_copies(self, store, account):
        account.email = "mallory@example.com"
        assert store.get_account(account.id).email == "alice@example.com"

    def test_update_rejects_unknown_fields(self, store, account):
        with pytest.raises(ValueError):
            store.update_account(account.id, role="admin")

    def test_ban_round_trips_through_update(self, store, account):
        ends = utcnow() + timedelta(days=1)
        store.update_account(account.id, ban=TemporaryBan(ends_at=ends, reason="spam"))
        loaded = store.get_account(account.id)
        assert loaded.ban.kind == "temporary"
        assert loaded.is_banned(utcnow())
        assert not loaded.is_banned(ends + timedelta(seconds=1))

    def test_permanent_ban_never_lapses(self, store, account):
        store.update_account(account.id, ban=PermanentBan())
        assert store.get_account(account.id).is_banned(utcnow() + timedelta(days=3650))


class TestFailedLogins:
    def test_counter_increments_and_locks_at_threshold(self, store, account):
        now = utcnow()
        for attempt in range(1, 5):
            updated = store.record_failed_login(account.id, now, 5, 30)
            assert updated.failed_login_count == attempt
            assert updated.locked_until is None
        locked = store.record_failed_login(account.id, now, 5, 30)
        assert locked.failed_login_count == 5
        assert locked.locked_until == now + timedelta(minutes=30)
        assert locked.is_locked(now)

    def test_reset_clears_counter_and_lock(self, store, account):
        now = utcnow()
        for _ in range(5):
            store.record_failed_login(account.id, now, 5, 30)
        store.reset_login_failures(account.id)
        loaded = store.get_account(account.id)
        assert loaded.failed_login_count == 0
        assert loaded.locked_until is None

    def test_unknown_account_returns_none(self, store):
        assert store.record_failed_login("missing", utcnow(), 5, 30) is None


class TestProviderLinks:
    def test_subject_can_link_to_only_one_account(self, store, account):
        link = ProviderLink(provider="google", provider_subject_id="sub-1")
        store.add_provider_link(account.id, link)
        other_profile = store.create_user_profile("bob")
        other = store.create_account(other_profile.id, "bob@example.com")
        with pytest.raises(ConstraintViolation):
            store.add_provider_link(other.id, link)

    def test_one_link_per_provider_per_account(self, store, account):
        store.add_provider_link(account.id, ProviderLink("google", "sub-1"))
        with pytest.raises(ConstraintViolation):
            store.add_provider_link(account.id, ProviderLink("google", "sub-2"))

    def test_lookup_and_remove(self, store, account):
        store.add_provider_link(account.id, ProviderLink("google", "sub-1"))
        assert store.get_account_by_provider("google", "sub-1").id == account.id
        assert store.remove_provider_link(account.id, "google")
        assert store.get_account_by_provider("google", "sub-1") is None
        assert not store.remove_provider_link(account.id, "google")

    def test_last_sign_in_method_is_kept(self, store):
        profile = store.create_user_profile("gina")
        account = store.create_account(
            profile.id, "gina@example.com", provider_links=[ProviderLink("google", "sub-1")]
        )
        with pytest.raises(ConstraintViolation) as exc:
            store.remove_provider_link(account.id, "google")
        assert exc.value.detail["reason"] == "last_sign_in_method"
        assert store.get_account(account.id).has_provider("google")


class TestSessions:
    def test_one_session_per_device(self, store, account, device):
        first = store.create_session(account.id, device.id, "hash-1")
        second = store.create_session(account.id, device.id, "hash-2")
        assert store.get_session(first.id) is None
        assert store.get_session(second.id).refresh_token_hash == "hash-2"

    def test_duplicate_refresh_hash_is_rejected(self, store, account, device):
        store.create_session(account.id, device.id, "hash-1")
        other_device = store.create_device("device-2")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_session(account.id, other_device.id, "hash-1")
        assert exc.value.field == "refresh_token_hash"

    def test_session_requires_existing_account_and_device(self, store, account):
        with pytest.raises(ConstraintViolation):
            store.create_session(account.id, "no-such-device", "hash-1")

    def test_bind_is_compare_and_swap(self, store, account, device):
        sess = store.create_session(account.id, device.id, "hash-1")
        assert store.bind_refresh_token(sess.id, "hash-1", "hash-2")
        assert not store.bind_refresh_token(sess.id, "hash-1", "hash-3")
        assert store.get_session(sess.id).refresh_token_hash == "hash-2"

    def test_bind_renews_expiry_and_last_login(self, store, account, device):
        sess = store.create_session(account.id, device.id, "hash-1", ttl_minutes=60)
        later = utcnow() + timedelta(minutes=45)
        assert store.bind_refresh_token(sess.id, "hash-1", "hash-2", later, ttl_minutes=60)
        renewed = store.get_session(sess.id)
        assert renewed.last_login_at == later
        assert renewed.expires_at == later + timedelta(minutes=60)
        assert not renewed.is_expired(sess.expires_at + timedelta(minutes=1))

    def test_bind_fails_on_inactive_session(self, store, account, device):
        sess = store.create_session(account.id, device.id, "hash-1")
        store.deactivate_session(sess.id)
        assert not store.bind_refresh_token(sess.id, "hash-1", "hash-2")

    def test_deactivate_account_sessions_keeps_exception(self, store, account, device):
        keep = store.create_session(account.id, device.id, "hash-1")
        other_device = store.create_device("device-2")
        drop = store.create_session(account.id, other_device.id, "hash-2")
        assert store.deactivate_account_sessions(account.id, except_session_id=keep.id) == 1
        assert store.get_session(keep.id).active
        assert not store.get_session(drop.id).active

    def test_list_active_excludes_inactive_and_expired(self, store, account, device):
        live = store.create_session(account.id, device.id, "hash-1")
        other_device = store.create_device("device-2")
        dead = store.create_session(account.id, other_device.id, "hash-2")
        store.deactivate_session(dead.id)
        assert [s.id for s in store.list_active_sessions(account.id, utcnow())] == [live.id]
        later = live.expires_at + timedelta(seconds=1)
        assert store.list_active_sessions(account.id, later) == []

    def test_evict_removes_only_expired_rows(self, store, account, device):
        short = store.create_session(account.id, device.id, "hash-1", ttl_minutes=1)
        other_device = store.create_device("device-2")
        long = store.create_session(account.id, other_device.id, "hash-2", ttl_minutes=600)
        store.deactivate_session(long.id)
        removed = store.evict_expired_sessions(utcnow() + timedelta(minutes=5))
        assert removed == 1
        assert store.get_session(short.id) is None
        assert store.get_session(long.id) is not None
