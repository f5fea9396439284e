"""Unit tests for auth/sessions.py -- rotation, reuse detection and revocation.

Covers:
- issue_session() persists exactly one record bound to the fingerprint
- rotate_session() consumes the presented token and re-issues a full-length pair
- at-most-once redemption, sequential and concurrent
- fingerprint mismatch revokes every session of the subject (all devices)
- refresh token lifetime: accepted before 7 days, rejected after
- logout() idempotence and revoke_all()
- store failures surface as PersistenceUnavailable during rotation and
  StoreUnavailable everywhere else
- the end-to-end issue -> rotate -> replay -> theft scenario
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from conftest import FakeClock

from auth.errors import (
    CredentialExpired,
    InvalidOrExpired,
    MissingCredential,
    PersistenceUnavailable,
    SessionStoreError,
    StoreUnavailable,
    SuspiciousActivity,
)
from auth.models import Fingerprint
from auth.sessions import SessionManager
from auth.store import SessionStore
from auth.tokens import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, CredentialCodec

LAPTOP = Fingerprint(source_address="203.0.113.7", user_agent="Mozilla/5.0 (X11; Linux x86_64)")
PHONE = Fingerprint(source_address="198.51.100.2", user_agent="Mozilla/5.0 (iPhone)")


class TestIssue:
    def test_issue_persists_one_record(self, manager: SessionManager, store: SessionStore) -> None:
        tokens = manager.issue_session("u1", LAPTOP)
        records = store.list_for_user("u1")
        assert len(records) == 1
        assert records[0].token == tokens.refresh_token
        assert records[0].fingerprint == LAPTOP
        assert tokens.access_expires_in == 15 * 60
        assert tokens.refresh_expires_in == 7 * 24 * 60 * 60

    def test_issued_tokens_have_expected_types(self, manager: SessionManager) -> None:
        tokens = manager.issue_session("u1", LAPTOP)
        assert manager.codec.verify(tokens.access_token, token_type=ACCESS_TOKEN_TYPE)["sub"] == "u1"
        assert manager.codec.verify(tokens.refresh_token, token_type=REFRESH_TOKEN_TYPE)["sub"] == "u1"

    def test_multiple_devices_hold_separate_sessions(self, manager: SessionManager, store: SessionStore) -> None:
        manager.issue_session("u1", LAPTOP)
        manager.issue_session("u1", PHONE)
        assert len(store.list_for_user("u1")) == 2

    def test_empty_user_id_rejected(self, manager: SessionManager) -> None:
        with pytest.raises(ValueError):
            manager.issue_session("", LAPTOP)


class TestRotate:
    def test_rotation_replaces_the_record(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        rotated = manager.rotate_session(issued.refresh_token, LAPTOP)
        assert rotated.refresh_token != issued.refresh_token
        assert rotated.access_token != issued.access_token
        assert [r.token for r in store.list_for_user("u1")] == [rotated.refresh_token]

    def test_replayed_token_rejected(self, manager: SessionManager) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        manager.rotate_session(issued.refresh_token, LAPTOP)
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(issued.refresh_token, LAPTOP)

    def test_missing_token(self, manager: SessionManager) -> None:
        with pytest.raises(MissingCredential):
            manager.rotate_session(None, LAPTOP)
        with pytest.raises(MissingCredential):
            manager.rotate_session("", LAPTOP)

    def test_garbage_token(self, manager: SessionManager) -> None:
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session("garbage", LAPTOP)

    def test_access_token_cannot_be_rotated(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(issued.access_token, LAPTOP)
        assert len(store.list_for_user("u1")) == 1

    def test_signed_but_never_stored_token_rejected(self, manager: SessionManager) -> None:
        forged = manager.codec.sign({"sub": "u1", "typ": REFRESH_TOKEN_TYPE}, timedelta(days=7))
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(forged, LAPTOP)

    def test_logged_out_token_rejected(self, manager: SessionManager) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        manager.logout(issued.refresh_token)
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(issued.refresh_token, LAPTOP)


class TestFingerprint:
    def test_mismatch_revokes_all_devices(self, manager: SessionManager, store: SessionStore) -> None:
        laptop = manager.issue_session("u1", LAPTOP)
        manager.issue_session("u1", PHONE)
        manager.issue_session("u2", LAPTOP)

        with pytest.raises(SuspiciousActivity):
            manager.rotate_session(laptop.refresh_token, PHONE)

        assert store.list_for_user("u1") == []
        assert len(store.list_for_user("u2")) == 1

    def test_user_agent_drift_alone_is_suspicious(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        drifted = Fingerprint(source_address=LAPTOP.source_address, user_agent=LAPTOP.user_agent + " Edg/120")
        with pytest.raises(SuspiciousActivity):
            manager.rotate_session(issued.refresh_token, drifted)
        assert store.list_for_user("u1") == []

    def test_address_drift_alone_is_suspicious(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        moved = Fingerprint(source_address="203.0.113.8", user_agent=LAPTOP.user_agent)
        with pytest.raises(SuspiciousActivity):
            manager.rotate_session(issued.refresh_token, moved)
        assert store.list_for_user("u1") == []

    def test_rotation_binds_to_current_fingerprint(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        manager.rotate_session(issued.refresh_token, LAPTOP)
        assert store.list_for_user("u1")[0].fingerprint == LAPTOP


class TestLifetimes:
    def test_refresh_token_accepted_before_seven_days(self, manager: SessionManager, clock: FakeClock) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        clock.advance(days=6, hours=23)
        manager.rotate_session(issued.refresh_token, LAPTOP)

    def test_refresh_token_rejected_after_seven_days(
        self, manager: SessionManager, store: SessionStore, clock: FakeClock
    ) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        clock.advance(days=7)
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(issued.refresh_token, LAPTOP)
        # An expired token is rejected before the store is touched.
        assert len(store.list_for_user("u1")) == 1

    def test_rotation_issues_full_length_refresh_ttl(self, manager: SessionManager, clock: FakeClock) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        clock.advance(days=5)
        rotated = manager.rotate_session(issued.refresh_token, LAPTOP)
        payload = manager.codec.verify(rotated.refresh_token, token_type=REFRESH_TOKEN_TYPE)
        assert payload["exp"] == int(clock().timestamp()) + 7 * 24 * 60 * 60

    def test_rotated_access_token_expires_after_fifteen_minutes(
        self, manager: SessionManager, clock: FakeClock
    ) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        rotated = manager.rotate_session(issued.refresh_token, LAPTOP)
        assert manager.codec.verify(rotated.access_token, token_type=ACCESS_TOKEN_TYPE)["sub"] == "u1"
        clock.advance(minutes=15)
        with pytest.raises(CredentialExpired):
            manager.codec.verify(rotated.access_token, token_type=ACCESS_TOKEN_TYPE)

    def test_custom_ttls(self, store: SessionStore, clock: FakeClock) -> None:
        custom = SessionManager(
            store,
            CredentialCodec("custom-secret-key-of-at-least-32-chars", clock=clock),
            access_ttl=timedelta(minutes=5),
            refresh_ttl=timedelta(days=1),
        )
        tokens = custom.issue_session("u1", LAPTOP)
        assert tokens.access_expires_in == 300
        assert tokens.refresh_expires_in == 86400


class TestLogoutAndRevoke:
    def test_logout_is_idempotent(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        assert manager.logout(issued.refresh_token) is True
        assert manager.logout(issued.refresh_token) is False
        assert store.list_for_user("u1") == []

    def test_logout_of_unknown_or_missing_token_succeeds(self, manager: SessionManager) -> None:
        assert manager.logout("never-issued") is False
        assert manager.logout(None) is False
        assert manager.logout("") is False

    def test_logout_only_removes_that_device(self, manager: SessionManager, store: SessionStore) -> None:
        laptop = manager.issue_session("u1", LAPTOP)
        manager.issue_session("u1", PHONE)
        manager.logout(laptop.refresh_token)
        assert [r.fingerprint for r in store.list_for_user("u1")] == [PHONE]

    def test_revoke_all(self, manager: SessionManager, store: SessionStore) -> None:
        laptop = manager.issue_session("u1", LAPTOP)
        manager.issue_session("u1", PHONE)
        assert manager.revoke_all("u1") == 2
        assert store.list_for_user("u1") == []
        with pytest.raises(InvalidOrExpired):
            manager.rotate_session(laptop.refresh_token, LAPTOP)

    def test_revoke_all_for_user_without_sessions(self, manager: SessionManager) -> None:
        assert manager.revoke_all("nobody") == 0


class TestPersistenceFailures:
    def _broken_manager(self, clock: FakeClock) -> tuple[SessionManager, MagicMock]:
        store = MagicMock(spec=SessionStore)
        codec = CredentialCodec("broken-store-secret-at-least-32-chars", clock=clock)
        return SessionManager(store, codec), store

    def test_issue_maps_store_error(self, clock: FakeClock) -> None:
        manager, store = self._broken_manager(clock)
        store.create.side_effect = SessionStoreError("database is locked")
        with pytest.raises(StoreUnavailable):
            manager.issue_session("u1", LAPTOP)

    def test_rotate_maps_store_error(self, clock: FakeClock) -> None:
        manager, store = self._broken_manager(clock)
        token = manager.codec.sign({"sub": "u1", "typ": REFRESH_TOKEN_TYPE}, timedelta(days=7))
        store.consume.side_effect = SessionStoreError("database is locked")
        with pytest.raises(PersistenceUnavailable):
            manager.rotate_session(token, LAPTOP)

    def test_logout_swallows_store_error(self, clock: FakeClock) -> None:
        manager, store = self._broken_manager(clock)
        store.delete_by_token.side_effect = SessionStoreError("database is locked")
        assert manager.logout("anything") is False

    def test_revoke_all_maps_store_error(self, clock: FakeClock) -> None:
        manager, store = self._broken_manager(clock)
        store.delete_all_for_user.side_effect = SessionStoreError("database is locked")
        with pytest.raises(StoreUnavailable) as excinfo:
            manager.revoke_all("u1")
        assert excinfo.value.status_code == 503

    def test_list_sessions_maps_store_error(self, clock: FakeClock) -> None:
        manager, store = self._broken_manager(clock)
        store.list_for_user.side_effect = SessionStoreError("database is locked")
        with pytest.raises(StoreUnavailable):
            manager.list_sessions("u1")


class TestConcurrency:
    def test_concurrent_rotation_redeems_once(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        workers = 8
        barrier = threading.Barrier(workers)

        def attempt() -> str:
            barrier.wait()
            try:
                manager.rotate_session(issued.refresh_token, LAPTOP)
            except InvalidOrExpired:
                return "rejected"
            return "rotated"

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(workers)))

        assert outcomes.count("rotated") == 1
        assert outcomes.count("rejected") == workers - 1
        assert len(store.list_for_user("u1")) == 1

    def test_revoke_all_racing_rotation_leaves_nothing(self, manager: SessionManager, store: SessionStore) -> None:
        issued = manager.issue_session("u1", LAPTOP)
        barrier = threading.Barrier(2)

        def rotate() -> None:
            barrier.wait()
            try:
                manager.rotate_session(issued.refresh_token, LAPTOP)
            except InvalidOrExpired:
                pass

        def revoke() -> None:
            barrier.wait()
            manager.revoke_all("u1")

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(rotate), pool.submit(revoke)]
            for f in futures:
                f.result()

        # Either order is allowed; if rotation ran first its new record was revoked too.
        assert store.list_for_user("u1") == []


def test_end_to_end_rotation_and_theft(manager: SessionManager, store: SessionStore) -> None:
    f1 = Fingerprint(source_address="192.0.2.10", user_agent="ChatApp/1.0")
    f2 = Fingerprint(source_address="192.0.2.99", user_agent="ChatApp/1.0")

    issued = manager.issue_session("u1", f1)
    rotated = manager.rotate_session(issued.refresh_token, f1)

    with pytest.raises(InvalidOrExpired):
        manager.rotate_session(issued.refresh_token, f1)

    with pytest.raises(SuspiciousActivity):
        manager.rotate_session(rotated.refresh_token, f2)

    with pytest.raises(InvalidOrExpired):
        manager.rotate_session(rotated.refresh_token, f1)
    assert store.list_for_user("u1") == []
