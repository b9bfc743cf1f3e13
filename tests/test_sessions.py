"""Tests for the session registry and its storage contract."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from tablesession.service.errors import NotFoundError, StoreUnavailableError
from tablesession.service.fingerprint import create_device_fingerprint
from tablesession.service.sessions import REASON_LOGOUT, REASON_SESSION_LIMIT, SessionRegistry
from tablesession.storage.errors import StoreUnavailable


def _open(stack, user, client):
    return stack.registry.create(
        user.tenant_id,
        user.id,
        fingerprint=create_device_fingerprint(client),
        client=client,
    )


class TestCreateAndFind:
    def test_new_session_is_active(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)

        assert session.is_revoked is False
        assert session.ip_address == phone.ip_address
        assert session.user_agent == phone.user_agent
        assert session.family_id

    def test_find_is_scoped_by_tenant(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)

        with pytest.raises(NotFoundError):
            stack.registry.find("other-tenant", session.id)

    def test_find_checks_owner(self, stack, phone):
        owner = stack.add_user("a@example.com")
        other = stack.add_user("b@example.com")
        session = _open(stack, owner, phone)

        with pytest.raises(NotFoundError):
            stack.registry.find(owner.tenant_id, session.id, user_id=other.id)

    def test_touch_failure_is_logged_not_raised(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)
        store = MagicMock()
        store.touch_session.side_effect = StoreUnavailable("down")
        registry = SessionRegistry(store, stack.codec)

        with patch("tablesession.service.sessions.logger") as mock_logger:
            registry.touch_activity(user.tenant_id, session.id)

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "session_touch_failed"

    def test_store_outage_on_lookup_is_hard_failure(self, stack):
        store = MagicMock()
        store.get_session.side_effect = StoreUnavailable("timeout")
        registry = SessionRegistry(store, stack.codec)

        with pytest.raises(StoreUnavailableError) as excinfo:
            registry.find("t1", "s1")
        assert excinfo.value.status_code == 503


class TestRevoke:
    async def test_revoke_is_idempotent(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)

        assert await stack.registry.revoke(user.tenant_id, session.id, REASON_LOGOUT) is True
        assert await stack.registry.revoke(user.tenant_id, session.id, REASON_LOGOUT) is False

    async def test_revocation_is_monotonic(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)
        await stack.registry.revoke(user.tenant_id, session.id, REASON_LOGOUT)
        first = stack.store.get_session(user.tenant_id, session.id)

        # Nothing afterwards may bring it back
        assert stack.store.touch_session(user.tenant_id, session.id) is False
        assert (
            stack.store.rotate_refresh_token(
                user.tenant_id,
                session.id,
                expected_token_id=None,
                new_token_id="new",
                access_jti="jti",
                access_exp=first.created_at,
            )
            is None
        )
        await stack.registry.revoke(user.tenant_id, session.id, "second_reason")

        latest = stack.store.get_session(user.tenant_id, session.id)
        assert latest.is_revoked is True
        assert latest.revoked_reason == REASON_LOGOUT
        assert latest.revoked_at == first.revoked_at

    async def test_revoke_denylists_bound_access_token(self, stack, phone):
        user = stack.add_user()
        session = _open(stack, user, phone)
        pair = stack.codec.issue_pair(
            user.id, user.tenant_id, user.role, session.id, session.family_id, fingerprint="fp"
        )
        stack.store.rotate_refresh_token(
            user.tenant_id,
            session.id,
            expected_token_id=None,
            new_token_id=pair.refresh_token_id,
            access_jti=pair.access_jti,
            access_exp=pair.access_exp,
        )

        await stack.registry.revoke(user.tenant_id, session.id, REASON_LOGOUT)

        assert await stack.codec.is_jti_revoked(pair.access_jti) is True

    async def test_revoke_unknown_session_raises(self, stack):
        with pytest.raises(NotFoundError):
            await stack.registry.revoke("t1", "missing", REASON_LOGOUT)


class TestRevokeAll:
    @pytest.mark.parametrize("count", [0, 1, 10])
    async def test_revoke_all_keeps_only_the_excepted_session(self, stack, phone, count):
        user = stack.add_user()
        keep = _open(stack, user, phone)
        others = [_open(stack, user, phone) for _ in range(count)]

        revoked = await stack.registry.revoke_all(
            user.tenant_id, user.id, "logout_all", except_session_id=keep.id
        )

        assert revoked == count
        active = stack.store.list_user_sessions(user.tenant_id, user.id)
        assert [s.id for s in active] == [keep.id]
        for other in others:
            assert stack.store.get_session(user.tenant_id, other.id).is_revoked

    @pytest.mark.parametrize("count", [0, 1, 10])
    async def test_revoke_all_without_exception(self, stack, phone, count):
        user = stack.add_user()
        for _ in range(count):
            _open(stack, user, phone)

        revoked = await stack.registry.revoke_all(user.tenant_id, user.id, "user_revoked")

        assert revoked == count
        assert stack.store.list_user_sessions(user.tenant_id, user.id) == []

    async def test_revoke_all_leaves_other_users_alone(self, stack, phone):
        alice = stack.add_user("alice@example.com")
        bob = stack.add_user("bob@example.com")
        _open(stack, alice, phone)
        bobs = _open(stack, bob, phone)

        await stack.registry.revoke_all(alice.tenant_id, alice.id, "user_revoked")

        assert not stack.store.get_session(bob.tenant_id, bobs.id).is_revoked


class TestSessionLimit:
    async def test_least_recently_active_session_is_evicted(self, stack, phone):
        user = stack.add_user()
        oldest = _open(stack, user, phone)
        middle = _open(stack, user, phone)
        newest = _open(stack, user, phone)
        base = oldest.created_at
        stack.store.sessions[oldest.id].last_activity = base + timedelta(minutes=30)
        stack.store.sessions[middle.id].last_activity = base + timedelta(minutes=10)
        stack.store.sessions[newest.id].last_activity = base + timedelta(minutes=20)

        evicted = await stack.registry.enforce_limit(user.tenant_id, user.id, 3)

        assert [s.id for s in evicted] == [middle.id]
        revoked = stack.store.get_session(user.tenant_id, middle.id)
        assert revoked.revoked_reason == REASON_SESSION_LIMIT
        assert not stack.store.get_session(user.tenant_id, newest.id).is_revoked

    async def test_zero_limit_disables_eviction(self, stack, phone):
        user = stack.add_user()
        for _ in range(3):
            _open(stack, user, phone)

        assert await stack.registry.enforce_limit(user.tenant_id, user.id, 0) == []
