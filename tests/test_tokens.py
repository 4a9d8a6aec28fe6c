"""Token lifecycle: issuance, rotation, reuse detection and revocation."""

import pytest

from ciamflow.config import Settings
from ciamflow.service.errors import ErrorKind, TokenError
from ciamflow.service.tokens import RefreshStatus, TokenLifecycleManager, hash_token
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.models import (
    AuthContext,
    SessionStatus,
    TokenStatus,
    TokenType,
)


class RecordingCache:
    def __init__(self, fail=False):
        self.denied = {}
        self.fail = fail

    async def denylist_access_token(self, jti, ttl_seconds):
        if self.fail:
            raise ConnectionError("redis down")
        self.denied[jti] = ttl_seconds

    async def is_access_token_denylisted(self, jti):
        if self.fail:
            raise ConnectionError("redis down")
        return jti in self.denied


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def manager():
    return TokenLifecycleManager(Settings(jwt_secret="k" * 48))


def _issue(store, manager, cupid="user-mfauser"):
    context = AuthContext.new("web", cupid=cupid)
    store.contexts.create(context)
    session = manager.open_session(store, context)
    return manager.issue_session_tokens(
        store, session, roles=["user"], profile={"preferred_username": "mfauser"}
    )


def _row(store, raw):
    return store.tokens.find_by("token_value_hash", hash_token(raw))[0]


class TestIssuance:
    def test_three_tokens_stored_by_hash_only(self, store, manager):
        issued = _issue(store, manager)

        rows = store.tokens.find_by("session_id", issued.session_id)
        assert sorted(t.token_type.value for t in rows) == ["ACCESS", "ID", "REFRESH"]
        hashes = {t.token_value_hash for t in rows}
        assert issued.access_token not in hashes
        assert hash_token(issued.access_token) in hashes

    def test_access_token_authenticates(self, store, manager):
        issued = _issue(store, manager)

        principal = manager.authenticate_access(store, issued.access_token)

        assert principal.cupid == "user-mfauser"
        assert principal.session_id == issued.session_id
        assert principal.roles == ["user"]

    def test_tampered_token_rejected(self, store, manager):
        issued = _issue(store, manager)
        header, payload, signature = issued.access_token.split(".")
        tampered = f"{header}.{payload}.{signature[:-2]}xx"

        assert manager.authenticate_access(store, tampered) is None

    def test_refresh_token_is_not_an_access_token(self, store, manager):
        issued = _issue(store, manager)

        assert manager.authenticate_access(store, issued.refresh_token) is None


class TestRotation:
    def test_rotation_links_chain_and_retires_old_tokens(self, store, manager):
        first = _issue(store, manager)
        old_access = _row(store, first.access_token)

        second = manager.rotate(store, first.refresh_token)

        assert second.session_id == first.session_id
        new_refresh = _row(store, second.refresh_token)
        assert new_refresh.parent_token_id == first.refresh_token_id
        assert _row(store, first.refresh_token).status is TokenStatus.ROTATED
        assert store.tokens.find_by_id(old_access.token_id).status is TokenStatus.REVOKED
        assert manager.authenticate_access(store, second.access_token) is not None

    def test_reuse_of_rotated_token_revokes_session(self, store, manager):
        r1 = _issue(store, manager)
        r2 = manager.rotate(store, r1.refresh_token)

        with pytest.raises(TokenError) as exc_info:
            manager.rotate(store, r1.refresh_token)

        assert exc_info.value.kind is ErrorKind.TOKEN_REUSE_DETECTED
        assert exc_info.value.message == "invalid or expired token"
        revoked_types = {t.token_type for t in exc_info.value.revoked_tokens}
        assert TokenType.ACCESS in revoked_types
        session = store.sessions.find_by_id(r1.session_id)
        assert session.status is SessionStatus.REVOKED
        assert session.revocation_reason == "token_reuse"
        assert manager.validate_refresh(store, r2.refresh_token).status is RefreshStatus.REVOKED
        with pytest.raises(TokenError):
            manager.rotate(store, r2.refresh_token)

    def test_unknown_refresh_token(self, store, manager):
        with pytest.raises(TokenError) as exc_info:
            manager.rotate(store, "not-a-token")
        assert exc_info.value.kind is ErrorKind.TOKEN_NOT_FOUND

    def test_refresh_on_ended_session_expires(self, store, manager):
        issued = _issue(store, manager)
        store.sessions.update_by_id(issued.session_id, status=SessionStatus.EXPIRED)

        with pytest.raises(TokenError) as exc_info:
            manager.rotate(store, issued.refresh_token)

        assert exc_info.value.kind is ErrorKind.TOKEN_EXPIRED
        assert _row(store, issued.refresh_token).status is TokenStatus.EXPIRED


class TestRevocation:
    def test_revoke_refresh_takes_descendants(self, store, manager):
        r1 = _issue(store, manager)
        r2 = manager.rotate(store, r1.refresh_token)

        manager.revoke_token(store, r1.refresh_token)

        assert _row(store, r2.refresh_token).status is TokenStatus.REVOKED

    def test_logout_status_distinct_from_revocation(self, store, manager):
        issued = _issue(store, manager)

        revoked = manager.revoke_session(
            store, issued.session_id, reason="logout", status=SessionStatus.LOGGED_OUT
        )

        assert len(revoked) == 3
        assert store.sessions.find_by_id(issued.session_id).status is SessionStatus.LOGGED_OUT
        assert manager.introspect(store, issued.access_token) == {"active": False}

    def test_revoke_by_user_covers_all_sessions(self, store, manager):
        first = _issue(store, manager)
        second = _issue(store, manager)
        live = {s.session_id for s in manager.list_sessions(store, "user-mfauser")}
        assert live == {first.session_id, second.session_id}

        revoked = manager.revoke_by_user(store, "user-mfauser")

        assert {t.session_id for t in revoked} == live
        assert len(revoked) == 6
        assert manager.list_sessions(store, "user-mfauser") == []

    def test_introspect_active_token(self, store, manager):
        issued = _issue(store, manager)

        result = manager.introspect(store, issued.access_token)

        assert result["active"] is True
        assert result["token_type"] == "ACCESS"
        assert result["sub"] == "user-mfauser"


class TestDenylist:
    async def test_revoked_access_tokens_are_denylisted(self, store):
        cache = RecordingCache()
        manager = TokenLifecycleManager(Settings(jwt_secret="k" * 48), cache=cache)
        issued = _issue(store, manager)
        revoked = manager.revoke_session(store, issued.session_id, reason="logout")

        await manager.denylist(revoked)

        assert await manager.is_denylisted(issued.access_token) is True
        assert await manager.is_denylisted(issued.id_token) is False

    async def test_cache_failure_fails_open(self, store):
        manager = TokenLifecycleManager(
            Settings(jwt_secret="k" * 48), cache=RecordingCache(fail=True)
        )
        issued = _issue(store, manager)

        await manager.denylist(store.tokens.find_by("session_id", issued.session_id))
        assert await manager.is_denylisted(issued.access_token) is False
