from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ciamflow.config import Settings
from ciamflow.logging import get_logger
from ciamflow.service.errors import ErrorKind, TokenError
from ciamflow.storage.models import (
    AuthContext,
    Session,
    SessionStatus,
    Token,
    TokenStatus,
    TokenType,
    utcnow,
)
from ciamflow.storage.redis_cache import RedisCache
from ciamflow.storage.repository import StoreView

logger = get_logger(__name__)


def hash_token(raw: str) -> str:
    """Deterministic lookup key; the raw value is never stored or queried."""

    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class Principal:
    cupid: str
    session_id: str
    token_id: str
    roles: List[str] = field(default_factory=list)


@dataclass
class IssuedTokens:
    session_id: str
    access_token: str
    refresh_token: str
    id_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_token_id: str
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return max(0, int((self.access_expires_at - utcnow()).total_seconds()))

    @property
    def refresh_max_age(self) -> int:
        return max(0, int((self.refresh_expires_at - utcnow()).total_seconds()))


class RefreshStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    REVOKED = "REVOKED"
    ROTATED = "ROTATED"
    EXPIRED = "EXPIRED"


@dataclass
class RefreshValidation:
    status: RefreshStatus
    token: Optional[Token] = None
    session: Optional[Session] = None

    @property
    def is_reuse(self) -> bool:
        return self.status in (RefreshStatus.ROTATED, RefreshStatus.REVOKED)


class TokenLifecycleManager:
    """Sessions plus their ACCESS, REFRESH and ID tokens.

    Tokens reference only their session, so revoking a session is one indexed
    update and user-wide revocation is an explicit join through sessions.
    A REFRESH token that was ROTATED or REVOKED and is presented again is a
    reuse signal: every token of its session and the session itself are
    revoked before the caller sees the error.
    """

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, verify_exp: bool = True
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if verify_exp:
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                return None
            if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
                return None
        return payload

    def open_session(
        self,
        tx: StoreView,
        context: AuthContext,
        *,
        device_id: Optional[str] = None,
    ) -> Session:
        if not context.cupid:
            raise ValueError("cannot open a session for an unverified context")
        session = Session.new(
            context.cupid,
            ttl_days=self.settings.session_ttl_days,
            context_id=context.context_id,
            guid=context.guid,
            device_id=device_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        tx.sessions.create(session)
        self.logger.info(
            "session_opened", session_id=session.session_id, cupid=session.cupid
        )
        return session

    def _mint(
        self,
        tx: StoreView,
        session: Session,
        token_type: TokenType,
        expires_at: datetime,
        claims: dict[str, Any],
        *,
        parent_token_id: Optional[str] = None,
    ) -> tuple[Token, str]:
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": session.cupid,
            "sid": session.session_id,
            "jti": token_id,
            "token_type": token_type.value.lower(),
            "iat": int(self._now().timestamp()),
            "exp": int(expires_at.timestamp()),
            **claims,
        }
        raw = self._encode_jwt(payload)
        token = Token(
            token_id=token_id,
            session_id=session.session_id,
            token_type=token_type,
            token_value_hash=hash_token(raw),
            created_at=self._now(),
            expires_at=expires_at,
            parent_token_id=parent_token_id,
        )
        tx.tokens.create(token)
        return token, raw

    def issue_session_tokens(
        self,
        tx: StoreView,
        session: Session,
        *,
        roles: Optional[List[str]] = None,
        profile: Optional[Dict[str, Any]] = None,
        parent_refresh_id: Optional[str] = None,
    ) -> IssuedTokens:
        """Create ACCESS, REFRESH and ID rows for ``session`` in the caller's unit."""

        now = self._now()
        roles = list(roles or [])
        profile = dict(profile or {})
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(days=self.settings.refresh_token_ttl_days)
        id_exp = now + timedelta(minutes=self.settings.id_token_ttl_minutes)

        _, access_raw = self._mint(
            tx, session, TokenType.ACCESS, access_exp, {"roles": roles}
        )
        refresh, refresh_raw = self._mint(
            tx,
            session,
            TokenType.REFRESH,
            refresh_exp,
            {"roles": roles, "profile": profile},
            parent_token_id=parent_refresh_id,
        )
        _, id_raw = self._mint(tx, session, TokenType.ID, id_exp, profile)
        self.logger.info(
            "session_tokens_issued",
            session_id=session.session_id,
            refresh_token_id=refresh.token_id,
            rotated_from=parent_refresh_id,
        )
        return IssuedTokens(
            session_id=session.session_id,
            access_token=access_raw,
            refresh_token=refresh_raw,
            id_token=id_raw,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            refresh_token_id=refresh.token_id,
        )

    def _lookup(self, tx: StoreView, raw: str) -> Optional[Token]:
        if not raw:
            return None
        matches = tx.tokens.find_by("token_value_hash", hash_token(raw))
        return matches[0] if matches else None

    def validate_refresh(self, tx: StoreView, raw: str) -> RefreshValidation:
        token = self._lookup(tx, raw)
        if token is None or token.token_type is not TokenType.REFRESH:
            return RefreshValidation(RefreshStatus.NOT_FOUND)
        session = tx.sessions.find_by_id(token.session_id)
        if token.status is TokenStatus.ROTATED:
            return RefreshValidation(RefreshStatus.ROTATED, token, session)
        if token.status is TokenStatus.REVOKED:
            return RefreshValidation(RefreshStatus.REVOKED, token, session)
        if token.status is TokenStatus.EXPIRED:
            return RefreshValidation(RefreshStatus.EXPIRED, token, session)
        now = self._now()
        if now >= token.expires_at or session is None or not session.is_live(now):
            tx.tokens.update_by_id(token.token_id, status=TokenStatus.EXPIRED)
            return RefreshValidation(RefreshStatus.EXPIRED, token, session)
        return RefreshValidation(RefreshStatus.OK, token, session)

    def rotate(self, tx: StoreView, raw: str) -> IssuedTokens:
        validation = self.validate_refresh(tx, raw)
        if validation.status is RefreshStatus.NOT_FOUND:
            raise TokenError(ErrorKind.TOKEN_NOT_FOUND)
        if validation.status is RefreshStatus.EXPIRED or validation.token is None:
            raise TokenError(ErrorKind.TOKEN_EXPIRED)
        if validation.is_reuse:
            revoked = self.revoke_session(
                tx, validation.token.session_id, reason="token_reuse", revoked_by="system"
            )
            self.logger.warning(
                "token_reuse_detected",
                token_id=validation.token.token_id,
                session_id=validation.token.session_id,
                presented_status=validation.status.value,
                revoked_tokens=len(revoked),
            )
            error = TokenError(ErrorKind.TOKEN_REUSE_DETECTED)
            error.revoked_tokens = revoked  # type: ignore[attr-defined]
            raise error

        old = validation.token
        session = validation.session
        if session is None:
            raise TokenError(ErrorKind.TOKEN_EXPIRED)
        claims = self._decode_jwt(raw, verify_exp=False) or {}
        now = self._now()
        tx.tokens.update_by_id(old.token_id, status=TokenStatus.ROTATED, revoked_at=now)
        for stale in tx.tokens.find_by("session_id", session.session_id):
            if stale.token_type is not TokenType.REFRESH and stale.status is TokenStatus.ACTIVE:
                tx.tokens.update_by_id(stale.token_id, status=TokenStatus.REVOKED, revoked_at=now)
        tx.sessions.update_by_id(session.session_id, last_seen_at=now)
        issued = self.issue_session_tokens(
            tx,
            session,
            roles=claims.get("roles") or [],
            profile=claims.get("profile") or {},
            parent_refresh_id=old.token_id,
        )
        self.logger.info(
            "refresh_token_rotated",
            session_id=session.session_id,
            token_id=old.token_id,
            new_token_id=issued.refresh_token_id,
        )
        return issued

    def revoke_chain(self, tx: StoreView, token_id: str) -> int:
        """Revoke ``token_id`` and every rotation descendant."""

        now = self._now()
        revoked = 0
        frontier = [token_id]
        seen: set[str] = set()
        while frontier:
            current_id = frontier.pop()
            if current_id in seen:
                continue
            seen.add(current_id)
            token = tx.tokens.find_by_id(current_id)
            if token is not None and token.status is not TokenStatus.REVOKED:
                tx.tokens.update_by_id(current_id, status=TokenStatus.REVOKED, revoked_at=now)
                revoked += 1
            frontier.extend(child.token_id for child in tx.tokens.find_by("parent_token_id", current_id))
        self.logger.info("token_chain_revoked", token_id=token_id, revoked=revoked)
        return revoked

    def revoke_session(
        self,
        tx: StoreView,
        session_id: str,
        *,
        reason: str,
        revoked_by: Optional[str] = None,
        status: SessionStatus = SessionStatus.REVOKED,
    ) -> List[Token]:
        """Close a session and revoke its ACTIVE tokens; returns the tokens revoked."""

        now = self._now()
        session = tx.sessions.find_by_id(session_id)
        if session is None:
            return []
        if session.status is SessionStatus.ACTIVE:
            tx.sessions.update_by_id(
                session_id,
                status=status,
                revoked_at=now,
                revoked_by=revoked_by,
                revocation_reason=reason,
            )
        revoked: List[Token] = []
        for token in tx.tokens.find_by("session_id", session_id):
            if token.status is TokenStatus.ACTIVE:
                tx.tokens.update_by_id(token.token_id, status=TokenStatus.REVOKED, revoked_at=now)
                revoked.append(token)
        self.logger.info(
            "session_revoked",
            session_id=session_id,
            reason=reason,
            status=status.value,
            revoked_tokens=len(revoked),
        )
        return revoked

    def revoke_by_user(
        self, tx: StoreView, cupid: str, *, reason: str = "user_revocation"
    ) -> List[Token]:
        """Revoke every ACTIVE session of ``cupid``; returns the tokens revoked."""

        revoked: List[Token] = []
        for session in tx.sessions.find_by("cupid", cupid):
            if session.status is SessionStatus.ACTIVE:
                revoked.extend(
                    self.revoke_session(tx, session.session_id, reason=reason, revoked_by=cupid)
                )
        return revoked

    def revoke_token(self, tx: StoreView, raw: str) -> Optional[Token]:
        """Revoke a single presented token; REFRESH tokens take their chain with them."""

        token = self._lookup(tx, raw)
        if token is None:
            return None
        if token.token_type is TokenType.REFRESH:
            self.revoke_chain(tx, token.token_id)
        elif token.status is TokenStatus.ACTIVE:
            tx.tokens.update_by_id(token.token_id, status=TokenStatus.REVOKED, revoked_at=self._now())
        return token

    def authenticate_access(self, tx: StoreView, raw: str) -> Optional[Principal]:
        payload = self._decode_jwt(raw)
        if not payload or payload.get("token_type") != "access":
            return None
        token = self._lookup(tx, raw)
        now = self._now()
        if token is None or token.status is not TokenStatus.ACTIVE or now >= token.expires_at:
            return None
        session = tx.sessions.find_by_id(token.session_id)
        if session is None or not session.is_live(now):
            return None
        return Principal(
            cupid=session.cupid,
            session_id=session.session_id,
            token_id=token.token_id,
            roles=list(payload.get("roles") or []),
        )

    def introspect(self, tx: StoreView, raw: str) -> Dict[str, Any]:
        token = self._lookup(tx, raw)
        if token is None or token.status is not TokenStatus.ACTIVE:
            return {"active": False}
        now = self._now()
        if now >= token.expires_at:
            tx.tokens.update_by_id(token.token_id, status=TokenStatus.EXPIRED)
            return {"active": False}
        session = tx.sessions.find_by_id(token.session_id)
        if session is None or not session.is_live(now):
            return {"active": False}
        return {
            "active": True,
            "token_type": token.token_type.value,
            "session_id": token.session_id,
            "sub": session.cupid,
            "expires_at": token.expires_at.isoformat(),
        }

    def access_token_id(self, raw: str) -> Optional[str]:
        payload = self._decode_jwt(raw, verify_exp=False)
        if not payload or payload.get("token_type") != "access":
            return None
        return payload.get("jti")

    async def is_denylisted(self, raw: str) -> bool:
        jti = self.access_token_id(raw)
        if not self.cache or not jti:
            return False
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            # Fail open: the database row remains authoritative
            self.logger.warning("denylist_check_failed", jti=jti, error=str(exc))
            return False

    async def denylist(self, tokens: List[Token]) -> None:
        if not self.cache:
            return
        for token in tokens:
            if token.token_type is not TokenType.ACCESS:
                continue
            try:
                await self.cache.denylist_access_token(
                    token.token_id, RedisCache.ttl_until(token.expires_at)
                )
            except Exception as exc:
                # Revocation already committed; the denylist only short-circuits reads
                self.logger.warning(
                    "access_token_denylist_failed",
                    token_id=token.token_id,
                    error=str(exc),
                )

    def cleanup_expired(self, tx: StoreView, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        count = 0
        for token in tx.tokens.find_older_than("expires_at", now, status=TokenStatus.ACTIVE):
            tx.tokens.update_by_id(token.token_id, status=TokenStatus.EXPIRED)
            count += 1
        for session in tx.sessions.find_older_than("expires_at", now, status=SessionStatus.ACTIVE):
            tx.sessions.update_by_id(session.session_id, status=SessionStatus.EXPIRED)
            count += 1
        return count

    def list_sessions(self, tx: StoreView, cupid: str) -> List[Session]:
        now = self._now()
        live = [s for s in tx.sessions.find_by("cupid", cupid) if s.is_live(now)]
        return sorted(live, key=lambda s: s.last_seen_at, reverse=True)


__all__ = [
    "IssuedTokens",
    "Principal",
    "RefreshStatus",
    "RefreshValidation",
    "TokenLifecycleManager",
    "hash_token",
]
