from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from ciamflow.logging import get_logger
from ciamflow.service.devices import DeviceTrustRegistry, hash_fingerprint
from ciamflow.storage.models import DeviceStatus, utcnow
from ciamflow.storage.repository import StoreView


class CredentialStatus(str, Enum):
    OK = "OK"
    INVALID = "INVALID"
    LOCKED = "LOCKED"
    MFA_LOCKED = "MFA_LOCKED"


@dataclass(frozen=True)
class MFAOption:
    option_id: int
    masked_value: str


@dataclass
class CredentialResult:
    status: CredentialStatus
    cupid: Optional[str] = None
    guid: Optional[str] = None
    username: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    profile: Dict[str, Any] = field(default_factory=dict)
    mfa_options: List[MFAOption] = field(default_factory=list)
    push_enabled: bool = False
    required_documents: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is CredentialStatus.OK


class CredentialGate(Protocol):
    """External password/LDAP check; only a verified identity comes back."""

    def verify(self, username: str, password: str) -> CredentialResult: ...


@dataclass(frozen=True)
class DemoUser:
    username: str
    status: CredentialStatus = CredentialStatus.OK
    otp_options: Tuple[MFAOption, ...] = (
        MFAOption(1, "***-***-1234"),
        MFAOption(2, "***-***-5678"),
    )
    push_enabled: bool = True
    required_documents: Tuple[str, ...] = ()
    # "active" seeds a trusted device, "expired" seeds one past its window
    device_trust: Optional[str] = None

    @property
    def cupid(self) -> str:
        return f"user-{self.username}"

    @property
    def demo_fingerprint(self) -> str:
        return f"demo-device-{self.username}"


DEMO_USERS: Tuple[DemoUser, ...] = (
    DemoUser("trusteduser", device_trust="active"),
    DemoUser("trustedesignuser", device_trust="active", required_documents=("terms-v1-2025",)),
    DemoUser("mfauser"),
    DemoUser("mfaesignuser", required_documents=("terms-v1-2025",)),
    DemoUser("lockeduser", status=CredentialStatus.LOCKED),
    DemoUser("mfalockeduser", status=CredentialStatus.MFA_LOCKED),
    DemoUser("expiredtrustuser", device_trust="expired"),
    DemoUser("complianceuser", required_documents=("terms-v1-2025",)),
    DemoUser("otponlyuser", otp_options=(MFAOption(1, "***-***-1234"),), push_enabled=False),
    DemoUser("pushonlyuser", otp_options=()),
)

DEMO_PASSWORD = "password"


class DemoDirectory:
    """In-process credential gate serving the scenario users.

    Password hashes are argon2id and computed on first use. Unknown usernames
    still pay for one verification against a dummy hash so response time does
    not reveal whether an account exists.
    """

    def __init__(self, users: Tuple[DemoUser, ...] = DEMO_USERS, *, password: str = DEMO_PASSWORD) -> None:
        self.users: Dict[str, DemoUser] = {u.username: u for u in users}
        self._password = password
        self._hasher = PasswordHasher(type=Type.ID)
        self._hashes: Dict[str, str] = {}
        self._hash_lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _hash_for(self, key: str) -> str:
        with self._hash_lock:
            cached = self._hashes.get(key)
            if cached is None:
                cached = self._hasher.hash(self._password if key != "__dummy__" else "not-a-password")
                self._hashes[key] = cached
            return cached

    def _check_password(self, key: str, password: str) -> bool:
        try:
            return self._hasher.verify(self._hash_for(key), password)
        except (VerificationError, InvalidHash):
            return False

    def verify(self, username: str, password: str) -> CredentialResult:
        user = self.users.get((username or "").strip().lower())
        if user is None:
            self._check_password("__dummy__", password or "")
            return CredentialResult(CredentialStatus.INVALID)
        if not self._check_password(user.username, password or ""):
            return CredentialResult(CredentialStatus.INVALID)
        if user.status is not CredentialStatus.OK:
            return CredentialResult(user.status, cupid=user.cupid, username=user.username)
        return CredentialResult(
            CredentialStatus.OK,
            cupid=user.cupid,
            guid=f"guid-{user.username}",
            username=user.username,
            roles=["user"],
            profile={
                "preferred_username": user.username,
                "email": f"{user.username}@example.com",
                "given_name": user.username.capitalize(),
                "family_name": "User",
            },
            mfa_options=list(user.otp_options),
            push_enabled=user.push_enabled,
            required_documents=list(user.required_documents),
        )

    def seed_devices(self, tx: StoreView, registry: DeviceTrustRegistry) -> int:
        """Give the trusted-device scenario users their demo device records."""

        seeded = 0
        for user in self.users.values():
            if not user.device_trust:
                continue
            fingerprint_hash = hash_fingerprint(user.demo_fingerprint)
            if registry.list_for_user(tx, user.cupid):
                continue
            device = registry.trust(
                tx,
                fingerprint_hash,
                user.cupid,
                guid=f"guid-{user.username}",
                device_name="Demo device",
            )
            if user.device_trust == "expired":
                past = utcnow() - timedelta(days=1)
                tx.devices.update_by_id(
                    device.device_id,
                    expires_at=past,
                    trusted_at=past - timedelta(days=registry.ttl_days),
                    status=DeviceStatus.ACTIVE,
                )
            seeded += 1
        if seeded:
            self.logger.info("demo_devices_seeded", count=seeded)
        return seeded


__all__ = [
    "CredentialGate",
    "CredentialResult",
    "CredentialStatus",
    "DEMO_PASSWORD",
    "DEMO_USERS",
    "DemoDirectory",
    "DemoUser",
    "MFAOption",
]
