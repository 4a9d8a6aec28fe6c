from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from ciamflow.logging import get_logger
from ciamflow.storage.models import DeviceStatus, TrustedDevice, utcnow
from ciamflow.storage.repository import StoreView


def hash_fingerprint(raw: str) -> str:
    """Fingerprints are opaque risk-signal tokens; only their digest is stored."""

    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class TrustState(str, Enum):
    TRUSTED = "TRUSTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    UNKNOWN = "UNKNOWN"


_TRUST_MESSAGES = {
    TrustState.TRUSTED: "trusted",
    TrustState.EXPIRED: "trust expired",
    TrustState.REVOKED: "device unknown",
    TrustState.UNKNOWN: "device unknown",
}


@dataclass
class TrustCheck:
    state: TrustState
    device: Optional[TrustedDevice] = None

    @property
    def trusted(self) -> bool:
        return self.state is TrustState.TRUSTED

    @property
    def message(self) -> str:
        return _TRUST_MESSAGES[self.state]


class DeviceTrustRegistry:
    """Fingerprint trust records with explicit expiry and revocation.

    Trust only ever lets a user skip MFA; credential verification always
    runs first.
    """

    def __init__(self, *, ttl_days: int = 90) -> None:
        self.ttl_days = ttl_days
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return utcnow()

    def _records(
        self, tx: StoreView, fingerprint_hash: str, cupid: str
    ) -> List[TrustedDevice]:
        return [
            device
            for device in tx.devices.find_by("device_fingerprint_hash", fingerprint_hash)
            if device.cupid == cupid
        ]

    def check(
        self,
        tx: StoreView,
        fingerprint_hash: Optional[str],
        cupid: str,
        *,
        now: Optional[datetime] = None,
    ) -> TrustCheck:
        if not fingerprint_hash:
            return TrustCheck(TrustState.UNKNOWN)
        now = now or self._now()
        records = self._records(tx, fingerprint_hash, cupid)
        if not records:
            return TrustCheck(TrustState.UNKNOWN)

        for device in records:
            if device.status is not DeviceStatus.ACTIVE:
                continue
            if now < device.expires_at:
                return TrustCheck(TrustState.TRUSTED, device)
            # Lazy expiry: an ACTIVE record past its window is persisted as EXPIRED
            expired = tx.devices.update_by_id(device.device_id, status=DeviceStatus.EXPIRED)
            self.logger.info("device_trust_expired", device_id=device.device_id, cupid=cupid)
            return TrustCheck(TrustState.EXPIRED, expired or device)

        latest = max(records, key=lambda d: d.trusted_at)
        if latest.status is DeviceStatus.EXPIRED:
            return TrustCheck(TrustState.EXPIRED, latest)
        return TrustCheck(TrustState.REVOKED, latest)

    def is_trusted(
        self,
        tx: StoreView,
        fingerprint_hash: Optional[str],
        cupid: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.check(tx, fingerprint_hash, cupid, now=now).trusted

    def trust(
        self,
        tx: StoreView,
        fingerprint_hash: str,
        cupid: str,
        *,
        guid: Optional[str] = None,
        app_id: Optional[str] = None,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
        ttl_days: Optional[int] = None,
    ) -> TrustedDevice:
        """Upsert an ACTIVE record; an existing ACTIVE one for the pair is replaced."""

        now = self._now()
        for existing in self._records(tx, fingerprint_hash, cupid):
            if existing.status is DeviceStatus.ACTIVE:
                tx.devices.update_by_id(
                    existing.device_id, status=DeviceStatus.REVOKED, revoked_at=now
                )
        device = TrustedDevice(
            device_id=str(uuid.uuid4()),
            cupid=cupid,
            device_fingerprint_hash=fingerprint_hash,
            trusted_at=now,
            last_used_at=now,
            expires_at=now + timedelta(days=ttl_days or self.ttl_days),
            guid=guid,
            app_id=app_id,
            device_name=device_name,
            device_type=device_type,
        )
        tx.devices.create(device)
        self.logger.info(
            "device_trusted",
            device_id=device.device_id,
            cupid=cupid,
            expires_at=device.expires_at.isoformat(),
        )
        return device

    def touch(self, tx: StoreView, device_id: str) -> None:
        tx.devices.update_by_id(device_id, last_used_at=self._now())

    def revoke(self, tx: StoreView, device_id: str, *, cupid: Optional[str] = None) -> bool:
        device = tx.devices.find_by_id(device_id)
        if not device or (cupid is not None and device.cupid != cupid):
            return False
        if device.status is DeviceStatus.REVOKED:
            return True
        tx.devices.update_by_id(
            device_id, status=DeviceStatus.REVOKED, revoked_at=self._now()
        )
        self.logger.info("device_revoked", device_id=device_id, cupid=device.cupid)
        return True

    def revoke_all_for_user(self, tx: StoreView, cupid: str) -> int:
        now = self._now()
        count = tx.devices.update_by_filter(
            {"cupid": cupid, "status": DeviceStatus.ACTIVE},
            status=DeviceStatus.REVOKED,
            revoked_at=now,
        )
        if count:
            self.logger.info("devices_revoked_for_user", cupid=cupid, count=count)
        return count

    def list_for_user(self, tx: StoreView, cupid: str) -> List[TrustedDevice]:
        return sorted(tx.devices.find_by("cupid", cupid), key=lambda d: d.trusted_at)

    def sweep_expired(self, tx: StoreView, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        stale = tx.devices.find_older_than("expires_at", now, status=DeviceStatus.ACTIVE)
        for device in stale:
            tx.devices.update_by_id(device.device_id, status=DeviceStatus.EXPIRED)
        return len(stale)


__all__ = [
    "DeviceTrustRegistry",
    "TrustCheck",
    "TrustState",
    "hash_fingerprint",
]
