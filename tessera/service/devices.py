from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import Device, utcnow

logger = get_logger(__name__)

PLATFORMS = {"ios", "android", "web", "desktop", "other"}


@dataclass
class DeviceInfo:
    identifier: str
    fingerprint: str = ""
    platform: str = "other"
    model: Optional[str] = None
    name: Optional[str] = None

    def normalized_platform(self) -> str:
        platform = (self.platform or "other").lower()
        return platform if platform in PLATFORMS else "other"


class DeviceResolver:
    """Maps a client-supplied device identifier onto a stored Device row."""

    def __init__(self, store) -> None:
        self.store = store

    def resolve(
        self,
        identifier: str,
        device_info: Optional[DeviceInfo] = None,
        account_id: Optional[str] = None,
    ) -> Device:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValueError("device identifier required")
        device_info = device_info or DeviceInfo(identifier=identifier)
        existing = self.store.get_device_by_identifier(identifier)
        if existing:
            return self._refresh(existing, device_info, account_id)
        try:
            return self.store.create_device(
                identifier,
                fingerprint=device_info.fingerprint,
                platform=device_info.normalized_platform(),
                model=device_info.model,
                name=device_info.name,
                account_id=account_id,
            )
        except ConstraintViolation:
            # Lost a creation race on the unique identifier; the row exists now
            logger.info("device_create_race", identifier=identifier)
            existing = self.store.get_device_by_identifier(identifier)
            if existing is None:
                raise
            return self._refresh(existing, device_info, account_id)

    def _refresh(
        self, device: Device, device_info: DeviceInfo, account_id: Optional[str]
    ) -> Device:
        fields = {
            "last_seen_at": utcnow(),
            "platform": device_info.normalized_platform(),
        }
        if device_info.fingerprint:
            fields["fingerprint"] = device_info.fingerprint
        if device_info.model:
            fields["model"] = device_info.model
        if device_info.name:
            fields["name"] = device_info.name
        if account_id:
            fields["account_id"] = account_id
        updated = self.store.update_device(device.id, **fields)
        return updated or device

    def mark_trusted(self, device_id: str) -> Optional[Device]:
        return self.store.update_device(device_id, trusted=True, trusted_at=utcnow())

    def mark_untrusted(self, device_id: str) -> Optional[Device]:
        return self.store.update_device(device_id, trusted=False, trusted_at=None)
