import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import ConflictError, DuplicateKeyError, ExpiredError, NotFoundError, ValidationError
from .keys import expiry_from_months, generate_license_key, is_valid_format
from .models import License, utcnow
from .store import LicenseStore

logger = logging.getLogger(__name__)

SUSPICIOUS_THRESHOLD = 3
TRANSFER_HINT = "Contact support to transfer license"


@dataclass
class ActivationOutcome:
    message: str
    expires_at: Optional[datetime]


@dataclass
class VerificationOutcome:
    valid: bool
    business_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None  # not_found | not_activated | device_mismatch | expired
    error: Optional[str] = None


@dataclass
class CheckOutcome:
    exists: bool
    status: Optional[str] = None
    business_name: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class GeneratedLicense:
    id: int
    license_key: str
    expires_at: Optional[datetime]


class LicenseService:
    """
    Activation / verification protocol over a LicenseStore.

    Holds no per-request state; everything durable lives in the store.
    """

    def __init__(self, store: LicenseStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or utcnow

    # ---------------------------
    # Public protocol
    # ---------------------------
    def activate(
        self,
        license_key: str,
        device_id: str,
        device_info: Optional[Dict[str, Any]],
        business_name: str,
        ip_address: Optional[str] = None,
    ) -> ActivationOutcome:
        license_key = (license_key or "").strip()
        device_id = (device_id or "").strip()
        business_name = (business_name or "").strip()
        device_info = device_info or {}

        if not license_key or not device_id or not business_name:
            raise ValidationError("Missing required fields: licenseKey, deviceId, businessName")
        if not is_valid_format(license_key):
            raise ValidationError("Invalid license key format")

        lic = self.store.get_by_key(license_key)
        if lic is None:
            raise NotFoundError("License key not found")

        now = self.clock()
        if lic.is_expired(now):
            raise ExpiredError("License has expired")

        if lic.status == "active":
            return self._activate_bound(lic, device_id, device_info, business_name, ip_address, now)

        if not self.store.bind_device(license_key, device_id, device_info, business_name, now):
            # lost the race: whoever won decides whether this is a re-activation or a conflict
            lic = self.store.get_by_key(license_key)
            if lic is None:
                raise NotFoundError("License key not found")
            return self._activate_bound(lic, device_id, device_info, business_name, ip_address, now)

        self.store.append_activation_attempt(
            license_key, device_id, device_info, business_name, True, None, ip_address
        )
        logger.info("License %s activated on device %s", license_key, device_id)
        return ActivationOutcome(message="License activated successfully", expires_at=lic.expires_at)

    def _activate_bound(
        self,
        lic: License,
        device_id: str,
        device_info: Dict[str, Any],
        business_name: str,
        ip_address: Optional[str],
        now: datetime,
    ) -> ActivationOutcome:
        if lic.device_id != device_id:
            message = "License already activated on another device"
            self.store.append_activation_attempt(
                lic.license_key, device_id, device_info, business_name, False, message, ip_address
            )
            logger.warning(
                "Rejected activation of %s from device %s (bound to %s)",
                lic.license_key, device_id, lic.device_id,
            )
            raise ConflictError(message, hint=TRANSFER_HINT)

        expires_at = lic.expires_at
        self.store.touch_verified(lic.license_key, now)
        return ActivationOutcome(message="License already activated on this device", expires_at=expires_at)

    def verify(self, license_key: str, device_id: str) -> VerificationOutcome:
        lic = self.store.get_by_key(license_key)

        if lic is None:
            return VerificationOutcome(valid=False, reason="not_found", error="License not found")
        if lic.status != "active":
            return VerificationOutcome(valid=False, reason="not_activated", error="License not activated")
        if lic.device_id != device_id:
            return VerificationOutcome(valid=False, reason="device_mismatch", error="Device mismatch")

        now = self.clock()
        if lic.is_expired(now):
            return VerificationOutcome(valid=False, reason="expired", error="License expired")

        business_name, expires_at = lic.business_name, lic.expires_at
        self.store.touch_verified(license_key, now)
        self.store.append_verification_log(license_key, device_id)
        return VerificationOutcome(valid=True, business_name=business_name, expires_at=expires_at)

    def check(self, license_key: str) -> CheckOutcome:
        lic = self.store.get_by_key(license_key)
        if lic is None:
            return CheckOutcome(exists=False)
        return CheckOutcome(
            exists=True,
            status=lic.status,
            business_name=lic.business_name,
            expires_at=lic.expires_at,
        )

    # ---------------------------
    # Admin
    # ---------------------------
    def deactivate(self, license_key: str) -> None:
        license_key = (license_key or "").strip()
        if not license_key:
            raise ValidationError("License key required")
        if not self.store.reset_binding(license_key):
            raise NotFoundError("License key not found")
        logger.info("License %s deactivated", license_key)

    def generate(self, count: int, subscription_months: Optional[int] = None) -> List[GeneratedLicense]:
        if count < 1:
            raise ValidationError("count must be at least 1")
        expires_at = expiry_from_months(subscription_months, self.clock()) if subscription_months else None

        created: List[GeneratedLicense] = []
        for _ in range(count):
            key = generate_license_key()
            try:
                record_id = self.store.create(key, expires_at)
            except DuplicateKeyError:
                logger.warning("Generated key %s collided with an existing license, skipped", key)
                continue
            created.append(GeneratedLicense(id=record_id, license_key=key, expires_at=expires_at))

        logger.info("Generated %d/%d license keys", len(created), count)
        return created

    def list_licenses(self) -> List[License]:
        return self.store.list_all()

    def list_attempts(self, limit: int = 100):
        return self.store.list_activation_attempts(limit)

    def find_suspicious(self) -> List[Dict[str, Any]]:
        return self.store.find_suspicious(SUSPICIOUS_THRESHOLD)

    def stats(self) -> Dict[str, int]:
        return self.store.stats(self.clock())
