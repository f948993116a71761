# license_manager.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import secrets
import socket
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://localhost:3000/api/license"
DEFAULT_OFFLINE_GRACE_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="seconds") + "Z" if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1]
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _grace_days_from_env() -> int:
    raw = os.getenv("FOODZONE_OFFLINE_GRACE_DAYS", "").strip()
    if not raw:
        return DEFAULT_OFFLINE_GRACE_DAYS
    try:
        days = int(raw)
    except ValueError:
        days = -1
    if days < 0:
        logger.warning(
            "Ignoring FOODZONE_OFFLINE_GRACE_DAYS=%r, using %d days", raw, DEFAULT_OFFLINE_GRACE_DAYS
        )
        return DEFAULT_OFFLINE_GRACE_DAYS
    return days


class LicenseServiceUnavailable(Exception):
    """The license server could not be reached or answered with a 5xx."""


@dataclass
class LocalLicense:
    license_key: str
    business_name: str
    device_id: str
    activated_at: str
    expires_at: Optional[str] = None
    is_active: bool = True
    last_verified_at: Optional[str] = None


@dataclass
class LicenseResult:
    ok: bool
    message: str
    device_id: str
    license_key: str = ""
    offline: bool = False
    hint: Optional[str] = None
    license: Optional[LocalLicense] = None
    raw: Optional[Dict[str, Any]] = None


class LicenseManager:
    """
    Device side of the license protocol:
    - device_id generated once per install and kept in device.json
    - local license assertion kept in license_state.json
    - an explicit "invalid" from the server always clears the assertion
    - network failures fall back to the cached assertion for at most
      `offline_grace` after the last successful server confirmation
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        app_name: str = "FoodZone",
        storage_dir: Optional[Path] = None,
        offline_grace: Optional[timedelta] = None,
        timeout: float = 12,
    ) -> None:
        self.api_base = (api_base or os.getenv("FOODZONE_LICENSE_API", "")).strip() or DEFAULT_API_BASE
        self.app_name = app_name
        self.timeout = timeout

        if offline_grace is None:
            offline_grace = timedelta(days=_grace_days_from_env())
        self.offline_grace = offline_grace

        if storage_dir is None:
            storage_dir = Path.home() / f".{app_name.lower()}"
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.state_path = self.storage_dir / "license_state.json"
        self.device_path = self.storage_dir / "device.json"

        self._device_id = self._load_or_create_device_id()

    # ---------------------------
    # Device ID (per install)
    # ---------------------------
    def get_device_id(self) -> str:
        return self._device_id

    def get_device_info(self) -> Dict[str, str]:
        return {
            "model": platform.machine() or "unknown",
            "os": platform.system() or "unknown",
            "osVersion": platform.release() or "unknown",
        }

    def _load_or_create_device_id(self) -> str:
        stored = self._read_json(self.device_path).get("device_id")
        if isinstance(stored, str) and stored:
            return stored

        device_id = self._make_device_id()
        self.device_path.write_text(json.dumps({"device_id": device_id}, indent=2), encoding="utf-8")
        return device_id

    def _make_device_id(self) -> str:
        """
        Opaque install id: device description + creation time + randomness,
        hashed. Not a hardware fingerprint; it is only ever generated once.
        """
        info = self.get_device_info()
        parts = [
            info["model"],
            info["os"],
            info["osVersion"],
            socket.gethostname(),
            str(time.time_ns()),
            secrets.token_hex(8),
            self.app_name,
        ]
        raw = "|".join(parts).encode("utf-8", errors="ignore")
        return hashlib.sha256(raw).hexdigest()[:32].upper()

    # ---------------------------
    # Local license assertion
    # ---------------------------
    def get_license_info(self) -> Optional[LocalLicense]:
        st = self._read_json(self.state_path)
        if not st:
            return None
        try:
            return LocalLicense(**st)
        except TypeError:
            logger.warning("Ignoring malformed local license state")
            return None

    def is_activated(self) -> bool:
        lic = self.get_license_info()
        return bool(lic and lic.is_active and lic.device_id == self._device_id)

    def deactivate_license(self) -> None:
        if self.state_path.exists():
            self.state_path.unlink()

    def _save_license(self, lic: LocalLicense) -> None:
        self.state_path.write_text(json.dumps(asdict(lic), indent=2), encoding="utf-8")

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Could not read %s", path)
            return {}
        return data if isinstance(data, dict) else {}

    # ---------------------------
    # HTTP helpers
    # ---------------------------
    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.api_base.rstrip("/") + "/" + path.lstrip("/")
        try:
            r = requests.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise LicenseServiceUnavailable(str(e)) from e

        if r.status_code >= 500:
            raise LicenseServiceUnavailable(f"License server error {r.status_code}")
        try:
            data = r.json() if r.content else {}
        except ValueError as e:
            raise LicenseServiceUnavailable("License server sent a non-JSON reply") from e
        return data if isinstance(data, dict) else {}

    # ---------------------------
    # Public API used by UI
    # ---------------------------
    def activate_license(self, license_key: str, business_name: str) -> LicenseResult:
        license_key = (license_key or "").strip()
        business_name = (business_name or "").strip()
        device_id = self._device_id

        if not license_key or not business_name:
            return LicenseResult(
                ok=False,
                message="Please enter a license key and business name.",
                device_id=device_id,
                license_key=license_key,
            )

        payload = {
            "licenseKey": license_key,
            "deviceId": device_id,
            "deviceInfo": self.get_device_info(),
            "businessName": business_name,
        }
        try:
            data = self._post("/activate", payload)
        except LicenseServiceUnavailable as e:
            return LicenseResult(
                ok=False,
                message=f"Activation failed: cannot reach license server ({e})",
                device_id=device_id,
                license_key=license_key,
                offline=True,
            )

        if not data.get("success"):
            return LicenseResult(
                ok=False,
                message=str(data.get("error") or "Activation failed."),
                device_id=device_id,
                license_key=license_key,
                hint=data.get("hint"),
                raw=data,
            )

        now = _iso(_utcnow())
        lic = LocalLicense(
            license_key=license_key,
            business_name=business_name,
            device_id=device_id,
            activated_at=now,
            expires_at=data.get("expiresAt"),
            is_active=True,
            last_verified_at=now,
        )
        self._save_license(lic)
        logger.info("License %s activated on this device", license_key)
        return LicenseResult(
            ok=True,
            message=str(data.get("message") or "License activated."),
            device_id=device_id,
            license_key=license_key,
            license=lic,
            raw=data,
        )

    def check_license(self) -> LicenseResult:
        """
        Startup check. Resolves to valid (online or within offline grace)
        or invalid; never blocks longer than one bounded HTTP call.
        """
        device_id = self._device_id
        lic = self.get_license_info()

        if lic is None or not lic.is_active:
            return LicenseResult(ok=False, message="No license activated.", device_id=device_id)

        if lic.device_id != device_id:
            logger.warning("Device mismatch - clearing local license")
            self.deactivate_license()
            return LicenseResult(
                ok=False,
                message="License belongs to a different device.",
                device_id=device_id,
                license_key=lic.license_key,
            )

        now = _utcnow()
        expires_at = _parse_ts(lic.expires_at)
        if expires_at is not None and expires_at < now:
            logger.warning("License expired")
            return LicenseResult(
                ok=False,
                message="License expired.",
                device_id=device_id,
                license_key=lic.license_key,
                license=lic,
            )

        try:
            data = self._post("/verify", {"licenseKey": lic.license_key, "deviceId": device_id})
        except LicenseServiceUnavailable as e:
            return self._offline_verdict(lic, now, str(e))

        if not data.get("valid"):
            logger.warning("License rejected by server: %s", data.get("error"))
            self.deactivate_license()
            return LicenseResult(
                ok=False,
                message=str(data.get("error") or "License is no longer valid."),
                device_id=device_id,
                license_key=lic.license_key,
                raw=data,
            )

        lic.last_verified_at = _iso(now)
        if data.get("businessName"):
            lic.business_name = data["businessName"]
        lic.expires_at = data.get("expiresAt")
        self._save_license(lic)
        return LicenseResult(
            ok=True,
            message="License verified.",
            device_id=device_id,
            license_key=lic.license_key,
            license=lic,
            raw=data,
        )

    def _offline_verdict(self, lic: LocalLicense, now: datetime, reason: str) -> LicenseResult:
        last_ok = _parse_ts(lic.last_verified_at) or _parse_ts(lic.activated_at)
        if last_ok is not None and last_ok > now:
            # clock set back behind the last server confirmation
            logger.warning("Last license confirmation is in the future - refusing offline use")
            return LicenseResult(
                ok=False,
                message="Device clock is behind the last license confirmation; connect to verify.",
                device_id=self._device_id,
                license_key=lic.license_key,
                offline=True,
                license=lic,
            )

        if last_ok is not None and timedelta(0) <= now - last_ok <= self.offline_grace:
            logger.warning("Offline mode - cannot verify license online (%s)", reason)
            return LicenseResult(
                ok=True,
                message="License server unreachable; using cached license.",
                device_id=self._device_id,
                license_key=lic.license_key,
                offline=True,
                license=lic,
            )

        return LicenseResult(
            ok=False,
            message="License could not be verified and the offline grace period has ended.",
            device_id=self._device_id,
            license_key=lic.license_key,
            offline=True,
            license=lic,
        )
