from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .db import db


def utcnow() -> datetime:
    # naive UTC, which is what sqlite round-trips
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="seconds") + "Z"


class License(db.Model):
    __tablename__ = "licenses"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    license_key = db.Column(db.String(32), unique=True, nullable=False, index=True)
    business_name = db.Column(db.String(255))
    device_id = db.Column(db.String(255))
    device_info = db.Column(db.JSON)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending | active
    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    activated_at = db.Column(db.DateTime)
    last_verified_at = db.Column(db.DateTime)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "license_key": self.license_key,
            "business_name": self.business_name,
            "device_id": self.device_id,
            "device_info": self.device_info,
            "status": self.status,
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "activated_at": to_iso(self.activated_at),
            "last_verified_at": to_iso(self.last_verified_at),
        }


class ActivationAttempt(db.Model):
    __tablename__ = "activation_attempts"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    license_key = db.Column(db.String(64), nullable=False, index=True)
    device_id = db.Column(db.String(255), nullable=False)
    device_info = db.Column(db.JSON)
    business_name = db.Column(db.String(255))
    success = db.Column(db.Boolean, nullable=False, default=False)
    error_message = db.Column(db.Text)
    ip_address = db.Column(db.String(64))
    attempted_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "license_key": self.license_key,
            "device_id": self.device_id,
            "device_info": self.device_info,
            "business_name": self.business_name,
            "success": bool(self.success),
            "error_message": self.error_message,
            "ip_address": self.ip_address,
            "attempted_at": to_iso(self.attempted_at),
        }


class VerificationLog(db.Model):
    __tablename__ = "verification_logs"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    license_key = db.Column(db.String(64), nullable=False, index=True)
    device_id = db.Column(db.String(255), nullable=False)
    verified_at = db.Column(db.DateTime, nullable=False, default=utcnow)
