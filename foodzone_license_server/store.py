import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import DuplicateKeyError, StoreError
from .models import ActivationAttempt, License, VerificationLog, utcnow

logger = logging.getLogger(__name__)


class LicenseStore:
    """
    System of record for licenses and their audit trail.

    Every write is committed before the method returns. The device binding
    transition goes through a single guarded UPDATE so two concurrent
    activations of the same pending key cannot both win.
    """

    def __init__(self, db: SQLAlchemy) -> None:
        self.db = db

    @property
    def session(self):
        return self.db.session

    def init_schema(self) -> None:
        self.db.create_all()

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception("Store commit failed")
            raise StoreError("License store unavailable") from e

    # ---------------------------
    # Licenses
    # ---------------------------
    def create(self, license_key: str, expires_at: Optional[datetime] = None) -> int:
        lic = License(license_key=license_key, status="pending", expires_at=expires_at)
        self.session.add(lic)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateKeyError(f"License key already exists: {license_key}") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception("Store commit failed")
            raise StoreError("License store unavailable") from e
        return lic.id

    def get_by_key(self, license_key: str) -> Optional[License]:
        return License.query.filter_by(license_key=license_key).first()

    def update(self, license_key: str, **fields: Any) -> bool:
        result = self.session.execute(
            update(License)
            .where(License.license_key == license_key)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        self._commit()
        # keep identity-mapped rows in line with what was just written
        self.session.expire_all()
        return result.rowcount > 0

    def bind_device(
        self,
        license_key: str,
        device_id: str,
        device_info: Optional[Dict[str, Any]],
        business_name: str,
        now: datetime,
    ) -> bool:
        """
        pending -> active, atomically. False means somebody else got there first
        (or the key is not pending any more).
        """
        result = self.session.execute(
            update(License)
            .where(License.license_key == license_key, License.status == "pending")
            .values(
                status="active",
                device_id=device_id,
                device_info=device_info,
                business_name=business_name,
                activated_at=now,
                last_verified_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self._commit()
        self.session.expire_all()
        return result.rowcount == 1

    def touch_verified(self, license_key: str, now: datetime) -> None:
        self.update(license_key, last_verified_at=now)

    def reset_binding(self, license_key: str) -> bool:
        return self.update(license_key, status="pending", device_id=None, device_info=None)

    def list_all(self) -> List[License]:
        return License.query.order_by(License.created_at.desc(), License.id.desc()).all()

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        q = self.session.query(func.count(License.id))
        return {
            "total": q.scalar() or 0,
            "active": q.filter(License.status == "active").scalar() or 0,
            "pending": q.filter(License.status == "pending").scalar() or 0,
            "expired": q.filter(License.expires_at.isnot(None), License.expires_at < now).scalar() or 0,
        }

    # ---------------------------
    # Audit trail (append-only)
    # ---------------------------
    def append_activation_attempt(
        self,
        license_key: str,
        device_id: str,
        device_info: Optional[Dict[str, Any]],
        business_name: Optional[str],
        success: bool,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        self.session.add(ActivationAttempt(
            license_key=license_key,
            device_id=device_id,
            device_info=device_info,
            business_name=business_name,
            success=success,
            error_message=error_message,
            ip_address=ip_address,
        ))
        self._commit()

    def append_verification_log(self, license_key: str, device_id: str) -> None:
        self.session.add(VerificationLog(license_key=license_key, device_id=device_id))
        self._commit()

    def list_activation_attempts(self, limit: int = 100) -> List[ActivationAttempt]:
        return (
            ActivationAttempt.query
            .order_by(ActivationAttempt.attempted_at.desc(), ActivationAttempt.id.desc())
            .limit(limit)
            .all()
        )

    def find_suspicious(self, threshold: int = 3) -> List[Dict[str, Any]]:
        attempt_count = func.count(ActivationAttempt.id).label("attempt_count")
        rows = (
            self.session.query(ActivationAttempt.license_key, ActivationAttempt.device_id, attempt_count)
            .filter(ActivationAttempt.success.is_(False))
            .group_by(ActivationAttempt.license_key, ActivationAttempt.device_id)
            .having(func.count(ActivationAttempt.id) > threshold)
            .order_by(attempt_count.desc())
            .all()
        )
        return [
            {"license_key": r.license_key, "device_id": r.device_id, "attempt_count": r.attempt_count}
            for r in rows
        ]
