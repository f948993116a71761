from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .models import to_iso


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class _Response(BaseModel):
    @field_serializer("expiresAt", check_fields=False)
    def _iso(self, value: Optional[datetime]) -> Optional[str]:
        return to_iso(value)


# ---------------------------
# Requests
# ---------------------------
class ActivateRequest(_Request):
    licenseKey: str = ""
    deviceId: str = ""
    deviceInfo: Optional[Dict[str, Any]] = None
    businessName: str = ""


class VerifyRequest(_Request):
    licenseKey: str = ""
    deviceId: str = ""


class CheckRequest(_Request):
    licenseKey: str = ""


class GenerateRequest(_Request):
    count: int = Field(default=1, ge=1, le=1000)
    subscriptionMonths: Optional[int] = Field(default=None, ge=1)


class DeactivateRequest(_Request):
    licenseKey: str = ""


# ---------------------------
# Responses
# ---------------------------
class ActivateResponse(_Response):
    success: bool = True
    message: str
    expiresAt: Optional[datetime] = None


class VerifyResponse(_Response):
    valid: bool
    businessName: Optional[str] = None
    expiresAt: Optional[datetime] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class CheckResponse(_Response):
    exists: bool
    status: Optional[str] = None
    businessName: Optional[str] = None
    expiresAt: Optional[datetime] = None
    message: Optional[str] = None


class GeneratedLicenseOut(_Response):
    id: int
    licenseKey: str
    expiresAt: Optional[datetime] = None


class GenerateResponse(BaseModel):
    success: bool = True
    count: int
    licenses: List[GeneratedLicenseOut]


class StatsOut(BaseModel):
    total: int
    active: int
    pending: int
    expired: int
