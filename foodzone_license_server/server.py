import logging
import os
import time
from typing import Any, Dict, Optional, Type, TypeVar

import pydantic
from flask import Flask, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .auth import require_admin
from .db import db, get_database_uri
from .errors import LicenseError, ValidationError
from .models import to_iso, utcnow
from .schemas import (
    ActivateRequest,
    ActivateResponse,
    CheckRequest,
    CheckResponse,
    DeactivateRequest,
    GenerateRequest,
    GenerateResponse,
    GeneratedLicenseOut,
    StatsOut,
    VerifyRequest,
    VerifyResponse,
)
from .service import LicenseService
from .store import LicenseStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "Food Zone ERP License Server"
SERVICE_VERSION = "1.0.0"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_STARTED = time.monotonic()

PUBLIC_ENDPOINTS = [
    "POST /api/license/activate",
    "POST /api/license/verify",
    "POST /api/license/check",
]
ADMIN_ENDPOINTS = [
    "POST /api/admin/licenses/generate",
    "GET /api/admin/licenses",
    "GET /api/admin/attempts",
    "GET /api/admin/suspicious",
    "POST /api/admin/licenses/deactivate",
    "GET /api/admin/stats",
]

T = TypeVar("T", bound=pydantic.BaseModel)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )


def get_service() -> LicenseService:
    return current_app.extensions["license_service"]


def parse_body(schema: Type[T]) -> T:
    data = request.get_json(force=True, silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise ValidationError(f"Invalid field {field}: {first.get('msg')}") from e


def create_app(test_config: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    app.config["SQLALCHEMY_DATABASE_URI"] = get_database_uri()
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["ADMIN_USERNAME"] = os.environ.get("ADMIN_USERNAME", "")
    app.config["ADMIN_PASSWORD"] = os.environ.get("ADMIN_PASSWORD", "")
    if test_config:
        app.config.update(test_config)

    db.init_app(app)

    store = LicenseStore(db)
    app.extensions["license_store"] = store
    app.extensions["license_service"] = LicenseService(store)

    with app.app_context():
        store.init_schema()

    # ---------------------------
    # Error translation
    # ---------------------------
    @app.errorhandler(LicenseError)
    def handle_license_error(e: LicenseError):
        body: Dict[str, Any] = {"success": False, "error": e.message}
        if e.hint:
            body["hint"] = e.hint
        return jsonify(body), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Unhandled database error on %s %s", request.method, request.path)
        return jsonify({"success": False, "error": "License store unavailable"}), 500

    # ---------------------------
    # Meta
    # ---------------------------
    @app.get("/health")
    def health():
        return jsonify({
            "status": "ok",
            "timestamp": to_iso(utcnow()),
            "uptime": round(time.monotonic() - _STARTED, 3),
        })

    @app.get("/")
    def index():
        return jsonify({
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "endpoints": {"public": PUBLIC_ENDPOINTS, "admin": ADMIN_ENDPOINTS},
        })

    # ---------------------------
    # Public API (mobile app)
    # ---------------------------
    @app.post("/api/license/activate")
    def activate():
        body = parse_body(ActivateRequest)
        outcome = get_service().activate(
            body.licenseKey,
            body.deviceId,
            body.deviceInfo,
            body.businessName,
            ip_address=request.remote_addr,
        )
        resp = ActivateResponse(success=True, message=outcome.message, expiresAt=outcome.expires_at)
        return jsonify(resp.model_dump(mode="json"))

    @app.post("/api/license/verify")
    def verify():
        try:
            body = parse_body(VerifyRequest)
        except ValidationError as e:
            return jsonify({"valid": False, "error": e.message}), 400
        if not body.licenseKey or not body.deviceId:
            return jsonify({"valid": False, "error": "Missing required fields: licenseKey, deviceId"}), 400

        outcome = get_service().verify(body.licenseKey, body.deviceId)
        if outcome.valid:
            resp = VerifyResponse(valid=True, businessName=outcome.business_name, expiresAt=outcome.expires_at)
        else:
            resp = VerifyResponse(valid=False, error=outcome.error, reason=outcome.reason)
        return jsonify(resp.model_dump(mode="json", exclude_unset=True))

    @app.post("/api/license/check")
    def check():
        try:
            body = parse_body(CheckRequest)
        except ValidationError as e:
            return jsonify({"exists": False, "error": e.message}), 400
        if not body.licenseKey:
            return jsonify({"exists": False, "error": "License key required"}), 400

        outcome = get_service().check(body.licenseKey)
        if not outcome.exists:
            resp = CheckResponse(exists=False, message="License not found")
        else:
            resp = CheckResponse(
                exists=True,
                status=outcome.status,
                businessName=outcome.business_name,
                expiresAt=outcome.expires_at,
            )
        return jsonify(resp.model_dump(mode="json", exclude_unset=True))

    # ---------------------------
    # Admin API
    # ---------------------------
    @app.post("/api/admin/licenses/generate")
    @require_admin
    def admin_generate():
        body = parse_body(GenerateRequest)
        created = get_service().generate(body.count, body.subscriptionMonths)
        resp = GenerateResponse(
            success=True,
            count=len(created),
            licenses=[
                GeneratedLicenseOut(id=g.id, licenseKey=g.license_key, expiresAt=g.expires_at)
                for g in created
            ],
        )
        return jsonify(resp.model_dump(mode="json"))

    @app.get("/api/admin/licenses")
    @require_admin
    def admin_list_licenses():
        licenses = [lic.to_dict() for lic in get_service().list_licenses()]
        return jsonify({"success": True, "count": len(licenses), "licenses": licenses})

    @app.get("/api/admin/attempts")
    @require_admin
    def admin_attempts():
        attempts = [a.to_dict() for a in get_service().list_attempts(100)]
        return jsonify({"success": True, "attempts": attempts})

    @app.get("/api/admin/suspicious")
    @require_admin
    def admin_suspicious():
        return jsonify({"success": True, "suspicious": get_service().find_suspicious()})

    @app.post("/api/admin/licenses/deactivate")
    @require_admin
    def admin_deactivate():
        body = parse_body(DeactivateRequest)
        get_service().deactivate(body.licenseKey)
        return jsonify({"success": True})

    @app.get("/api/admin/stats")
    @require_admin
    def admin_stats():
        stats = StatsOut(**get_service().stats())
        return jsonify({"success": True, "stats": stats.model_dump()})

    return app


# local dev helper
if __name__ == "__main__":
    configure_logging()
    app = create_app()
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "3000")),
        debug=os.environ.get("FLASK_DEBUG", "") == "1",
    )
