from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Optional

from flask import Flask, Response, current_app, jsonify, request

from .config import ServiceSettings, configure_logging
from .db import init_db
from .errors import KeyAllocationError, LicenseError, LicenseErrorKind, SigningError, StoreError
from .keys import KeyMaterial
from .lifecycle import CallerContext, LifecycleEngine, LifecycleResult
from .models import STATUS_ACTIVE, STATUS_PENDING, STATUS_REVOKED, to_iso, utcnow
from .signing import Signer
from .store import ActivityLog, AuditLog, LicenseMetadata, LicenseStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    LicenseErrorKind.VALIDATION_FAILED: 400,
    LicenseErrorKind.NOT_FOUND: 404,
    LicenseErrorKind.REVOKED: 403,
    LicenseErrorKind.EXPIRED: 403,
    LicenseErrorKind.DEVICE_MISMATCH: 403,
}


def _engine() -> LifecycleEngine:
    return current_app.extensions["license_engine"]


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _caller() -> CallerContext:
    return CallerContext(ip_address=request.remote_addr, user_agent=request.headers.get("User-Agent"))


def _refused(result: LifecycleResult):
    err = result.error
    return jsonify({"success": False, **err.to_dict()}), ERROR_STATUS[err.kind]


def _invalid(message: str):
    return _refused(LifecycleResult.failure(LicenseError.validation_failed(message)))


def _as_int(value: Any) -> Any:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


def require_admin(view: Callable) -> Callable:
    """Single shared operator token, sent as X-Admin-Token or a Bearer header."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("ADMIN_TOKEN", "")
        supplied = request.headers.get("X-Admin-Token", "")
        auth = request.headers.get("Authorization", "")
        if not supplied and auth.startswith("Bearer "):
            supplied = auth[len("Bearer "):].strip()
        if not expected or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return view(*args, **kwargs)

    return wrapper


def create_app(
    settings: Optional[ServiceSettings] = None,
    key_material: Optional[KeyMaterial] = None,
    clock: Optional[Callable] = None,
) -> Flask:
    settings = settings or ServiceSettings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config["ADMIN_TOKEN"] = settings.admin_token
    init_db(app, settings.database_uri)

    keys = key_material or KeyMaterial.load_or_create(settings.keys_dir)
    app.extensions["license_engine"] = LifecycleEngine(
        store=LicenseStore(),
        audit=AuditLog(),
        signer=Signer(keys),
        clock=clock or utcnow,
        grace_period=timedelta(days=settings.grace_days),
        default_validity_days=settings.validity_days,
        key_prefix=settings.key_prefix,
        default_country=settings.default_country,
        activity=ActivityLog(),
    )

    @app.errorhandler(StoreError)
    def store_unavailable(e: StoreError):
        # a device must not read a storage blip as a revocation
        return jsonify({"success": False, "code": "unavailable", "error": "License service temporarily unavailable"}), 503

    @app.errorhandler(SigningError)
    def signing_failed(e: SigningError):
        logger.error("Refusing to answer without a signature: %s", e)
        return jsonify({"success": False, "code": "signing_failed", "error": "License signing failed"}), 500

    @app.errorhandler(KeyAllocationError)
    def key_allocation_failed(e: KeyAllocationError):
        logger.error("%s", e)
        return jsonify({"success": False, "code": "key_allocation_failed", "error": "Failed to generate license"}), 500

    @app.get("/health")
    def health():
        engine = _engine()
        return jsonify({
            "ok": True,
            "service": "kiosk-license",
            "time": to_iso(engine.clock()),
            "auditFailures": engine.audit.failures,
            "activityFailures": engine.activity.failures,
        })

    # ---------------------------
    # Device endpoints
    # ---------------------------
    @app.post("/api/licenses/activate")
    def activate():
        data = _body()
        result = _engine().activate(data.get("licenseKey") or "", data.get("deviceId") or "", _caller())
        if not result.ok:
            return _refused(result)
        return jsonify({"success": True, "license": result.value})

    @app.post("/api/licenses/validate")
    def validate():
        data = _body()
        result = _engine().validate(data.get("licenseKey") or "", data.get("deviceId") or "", _caller())
        if not result.ok:
            return _refused(result)
        return jsonify(result.value.to_dict())

    @app.get("/api/licenses/keys/public")
    def public_key():
        return Response(_engine().public_key(), mimetype="text/plain")

    # ---------------------------
    # Operator endpoints
    # ---------------------------
    @app.post("/api/licenses/generate")
    @require_admin
    def generate():
        data = _body()
        try:
            metadata = LicenseMetadata.from_payload(data)
        except ValueError as e:
            return _invalid(str(e))
        result = _engine().issue(
            metadata,
            validity_days=_as_int(data.get("validityDays")),
            country=data.get("country"),
            caller=_caller(),
        )
        if not result.ok:
            return _refused(result)
        lic = result.value
        return jsonify({"success": True, "license": lic.to_dict(_engine().clock())})

    @app.post("/api/licenses/generate-offline")
    @require_admin
    def generate_offline():
        data = _body()
        result = _engine().generate_offline_bundle(data.get("licenseKey") or "", data.get("deviceId") or "", _caller())
        if not result.ok:
            return _refused(result)
        return jsonify({"success": True, **result.value.to_dict()})

    @app.get("/api/licenses/all")
    @require_admin
    def list_all():
        status = request.args.get("status") or None
        if status and status not in (STATUS_PENDING, STATUS_ACTIVE, STATUS_REVOKED):
            return _invalid(f"Unknown status {status!r}")
        limit = request.args.get("limit", type=int)
        engine = _engine()
        now = engine.clock()
        licenses = engine.list_licenses(status=status, country=request.args.get("country") or None, limit=limit)
        return jsonify({"success": True, "licenses": [lic.to_dict(now) for lic in licenses]})

    @app.get("/api/licenses/stats/dashboard")
    @require_admin
    def stats():
        return jsonify({"success": True, "stats": _engine().stats()})

    @app.get("/api/licenses/activity")
    @require_admin
    def activity_log():
        limit = request.args.get("limit", default=100, type=int)
        entries = _engine().activity.recent(request.args.get("key") or None, limit=limit)
        return jsonify({"success": True, "activity": [entry.to_dict() for entry in entries]})

    @app.get("/api/licenses/<license_key>")
    @require_admin
    def license_detail(license_key: str):
        engine = _engine()
        result = engine.get_license(license_key)
        if not result.ok:
            return _refused(result)
        validations = [entry.to_dict() for entry in engine.audit.recent(license_key, limit=20)]
        activity = [entry.to_dict() for entry in engine.activity.recent(license_key, limit=20)]
        return jsonify({
            "success": True,
            "license": result.value.to_dict(engine.clock()),
            "validations": validations,
            "activity": activity,
        })

    @app.post("/api/licenses/<license_key>/revoke")
    @require_admin
    def revoke(license_key: str):
        result = _engine().revoke(license_key, _body().get("reason"), _caller())
        if not result.ok:
            return _refused(result)
        rev = result.value
        message = "License revoked successfully" if rev.changed else "License was already revoked"
        return jsonify({
            "success": True,
            "message": message,
            "reason": rev.reason,
            "revokedAt": to_iso(rev.revoked_at),
        })

    @app.delete("/api/licenses/<license_key>")
    @require_admin
    def delete(license_key: str):
        result = _engine().delete(license_key, _caller())
        if not result.ok:
            return _refused(result)
        return jsonify({"success": True, "message": "License deleted successfully"})

    return app


def main() -> None:
    settings = ServiceSettings.from_env()
    app = create_app(settings)
    app.run(host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
