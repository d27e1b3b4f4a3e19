from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .db import db

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"

ATTEMPT_ACTIVATION = "activation"
ATTEMPT_PERIODIC = "periodic"
ATTEMPT_OFFLINE = "offline"

ACTION_ISSUE = "issue"
ACTION_OFFLINE = "offline"
ACTION_REVOKE = "revoke"
ACTION_DELETE = "delete"


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """UTC timestamp as 2025-01-31T12:00:00.000Z, matching what kiosk clients parse."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """Expiry is never stored as a status; it is decided here, at read time."""
    return now > expires_at


class License(db.Model):
    __tablename__ = "licenses"

    id = db.Column(db.Integer, primary_key=True)
    license_key = db.Column(db.String(128), unique=True, nullable=False, index=True)
    device_fingerprint = db.Column(db.String(64), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)  # pending | active | revoked

    kiosk_name = db.Column(db.String(255), nullable=False)
    location_restaurant = db.Column(db.String(255))
    location_country = db.Column(db.String(64))
    location_region = db.Column(db.String(255))

    issued_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    activated_at = db.Column(db.DateTime)
    last_validated_at = db.Column(db.DateTime)
    revoked_at = db.Column(db.DateTime)
    revoke_reason = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def location(self) -> Optional[Dict[str, Optional[str]]]:
        if not (self.location_restaurant or self.location_country or self.location_region):
            return None
        return {
            "restaurant": self.location_restaurant,
            "country": self.location_country,
            "region": self.location_region,
        }

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        return {
            "licenseKey": self.license_key,
            "kioskName": self.kiosk_name,
            "location": self.location() or {},
            "status": self.status,
            "expired": is_expired(self.expires_at, now),
            "deviceIdHash": self.device_fingerprint,
            "issuedAt": to_iso(self.issued_at),
            "expiresAt": to_iso(self.expires_at),
            "activatedAt": to_iso(self.activated_at),
            "lastValidatedAt": to_iso(self.last_validated_at),
            "revokedAt": to_iso(self.revoked_at),
            "revokeReason": self.revoke_reason,
        }


class ValidationLog(db.Model):
    __tablename__ = "validation_logs"

    id = db.Column(db.Integer, primary_key=True)
    license_key = db.Column(db.String(128), nullable=False, index=True)
    device_fingerprint = db.Column(db.String(64))
    attempt_kind = db.Column(db.String(16), nullable=False)  # activation | periodic | offline
    success = db.Column(db.Boolean, nullable=False)
    failure_reason = db.Column(db.Text)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "licenseKey": self.license_key,
            "deviceIdHash": self.device_fingerprint,
            "attemptKind": self.attempt_kind,
            "success": self.success,
            "failureReason": self.failure_reason,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "createdAt": to_iso(self.created_at),
        }


class ActivityLog(db.Model):
    """Operator actions: issue, offline bundle, revoke, delete. Outlives the license row."""
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(32), nullable=False)  # issue | offline | revoke | delete
    resource_key = db.Column(db.String(128), nullable=False, index=True)
    details = db.Column(db.Text)  # JSON object
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "licenseKey": self.resource_key,
            "details": json.loads(self.details) if self.details else None,
            "ipAddress": self.ip_address,
            "createdAt": to_iso(self.created_at),
        }
