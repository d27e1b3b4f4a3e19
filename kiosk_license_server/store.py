from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import db
from .errors import StoreError
from .models import (
    STATUS_ACTIVE,
    STATUS_PENDING,
    STATUS_REVOKED,
    ActivityLog as ActivityLogRow,
    License,
    ValidationLog,
    utcnow,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("kiosk_license_server.audit")


@dataclass
class LicenseMetadata:
    kiosk_name: str
    restaurant: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "LicenseMetadata":
        """Raises ValueError when a field arrives with the wrong JSON type."""
        kiosk_name = data.get("kioskName") or ""
        if not isinstance(kiosk_name, str):
            raise ValueError("kioskName must be a string")
        location = data.get("location") or {}
        if not isinstance(location, dict):
            raise ValueError("location must be an object")

        fields: Dict[str, Optional[str]] = {}
        for name in ("restaurant", "country", "region"):
            value = location.get(name) or None
            if value is not None and not isinstance(value, str):
                raise ValueError(f"location.{name} must be a string")
            fields[name] = value
        return cls(kiosk_name=kiosk_name.strip(), **fields)


class LicenseStore:
    """
    All license reads and writes.

    State changes are single conditional UPDATEs, so two request handlers
    racing on one row never both win, whatever process they run in.
    """

    def _fail(self, op: str, exc: SQLAlchemyError) -> StoreError:
        db.session.rollback()
        logger.error("License store %s failed: %s", op, exc)
        return StoreError(f"License store unavailable during {op}")

    # ---------------------------
    # Reads
    # ---------------------------
    def get_by_key(self, key: str) -> Optional[License]:
        try:
            return License.query.filter_by(license_key=key).first()
        except SQLAlchemyError as e:
            raise self._fail("get_by_key", e) from e

    def get_by_fingerprint(self, fingerprint: str) -> Optional[License]:
        try:
            return License.query.filter_by(device_fingerprint=fingerprint, status=STATUS_ACTIVE).first()
        except SQLAlchemyError as e:
            raise self._fail("get_by_fingerprint", e) from e

    def key_exists(self, key: str) -> bool:
        try:
            return db.session.query(License.id).filter_by(license_key=key).first() is not None
        except SQLAlchemyError as e:
            raise self._fail("key_exists", e) from e

    def list_licenses(
        self,
        status: Optional[str] = None,
        country: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[License]:
        try:
            q = License.query
            if status:
                q = q.filter(License.status == status)
            if country:
                q = q.filter(License.location_country == country)
            q = q.order_by(License.created_at.desc(), License.id.desc())
            if limit:
                q = q.limit(limit)
            return q.all()
        except SQLAlchemyError as e:
            raise self._fail("list_licenses", e) from e

    def stats(self, now: datetime) -> Dict[str, int]:
        week_ago = now - timedelta(days=7)
        try:
            by_status = dict(
                db.session.query(License.status, func.count(License.id)).group_by(License.status).all()
            )
            return {
                "total": sum(by_status.values()),
                "active": by_status.get(STATUS_ACTIVE, 0),
                "pending": by_status.get(STATUS_PENDING, 0),
                "revoked": by_status.get(STATUS_REVOKED, 0),
                "expired": License.query.filter(License.expires_at < now).count(),
                "recentActivations": License.query.filter(License.activated_at > week_ago).count(),
            }
        except SQLAlchemyError as e:
            raise self._fail("stats", e) from e

    # ---------------------------
    # Writes
    # ---------------------------
    def create_pending(self, key: str, metadata: LicenseMetadata, issued_at: datetime, expires_at: datetime) -> Optional[License]:
        """Returns None when the key is already taken."""
        lic = License(
            license_key=key,
            status=STATUS_PENDING,
            kiosk_name=metadata.kiosk_name,
            location_restaurant=metadata.restaurant,
            location_country=metadata.country,
            location_region=metadata.region,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        try:
            db.session.add(lic)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None
        except SQLAlchemyError as e:
            raise self._fail("create_pending", e) from e
        return lic

    def _conditional_update(self, op: str, stmt) -> bool:
        try:
            result = db.session.execute(stmt.execution_options(synchronize_session=False))
            # commit also expires cached rows, so the next read sees the winner
            db.session.commit()
        except SQLAlchemyError as e:
            raise self._fail(op, e) from e
        return result.rowcount == 1

    def transition_pending_to_active(self, key: str, fingerprint: str, now: datetime) -> bool:
        stmt = (
            update(License)
            .where(License.license_key == key, License.status == STATUS_PENDING)
            .values(
                status=STATUS_ACTIVE,
                device_fingerprint=fingerprint,
                activated_at=now,
                last_validated_at=now,
                updated_at=now,
            )
        )
        return self._conditional_update("transition_pending_to_active", stmt)

    def touch_validation(self, key: str, now: datetime) -> bool:
        """False when a newer timestamp is already stored; the clock never goes back."""
        stmt = (
            update(License)
            .where(
                License.license_key == key,
                or_(License.last_validated_at.is_(None), License.last_validated_at < now),
            )
            .values(last_validated_at=now, updated_at=now)
        )
        return self._conditional_update("touch_validation", stmt)

    def revoke(self, key: str, reason: str, now: datetime) -> bool:
        stmt = (
            update(License)
            .where(License.license_key == key, License.status != STATUS_REVOKED)
            .values(status=STATUS_REVOKED, revoked_at=now, revoke_reason=reason, updated_at=now)
        )
        return self._conditional_update("revoke", stmt)

    def delete(self, key: str) -> bool:
        try:
            deleted = License.query.filter_by(license_key=key).delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            raise self._fail("delete", e) from e
        return deleted == 1


@dataclass
class AuditEntry:
    license_key: str
    device_fingerprint: Optional[str]
    attempt_kind: str
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class _BestEffortLog:
    """Writes that must never fail the operation they describe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def _write(self, make_row: Callable[[], Any], describe: str) -> bool:
        try:
            db.session.add(make_row())
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            with self._lock:
                self._failures += 1
            audit_logger.exception("Audit write failed for %s", describe)
            return False
        return True


class AuditLog(_BestEffortLog):
    """
    Append-only record of activation/validation attempts.
    Observational only: nothing in the lifecycle reads it back.
    """

    def append(self, entry: AuditEntry) -> bool:
        def make_row():
            return ValidationLog(
                license_key=entry.license_key,
                device_fingerprint=entry.device_fingerprint,
                attempt_kind=entry.attempt_kind,
                success=entry.success,
                failure_reason=entry.failure_reason,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                created_at=entry.created_at or utcnow(),
            )

        return self._write(make_row, f"{entry.attempt_kind} attempt on {entry.license_key} (success={entry.success})")

    def count_since(self, since: datetime) -> int:
        try:
            return ValidationLog.query.filter(ValidationLog.created_at > since).count()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError("Audit log unavailable") from e

    def recent(self, key: str, limit: int = 20) -> List[ValidationLog]:
        try:
            return (
                ValidationLog.query.filter_by(license_key=key)
                .order_by(ValidationLog.created_at.desc(), ValidationLog.id.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError("Audit log unavailable") from e


class ActivityLog(_BestEffortLog):
    """Operator actions on licenses. Rows keep the key, so they survive a delete."""

    def append(
        self,
        action: str,
        key: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> bool:
        def make_row():
            return ActivityLogRow(
                action=action,
                resource_key=key,
                details=json.dumps(details, sort_keys=True) if details else None,
                ip_address=ip_address,
                created_at=created_at or utcnow(),
            )

        return self._write(make_row, f"{action} on {key}")

    def recent(self, key: Optional[str] = None, limit: int = 100) -> List[ActivityLogRow]:
        try:
            q = ActivityLogRow.query
            if key:
                q = q.filter_by(resource_key=key)
            return q.order_by(ActivityLogRow.created_at.desc(), ActivityLogRow.id.desc()).limit(limit).all()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError("Activity log unavailable") from e
