from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import KeyAllocationError, LicenseError, SigningError, StoreError
from .models import (
    ACTION_DELETE,
    ACTION_ISSUE,
    ACTION_OFFLINE,
    ACTION_REVOKE,
    ATTEMPT_ACTIVATION,
    ATTEMPT_OFFLINE,
    ATTEMPT_PERIODIC,
    STATUS_ACTIVE,
    STATUS_REVOKED,
    License,
    is_expired,
    to_iso,
    utcnow,
)
from .offline import OfflineBundle, encode_offline_bundle
from .signing import Signer, generate_license_key, hash_device_id
from .store import ActivityLog, AuditEntry, AuditLog, LicenseMetadata, LicenseStore

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = timedelta(days=90)
DEFAULT_VALIDITY_DAYS = 365
MAX_KEY_ATTEMPTS = 5
MAX_VALIDITY_DAYS = 3650


@dataclass
class CallerContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LifecycleResult:
    """Either a success payload or a LicenseError. Domain refusals never raise."""
    ok: bool
    value: Any = None
    error: Optional[LicenseError] = None

    @classmethod
    def success(cls, value: Any) -> "LifecycleResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LicenseError) -> "LifecycleResult":
        return cls(ok=False, error=error)


@dataclass
class ValidationResult:
    valid: bool
    validated_at: datetime
    expires_at: datetime
    grace_expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "validatedAt": to_iso(self.validated_at),
            "expiresAt": to_iso(self.expires_at),
            "graceExpiresAt": to_iso(self.grace_expires_at),
        }


@dataclass
class RevokeResult:
    license_key: str
    reason: str
    revoked_at: Optional[datetime]
    changed: bool


@dataclass
class OfflineLicense:
    bundle: OfflineBundle
    license_data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"licenseFile": self.bundle.to_dict(), "licenseData": self.license_data}


class LifecycleEngine:
    """
    License state machine: pending -> active -> revoked.

    Device calls (activate / validate / offline) each write exactly one audit
    entry whatever happens. Expiry is derived from expires_at at decision
    time; there is no sweeper.
    """

    def __init__(
        self,
        store: LicenseStore,
        audit: AuditLog,
        signer: Signer,
        clock: Callable[[], datetime] = utcnow,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        default_validity_days: int = DEFAULT_VALIDITY_DAYS,
        key_prefix: str = "KFC-KIO",
        default_country: str = "UK",
        key_generator: Callable[[str, str], str] = generate_license_key,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.signer = signer
        self.clock = clock
        self.grace_period = grace_period
        self.default_validity_days = default_validity_days
        self.key_prefix = key_prefix
        self.default_country = default_country
        self._generate_key = key_generator
        self.activity = activity or ActivityLog()

    # ---------------------------
    # Operator actions
    # ---------------------------
    def issue(
        self,
        metadata: LicenseMetadata,
        validity_days: Optional[int] = None,
        country: Optional[str] = None,
        caller: Optional[CallerContext] = None,
    ) -> LifecycleResult:
        if not isinstance(metadata.kiosk_name, str) or not metadata.kiosk_name.strip():
            return LifecycleResult.failure(LicenseError.validation_failed("Kiosk name is required"))

        validity = self.default_validity_days if validity_days is None else validity_days
        if isinstance(validity, bool) or not isinstance(validity, int) or not 0 < validity <= MAX_VALIDITY_DAYS:
            return LifecycleResult.failure(
                LicenseError.validation_failed(f"validityDays must be an integer between 1 and {MAX_VALIDITY_DAYS}")
            )

        if country is not None and not isinstance(country, str):
            return LifecycleResult.failure(LicenseError.validation_failed("Country code must be a string"))
        country = (country or self.default_country).strip().upper()
        if not country.isalnum():
            return LifecycleResult.failure(LicenseError.validation_failed("Country code must be alphanumeric"))

        now = self.clock()
        expires_at = now + timedelta(days=validity)

        for attempt in range(MAX_KEY_ATTEMPTS):
            key = self._generate_key(self.key_prefix, country)
            if self.store.key_exists(key):
                logger.warning("Generated license key collided, regenerating (attempt %d)", attempt + 1)
                continue
            lic = self.store.create_pending(key, metadata, now, expires_at)
            if lic is None:
                logger.warning("License key taken concurrently, regenerating (attempt %d)", attempt + 1)
                continue
            logger.info("Issued license %s for kiosk %r, expires %s", key, metadata.kiosk_name, to_iso(expires_at))
            self._log_action(ACTION_ISSUE, key, caller, kioskName=lic.kiosk_name,
                             location=lic.location(), expiresAt=to_iso(expires_at))
            return LifecycleResult.success(lic)

        raise KeyAllocationError(f"No unused license key after {MAX_KEY_ATTEMPTS} attempts")

    def revoke(self, key: str, reason: Optional[str], caller: Optional[CallerContext] = None) -> LifecycleResult:
        if reason is not None and not isinstance(reason, str):
            return LifecycleResult.failure(LicenseError.validation_failed("Revocation reason must be a string"))
        reason = (reason or "").strip()
        if not reason:
            return LifecycleResult.failure(LicenseError.validation_failed("Revocation reason required"))

        if self.store.get_by_key(key) is None:
            return LifecycleResult.failure(LicenseError.not_found())

        changed = self.store.revoke(key, reason, self.clock())
        lic = self.store.get_by_key(key)
        if lic is None:
            return LifecycleResult.failure(LicenseError.not_found())

        if changed:
            logger.info("Revoked license %s: %s", key, reason)
        else:
            logger.info("License %s was already revoked; keeping original reason", key)
        self._log_action(ACTION_REVOKE, key, caller, reason=reason, changed=changed)
        return LifecycleResult.success(
            RevokeResult(license_key=key, reason=lic.revoke_reason, revoked_at=lic.revoked_at, changed=changed)
        )

    def delete(self, key: str, caller: Optional[CallerContext] = None) -> LifecycleResult:
        lic = self.store.get_by_key(key)
        if lic is None:
            return LifecycleResult.failure(LicenseError.not_found())
        details = {
            "kioskName": lic.kiosk_name,
            "status": lic.status,
            "deviceIdHash": lic.device_fingerprint,
            "issuedAt": to_iso(lic.issued_at),
        }
        if not self.store.delete(key):
            return LifecycleResult.failure(LicenseError.not_found())
        logger.info("Deleted license %s", key)
        self._log_action(ACTION_DELETE, key, caller, **details)
        return LifecycleResult.success(key)

    def _log_action(self, action: str, key: str, caller: Optional[CallerContext], **details: Any) -> None:
        self.activity.append(
            action,
            key,
            details=details,
            ip_address=caller.ip_address if caller else None,
            created_at=self.clock(),
        )

    def public_key(self) -> str:
        return self.signer.public_pem()

    def get_license(self, key: str) -> LifecycleResult:
        lic = self.store.get_by_key(key)
        if lic is None:
            return LifecycleResult.failure(LicenseError.not_found())
        return LifecycleResult.success(lic)

    def list_licenses(self, status: Optional[str] = None, country: Optional[str] = None, limit: Optional[int] = None) -> List[License]:
        return self.store.list_licenses(status=status, country=country, limit=limit)

    def stats(self) -> Dict[str, int]:
        now = self.clock()
        stats = self.store.stats(now)
        stats["recentValidations"] = self.audit.count_since(now - timedelta(days=7))
        return stats

    # ---------------------------
    # Device actions
    # ---------------------------
    def activate(self, key: str, device_id: str, caller: Optional[CallerContext] = None) -> LifecycleResult:
        return self._audited(ATTEMPT_ACTIVATION, key, device_id, caller, self._activate)

    def validate(self, key: str, device_id: str, caller: Optional[CallerContext] = None) -> LifecycleResult:
        return self._audited(ATTEMPT_PERIODIC, key, device_id, caller, self._validate)

    def generate_offline_bundle(self, key: str, device_id: str, caller: Optional[CallerContext] = None) -> LifecycleResult:
        result = self._audited(ATTEMPT_OFFLINE, key, device_id, caller, self._offline)
        if result.ok:
            data = result.value.license_data
            self._log_action(ACTION_OFFLINE, data["licenseKey"], caller, deviceIdHash=data["deviceId"][:12])
        return result

    def _audited(self, kind: str, key: Any, device_id: Any, caller: Optional[CallerContext], op) -> LifecycleResult:
        # request bodies are untrusted JSON; anything but a string is refused
        key = key.strip() if isinstance(key, str) else ""
        device_id = device_id if isinstance(device_id, str) else ""
        fingerprint = None

        try:
            if not key or not device_id:
                result = LifecycleResult.failure(
                    LicenseError.validation_failed("License key and device ID must be non-empty strings")
                )
            else:
                fingerprint = hash_device_id(device_id)
                result = op(key, device_id, fingerprint)
        except (SigningError, StoreError) as e:
            self._record(kind, key, fingerprint, False, str(e), caller)
            raise

        reason = None if result.ok else result.error.message
        self._record(kind, key, fingerprint, result.ok, reason, caller)
        if not result.ok:
            logger.info(
                "%s refused for %s (device %s): %s",
                kind, key, (fingerprint or "-")[:12], result.error.kind.value,
            )
        return result

    def _record(
        self,
        kind: str,
        key: str,
        fingerprint: Optional[str],
        success: bool,
        reason: Optional[str],
        caller: Optional[CallerContext],
    ) -> None:
        caller = caller or CallerContext()
        self.audit.append(
            AuditEntry(
                license_key=key,
                device_fingerprint=fingerprint,
                attempt_kind=kind,
                success=success,
                failure_reason=reason,
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
                created_at=self.clock(),
            )
        )

    def _refusal(self, lic: Optional[License], now: datetime) -> Optional[LicenseError]:
        if lic is None:
            return LicenseError.not_found()
        if lic.status == STATUS_REVOKED:
            return LicenseError.revoked(lic.revoke_reason)
        if is_expired(lic.expires_at, now):
            return LicenseError.expired()
        return None

    def _bind(self, key: str, fingerprint: str, now: datetime) -> Optional[License]:
        """
        pending -> active for this fingerprint, or whatever the row became if
        someone else got there first. Returns the fresh row.
        """
        if self.store.transition_pending_to_active(key, fingerprint, now):
            logger.info("License %s bound to device %s", key, fingerprint[:12])
        return self.store.get_by_key(key)

    def _activate(self, key: str, device_id: str, fingerprint: str) -> LifecycleResult:
        now = self.clock()
        lic = self.store.get_by_key(key)
        error = self._refusal(lic, now)
        if error:
            return LifecycleResult.failure(error)

        if lic.status != STATUS_ACTIVE:
            lic = self._bind(key, fingerprint, now)
            # lost the race to a delete or revoke
            error = self._refusal(lic, now)
            if error:
                return LifecycleResult.failure(error)

        if lic.device_fingerprint != fingerprint:
            return LifecycleResult.failure(
                LicenseError.device_mismatch("License already activated on another device")
            )

        last_validated = lic.last_validated_at or lic.activated_at or now
        assertion = self._assertion(lic, fingerprint, lic.activated_at or now, last_validated)
        return LifecycleResult.success(self.signer.sign_assertion(assertion))

    def _validate(self, key: str, device_id: str, fingerprint: str) -> LifecycleResult:
        now = self.clock()
        lic = self.store.get_by_key(key)
        error = self._refusal(lic, now)
        if error:
            return LifecycleResult.failure(error)

        # a never-activated license has no fingerprint and lands here too
        if lic.device_fingerprint is None or lic.device_fingerprint != fingerprint:
            return LifecycleResult.failure(LicenseError.device_mismatch())

        validated_at = now
        if not self.store.touch_validation(key, now):
            fresh = self.store.get_by_key(key)
            if fresh is not None and fresh.last_validated_at is not None:
                validated_at = max(now, fresh.last_validated_at)

        return LifecycleResult.success(
            ValidationResult(
                valid=True,
                validated_at=validated_at,
                expires_at=lic.expires_at,
                grace_expires_at=validated_at + self.grace_period,
            )
        )

    def _offline(self, key: str, device_id: str, fingerprint: str) -> LifecycleResult:
        now = self.clock()
        lic = self.store.get_by_key(key)
        error = self._refusal(lic, now)
        if error:
            return LifecycleResult.failure(error)

        if lic.status != STATUS_ACTIVE:
            # an offline kiosk never calls activate, so the bundle does the binding
            lic = self._bind(key, fingerprint, now)
            error = self._refusal(lic, now)
            if error:
                return LifecycleResult.failure(error)

        if lic.device_fingerprint != fingerprint:
            return LifecycleResult.failure(
                LicenseError.device_mismatch("License already activated on another device")
            )

        assertion = self._assertion(lic, fingerprint, lic.activated_at or now, now, include_issued=True)
        license_data = self.signer.sign_assertion(assertion)
        bundle = encode_offline_bundle(license_data, device_id)
        logger.info("Generated offline bundle for %s (device %s)", key, fingerprint[:12])
        return LifecycleResult.success(OfflineLicense(bundle=bundle, license_data=license_data))

    def _assertion(
        self,
        lic: License,
        fingerprint: str,
        activated_at: datetime,
        last_validated: datetime,
        include_issued: bool = False,
    ) -> Dict[str, Any]:
        assertion: Dict[str, Any] = {
            "licenseKey": lic.license_key,
            "deviceId": fingerprint,
            "kioskName": lic.kiosk_name,
            "activatedAt": to_iso(activated_at),
            "expiresAt": to_iso(lic.expires_at),
            "lastValidated": to_iso(last_validated),
            "graceExpiresAt": to_iso(last_validated + self.grace_period),
        }
        location = lic.location()
        if location:
            assertion["location"] = location
        if include_issued:
            assertion["issuedAt"] = to_iso(lic.issued_at)
        return assertion
