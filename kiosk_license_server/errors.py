from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class LicenseErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    DEVICE_MISMATCH = "device_mismatch"
    VALIDATION_FAILED = "validation_failed"


@dataclass(frozen=True)
class LicenseError:
    """
    Domain outcome of a refused lifecycle call.
    These are returned, not raised: a refusal is a normal answer to a device.
    """
    kind: LicenseErrorKind
    message: str
    reason: Optional[str] = None

    @classmethod
    def not_found(cls) -> "LicenseError":
        return cls(LicenseErrorKind.NOT_FOUND, "License key not found")

    @classmethod
    def revoked(cls, reason: Optional[str]) -> "LicenseError":
        return cls(LicenseErrorKind.REVOKED, "License has been revoked", reason=reason)

    @classmethod
    def expired(cls) -> "LicenseError":
        return cls(LicenseErrorKind.EXPIRED, "License has expired")

    @classmethod
    def device_mismatch(cls, message: str = "Device ID mismatch") -> "LicenseError":
        return cls(LicenseErrorKind.DEVICE_MISMATCH, message)

    @classmethod
    def validation_failed(cls, underlying: str) -> "LicenseError":
        return cls(LicenseErrorKind.VALIDATION_FAILED, underlying)

    def to_dict(self) -> dict:
        data = {"code": self.kind.value, "error": self.message}
        if self.reason is not None:
            data["reason"] = self.reason
        return data


class SigningError(RuntimeError):
    """Signing failed; no assertion may be handed out."""


class StoreError(RuntimeError):
    """Storage is unreachable or a transaction failed. Never a license verdict."""


class OfflineBundleError(ValueError):
    """Offline bundle is malformed or fails authentication for this device."""


class KeyAllocationError(RuntimeError):
    """No unused license key could be generated."""
