# license_manager.py
from __future__ import annotations

import hashlib
import json
import os
import platform
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from kiosk_license_server.errors import OfflineBundleError
from kiosk_license_server.offline import decode_offline_bundle
from kiosk_license_server.signing import hash_device_id, verify_signed_license


@dataclass
class LicenseResult:
    ok: bool
    message: str
    license_key: str
    device_id: str
    activated: bool = False
    code: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class LicenseManager:
    """
    Kiosk-side license manager:
    - Generates a stable device id locally (the server only ever sees its hash)
    - Activates / validates against the license server
    - Verifies every signed license with the server's public key
    - Loads operator-issued offline bundles for kiosks with no network
    - Keeps the last verified license on disk for grace-period decisions
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        device_id: Optional[str] = None,
        storage_dir: Optional[Path] = None,
        public_key_pem: Optional[str] = None,
        app_name: str = "Kiosk",
        timeout: float = 12,
    ) -> None:
        self.api_base = (api_base or os.getenv("KIOSK_LICENSE_API", "")).strip() or "http://localhost:5000"
        self.app_name = app_name
        self.timeout = timeout

        if storage_dir is None:
            storage_dir = Path.home() / f".{app_name.lower()}"
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.state_path = self.storage_dir / "license_state.json"

        self._device_id = device_id or self._make_device_id()
        self.public_key_pem = public_key_pem

    # ---------------------------
    # Device ID (stable)
    # ---------------------------
    def get_device_id(self) -> str:
        return self._device_id

    def _make_device_id(self) -> str:
        try:
            node = uuid.getnode()
        except Exception:
            node = 0

        parts = [
            platform.system(),
            platform.machine(),
            socket.gethostname(),
            str(node),
            self.app_name,
        ]
        raw = "|".join(parts).encode("utf-8", errors="ignore")
        return hashlib.sha256(raw).hexdigest()[:32].upper()

    # ---------------------------
    # Local state
    # ---------------------------
    def _load_state(self) -> Dict[str, Any]:
        if not self.state_path.exists():
            return {}
        try:
            return json.loads(self.state_path.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError):
            return {}

    def _save_state(self, license_data: Dict[str, Any], source: str, last_check: Optional[Dict[str, Any]] = None) -> None:
        # the license dict is kept exactly as signed
        data = {
            "app": self.app_name,
            "license": license_data,
            "source": source,
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "lastServerCheck": last_check,
        }
        tmp = self.state_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.state_path)

    def saved_license(self) -> Optional[Dict[str, Any]]:
        lic = self._load_state().get("license")
        if not isinstance(lic, dict) or not self.verify_license(lic):
            return None
        return lic

    def is_activated(self, now: Optional[datetime] = None) -> bool:
        lic = self.saved_license()
        return lic is not None and self.is_within_grace(lic, now)

    # ---------------------------
    # Verification
    # ---------------------------
    def fetch_public_key(self) -> str:
        r = requests.get(self._url("/api/licenses/keys/public"), timeout=self.timeout)
        r.raise_for_status()
        self.public_key_pem = r.text
        return self.public_key_pem

    def verify_license(self, license_data: Dict[str, Any]) -> bool:
        """Signature valid and issued for this device."""
        if not self.public_key_pem:
            return False
        if license_data.get("deviceId") != hash_device_id(self._device_id):
            return False
        return verify_signed_license(license_data, self.public_key_pem)

    @staticmethod
    def is_within_grace(license_data: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires = parse_iso(license_data.get("expiresAt"))
        grace = parse_iso(license_data.get("graceExpiresAt"))
        if expires is None or grace is None:
            return False
        return now <= expires and now <= grace

    # ---------------------------
    # HTTP helpers
    # ---------------------------
    def _url(self, path: str) -> str:
        return self.api_base.rstrip("/") + "/" + path.lstrip("/")

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(self._url(path), json=payload, timeout=self.timeout)

    def _result(self, license_key: str, ok: bool, message: str, **kwargs) -> LicenseResult:
        return LicenseResult(ok=ok, message=message, license_key=license_key, device_id=self._device_id, **kwargs)

    @staticmethod
    def _json(r: requests.Response) -> Dict[str, Any]:
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ---------------------------
    # Public API used by the kiosk UI
    # ---------------------------
    def activate_license(self, license_key: str) -> LicenseResult:
        license_key = (license_key or "").strip()
        if not license_key:
            return self._result(license_key, False, "Please enter a license key.")

        try:
            if not self.public_key_pem:
                self.fetch_public_key()
            r = self._post("/api/licenses/activate", {"licenseKey": license_key, "deviceId": self._device_id})
        except requests.exceptions.RequestException as e:
            return self._result(license_key, False, f"Activation failed: {e}", code="network")

        data = self._json(r)
        if not r.ok:
            return self._result(
                license_key, False, str(data.get("error") or f"HTTP {r.status_code}"),
                code=data.get("code") or "http", raw=data,
            )

        lic = data.get("license") or {}
        if not self.verify_license(lic):
            return self._result(license_key, False, "Server returned a license with an invalid signature.",
                                code="bad_signature", raw=data)

        self._save_state(lic, source="online")
        return self._result(license_key, True, "Activation complete.", activated=True, raw=data)

    def validate_license(self, license_key: Optional[str] = None) -> LicenseResult:
        """
        Periodic heartbeat. Network or server trouble keeps the kiosk running
        while the saved license is inside its grace window; a definite refusal
        (revoked, expired, wrong device) does not.
        """
        saved = self.saved_license()
        license_key = (license_key or (saved or {}).get("licenseKey") or "").strip()
        if not license_key:
            return self._result(license_key, False, "No license activated.", code="no_license")

        try:
            r = self._post("/api/licenses/validate", {"licenseKey": license_key, "deviceId": self._device_id})
        except requests.exceptions.RequestException as e:
            return self._offline_fallback(license_key, saved, f"License server unreachable: {e}")

        data = self._json(r)
        if r.status_code >= 500:
            return self._offline_fallback(license_key, saved, str(data.get("error") or f"HTTP {r.status_code}"))
        if not r.ok:
            return self._result(license_key, False, str(data.get("error") or "License rejected."),
                                code=data.get("code"), raw=data)

        # re-activating the bound device is idempotent and returns a freshly
        # signed license whose grace window starts at this validation
        refreshed = self._refresh_signed(license_key) or saved
        if refreshed is not None:
            self._save_state(refreshed, source="online", last_check=data)
        return self._result(license_key, True, "License valid.", activated=True, raw=data)

    def _refresh_signed(self, license_key: str) -> Optional[Dict[str, Any]]:
        if not self.public_key_pem:
            return None
        try:
            r = self._post("/api/licenses/activate", {"licenseKey": license_key, "deviceId": self._device_id})
        except requests.exceptions.RequestException:
            return None
        lic = self._json(r).get("license") if r.ok else None
        if isinstance(lic, dict) and self.verify_license(lic):
            return lic
        return None

    def _offline_fallback(self, license_key: str, saved: Optional[Dict[str, Any]], message: str) -> LicenseResult:
        if saved is not None and self.is_within_grace(saved):
            return self._result(license_key, True, f"{message} (running in grace period)",
                                activated=True, code="grace")
        return self._result(license_key, False, message, code="offline")

    def load_offline_license(self, bundle: Dict[str, Any]) -> LicenseResult:
        """
        Install an operator-generated offline bundle ({encrypted, iv, authTag},
        or the full generate-offline response).
        """
        if "licenseFile" in bundle:
            bundle = bundle["licenseFile"]
        try:
            lic = decode_offline_bundle(bundle, self._device_id)
        except OfflineBundleError as e:
            return self._result("", False, str(e), code="bad_bundle")

        license_key = str(lic.get("licenseKey") or "")
        if not self.verify_license(lic):
            return self._result(license_key, False, "Offline license signature is invalid.", code="bad_signature")
        if not self.is_within_grace(lic):
            return self._result(license_key, False, "Offline license is expired.", code="expired")

        self._save_state(lic, source="offline")
        return self._result(license_key, True, "Offline license installed.", activated=True, raw=lic)
