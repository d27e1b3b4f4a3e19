from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import SigningError
from .keys import KeyMaterial

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"


# ---------------------------
# Keys and fingerprints
# ---------------------------
def generate_license_key(prefix: str = "KFC-KIO", country: str = "UK", year: Optional[int] = None) -> str:
    """
    PREFIX-COUNTRY-YEAR-XXXX-XXXX-XXXX-XXXX, each XXXX from the OS CSPRNG.
    Uniqueness against issued keys is the caller's job.
    """
    country = (country or "").strip().upper()
    if not country.isalnum():
        raise ValueError("Country code must be alphanumeric.")
    year = year or datetime.now(timezone.utc).year
    segments = [secrets.token_hex(2).upper() for _ in range(4)]
    return f"{prefix}-{country}-{year}-" + "-".join(segments)


def hash_device_id(device_id: str) -> str:
    """One-way SHA-256 fingerprint. The raw id is never stored anywhere."""
    return hashlib.sha256(device_id.encode("utf-8")).hexdigest()


# ---------------------------
# Canonical form
# ---------------------------
def canonical_json(assertion: Mapping[str, Any]) -> bytes:
    body = {k: v for k, v in assertion.items() if k != SIGNATURE_FIELD}
    return json.dumps(body, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


# ---------------------------
# Sign / verify
# ---------------------------
class Signer:
    def __init__(self, key_material: KeyMaterial) -> None:
        self._keys = key_material

    def public_pem(self) -> str:
        return self._keys.public_pem()

    def sign(self, assertion: Mapping[str, Any]) -> str:
        try:
            body = canonical_json(assertion)
            sig = self._keys.private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())
        except (TypeError, ValueError, UnsupportedAlgorithm) as e:
            logger.error("License signing failed: %s", e)
            raise SigningError(f"Could not sign license assertion: {e}") from e
        return base64.b64encode(sig).decode("ascii")

    def sign_assertion(self, assertion: Mapping[str, Any]) -> Dict[str, Any]:
        signed = dict(assertion)
        signed[SIGNATURE_FIELD] = self.sign(assertion)
        return signed


PublicKeyLike = Union[str, bytes, rsa.RSAPublicKey]


def _load_public_key(public_key: PublicKeyLike) -> rsa.RSAPublicKey:
    if isinstance(public_key, rsa.RSAPublicKey):
        return public_key
    if isinstance(public_key, str):
        public_key = public_key.encode("ascii")
    key = serialization.load_pem_public_key(public_key)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Not an RSA public key.")
    return key


def verify_assertion(assertion: Mapping[str, Any], signature: Optional[str], public_key: PublicKeyLike) -> bool:
    """
    True only for a well-formed signature over exactly this assertion.
    Anything malformed is simply False.
    """
    if not signature or not isinstance(signature, str):
        return False
    try:
        key = _load_public_key(public_key)
        raw = base64.b64decode(signature.encode("ascii"), validate=True)
        key.verify(raw, canonical_json(assertion), padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, ValueError, TypeError, binascii.Error, UnsupportedAlgorithm):
        return False
    return True


def verify_signed_license(license_data: Mapping[str, Any], public_key: PublicKeyLike) -> bool:
    return verify_assertion(license_data, license_data.get(SIGNATURE_FIELD), public_key)
