from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import OfflineBundleError

# Shared with every kiosk decoder; changing any of these breaks existing bundles.
KDF_SALT = b"license-salt"
KDF_ITERATIONS = 100_000
KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16


@dataclass(frozen=True)
class OfflineBundle:
    encrypted: str
    iv: str
    auth_tag: str

    def to_dict(self) -> Dict[str, str]:
        return {"encrypted": self.encrypted, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OfflineBundle":
        try:
            return cls(encrypted=str(data["encrypted"]), iv=str(data["iv"]), auth_tag=str(data["authTag"]))
        except KeyError as e:
            raise OfflineBundleError(f"Offline bundle is missing {e.args[0]!r}") from e


def derive_device_key(device_id: str) -> bytes:
    """PBKDF2-HMAC-SHA256 over the raw device id; the server never keeps the result."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=KDF_SALT, iterations=KDF_ITERATIONS)
    return kdf.derive(device_id.encode("utf-8"))


def _plaintext(signed_assertion: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(signed_assertion), separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def encode_offline_bundle(signed_assertion: Mapping[str, Any], device_id: str) -> OfflineBundle:
    """
    AES-256-GCM encrypt the signed assertion (signature included) for one device.
    The output is only readable with a key derived from that device's raw id.
    """
    if not device_id:
        raise ValueError("device_id is required for an offline bundle.")

    key = derive_device_key(device_id)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, _plaintext(signed_assertion), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return OfflineBundle(encrypted=ciphertext.hex(), iv=iv.hex(), auth_tag=tag.hex())


def decode_offline_bundle(bundle: Any, device_id: str) -> Dict[str, Any]:
    """
    Kiosk-side counterpart of encode_offline_bundle.
    The tag is checked before any plaintext is trusted; a bundle made for a
    different device fails here.
    """
    if not isinstance(bundle, OfflineBundle):
        bundle = OfflineBundle.from_dict(bundle)

    try:
        ciphertext = bytes.fromhex(bundle.encrypted)
        iv = bytes.fromhex(bundle.iv)
        tag = bytes.fromhex(bundle.auth_tag)
    except ValueError as e:
        raise OfflineBundleError("Offline bundle is not valid hex.") from e

    if len(tag) != TAG_BYTES or len(iv) != IV_BYTES:
        raise OfflineBundleError("Offline bundle has a malformed IV or tag.")

    try:
        plaintext = AESGCM(derive_device_key(device_id)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise OfflineBundleError("Offline bundle failed authentication for this device.") from e

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except ValueError as e:
        raise OfflineBundleError("Offline bundle payload is not JSON.") from e
    if not isinstance(data, dict):
        raise OfflineBundleError("Offline bundle payload is not an object.")
    return data
