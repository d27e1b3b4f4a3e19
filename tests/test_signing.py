from __future__ import annotations

import base64
import re

import pytest

from kiosk_license_server.errors import SigningError
from kiosk_license_server.keys import KeyMaterial
from kiosk_license_server.signing import (
    Signer,
    canonical_json,
    generate_license_key,
    hash_device_id,
    verify_assertion,
    verify_signed_license,
)

KEY_RE = re.compile(r"^KFC-KIO-UK-\d{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}$")


def _assertion() -> dict:
    return {
        "licenseKey": "KFC-KIO-UK-2025-AAAA-BBBB-CCCC-DDDD",
        "deviceId": hash_device_id("dev-A"),
        "kioskName": "Kiosk 7",
        "activatedAt": "2025-03-01T12:00:00.000Z",
        "expiresAt": "2026-03-01T12:00:00.000Z",
        "lastValidated": "2025-03-01T12:00:00.000Z",
        "graceExpiresAt": "2025-05-30T12:00:00.000Z",
    }


def test_license_key_format():
    key = generate_license_key("KFC-KIO", "uk")
    assert KEY_RE.match(key), key


def test_license_key_year_override():
    assert generate_license_key("ACME", "DE", year=2031).startswith("ACME-DE-2031-")


def test_license_keys_are_not_sequential():
    keys = {generate_license_key() for _ in range(200)}
    assert len(keys) == 200


def test_license_key_rejects_bad_country():
    with pytest.raises(ValueError):
        generate_license_key("KFC-KIO", "U K")


def test_hash_device_id_is_stable_sha256():
    fp = hash_device_id("dev-A")
    assert fp == hash_device_id("dev-A")
    assert fp != hash_device_id("dev-B")
    assert re.fullmatch(r"[0-9a-f]{64}", fp)
    assert "dev-A" not in fp


def test_canonical_json_ignores_key_order_and_signature():
    a = _assertion()
    b = dict(reversed(list(a.items())))
    b["signature"] = "whatever"
    assert canonical_json(a) == canonical_json(b)
    assert b" " not in canonical_json(a)


def test_sign_then_verify(key_material):
    signer = Signer(key_material)
    assertion = _assertion()
    signature = signer.sign(assertion)
    assert verify_assertion(assertion, signature, key_material.public_key)
    assert verify_assertion(assertion, signature, key_material.public_pem())


def test_sign_assertion_embeds_signature(key_material):
    signed = Signer(key_material).sign_assertion(_assertion())
    assert "signature" in signed
    assert verify_signed_license(signed, key_material.public_pem())


def test_corrupted_signature_byte_fails(key_material):
    assertion = _assertion()
    raw = bytearray(base64.b64decode(Signer(key_material).sign(assertion)))
    raw[10] ^= 0x01
    assert not verify_assertion(assertion, base64.b64encode(bytes(raw)).decode(), key_material.public_key)


def test_corrupted_assertion_fails(key_material):
    assertion = _assertion()
    signature = Signer(key_material).sign(assertion)
    tampered = dict(assertion, expiresAt="2099-03-01T12:00:00.000Z")
    assert not verify_assertion(tampered, signature, key_material.public_key)


@pytest.mark.parametrize("signature", [None, "", "not base64 !!", "QUJD", 12345])
def test_malformed_signature_is_false(key_material, signature):
    assert verify_assertion(_assertion(), signature, key_material.public_key) is False


def test_wrong_or_garbage_public_key_is_false(key_material):
    assertion = _assertion()
    signature = Signer(key_material).sign(assertion)
    other = KeyMaterial.generate()
    assert not verify_assertion(assertion, signature, other.public_key)
    assert not verify_assertion(assertion, signature, "-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----\n")


class _BrokenKey:
    def sign(self, *args, **kwargs):
        raise ValueError("key unusable")

    def public_key(self):
        raise AssertionError("not needed")


def test_signing_failure_raises():
    signer = Signer(KeyMaterial(private_key=_BrokenKey()))
    with pytest.raises(SigningError):
        signer.sign(_assertion())
