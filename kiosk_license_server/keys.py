from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

KEY_BITS = 2048
PRIVATE_KEY_FILE = "private.pem"
PUBLIC_KEY_FILE = "public.pem"


@dataclass(frozen=True)
class KeyMaterial:
    """
    The service-wide RSA signing key pair.

    Built once at startup and handed to whoever signs; nothing mutates it
    afterwards. Rotating it breaks verification of every assertion already
    handed out under the old public key.
    """
    private_key: rsa.RSAPrivateKey

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def public_pem(self) -> str:
        return self.public_key.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    @classmethod
    def generate(cls, key_size: int = KEY_BITS) -> "KeyMaterial":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @classmethod
    def from_pem(cls, data: Union[str, bytes]) -> "KeyMaterial":
        if isinstance(data, str):
            data = data.encode("ascii")
        key = serialization.load_pem_private_key(data, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("Signing key must be an RSA private key.")
        return cls(key)

    @classmethod
    def load_or_create(cls, keys_dir: Union[str, Path]) -> "KeyMaterial":
        """
        Load private.pem/public.pem from keys_dir, generating both on first boot.
        """
        keys_dir = Path(keys_dir)
        private_path = keys_dir / PRIVATE_KEY_FILE
        public_path = keys_dir / PUBLIC_KEY_FILE

        if private_path.exists():
            material = cls.from_pem(private_path.read_bytes())
            if not public_path.exists():
                public_path.write_text(material.public_pem(), encoding="ascii")
            logger.info("Loaded license signing key from %s", keys_dir)
            return material

        keys_dir.mkdir(parents=True, exist_ok=True)
        material = cls.generate()

        tmp = private_path.with_suffix(".tmp")
        tmp.write_bytes(material.private_pem())
        os.chmod(tmp, 0o600)
        os.replace(tmp, private_path)
        public_path.write_text(material.public_pem(), encoding="ascii")

        logger.warning("Generated new %d-bit RSA signing key pair in %s", KEY_BITS, keys_dir)
        return material
