"""
Key material and random tokens.

RSA keypairs are stored as PEM text (PKCS8 private, SubjectPublicKeyInfo
public).  Random identifiers (secrets, nonces, login state, JWT ids) come
from a ``TokenSource`` that callers can replace in tests.
"""

from __future__ import annotations

import secrets

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

DEFAULT_KEY_SIZE = 4096


class TokenSource:
    """Cryptographically random, URL-safe tokens."""

    def token(self, nbytes: int = 16) -> str:
        return secrets.token_urlsafe(nbytes)

    def hex(self, nbytes: int = 16) -> str:
        return secrets.token_hex(nbytes)


def generate_keypair(key_size: int = DEFAULT_KEY_SIZE) -> tuple[str, str]:
    """
    Generate an RSA keypair.

    Returns:
        ``(public_pem, private_pem)``
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return public_pem.decode("utf-8"), private_pem.decode("utf-8")


def public_jwk(public_pem: str, kid: str) -> dict:
    """Export a PEM public key as a signing JWK identified by ``kid``."""
    public_key = serialization.load_pem_public_key(public_pem.encode("utf-8"))
    jwk = RSAAlgorithm.to_jwk(public_key, as_dict=True)
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk
