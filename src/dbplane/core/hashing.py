"""
Credential hashing helpers.

Passwords are never sent to a database in clear text: rotation computes a
PostgreSQL SCRAM-SHA-256 verifier locally (RFC 5802 / RFC 7677) and ships
only the verifier.

Examples:
    >>> v = scram_sha256_verifier("s3cret", salt=b"0" * 16, iterations=4096)
    >>> v.startswith("SCRAM-SHA-256$4096:")
    True
"""

import base64
import hashlib
import hmac
import os
import secrets

SCRAM_ITERATIONS = 4096


def scram_sha256_verifier(password: str, *, salt: bytes | None = None, iterations: int = SCRAM_ITERATIONS) -> str:
    """PostgreSQL-compatible ``SCRAM-SHA-256$<iter>:<salt>$<StoredKey>:<ServerKey>``."""
    salt = salt if salt is not None else os.urandom(16)
    salted = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    client_key = hmac.new(salted, b"Client Key", hashlib.sha256).digest()
    stored_key = hashlib.sha256(client_key).digest()
    server_key = hmac.new(salted, b"Server Key", hashlib.sha256).digest()

    def b64(raw: bytes) -> str:
        return base64.b64encode(raw).decode("ascii")

    return f"SCRAM-SHA-256${iterations}:{b64(salt)}${b64(stored_key)}:{b64(server_key)}"


def generate_password(nbytes: int = 15) -> str:
    """URL-safe random password (``nbytes`` of entropy)."""
    return secrets.token_urlsafe(nbytes)
