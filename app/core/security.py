"""Security utilities: credential hashing, encryption, and admin token checks."""

import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet

from app.core.config import get_settings

settings = get_settings()

API_KEY_PREFIX = "tb-"


# ── API key hashing (SHA-256, deterministic for lookups) ──────

def hash_api_key(raw_key: str) -> str:
    """One-way SHA-256 hash for credential storage.

    We use SHA-256 (not a slow KDF) because every proxied request looks the
    credential up by its hash. The raw key has 192 bits of entropy, so
    brute-force is infeasible.
    """
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a cryptographically secure credential, e.g. ``tb-3f9a...``."""
    return API_KEY_PREFIX + secrets.token_hex(24)


def key_prefix(raw_key: str) -> str:
    return raw_key[: len(API_KEY_PREFIX) + 6]


# ── Admin token ───────────────────────────────────────────────

def admin_token_matches(presented: str) -> bool:
    """Constant-time comparison against the configured admin token."""
    expected = settings.admin_token
    if not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


# ── Field-level encryption (Fernet) ──────────────────────────

def _get_fernet() -> Fernet:
    if not settings.encryption_key:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    return Fernet(settings.encryption_key.encode())


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string value. Returns base64 ciphertext."""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet-encrypted value."""
    return _get_fernet().decrypt(ciphertext.encode()).decode()


# ── Registered user identity ──────────────────────────────────

def derive_user_id(email: str, corporate_domain: str = "") -> str:
    """Map an email to a stable user id.

    Addresses on the corporate domain use the bare local part
    (``jane@corp.com`` -> ``jane``); everyone else keeps the full address.
    """
    email = email.strip().lower()
    local, _, domain = email.partition("@")
    if corporate_domain and domain == corporate_domain.strip().lower():
        return local
    return email
