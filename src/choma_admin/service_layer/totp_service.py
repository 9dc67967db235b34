"""ABOUTME: TOTP and backup code functions used by the two-factor service
ABOUTME: Handles secret generation and encryption, code verification, provisioning URIs and backup code hashing"""

import base64
import re
import secrets
from datetime import datetime

import pyotp
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from werkzeug.security import check_password_hash, generate_password_hash

from choma_admin.config import get_totp_encryption_key
from choma_admin.domain.two_factor import TwoFactorAccount

DEFAULT_TOTP_WINDOW = 2
DEFAULT_BACKUP_CODE_COUNT = 10

_WHITESPACE = re.compile(r"\s+")


def derive_account_encryption_key(master_key: bytes, account_id: str) -> bytes:
    """Derive an account-specific encryption key from the master key using HKDF.

    This ensures each account has a different encryption key even with the same master key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"choma-admin-totp-encryption",  # Fixed salt for deterministic derivation
        info=account_id.encode("utf-8"),
    )
    return hkdf.derive(master_key)


def _fernet_for(account_id: str) -> Fernet:
    account_key = derive_account_encryption_key(get_totp_encryption_key(), account_id)
    # Fernet requires a base64-encoded 32-byte key
    return Fernet(base64.urlsafe_b64encode(account_key))


def generate_totp_secret() -> str:
    """Generate a new random TOTP secret (base32 encoded)."""
    return pyotp.random_base32()


def encrypt_totp_secret(secret: str, account_id: str) -> str:
    """Encrypt TOTP secret for storage using Fernet symmetric encryption.

    Args:
        secret: The plaintext TOTP secret
        account_id: The admin account reference, used for key derivation

    Returns:
        Base64-encoded encrypted secret
    """
    return _fernet_for(account_id).encrypt(secret.encode("utf-8")).decode("ascii")


def decrypt_totp_secret(encrypted_secret: str, account_id: str) -> str:
    return _fernet_for(account_id).decrypt(encrypted_secret.encode("ascii")).decode("utf-8")


def normalise_code(code: str) -> str:
    return _WHITESPACE.sub("", code or "")


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    """otpauth:// URI handed to the QR renderer, labelled `<issuer>:<account_label>`."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_label, issuer_name=issuer)


def verify_totp_code(
    secret: str, code: str, window: int = DEFAULT_TOTP_WINDOW, for_time: datetime | None = None
) -> bool:
    """Verify a TOTP code against a secret.

    Accepts the code for the current 30 second step or any of `window` steps
    either side of it, so window=2 tolerates 60 seconds of clock drift.

    Args:
        secret: The TOTP secret
        code: The 6-digit code from the authenticator app
        window: Number of steps accepted before and after the current one
        for_time: Time to verify at, defaults to now

    Returns:
        True if the code is valid, False otherwise
    """
    code = normalise_code(code)
    if not code.isdigit() or len(code) != 6:
        return False
    return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=window)


def generate_backup_codes(count: int = DEFAULT_BACKUP_CODE_COUNT) -> list[str]:
    """Generate random backup codes.

    Args:
        count: Number of backup codes to generate (default: 10)

    Returns:
        List of distinct backup codes in format: XXXX-XXXX
    """
    codes: list[str] = []
    while len(codes) < count:
        # 8 random hex characters
        code_hex = secrets.token_bytes(4).hex().upper()
        formatted = f"{code_hex[:4]}-{code_hex[4:]}"
        if formatted not in codes:
            codes.append(formatted)
    return codes


def normalise_backup_code(code: str) -> str:
    return normalise_code(code).replace("-", "").upper()


def hash_backup_code(code: str) -> str:
    """Hash a backup code for secure storage.

    Uses werkzeug's salted password hashing over the normalised code, so
    `abcd-1234` and `ABCD1234` hash the same way.
    """
    return generate_password_hash(normalise_backup_code(code))


def check_backup_code(code_hash: str, code: str) -> bool:
    return check_password_hash(code_hash, normalise_backup_code(code))


def issue_backup_codes(account: TwoFactorAccount, now: datetime, count: int = DEFAULT_BACKUP_CODE_COUNT) -> list[str]:
    """Replace all of the account's backup codes with a fresh batch.

    Every previously issued code, used or not, stops working.

    Returns:
        List of plaintext backup codes (to show to the admin once)
    """
    plaintext_codes = generate_backup_codes(count)
    account.replace_backup_codes([hash_backup_code(code) for code in plaintext_codes], now)
    return plaintext_codes


def consume_backup_code(account: TwoFactorAccount, code: str, now: datetime) -> bool:
    """Mark the matching unused backup code as used.

    The caller must hold the account for update so two requests cannot both
    consume the same code.

    Returns:
        True if an unused code matched, False otherwise
    """
    if not normalise_backup_code(code):
        return False
    for backup_code in account.unused_backup_codes():
        if check_backup_code(backup_code.code_hash, code):
            backup_code.mark_as_used(now)
            account.touch(now)
            return True
    return False
