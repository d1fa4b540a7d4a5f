"""
auth/mfa.py -- TOTP multi-factor authentication engine and enrolment flows.

TOTP:
  pyotp, RFC 6238 defaults: 6 digits, 30 second step, SHA-1. Verification
  accepts the current step and two steps either side (valid_window=2,
  +/-60 s) to absorb phone clock drift.

  Secrets are 32 base32 characters (160 bits). At rest they are encrypted
  with Fernet (cryptography). The key is MFA_ENCRYPTION_KEY when set,
  otherwise derived from SECRET_KEY. The plaintext secret leaves the server
  exactly once, in the setup response, so the user can enrol a device.

Backup codes:
  10 codes of 8 characters drawn with `secrets` from an alphabet without
  look-alike characters (no 0/O, 1/I/L). Stored only as individually salted
  bcrypt hashes (same primitive as passwords, lower cost). Consumption is a
  compare-and-swap on the stored list (AccountStore.swap_backup_codes), so
  a code submitted twice concurrently is accepted at most once.

State machine (see auth/models.py MFAState):
  begin_setup   UNCONFIGURED/PENDING -> PENDING (material overwritten)
  activate      PENDING -> ACTIVE, only with a valid TOTP code
  disable       ACTIVE -> UNCONFIGURED, requires the current password

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

import pyotp
from cryptography.fernet import Fernet

from auth.errors import InvalidCredentials, InvalidMFACode, MFAAlreadyEnabled, MFANotEnabled, MFASetupIncomplete
from auth.models import Account, MFAState
from auth.passwords import hash_password, verify_password
from auth.store import AccountStore
from core.config import get_settings

logger = logging.getLogger("taskguard.auth.mfa")

_settings = get_settings()

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_VALID_WINDOW = 2
SECRET_LENGTH = 32  # base32 characters -> 160 bits
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

# Bounded retries for the backup-code compare-and-swap.
_CAS_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Secret encryption at rest
# ---------------------------------------------------------------------------


def _mfa_key() -> bytes:
    if _settings.mfa_encryption_key:
        return _settings.mfa_encryption_key.encode()
    digest = hashlib.sha256(f"taskguard-mfa:{_settings.secret_key}".encode()).digest()
    return base64.urlsafe_b64encode(digest)


_fernet = Fernet(_mfa_key())


def encrypt_secret(secret: str) -> str:
    return _fernet.encrypt(secret.encode()).decode()


def decrypt_secret(token: str) -> str:
    """Raises cryptography.fernet.InvalidToken if the key changed since enrolment."""
    return _fernet.decrypt(token.encode()).decode()


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def generate_secret(account_label: str) -> tuple[str, str]:
    """Return (base32 secret, otpauth:// provisioning URI) for a new enrolment."""
    secret = pyotp.random_base32(length=SECRET_LENGTH)
    uri = pyotp.TOTP(secret).provisioning_uri(name=account_label, issuer_name=_settings.mfa_issuer)
    return secret, uri


def _normalize_totp(code: str) -> str:
    return code.replace(" ", "").strip()


def verify_totp(secret: str, submitted_code: str, now: datetime | None = None) -> bool:
    code = _normalize_totp(submitted_code or "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    return totp.verify(code, for_time=now or datetime.now(timezone.utc), valid_window=TOTP_VALID_WINDOW)


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)) for _ in range(count)
    ]


def hash_backup_codes(codes: list[str]) -> list[str]:
    return [hash_password(normalize_backup_code(code), rounds=_settings.backup_code_bcrypt_rounds) for code in codes]


def normalize_backup_code(code: str) -> str:
    """Users transcribe codes by hand: ignore case, spaces and dashes."""
    return code.strip().upper().replace("-", "").replace(" ", "")


def consume_backup_code(submitted: str, stored_hashes: list[str]) -> tuple[bool, list[str]]:
    """Pure scan. Returns (matched, remaining); remaining drops the first match only."""
    code = normalize_backup_code(submitted or "")
    if len(code) != BACKUP_CODE_LENGTH:
        return False, list(stored_hashes)
    for index, hashed in enumerate(stored_hashes):
        if verify_password(code, hashed):
            return True, stored_hashes[:index] + stored_hashes[index + 1 :]
    return False, list(stored_hashes)


# ---------------------------------------------------------------------------
# Login-time verification
# ---------------------------------------------------------------------------


def verify_login(store: AccountStore, account_id: str, submitted_code: str, now: datetime | None = None) -> bool:
    """Second-factor check for an ACTIVE account: TOTP first, then backup codes.

    A valid TOTP code is never compared against backup codes, so it cannot be
    spent as one; a stale TOTP code does not stop the backup-code check.
    """
    account = store.get_by_id(account_id)
    if account is None or account.mfa_state is not MFAState.ACTIVE:
        return False
    if verify_totp(decrypt_secret(account.mfa_secret), submitted_code, now):
        return True

    for _ in range(_CAS_ATTEMPTS):
        matched, remaining = consume_backup_code(submitted_code, account.mfa_backup_codes)
        if not matched:
            return False
        if store.swap_backup_codes(account_id, account.mfa_backup_codes, remaining):
            logger.info(
                "Backup code used for account %s (%d remaining)", account_id, len(remaining)
            )
            return True
        # Concurrent modification: re-read and scan again. If the other
        # request spent this same code, the rescan no longer matches.
        account = store.get_by_id(account_id)
        if account is None or account.mfa_state is not MFAState.ACTIVE:
            return False
    logger.warning("Backup code consumption for account %s kept losing the race", account_id)
    return False


# ---------------------------------------------------------------------------
# Enrolment flows
# ---------------------------------------------------------------------------


@dataclass
class MFASetup:
    """Material returned exactly once when setup is initiated."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass
class MFAStatus:
    enabled: bool
    state: MFAState
    backup_codes_remaining: int


def begin_setup(store: AccountStore, account: Account) -> MFASetup:
    """Generate fresh secret + backup codes and store them as PENDING."""
    if account.mfa_state is MFAState.ACTIVE:
        raise MFAAlreadyEnabled()
    secret, uri = generate_secret(account.email)
    codes = generate_backup_codes()
    if not store.set_pending_mfa(account.id, encrypt_secret(secret), hash_backup_codes(codes)):
        raise MFAAlreadyEnabled()
    logger.info("MFA setup initiated for account %s", account.id)
    return MFASetup(secret=secret, provisioning_uri=uri, backup_codes=codes)


def activate(store: AccountStore, account: Account, code: str, now: datetime | None = None) -> None:
    """PENDING -> ACTIVE once the user proves their device produces valid codes."""
    if account.mfa_state is MFAState.ACTIVE:
        raise MFAAlreadyEnabled()
    if account.mfa_state is MFAState.UNCONFIGURED:
        raise MFASetupIncomplete("Start multi-factor setup before verifying a code.")
    if not verify_totp(decrypt_secret(account.mfa_secret), code, now):
        raise InvalidMFACode()
    if not store.activate_mfa(account.id, account.mfa_secret):
        # Setup was re-initiated after this secret was read; the code belongs
        # to a superseded secret.
        raise InvalidMFACode("Multi-factor setup was restarted. Scan the new code and try again.")
    logger.info("MFA activated for account %s", account.id)


def disable(store: AccountStore, account: Account, password: str) -> None:
    if account.mfa_state is not MFAState.ACTIVE:
        raise MFANotEnabled()
    if not verify_password(password, account.password_hash):
        raise InvalidCredentials("Password is incorrect.")
    store.clear_mfa(account.id)
    logger.warning("MFA disabled for account %s", account.id)


def regenerate_backup_codes(store: AccountStore, account: Account, password: str) -> list[str]:
    """Replace the backup-code set wholesale. Returns the new plaintext codes once."""
    if account.mfa_state is not MFAState.ACTIVE:
        raise MFANotEnabled()
    if not verify_password(password, account.password_hash):
        raise InvalidCredentials("Password is incorrect.")
    codes = generate_backup_codes()
    if not store.replace_backup_codes(account.id, hash_backup_codes(codes)):
        raise MFANotEnabled()
    logger.info("Backup codes regenerated for account %s", account.id)
    return codes


def mfa_status(account: Account) -> MFAStatus:
    return MFAStatus(
        enabled=account.mfa_enabled,
        state=account.mfa_state,
        backup_codes_remaining=len(account.mfa_backup_codes),
    )
