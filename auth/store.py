"""
auth/store.py -- SQLAlchemy Core persistence layer for account-security entities.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_history are the mappers. Flow and route code never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every mutation the login/MFA flows depend on is a single conditional
  UPDATE, never a read in one call and a write in another:

    reserve_login_attempt  WHERE failed < max OR last failure outside the
                           window; failed = failed + 1 evaluated by the database.
    activate_mfa           WHERE mfa_enabled = 0 AND mfa_secret = <verified>.
    swap_backup_codes      WHERE mfa_backup_codes = <observed JSON>.
    change_password        WHERE password_hash = <verified hash>, plus the
                           history append and prune, in one transaction.

  A conditional write that matches zero rows returns False; the caller
  re-reads and re-evaluates.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexical order equals chronological order.

DB URL: Settings.database_url (sqlite file next to the project by default).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, PasswordHistoryEntry, Role

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("password_hash", Text, nullable=False),
    Column("role", String(10), nullable=False, server_default=Role.FREE.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_login_at", String(32)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),  # Fernet token
    Column("mfa_backup_codes", Text),  # JSON array of bcrypt hashes
    Column("password_changed_at", String(32)),
    Column("password_expires_at", String(32)),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("password_change_required_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion sequence
    Column("account_id", String(36), nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("changed_at", String(32), nullable=False),
)

# Fields update_account() accepts. Security-state columns (lockout counters,
# MFA material, password hash) have dedicated conditional writers instead.
_UPDATABLE_FIELDS = {
    "name",
    "role",
    "is_active",
    "must_change_password",
    "password_change_required_at",
    "last_login_at",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump_codes(codes: list[str] | None) -> str | None:
    return None if codes is None else json.dumps(codes)


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookup (case-insensitive uniqueness)."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and PasswordHistoryEntry entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(name="Ana", email="ana@example.com", password_hash=h))
        account = store.get_by_email("ANA@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> str:
        """Insert a new account plus its first password-history entry.

        Both rows are written in one transaction. Returns the new account id.
        Raises sqlalchemy.exc.IntegrityError if the (normalised) email already
        exists -- callers translate that into EmailAlreadyRegistered.
        """
        account_id = account.id or str(uuid.uuid4())
        created_at = account.created_at or _now()
        changed_at = account.password_changed_at or created_at
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.insert().values(
                    id=account_id,
                    name=account.name,
                    email=normalize_email(account.email),
                    password_hash=account.password_hash,
                    role=Role(account.role).value,
                    is_active=1 if account.is_active else 0,
                    failed_login_attempts=0,
                    mfa_enabled=1 if account.mfa_enabled else 0,
                    mfa_secret=account.mfa_secret,
                    mfa_backup_codes=_dump_codes(account.mfa_backup_codes),
                    password_changed_at=_to_iso(changed_at),
                    password_expires_at=_to_iso(account.password_expires_at),
                    must_change_password=1 if account.must_change_password else 0,
                    created_at=_to_iso(created_at),
                )
            )
            _append_history(conn, account_id, account.password_hash, changed_at)
        return account_id

    def get_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup via the normalised email column."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_by_role(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_accounts.c.role, func.count()).select_from(_accounts).group_by(_accounts.c.role)
            ).fetchall()
        counts = {role.value: 0 for role in Role}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    def count_active(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.is_active == 1)
            ).scalar()
        return result or 0

    def count_active_admins(self) -> int:
        """Used by the admin routes to refuse removing the last active admin."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == Role.ADMIN.value) & (_accounts.c.is_active == 1))
            ).scalar()
        return result or 0

    def update_account(self, account_id: str, **fields) -> bool:
        """Update plain profile/authorization fields on an existing account.

        Only keys in _UPDATABLE_FIELDS are accepted; unknown keys raise
        ValueError (fail fast). Returns True if a row was updated.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or protected account fields: {unknown!r}")
        values: dict = {}
        for key, value in fields.items():
            if key in ("is_active", "must_change_password"):
                values[key] = 1 if value else 0
            elif key == "role":
                values[key] = Role(value).value
            elif isinstance(value, datetime) or key.endswith("_at"):
                values[key] = _to_iso(value)
            else:
                values[key] = value
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def reserve_login_attempt(
        self, account_id: str, now: datetime, max_failures: int, window: timedelta
    ) -> int | None:
        """Count this attempt as a failure up front, unless the account is locked.

        One conditional UPDATE decides and reserves: it matches only while the
        counter is below max_failures, or once the last failure is older than
        window (the counter then restarts at 1). Concurrent callers are
        serialised by the database, so at most max_failures attempts get a
        password check per window. The caller undoes the reservation with
        reset_failed_logins() when the password turns out to be correct.

        Returns the counter after this attempt, or None when the lockout is
        in force (nothing is written).
        """
        counter = _accounts.c.failed_login_attempts
        last_failure = _accounts.c.last_failed_login_at
        window_elapsed = last_failure.is_(None) | (last_failure <= _to_iso(now - window))
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & ((counter < max_failures) | window_elapsed))
                .values(
                    failed_login_attempts=case((counter >= max_failures, 1), else_=counter + 1),
                    last_failed_login_at=_to_iso(now),
                )
            )
            if result.rowcount == 0:
                return None
            count = conn.execute(select(counter).where(_accounts.c.id == account_id)).scalar()
        return count or 0

    def reset_failed_logins(self, account_id: str) -> None:
        """Clear the lockout counters after a successful password verification."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=0, last_failed_login_at=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # MFA material
    # ------------------------------------------------------------------

    def set_pending_mfa(self, account_id: str, encrypted_secret: str, backup_code_hashes: list[str]) -> bool:
        """Store fresh setup material. Refuses to touch an ACTIVE configuration.

        Overwrites any previous pending secret/codes wholesale, so codes from
        an abandoned setup generation can never be used.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.mfa_enabled == 0))
                .values(mfa_secret=encrypted_secret, mfa_backup_codes=_dump_codes(backup_code_hashes))
            )
            conn.commit()
        return result.rowcount > 0

    def activate_mfa(self, account_id: str, encrypted_secret: str) -> bool:
        """PENDING -> ACTIVE, only for the exact secret the code was verified against."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.mfa_enabled == 0)
                    & (_accounts.c.mfa_secret == encrypted_secret)
                )
                .values(mfa_enabled=1)
            )
            conn.commit()
        return result.rowcount > 0

    def clear_mfa(self, account_id: str) -> bool:
        """ACTIVE -> UNCONFIGURED. Secret and backup codes are discarded."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(mfa_enabled=0, mfa_secret=None, mfa_backup_codes=None)
            )
            conn.commit()
        return result.rowcount > 0

    def swap_backup_codes(self, account_id: str, expected: list[str], replacement: list[str]) -> bool:
        """Compare-and-swap the stored backup-code hashes.

        Succeeds only if the stored list still equals `expected`. Used for
        one-time consumption: two requests spending the same code observe the
        same list, and only the first swap matches.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.mfa_enabled == 1)
                    & (_accounts.c.mfa_backup_codes == _dump_codes(expected))
                )
                .values(mfa_backup_codes=_dump_codes(replacement))
            )
            conn.commit()
        return result.rowcount > 0

    def replace_backup_codes(self, account_id: str, backup_code_hashes: list[str]) -> bool:
        """Regenerate: replace the whole set on an ACTIVE configuration."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.mfa_enabled == 1))
                .values(mfa_backup_codes=_dump_codes(backup_code_hashes))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password lifecycle
    # ------------------------------------------------------------------

    def change_password(
        self,
        account_id: str,
        expected_hash: str,
        new_hash: str,
        changed_at: datetime,
        expires_at: datetime,
        retain: int,
    ) -> bool:
        """Replace the password hash and log it to history in one transaction.

        The UPDATE is conditional on the hash the caller verified the current
        password against; a concurrent change makes it match zero rows and
        nothing is written. On success the forced-change flag is cleared, a
        history entry is appended and the log is pruned to `retain` entries.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.password_hash == expected_hash))
                .values(
                    password_hash=new_hash,
                    password_changed_at=_to_iso(changed_at),
                    password_expires_at=_to_iso(expires_at),
                    must_change_password=0,
                    password_change_required_at=None,
                )
            )
            if result.rowcount == 0:
                return False
            _append_history(conn, account_id, new_hash, changed_at)
            _prune_history(conn, account_id, retain)
        return True

    def append_password_history(self, account_id: str, password_hash: str, changed_at: datetime, retain: int) -> None:
        """Append one history entry, then prune to `retain` (oldest removed first)."""
        with self.engine.begin() as conn:
            _append_history(conn, account_id, password_hash, changed_at)
            _prune_history(conn, account_id, retain)

    def recent_password_history(self, account_id: str, limit: int) -> list[PasswordHistoryEntry]:
        """Return up to `limit` entries, newest first (ties broken by insertion order)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _password_history.select()
                .where(_password_history.c.account_id == account_id)
                .order_by(_password_history.c.changed_at.desc(), _password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    def require_password_change(self, account_id: str, now: datetime) -> bool:
        """Set the administrative forced-change flag."""
        return self.update_account(account_id, must_change_password=True, password_change_required_at=now)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Transaction-scoped history helpers
# ---------------------------------------------------------------------------


def _append_history(conn: Connection, account_id: str, password_hash: str, changed_at: datetime) -> None:
    conn.execute(
        _password_history.insert().values(
            account_id=account_id,
            password_hash=password_hash,
            changed_at=_to_iso(changed_at),
        )
    )


def _prune_history(conn: Connection, account_id: str, retain: int) -> None:
    stale_ids = [
        row.id
        for row in conn.execute(
            select(_password_history.c.id)
            .where(_password_history.c.account_id == account_id)
            .order_by(_password_history.c.changed_at.desc(), _password_history.c.id.desc())
            .offset(retain)
        )
    ]
    if stale_ids:
        conn.execute(_password_history.delete().where(_password_history.c.id.in_(stale_ids)))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        last_failed_login_at=_from_iso(row.last_failed_login_at),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        mfa_backup_codes=json.loads(row.mfa_backup_codes) if row.mfa_backup_codes else [],
        password_changed_at=_from_iso(row.password_changed_at),
        password_expires_at=_from_iso(row.password_expires_at),
        must_change_password=bool(row.must_change_password),
        password_change_required_at=_from_iso(row.password_change_required_at),
        created_at=_from_iso(row.created_at),
        last_login_at=_from_iso(row.last_login_at),
    )


def _row_to_history(row) -> PasswordHistoryEntry:
    return PasswordHistoryEntry(
        id=row.id,
        account_id=row.account_id,
        password_hash=row.password_hash,
        changed_at=_from_iso(row.changed_at),
    )
