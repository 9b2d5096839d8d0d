"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; _row_to_identity is the mapper.
Nothing outside auth/ touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  password_hash never leaves this module except through get_password_hash()
  and get_login_record(), which only auth/credentials.py calls. Identity
  (the object everyone else sees) has no hash field at all.

  refresh_token_hash is the single server-side session reference per identity
  (not a token table). replace_refresh_token_hash() overwrites it
  unconditionally (new login); swap_refresh_token_hash() is a compare-and-swap
  used by rotation so a refresh racing a fresh login cannot clobber the
  login's token, even across processes.

Identities are never hard-deleted: downstream content soft-references them.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Identity, Role, SubscriptionStatus, SubscriptionTier

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lowercased
    Column("username", String(20), nullable=False, unique=True),
    Column("display_name", String(50), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.FAN.value),
    Column("subscription_tier", String(20), nullable=False, server_default=SubscriptionTier.FREE.value),
    Column("subscription_status", String(20), nullable=False, server_default=SubscriptionStatus.ACTIVE.value),
    Column("is_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_active_at", String(32)),
    # Current refresh token reference (HMAC hex). NULL = no active session.
    Column("refresh_token_hash", String(64)),
    # Previous reference, honoured for a short grace window after rotation.
    Column("previous_refresh_token_hash", String(64)),
    Column("refresh_rotated_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records and their session reference.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        identity_id = store.create_identity(identity, password_hash)
        identity = store.get_by_id(identity_id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity, password_hash: str) -> int:
        """Insert a new identity and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. CredentialVerifier.register() catches that as the signal that
        a concurrent registration won the race.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    email=identity.email,
                    username=identity.username,
                    display_name=identity.display_name,
                    password_hash=password_hash,
                    role=Role(identity.role).value,
                    subscription_tier=SubscriptionTier(identity.subscription_tier).value,
                    subscription_status=SubscriptionStatus(identity.subscription_status).value,
                    is_verified=identity.is_verified,
                    created_at=now,
                    updated_at=now,
                    last_active_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.email == email)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_username(self, username: str) -> Identity | None:
        """Exact (case-sensitive) username match."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.username == username)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        return self.get_by_email(email) is not None

    def username_exists(self, username: str) -> bool:
        return self.get_by_username(username) is not None

    def get_login_record(self, identifier: str, email: str) -> tuple[Identity, str] | None:
        """Return (identity, password_hash) matching username OR email.

        `email` is the normalized (lowercased) form of identifier. Usernames
        cannot contain '@', so at most one row can match.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(or_(_identities.c.username == identifier, _identities.c.email == email))
            ).fetchone()
        if row is None:
            return None
        return _row_to_identity(row), row.password_hash

    def get_password_hash(self, identity_id: int) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().with_only_columns(_identities.c.password_hash).where(_identities.c.id == identity_id)
            ).fetchone()
        return row.password_hash if row is not None else None

    def list_identities(self) -> list[Identity]:
        """Return all identities ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_identities.select().order_by(_identities.c.username)).fetchall()
        return [_row_to_identity(r) for r in rows]

    def update_identity(self, identity_id: int, **fields) -> bool:
        """Update mutable fields on an existing identity.

        Accepted fields: display_name, role, subscription_tier,
        subscription_status, is_verified, password_hash. Enum values are
        stored by their string value. updated_at is stamped automatically.

        Returns True if a row was updated, False if identity_id was not found.
        """
        allowed = {"display_name", "role", "subscription_tier", "subscription_status", "is_verified", "password_hash"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        values = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def touch_last_active(self, identity_id: int) -> None:
        """Stamp last_active_at after a successful register / verify / refresh."""
        with self.engine.connect() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(last_active_at=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Session reference
    # ------------------------------------------------------------------

    def get_refresh_state(self, identity_id: int) -> tuple[str | None, str | None, str | None] | None:
        """Return (current_hash, previous_hash, rotated_at) or None if no such identity."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select()
                .with_only_columns(
                    _identities.c.refresh_token_hash,
                    _identities.c.previous_refresh_token_hash,
                    _identities.c.refresh_rotated_at,
                )
                .where(_identities.c.id == identity_id)
            ).fetchone()
        if row is None:
            return None
        return row.refresh_token_hash, row.previous_refresh_token_hash, row.refresh_rotated_at

    def replace_refresh_token_hash(self, identity_id: int, token_hash: str | None) -> bool:
        """Overwrite the session reference unconditionally (login / revoke).

        Also clears the rotation grace slot: a new login or a logout ends the
        previous session completely.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(refresh_token_hash=token_hash, previous_refresh_token_hash=None, refresh_rotated_at=None)
            )
            conn.commit()
        return result.rowcount > 0

    def swap_refresh_token_hash(self, identity_id: int, expected_hash: str, new_hash: str) -> bool:
        """Compare-and-swap the session reference (rotation).

        The UPDATE only matches while the stored hash still equals
        expected_hash. Returns False when another writer (a new login, a
        logout, a concurrent rotation) changed it first.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.refresh_token_hash == expected_hash))
                .values(
                    refresh_token_hash=new_hash,
                    previous_refresh_token_hash=expected_hash,
                    refresh_rotated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        """True when the database answers a trivial query. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        username=row.username,
        display_name=row.display_name,
        role=Role(row.role),
        subscription_tier=SubscriptionTier(row.subscription_tier),
        subscription_status=SubscriptionStatus(row.subscription_status),
        is_verified=bool(row.is_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_active_at=row.last_active_at,
    )
