"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions at the bottom are the mappers. Services never touch SQL directly.

Concurrency contract:
  Every operation whose correctness depends on "only one caller wins" is a
  single conditional write, not read-then-write:

    consume_token()      UPDATE ... SET consumed_at WHERE consumed_at IS NULL
                         AND expires_at > now  -- success iff rowcount == 1
    increment_counter()  UPDATE ... SET attempt_count = attempt_count + 1
                         WHERE attempt_count < max  -- success iff rowcount == 1
    delete_user_sessions() one DELETE for every session of the user

  Uniqueness (email, token_hash, session_hash, provider+provider_account_id)
  is enforced by the schema. Inserts that violate it raise IntegrityError and
  callers decide what a collision means (duplicate email, regenerate token,
  re-read a concurrently linked account).

  The in-memory URLs share one DBAPI connection between threads (StaticPool).
  A rollback on that connection would undo another thread's uncommitted write,
  so _connect() holds a lock for the whole transaction on those URLs.

Time:
  The store never reads the clock. Services pass `now` in, which keeps tests
  deterministic. Timestamps are stored as epoch seconds (REAL) so range
  comparisons are numeric on every backend.

Failure:
  Driver failures (OperationalError and the other DBAPIErrors) are re-raised
  as StoreUnavailableError. IntegrityError passes through untouched.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    inspect,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import StaticPool

from auth.errors import StoreUnavailableError
from auth.models import (
    LinkedAccount,
    PasswordHistoryEntry,
    RateLimitCounter,
    Session,
    TokenPurpose,
    User,
    VerificationToken,
)

logger = logging.getLogger("gatehouse.auth.store")

_DEFAULT_DB_URL = "sqlite:///gatehouse_auth.db"
_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # normalized lower-case
    Column("name", String(255)),
    Column("image", Text),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("email_verified_at", Float),
    Column("password_changed_at", Float),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
)

_linked_accounts = Table(
    "linked_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("created_at", Float, nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_linked_accounts_provider_account"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(32), nullable=False, index=True),
    Column("origin_address", String(64)),  # NULL = not origin-bound
    Column("user_agent", Text),
    Column("created_at", Float, nullable=False),
    Column("last_validated_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("identifier", String(320), nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("consumed_at", Float),
    Column("created_at", Float, nullable=False),
    Index("ix_verification_tokens_identifier_purpose", "identifier", "purpose"),
)

_rate_limit_counters = Table(
    "rate_limit_counters",
    _metadata,
    Column("identifier", String(512), primary_key=True),
    Column("window_start", Float, nullable=False),
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("blocked_until", Float),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", Float, nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite tuning
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and a busy timeout on every new SQLite connection.

    WAL lets readers proceed during writes. busy_timeout makes a writer wait
    for a competing writer's lock instead of failing immediately, which is
    what racing token redemptions and counter increments need. PRAGMAs are
    per-connection, so this runs on each connect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, linked accounts, sessions, tokens and counters.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@example.com", hashed_password=h), now)
        store.get_user_by_email("A@Example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        if db_url in _MEMORY_URLS:
            # One shared connection: every thread (including Starlette's
            # worker pool) must see the same in-memory database. Transactions
            # on that connection must not interleave, so _connect holds a lock.
            engine_kwargs["poolclass"] = StaticPool
            self._lock = threading.RLock()
        else:
            self._lock = nullcontext()
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        try:
            _metadata.create_all(self.engine)
            self._ensure_password_changed_at_column()
        except DBAPIError as exc:
            raise StoreUnavailableError("could not initialise auth schema") from exc

    def _ensure_password_changed_at_column(self) -> None:
        """Add users.password_changed_at to databases created before the column existed.

        create_all() never alters an existing table, so the column is checked
        with the inspector and added with ALTER TABLE when missing.
        """
        columns = {col["name"] for col in inspect(self.engine).get_columns("users")}
        if "password_changed_at" not in columns:
            with self.engine.connect() as conn:
                conn.execute(text("ALTER TABLE users ADD COLUMN password_changed_at FLOAT"))
                conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Yield a connection; translate connectivity failures to StoreUnavailableError."""
        try:
            with self._lock, self.engine.connect() as conn:
                yield conn
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise StoreUnavailableError(str(exc.orig) if exc.orig else str(exc)) from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self._connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the (normalized) email exists.
        """
        with self._connect() as conn:
            created = self._insert_user(conn, user, now)
            conn.commit()
        return created

    def create_oauth_user(self, user: User, provider: str, provider_account_id: str, now: datetime) -> User:
        """Insert a passwordless user and its linked account in one transaction.

        Raises IntegrityError if either the email or the provider identity is
        already taken -- nothing is written in that case.
        """
        with self._connect() as conn:
            created = self._insert_user(conn, user, now)
            conn.execute(
                _linked_accounts.insert().values(
                    user_id=created.id,
                    provider=provider,
                    provider_account_id=provider_account_id,
                    created_at=_ts(now),
                )
            )
            conn.commit()
        return created

    def _insert_user(self, conn: Connection, user: User, now: datetime) -> User:
        user_id = user.id or uuid.uuid4().hex
        conn.execute(
            _users.insert().values(
                id=user_id,
                email=normalize_email(user.email),
                name=user.name,
                image=user.image,
                hashed_password=user.hashed_password,
                email_verified_at=_ts(user.email_verified_at),
                password_changed_at=_ts(now) if user.hashed_password else None,
                created_at=_ts(now),
                updated_at=_ts(now),
            )
        )
        return User(
            id=user_id,
            email=normalize_email(user.email),
            name=user.name,
            image=user.image,
            hashed_password=user.hashed_password,
            email_verified_at=user.email_verified_at,
            password_changed_at=now if user.hashed_password else None,
            created_at=now,
            updated_at=now,
        )

    def get_user_by_id(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup (emails are stored normalized)."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(
        self,
        user_id: str,
        hashed_password: str,
        now: datetime,
        previous_hash: str | None = None,
        history_limit: int = 0,
    ) -> bool:
        """Replace a user's password hash, archiving the previous one.

        The update, the history insert and the history pruning commit together.
        Returns False if user_id does not exist (nothing is written).
        """
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, password_changed_at=_ts(now), updated_at=_ts(now))
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            if previous_hash is not None and history_limit > 0:
                conn.execute(
                    _password_history.insert().values(
                        user_id=user_id, hashed_password=previous_hash, created_at=_ts(now)
                    )
                )
                keep = (
                    select(_password_history.c.id)
                    .where(_password_history.c.user_id == user_id)
                    .order_by(_password_history.c.created_at.desc(), _password_history.c.id.desc())
                    .limit(history_limit)
                    .scalar_subquery()
                )
                conn.execute(
                    _password_history.delete().where(
                        and_(_password_history.c.user_id == user_id, _password_history.c.id.not_in(keep))
                    )
                )
            conn.commit()
        return True

    def get_password_history(self, user_id: str, limit: int) -> list[PasswordHistoryEntry]:
        """Return up to `limit` archived hashes for a user, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _password_history.select()
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.created_at.desc(), _password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    def mark_email_verified(self, user_id: str, now: datetime) -> bool:
        """Stamp email_verified_at if not already set. Returns True if this call set it."""
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where(and_(_users.c.id == user_id, _users.c.email_verified_at.is_(None)))
                .values(email_verified_at=_ts(now), updated_at=_ts(now))
            )
            conn.commit()
        return result.rowcount > 0

    def update_profile(
        self,
        user_id: str,
        now: datetime,
        name: str | None = None,
        image: str | None = None,
        email: str | None = None,
    ) -> bool:
        """Change name, image and/or email. None leaves a field as it is.

        A changed email clears email_verified_at and drops the tokens minted
        for the old address, in the same transaction. Raises IntegrityError if
        the new email belongs to another user. Returns False if user_id does
        not exist.
        """
        values: dict = {"updated_at": _ts(now)}
        if name is not None:
            values["name"] = name
        if image is not None:
            values["image"] = image
        if email is not None:
            values["email"] = normalize_email(email)
            values["email_verified_at"] = None
        with self._connect() as conn:
            row = conn.execute(select(_users.c.email).where(_users.c.id == user_id)).fetchone()
            if row is None:
                return False
            try:
                conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            except IntegrityError:
                conn.rollback()
                raise
            if email is not None and values["email"] != row.email:
                conn.execute(_verification_tokens.delete().where(_verification_tokens.c.identifier == row.email))
            conn.commit()
        return True

    def delete_user(self, user_id: str) -> bool:
        """Delete a user with its links, sessions, password history and tokens.

        Everything commits together. Returns False if user_id does not exist.
        """
        with self._connect() as conn:
            row = conn.execute(select(_users.c.email).where(_users.c.id == user_id)).fetchone()
            if row is None:
                return False
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_linked_accounts.delete().where(_linked_accounts.c.user_id == user_id))
            conn.execute(_password_history.delete().where(_password_history.c.user_id == user_id))
            conn.execute(_verification_tokens.delete().where(_verification_tokens.c.identifier == row.email))
            conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def get_linked_account(self, provider: str, provider_account_id: str) -> LinkedAccount | None:
        with self._connect() as conn:
            row = conn.execute(
                _linked_accounts.select().where(
                    and_(
                        _linked_accounts.c.provider == provider,
                        _linked_accounts.c.provider_account_id == provider_account_id,
                    )
                )
            ).fetchone()
        return _row_to_linked_account(row) if row is not None else None

    def create_linked_account(self, account: LinkedAccount, now: datetime) -> LinkedAccount:
        """Insert a link. Raises IntegrityError if the provider identity is already linked."""
        with self._connect() as conn:
            result = conn.execute(
                _linked_accounts.insert().values(
                    user_id=account.user_id,
                    provider=account.provider,
                    provider_account_id=account.provider_account_id,
                    created_at=_ts(now),
                )
            )
            conn.commit()
        return LinkedAccount(
            id=result.inserted_primary_key[0],
            user_id=account.user_id,
            provider=account.provider,
            provider_account_id=account.provider_account_id,
            created_at=now,
        )

    def list_linked_accounts(self, user_id: str) -> list[LinkedAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                _linked_accounts.select()
                .where(_linked_accounts.c.user_id == user_id)
                .order_by(_linked_accounts.c.created_at)
            ).fetchall()
        return [_row_to_linked_account(r) for r in rows]

    def count_linked_accounts(self, provider: str, provider_account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_linked_accounts)
                .where(
                    and_(
                        _linked_accounts.c.provider == provider,
                        _linked_accounts.c.provider_account_id == provider_account_id,
                    )
                )
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, max_concurrent: int = 0) -> Session:
        """Insert a session; evict the user's oldest sessions beyond max_concurrent.

        max_concurrent=0 disables the cap. Insert and eviction commit together.
        """
        with self._connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    session_hash=session.session_hash,
                    user_id=session.user_id,
                    origin_address=session.origin_address,
                    user_agent=session.user_agent,
                    created_at=_ts(session.created_at),
                    last_validated_at=_ts(session.last_validated_at or session.created_at),
                    expires_at=_ts(session.expires_at),
                )
            )
            if max_concurrent > 0:
                keep = (
                    select(_sessions.c.id)
                    .where(_sessions.c.user_id == session.user_id)
                    .order_by(_sessions.c.last_validated_at.desc(), _sessions.c.id.desc())
                    .limit(max_concurrent)
                    .scalar_subquery()
                )
                evicted = conn.execute(
                    _sessions.delete().where(and_(_sessions.c.user_id == session.user_id, _sessions.c.id.not_in(keep)))
                )
                if evicted.rowcount:
                    logger.info("Evicted %d session(s) for user %s (concurrent limit)", evicted.rowcount, session.user_id)
            conn.commit()
        session.id = result.inserted_primary_key[0]
        return session

    def get_session(self, session_hash: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_hash == session_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.session_hash == session_hash).values(last_validated_at=_ts(now))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.session_hash == session_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        """Delete every session of a user in one statement. Returns the count removed."""
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def list_user_sessions(self, user_id: str, now: datetime) -> list[Session]:
        """Unexpired sessions for a user, most recently used first."""
        with self._connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.expires_at > _ts(now)))
                .order_by(_sessions.c.last_validated_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: datetime, idle_cutoff: datetime | None = None) -> int:
        """Delete sessions past expires_at, or idle since before idle_cutoff."""
        condition = _sessions.c.expires_at <= _ts(now)
        if idle_cutoff is not None:
            condition = or_(condition, _sessions.c.last_validated_at < _ts(idle_cutoff))
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(condition))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_token(self, token: VerificationToken, supersede: bool = True) -> VerificationToken:
        """Insert a token, deleting earlier unconsumed tokens for the same identifier+purpose.

        Raises IntegrityError on a token_hash collision; the transaction is
        rolled back, so superseded tokens survive a failed insert.
        """
        with self._connect() as conn:
            if supersede:
                conn.execute(
                    _verification_tokens.delete().where(
                        and_(
                            _verification_tokens.c.identifier == token.identifier,
                            _verification_tokens.c.purpose == token.purpose.value,
                            _verification_tokens.c.consumed_at.is_(None),
                        )
                    )
                )
            try:
                result = conn.execute(
                    _verification_tokens.insert().values(
                        token_hash=token.token_hash,
                        identifier=token.identifier,
                        purpose=token.purpose.value,
                        expires_at=_ts(token.expires_at),
                        consumed_at=None,
                        created_at=_ts(token.created_at),
                    )
                )
            except IntegrityError:
                conn.rollback()
                raise
            conn.commit()
        token.id = result.inserted_primary_key[0]
        return token

    def consume_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: datetime,
        identifier: str | None = None,
    ) -> VerificationToken | None:
        """Atomically consume a valid token. Returns the consumed row, or None.

        The conditional UPDATE is the whole validity check: exactly one of any
        number of concurrent callers sees rowcount == 1. Unknown, expired,
        consumed, wrong-purpose and wrong-identifier tokens all return None.
        """
        conditions = [
            _verification_tokens.c.token_hash == token_hash,
            _verification_tokens.c.purpose == purpose.value,
            _verification_tokens.c.consumed_at.is_(None),
            _verification_tokens.c.expires_at > _ts(now),
        ]
        if identifier is not None:
            conditions.append(_verification_tokens.c.identifier == identifier)
        with self._connect() as conn:
            result = conn.execute(_verification_tokens.update().where(and_(*conditions)).values(consumed_at=_ts(now)))
            if result.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                _verification_tokens.select().where(_verification_tokens.c.token_hash == token_hash)
            ).fetchone()
            conn.commit()
        return _row_to_token(row) if row is not None else None

    def get_live_token(self, token_hash: str, purpose: TokenPurpose, now: datetime) -> VerificationToken | None:
        """Return the token if it is unconsumed, unexpired and for this purpose. Writes nothing."""
        with self._connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(
                    and_(
                        _verification_tokens.c.token_hash == token_hash,
                        _verification_tokens.c.purpose == purpose.value,
                        _verification_tokens.c.consumed_at.is_(None),
                        _verification_tokens.c.expires_at > _ts(now),
                    )
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def delete_expired_tokens(self, now: datetime) -> int:
        """Delete tokens whose expiry has passed. Never touches live tokens."""
        with self._connect() as conn:
            result = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.expires_at < _ts(now)))
            conn.commit()
        return result.rowcount

    def list_tokens(self, identifier: str, purpose: TokenPurpose | None = None) -> list[VerificationToken]:
        conditions = [_verification_tokens.c.identifier == identifier]
        if purpose is not None:
            conditions.append(_verification_tokens.c.purpose == purpose.value)
        with self._connect() as conn:
            rows = conn.execute(
                _verification_tokens.select().where(and_(*conditions)).order_by(_verification_tokens.c.created_at)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Rate-limit counters
    #
    # Each method is a single statement. RateLimiter composes them; because
    # every step is conditional and idempotent, interleaved callers can
    # repeat a reset or a block but never lose an increment.
    # ------------------------------------------------------------------

    def ensure_counter(self, identifier: str, now: datetime) -> None:
        """Create a zeroed counter if none exists (insert-or-ignore)."""
        with self._connect() as conn:
            try:
                conn.execute(
                    _rate_limit_counters.insert().values(
                        identifier=identifier, window_start=_ts(now), attempt_count=0, blocked_until=None
                    )
                )
                conn.commit()
            except IntegrityError:
                # A concurrent request created it first.
                conn.rollback()

    def reset_counter_if_stale(self, identifier: str, window_cutoff: datetime, now: datetime) -> bool:
        """Start a new window if the current one began before window_cutoff or a lockout expired.

        A counter that is still inside an active lockout is never reset.
        """
        not_blocked = or_(
            _rate_limit_counters.c.blocked_until.is_(None),
            _rate_limit_counters.c.blocked_until <= _ts(now),
        )
        stale = or_(
            _rate_limit_counters.c.window_start <= _ts(window_cutoff),
            _rate_limit_counters.c.blocked_until <= _ts(now),
        )
        with self._connect() as conn:
            result = conn.execute(
                _rate_limit_counters.update()
                .where(and_(_rate_limit_counters.c.identifier == identifier, not_blocked, stale))
                .values(window_start=_ts(now), attempt_count=0, blocked_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    def increment_counter(self, identifier: str, max_attempts: int, now: datetime) -> bool:
        """Count one attempt if the counter is unblocked and below max_attempts."""
        with self._connect() as conn:
            result = conn.execute(
                _rate_limit_counters.update()
                .where(
                    and_(
                        _rate_limit_counters.c.identifier == identifier,
                        _rate_limit_counters.c.attempt_count < max_attempts,
                        or_(
                            _rate_limit_counters.c.blocked_until.is_(None),
                            _rate_limit_counters.c.blocked_until <= _ts(now),
                        ),
                    )
                )
                .values(attempt_count=_rate_limit_counters.c.attempt_count + 1)
            )
            conn.commit()
        return result.rowcount == 1

    def block_counter(self, identifier: str, blocked_until: datetime, now: datetime, extend: bool = False) -> bool:
        """Set blocked_until. Without extend, an active block is left unchanged."""
        conditions = [_rate_limit_counters.c.identifier == identifier]
        if not extend:
            conditions.append(
                or_(
                    _rate_limit_counters.c.blocked_until.is_(None),
                    _rate_limit_counters.c.blocked_until <= _ts(now),
                )
            )
        with self._connect() as conn:
            result = conn.execute(
                _rate_limit_counters.update().where(and_(*conditions)).values(blocked_until=_ts(blocked_until))
            )
            conn.commit()
        return result.rowcount > 0

    def get_counter(self, identifier: str) -> RateLimitCounter | None:
        with self._connect() as conn:
            row = conn.execute(
                _rate_limit_counters.select().where(_rate_limit_counters.c.identifier == identifier)
            ).fetchone()
        return _row_to_counter(row) if row is not None else None

    def delete_counter(self, identifier: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(_rate_limit_counters.delete().where(_rate_limit_counters.c.identifier == identifier))
            conn.commit()
        return result.rowcount > 0

    def delete_stale_counters(self, window_cutoff: datetime, now: datetime) -> int:
        """Drop counters whose window has elapsed and that are not blocked."""
        with self._connect() as conn:
            result = conn.execute(
                _rate_limit_counters.delete().where(
                    and_(
                        _rate_limit_counters.c.window_start <= _ts(window_cutoff),
                        or_(
                            _rate_limit_counters.c.blocked_until.is_(None),
                            _rate_limit_counters.c.blocked_until <= _ts(now),
                        ),
                    )
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        hashed_password=row.hashed_password,
        email_verified_at=_dt(row.email_verified_at),
        password_changed_at=_dt(row.password_changed_at),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _row_to_linked_account(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        created_at=_dt(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        session_hash=row.session_hash,
        user_id=row.user_id,
        origin_address=row.origin_address,
        user_agent=row.user_agent,
        created_at=_dt(row.created_at),
        last_validated_at=_dt(row.last_validated_at),
        expires_at=_dt(row.expires_at),
    )


def _row_to_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        token_hash=row.token_hash,
        identifier=row.identifier,
        purpose=TokenPurpose(row.purpose),
        expires_at=_dt(row.expires_at),
        consumed_at=_dt(row.consumed_at),
        created_at=_dt(row.created_at),
    )


def _row_to_counter(row) -> RateLimitCounter:
    return RateLimitCounter(
        identifier=row.identifier,
        window_start=_dt(row.window_start),
        attempt_count=row.attempt_count,
        blocked_until=_dt(row.blocked_until),
    )


def _row_to_history(row) -> PasswordHistoryEntry:
    return PasswordHistoryEntry(
        id=row.id,
        user_id=row.user_id,
        hashed_password=row.hashed_password,
        created_at=_dt(row.created_at),
    )
