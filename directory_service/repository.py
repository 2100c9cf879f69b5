"""Postgres repositories backing the directory collaborator contracts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AssociatedTenant, Preferences, Profile, RoleAssignment
from .domain.audit import AuditLogRecord
from .domain.contracts import CreateAccountInput, NewInvitation, ProfileUpdate, RoleAssignmentInput
from .domain.errors import ConflictDuplicateInvite, ConflictExistingAccount, NotFound
from .domain.invitation import Invitation, InvitationStatus
from .security.passwords import hash_password

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT '{}',
        tenant_ids TEXT[] NOT NULL DEFAULT '{}',
        status TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_2fa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_email_key ON accounts (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS profiles (
        account_id TEXT PRIMARY KEY REFERENCES accounts (account_id),
        display_name TEXT NOT NULL DEFAULT '',
        associated_tenants JSONB NOT NULL DEFAULT '[]',
        preferences JSONB NOT NULL DEFAULT '{}',
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignments (
        user_id TEXT NOT NULL,
        role_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, role_id, scope)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invitations (
        invitation_id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        target_tenant_id TEXT NOT NULL,
        target_role_id TEXT NOT NULL,
        invited_by_user_id TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        accepted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS invitations_one_pending_key
    ON invitations (lower(email), target_tenant_id)
    WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS directory_audit_log (
        audit_id BIGSERIAL PRIMARY KEY,
        account_id TEXT,
        tenant_id TEXT,
        event_type TEXT NOT NULL,
        actor TEXT,
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)

_ACCOUNT_COLUMNS = "account_id, email, roles, tenant_ids, status, is_verified, is_2fa_enabled, created_at"
_INVITATION_COLUMNS = (
    "invitation_id, email, target_tenant_id, target_role_id, invited_by_user_id, "
    "token, expires_at, status, created_at, accepted_at"
)


def create_schema(pool: ConnectionPool) -> None:
    """Create the directory tables and indexes when they do not exist yet."""
    with pool.connection() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()


class AccountRepository:
    """Postgres-backed account and profile storage."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def find_account_by_id(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id = %s", (account_id,))

    def find_account_by_email(self, email: str) -> Account | None:
        return self._fetch_account("lower(email) = lower(%s)", (email,))

    def iter_accounts(self, page_size: int = 200) -> Iterator[Account]:
        """Yield all accounts ordered by id using keyset pagination."""
        last_id: str | None = None
        while True:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    if last_id is None:
                        cur.execute(
                            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY account_id LIMIT %s",
                            (page_size,),
                        )
                    else:
                        cur.execute(
                            f"""
                            SELECT {_ACCOUNT_COLUMNS} FROM accounts
                            WHERE account_id > %s
                            ORDER BY account_id
                            LIMIT %s
                            """,
                            (last_id, page_size),
                        )
                    rows = cur.fetchall()
            for row in rows:
                yield self._map_account(row)
            if len(rows) < page_size:
                return
            last_id = rows[-1][0]

    def create_account(self, payload: CreateAccountInput) -> Account:
        """Insert an account row; the raw password, when given, is stored hashed."""
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        password_hash = hash_password(payload.password) if payload.password else None
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (account_id, email, roles, tenant_ids, status, is_verified,
                                              is_2fa_enabled, password_hash, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            account_id,
                            payload.email,
                            list(payload.roles),
                            list(payload.tenant_ids),
                            payload.status,
                            payload.is_verified,
                            payload.is_2fa_enabled,
                            password_hash,
                            now,
                            now,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise ConflictExistingAccount("an account already exists for this email") from exc
        return self._map_account(row)

    def add_tenant_membership(self, account_id: str, tenant_id: str) -> Account:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET tenant_ids = CASE WHEN %s = ANY(tenant_ids) THEN tenant_ids
                                          ELSE array_append(tenant_ids, %s) END,
                        updated_at = NOW()
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (tenant_id, tenant_id, account_id),
                )
                row = cur.fetchone()
            conn.commit()
        if not row:
            raise NotFound("account not found")
        return self._map_account(row)

    def get_profile(self, account_id: str) -> Profile | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT account_id, display_name, associated_tenants, preferences
                    FROM profiles
                    WHERE account_id = %s
                    """,
                    (account_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_profile(row)

    def update_profile(self, account_id: str, update: ProfileUpdate) -> Profile:
        """Upsert the profile, only overwriting the fields present in ``update``."""
        current = self.get_profile(account_id) or Profile(account_id=account_id, display_name="")
        if update.display_name is not None:
            current.display_name = update.display_name
        if update.associated_tenants is not None:
            current.associated_tenants = list(update.associated_tenants)
        if update.preferences is not None:
            current.preferences = update.preferences

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO profiles (account_id, display_name, associated_tenants, preferences, updated_at)
                    VALUES (%s, %s, %s, %s, NOW())
                    ON CONFLICT (account_id) DO UPDATE
                    SET display_name = EXCLUDED.display_name,
                        associated_tenants = EXCLUDED.associated_tenants,
                        preferences = EXCLUDED.preferences,
                        updated_at = EXCLUDED.updated_at
                    RETURNING account_id, display_name, associated_tenants, preferences
                    """,
                    (
                        account_id,
                        current.display_name,
                        Json(
                            [
                                {"tenant_id": t.tenant_id, "display_name": t.display_name, "status": t.status}
                                for t in current.associated_tenants
                            ]
                        ),
                        Json(
                            {
                                "theme": current.preferences.theme,
                                "notifications": current.preferences.notifications,
                                "current_tenant_id": current.preferences.current_tenant_id,
                            }
                        ),
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_profile(row)

    def _fetch_account(self, where: str, params: tuple[Any, ...]) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_account(row)

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            roles=list(row[2] or []),
            tenant_ids=list(row[3] or []),
            status=row[4],
            is_verified=row[5],
            is_2fa_enabled=row[6],
            created_at=row[7],
        )

    def _map_profile(self, row: tuple) -> Profile:
        preferences = row[3] or {}
        return Profile(
            account_id=row[0],
            display_name=row[1],
            associated_tenants=[
                AssociatedTenant(
                    tenant_id=item["tenant_id"],
                    display_name=item.get("display_name", ""),
                    status=item.get("status", "active"),
                )
                for item in (row[2] or [])
            ],
            preferences=Preferences(
                theme=preferences.get("theme", "system"),
                notifications=preferences.get("notifications", True),
                current_tenant_id=preferences.get("current_tenant_id"),
            ),
        )


class PolicyRepository:
    """Role assignments keyed by (user, role, scope)."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def assign_role(self, assignment: RoleAssignmentInput) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO role_assignments (user_id, role_id, scope)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, role_id, scope) DO NOTHING
                    """,
                    (assignment.user_id, assignment.role_id, assignment.scope),
                )
                conn.commit()

    def get_user_assignments(self, user_id: str) -> list[RoleAssignment]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT user_id, role_id, scope
                    FROM role_assignments
                    WHERE user_id = %s
                    ORDER BY created_at, role_id, scope
                    """,
                    (user_id,),
                )
                return [RoleAssignment(*row) for row in cur.fetchall()]


class InvitationRepository:
    """Invitation storage; uniqueness and state transitions are enforced in SQL."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_invitation(self, record: NewInvitation) -> Invitation:
        invitation_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO invitations (invitation_id, email, target_tenant_id, target_role_id,
                                                 invited_by_user_id, token, expires_at, status, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_INVITATION_COLUMNS}
                        """,
                        (
                            invitation_id,
                            record.email,
                            record.target_tenant_id,
                            record.target_role_id,
                            record.invited_by_user_id,
                            record.token,
                            record.expires_at,
                            InvitationStatus.pending.value,
                            now,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise ConflictDuplicateInvite("a pending invitation already exists for this email") from exc
        return self._map_invitation(row)

    def get_invitation_by_token(self, token: str) -> Invitation | None:
        return self._fetch_one("token = %s", (token,))

    def find_pending_invitation(self, email: str, tenant_id: str) -> Invitation | None:
        return self._fetch_one(
            "lower(email) = lower(%s) AND target_tenant_id = %s AND status = 'pending'",
            (email, tenant_id),
        )

    def list_invitations_by_tenant(self, tenant_id: str) -> list[Invitation]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_INVITATION_COLUMNS}
                    FROM invitations
                    WHERE target_tenant_id = %s
                    ORDER BY created_at DESC
                    """,
                    (tenant_id,),
                )
                return [self._map_invitation(row) for row in cur.fetchall()]

    def mark_as_accepted(self, invitation_id: str) -> bool:
        """Conditionally flip ``pending -> accepted``; ``False`` means another caller won."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE invitations
                    SET status = 'accepted', accepted_at = NOW()
                    WHERE invitation_id = %s AND status = 'pending'
                    """,
                    (invitation_id,),
                )
                updated = cur.rowcount == 1
                conn.commit()
        return updated

    def mark_as_expired(self, invitation_id: str) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE invitations
                    SET status = 'expired'
                    WHERE invitation_id = %s AND status = 'pending'
                    """,
                    (invitation_id,),
                )
                conn.commit()

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> Invitation | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE {where}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_invitation(row)

    def _map_invitation(self, row: tuple) -> Invitation:
        return Invitation(
            invitation_id=row[0],
            email=row[1],
            target_tenant_id=row[2],
            target_role_id=row[3],
            invited_by_user_id=row[4],
            token=row[5],
            expires_at=row[6],
            status=InvitationStatus(row[7]),
            created_at=row[8],
            accepted_at=row[9],
        )


class AuditLogRepository:
    """Append-only audit trail of directory workflow events."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing directory workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO directory_audit_log (account_id, tenant_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, tenant_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries scoped to a tenant with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, tenant_id, event_type, actor, metadata, created_at
            FROM directory_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit + 1)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [
                    AuditLogRecord(
                        audit_id=row[0],
                        account_id=row[1],
                        tenant_id=row[2],
                        event_type=row[3],
                        actor=row[4],
                        metadata=row[5] or {},
                        created_at=row[6],
                    )
                    for row in cur.fetchall()
                ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) > limit:
            records = records[:limit]
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
