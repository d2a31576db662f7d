from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from prismflow.logging import get_logger
from prismflow.storage.common import SecretCipher, normalize_email, safe_row_value
from prismflow.storage.errors import ConstraintViolation, StoreUnavailable
from prismflow.storage.models import (
    Account,
    AccountMFAConfig,
    Credential,
    CredentialKind,
    MembershipRole,
    Permission,
    ProjectMembership,
    Role,
    new_id,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        mfa_secret TEXT,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        kind TEXT NOT NULL CHECK (kind IN ('refresh', 'reset')),
        family_id TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS credentials_family_idx ON credentials (family_id)",
    "CREATE INDEX IF NOT EXISTS credentials_account_idx ON credentials (account_id)",
    "CREATE INDEX IF NOT EXISTS credentials_expires_idx ON credentials (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS roles (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        permissions TEXT[] NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS roles_name_idx ON roles (lower(name))",
    """
    CREATE TABLE IF NOT EXISTS account_roles (
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_memberships (
        project_id TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('owner', 'member', 'viewer')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (project_id, account_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts, credentials, roles and memberships."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(
                "database unavailable", {"error": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            password_hash=row.get("password_hash"),
            is_active=bool(row.get("is_active", True)),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_credential(row: dict) -> Credential:
        return Credential(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            kind=CredentialKind(row["kind"]),
            expires_at=row["expires_at"],
            family_id=safe_row_value(row, "family_id"),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_role(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            permissions=frozenset(Permission(p) for p in row.get("permissions") or []),
            description=row.get("description") or "",
            is_system=bool(row.get("is_system", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_membership(row: dict) -> ProjectMembership:
        return ProjectMembership(
            project_id=str(row["project_id"]),
            account_id=str(row["account_id"]),
            role=MembershipRole(row["role"]),
            created_at=row.get("created_at") or utcnow(),
        )

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        display_name: str,
        password_hash: Optional[str],
        *,
        is_active: bool = True,
    ) -> Account:
        account_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO accounts (id, email, display_name, password_hash, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, normalize_email(email), display_name, password_hash, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, *, limit: int = 100, active_only: bool = False) -> List[Account]:
        with self._connect() as conn:
            if active_only:
                rows = conn.execute(
                    "SELECT * FROM accounts WHERE is_active ORDER BY created_at LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM accounts ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account_profile(
        self,
        account_id: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE accounts
                    SET email = COALESCE(%s, email), display_name = COALESCE(%s, display_name)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        normalize_email(email) if email is not None else None,
                        display_name,
                        account_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row) if row else None

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE accounts SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE accounts SET password_hash = %s WHERE id = %s",
                (password_hash, account_id),
            )
            return result.rowcount > 0

    def touch_last_login(self, account_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET last_login_at = %s WHERE id = %s", (at, account_id)
            )

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM accounts WHERE id = %s", (account_id,))
            return result.rowcount > 0

    # -- second factor ------------------------------------------------------

    def set_account_mfa(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> AccountMFAConfig:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE accounts SET mfa_secret = %s, mfa_enabled = %s WHERE id = %s",
                (self._cipher.encrypt(secret), enabled, account_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
        return AccountMFAConfig(account_id=account_id, secret=secret, enabled=enabled)

    def get_account_mfa(self, account_id: str) -> Optional[AccountMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT mfa_secret, mfa_enabled FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        if not row or not row.get("mfa_secret"):
            return None
        return AccountMFAConfig(
            account_id=account_id,
            secret=self._cipher.decrypt(row["mfa_secret"]),
            enabled=bool(row.get("mfa_enabled", False)),
        )

    def clear_account_mfa(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET mfa_secret = NULL, mfa_enabled = FALSE WHERE id = %s",
                (account_id,),
            )

    # -- credentials --------------------------------------------------------

    @staticmethod
    def _insert_credential(conn: Any, credential: Credential) -> None:
        conn.execute(
            """
            INSERT INTO credentials (id, account_id, token_hash, kind, family_id, expires_at, revoked, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                credential.id,
                credential.account_id,
                credential.token_hash,
                CredentialKind(credential.kind).value,
                credential.family_id,
                credential.expires_at,
                credential.revoked,
                credential.created_at,
            ),
        )

    def create_credential(self, credential: Credential) -> Credential:
        try:
            with self._connect() as conn:
                self._insert_credential(conn, credential)
        except errors.UniqueViolation:
            raise ConstraintViolation("credential token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": credential.account_id}
            )
        return credential

    def get_credential_by_hash(self, token_hash: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def revoke_credential(self, credential_id: str, *, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE credentials SET revoked = TRUE, revoked_at = %s WHERE id = %s AND revoked = FALSE",
                (revoked_at, credential_id),
            )
            return result.rowcount == 1

    def rotate_credential(
        self, old_id: str, replacement: Credential, *, revoked_at: datetime
    ) -> bool:
        """Conditional revoke of ``old_id`` plus insert of ``replacement`` in one transaction."""
        try:
            with self._connect() as conn:
                with conn.transaction():
                    result = conn.execute(
                        "UPDATE credentials SET revoked = TRUE, revoked_at = %s WHERE id = %s AND revoked = FALSE",
                        (revoked_at, old_id),
                    )
                    if result.rowcount != 1:
                        return False
                    self._insert_credential(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("credential token already exists", {"field": "token"})
        return True

    def revoke_credential_family(self, family_id: str, *, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE credentials SET revoked = TRUE, revoked_at = %s WHERE family_id = %s AND revoked = FALSE",
                (revoked_at, family_id),
            )
            return result.rowcount

    def revoke_account_credentials(
        self,
        account_id: str,
        *,
        revoked_at: datetime,
        kind: Optional[CredentialKind] = None,
    ) -> int:
        with self._connect() as conn:
            if kind is None:
                result = conn.execute(
                    "UPDATE credentials SET revoked = TRUE, revoked_at = %s WHERE account_id = %s AND revoked = FALSE",
                    (revoked_at, account_id),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE credentials SET revoked = TRUE, revoked_at = %s
                    WHERE account_id = %s AND kind = %s AND revoked = FALSE
                    """,
                    (revoked_at, account_id, CredentialKind(kind).value),
                )
            return result.rowcount

    def delete_expired_credentials(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM credentials WHERE expires_at < %s", (before,)
            )
            return result.rowcount

    # -- roles --------------------------------------------------------------

    def create_role(
        self,
        name: str,
        permissions: Iterable[Permission],
        *,
        description: str = "",
        is_system: bool = False,
    ) -> Role:
        perms = sorted(Permission(p).value for p in permissions)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (id, name, description, is_system, permissions)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, description, is_system, perms),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM roles WHERE id = %s", (role_id,)).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM roles WHERE lower(name) = lower(%s)", (name,)
            ).fetchone()
        return self._row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM roles ORDER BY is_system DESC, name"
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> Optional[Role]:
        perms = (
            sorted(Permission(p).value for p in permissions) if permissions is not None else None
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE roles
                    SET name = COALESCE(%s, name),
                        description = COALESCE(%s, description),
                        permissions = COALESCE(%s, permissions),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, perms, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._row_to_role(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM roles WHERE id = %s", (role_id,))
            return result.rowcount > 0

    def assign_role(self, account_id: str, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    INSERT INTO account_roles (account_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (account_id, role_id) DO NOTHING
                    """,
                    (account_id, role_id),
                )
                return result.rowcount == 1
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or role does not exist",
                {"account_id": account_id, "role_id": role_id},
            )

    def unassign_role(self, account_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_roles WHERE account_id = %s AND role_id = %s",
                (account_id, role_id),
            )
            return result.rowcount > 0

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM account_roles ar JOIN roles r ON r.id = ar.role_id
                WHERE ar.account_id = %s ORDER BY r.name
                """,
                (account_id,),
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    def list_role_account_ids(self, role_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT account_id FROM account_roles WHERE role_id = %s ORDER BY account_id",
                (role_id,),
            ).fetchall()
        return [str(row["account_id"]) for row in rows]

    # -- project memberships ------------------------------------------------

    def add_membership(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> ProjectMembership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO project_memberships (project_id, account_id, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (project_id, account_id, MembershipRole(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists",
                {"project_id": project_id, "account_id": account_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return self._row_to_membership(row)

    def get_membership(self, project_id: str, account_id: str) -> Optional[ProjectMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM project_memberships WHERE project_id = %s AND account_id = %s",
                (project_id, account_id),
            ).fetchone()
        return self._row_to_membership(row) if row else None

    def list_memberships(self, project_id: str) -> List[ProjectMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM project_memberships WHERE project_id = %s ORDER BY created_at",
                (project_id,),
            ).fetchall()
        return [self._row_to_membership(row) for row in rows]

    def list_account_memberships(self, account_id: str) -> List[ProjectMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM project_memberships WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._row_to_membership(row) for row in rows]

    def update_membership_role(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> Optional[ProjectMembership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE project_memberships SET role = %s
                WHERE project_id = %s AND account_id = %s
                RETURNING *
                """,
                (MembershipRole(role).value, project_id, account_id),
            ).fetchone()
        return self._row_to_membership(row) if row else None

    def remove_membership(self, project_id: str, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM project_memberships WHERE project_id = %s AND account_id = %s",
                (project_id, account_id),
            )
            return result.rowcount > 0
