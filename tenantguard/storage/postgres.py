from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from tenantguard.logging import get_logger
from tenantguard.storage.common import RoleFilter, UserFilter
from tenantguard.storage.errors import FOREIGN_KEY, UNIQUE, ConstraintViolation
from tenantguard.storage.models import AuditLog, Credential, Role, User

SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS usr_auth (
        id UUID PRIMARY KEY,
        status BOOLEAN NOT NULL DEFAULT TRUE,
        password TEXT,
        token TEXT UNIQUE,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usr_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usr_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        username TEXT NOT NULL UNIQUE,
        mail TEXT NOT NULL UNIQUE,
        auth_id UUID NOT NULL UNIQUE REFERENCES usr_auth (id),
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usr_user_role (
        user_id UUID NOT NULL REFERENCES usr_user (id) ON DELETE CASCADE,
        role_id UUID NOT NULL REFERENCES usr_role (id) ON DELETE RESTRICT,
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usr_audit_log (
        id UUID PRIMARY KEY,
        actor_id UUID,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}',
        ip_address TEXT NOT NULL DEFAULT '',
        user_agent TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS usr_audit_log_resource_idx ON usr_audit_log (resource, resource_id)",
)

_USER_SELECT = """
    SELECT u.id, u.name, u.username, u.mail, u.created_at, u.updated_at,
           a.id AS auth_id, a.status, a.password, a.token,
           a.created_at AS auth_created_at, a.updated_at AS auth_updated_at
    FROM usr_user u
    JOIN usr_auth a ON a.id = u.auth_id
"""

_USER_SORT_COLUMNS = {
    "name": "u.name",
    "username": "u.username",
    "email": "u.mail",
    "created_at": "u.created_at",
    "updated_at": "u.updated_at",
}

_ROLE_SORT_COLUMNS = {
    "name": "name",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

# unique constraint name -> field reported to callers
_UNIQUE_FIELDS = {
    "usr_user_username_key": "username",
    "usr_user_mail_key": "email",
    "usr_auth_token_key": "token",
    "usr_role_name_key": "name",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, "id")
    return ConstraintViolation(f"{field} already exists", {"field": field}, kind=UNIQUE)


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        permissions=list(row.get("permissions") or []),
        enabled=bool(row["enabled"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _user_from_row(row: Dict[str, Any], roles: List[Role]) -> User:
    credential = Credential(
        id=str(row["auth_id"]),
        status=bool(row["status"]),
        password_hash=row.get("password"),
        token=row.get("token"),
        created_at=row["auth_created_at"],
        updated_at=row["auth_updated_at"],
    )
    return User(
        id=str(row["id"]),
        name=row["name"],
        username=row["username"],
        email=row["mail"],
        credential=credential,
        roles=roles,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _audit_from_row(row: Dict[str, Any]) -> AuditLog:
    return AuditLog(
        id=str(row["id"]),
        actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
        action=row["action"],
        resource=row["resource"],
        resource_id=row["resource_id"],
        metadata=dict(row.get("metadata") or {}),
        ip_address=row.get("ip_address") or "",
        user_agent=row.get("user_agent") or "",
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed ``UserStore`` and ``AuditStore``.

    A user, its credential and its role links are always written inside one
    transaction; a failure on any statement rolls the whole write back.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self.roles = PostgresRoleStore(self)

    def _connect(self):
        return self.pool.connection()

    async def open(self) -> None:
        await self.pool.open()
        await self.ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    async def ping(self) -> bool:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")
        return True

    async def ensure_schema(self) -> None:
        async with self._connect() as conn:
            for statement in SCHEMA_DDL:
                await conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    async def _roles_for(self, conn, user_ids: Sequence[str]) -> Dict[str, List[Role]]:
        by_user: Dict[str, List[Role]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return by_user
        cur = await conn.execute(
            """
            SELECT ur.user_id, r.id, r.name, r.permissions, r.enabled, r.created_at, r.updated_at
            FROM usr_user_role ur
            JOIN usr_role r ON r.id = ur.role_id
            WHERE ur.user_id = ANY(%s::uuid[])
            ORDER BY r.name
            """,
            (list(user_ids),),
        )
        for row in await cur.fetchall():
            by_user.setdefault(str(row["user_id"]), []).append(_role_from_row(row))
        return by_user

    async def _fetch_users(self, conn, where: str, params: Sequence[Any]) -> List[User]:
        cur = await conn.execute(f"{_USER_SELECT} {where}", tuple(params))
        rows = await cur.fetchall()
        roles = await self._roles_for(conn, [str(row["id"]) for row in rows])
        return [_user_from_row(row, roles.get(str(row["id"]), [])) for row in rows]

    async def _find_one(self, where: str, value: Any) -> Optional[User]:
        async with self._connect() as conn:
            users = await self._fetch_users(conn, where, (value,))
        return users[0] if users else None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._find_one("WHERE u.id = %s::uuid", user_id)

    async def find_by_username(self, username: str) -> Optional[User]:
        return await self._find_one("WHERE u.username = %s", username)

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._find_one("WHERE u.mail = %s", email)

    async def find_by_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return await self._find_one("WHERE a.token = %s", token)

    @staticmethod
    def _user_where(flt: UserFilter) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if flt.status is not None:
            clauses.append("a.status = %s")
            params.append(flt.status)
        if flt.role_id:
            clauses.append(
                "EXISTS (SELECT 1 FROM usr_user_role ur WHERE ur.user_id = u.id AND ur.role_id = %s::uuid)"
            )
            params.append(flt.role_id)
        if flt.search:
            like = f"%{flt.search}%"
            clauses.append("(u.name ILIKE %s OR u.username ILIKE %s OR u.mail ILIKE %s)")
            params.extend([like, like, like])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def find_all(self, flt: Optional[UserFilter] = None) -> List[User]:
        flt = flt or UserFilter()
        where, params = self._user_where(flt)
        column = _USER_SORT_COLUMNS[flt.normalized_sort()]
        sql = f"{where} ORDER BY {column} {flt.normalized_order().upper()}"
        enabled, offset, limit = flt.pagination()
        if enabled:
            sql += " OFFSET %s LIMIT %s"
            params.extend([offset, limit])
        async with self._connect() as conn:
            return await self._fetch_users(conn, sql, params)

    async def count(self, flt: Optional[UserFilter] = None) -> int:
        where, params = self._user_where(flt or UserFilter())
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT COUNT(*) AS total FROM usr_user u JOIN usr_auth a ON a.id = u.auth_id {where}",
                tuple(params),
            )
            row = await cur.fetchone()
        return int(row["total"]) if row else 0

    async def _write_role_links(self, conn, user: User) -> None:
        await conn.execute("DELETE FROM usr_user_role WHERE user_id = %s::uuid", (user.id,))
        for role_id in dict.fromkeys(user.role_ids):
            await conn.execute(
                "INSERT INTO usr_user_role (user_id, role_id) VALUES (%s::uuid, %s::uuid)",
                (user.id, role_id),
            )

    async def create(self, user: User) -> User:
        cred = user.credential
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO usr_auth (id, status, password, token, created_at, updated_at)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s)
                    """,
                    (cred.id, cred.status, cred.password_hash, cred.token, cred.created_at, cred.updated_at),
                )
                await conn.execute(
                    """
                    INSERT INTO usr_user (id, name, username, mail, auth_id, created_at, updated_at)
                    VALUES (%s::uuid, %s, %s, %s, %s::uuid, %s, %s)
                    """,
                    (user.id, user.name, user.username, user.email, cred.id, user.created_at, user.updated_at),
                )
                await self._write_role_links(conn, user)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "role does not exist", {"field": "role_ids"}, kind=FOREIGN_KEY
            ) from exc
        return await self.find_by_id(user.id) or user

    async def update(self, user: User) -> User:
        cred = user.credential
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    """
                    UPDATE usr_user SET name = %s, username = %s, mail = %s, updated_at = %s
                    WHERE id = %s::uuid
                    """,
                    (user.name, user.username, user.email, user.updated_at, user.id),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("user does not exist", {"field": "id"})
                await conn.execute(
                    """
                    UPDATE usr_auth SET status = %s, password = %s, token = %s, updated_at = %s
                    WHERE id = %s::uuid
                    """,
                    (cred.status, cred.password_hash, cred.token, cred.updated_at, cred.id),
                )
                await self._write_role_links(conn, user)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "role does not exist", {"field": "role_ids"}, kind=FOREIGN_KEY
            ) from exc
        return await self.find_by_id(user.id) or user

    async def delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM usr_user WHERE id = ANY(%s::uuid[]) RETURNING auth_id",
                (list(ids),),
            )
            auth_ids = [str(row["auth_id"]) for row in await cur.fetchall()]
            if auth_ids:
                await conn.execute(
                    "DELETE FROM usr_auth WHERE id = ANY(%s::uuid[])", (auth_ids,)
                )
        return len(auth_ids)

    async def record_audit(self, entry: AuditLog) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO usr_audit_log
                    (id, actor_id, action, resource, resource_id, metadata, ip_address, user_agent, created_at)
                VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.actor_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    Jsonb(entry.metadata),
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )

    async def find_audit(
        self, *, resource: Optional[str] = None, resource_id: Optional[str] = None
    ) -> List[AuditLog]:
        clauses, params = [], []
        if resource is not None:
            clauses.append("resource = %s")
            params.append(resource)
        if resource_id is not None:
            clauses.append("resource_id = %s")
            params.append(resource_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT * FROM usr_audit_log {where} ORDER BY created_at, id", params
            )
            rows = await cur.fetchall()
        return [_audit_from_row(row) for row in rows]


class PostgresRoleStore:
    """``RoleStore`` sharing the connection pool of a :class:`PostgresStore`."""

    def __init__(self, store: PostgresStore) -> None:
        self.store = store

    async def _find_one(self, where: str, value: Any) -> Optional[Role]:
        async with self.store._connect() as conn:
            cur = await conn.execute(f"SELECT * FROM usr_role {where}", (value,))
            row = await cur.fetchone()
        return _role_from_row(row) if row else None

    async def find_by_id(self, role_id: str) -> Optional[Role]:
        return await self._find_one("WHERE id = %s::uuid", role_id)

    async def find_by_name(self, name: str) -> Optional[Role]:
        return await self._find_one("WHERE name = %s", name)

    @staticmethod
    def _role_where(flt: RoleFilter) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if flt.search:
            clauses.append("name ILIKE %s")
            params.append(f"%{flt.search}%")
        if flt.enabled is not None:
            clauses.append("enabled = %s")
            params.append(flt.enabled)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def find_all(self, flt: Optional[RoleFilter] = None) -> List[Role]:
        flt = flt or RoleFilter()
        where, params = self._role_where(flt)
        column = _ROLE_SORT_COLUMNS[flt.normalized_sort()]
        sql = f"SELECT * FROM usr_role {where} ORDER BY {column} {flt.normalized_order().upper()}"
        enabled, offset, limit = flt.pagination()
        if enabled:
            sql += " OFFSET %s LIMIT %s"
            params.extend([offset, limit])
        async with self.store._connect() as conn:
            cur = await conn.execute(sql, tuple(params))
            rows = await cur.fetchall()
        return [_role_from_row(row) for row in rows]

    async def count(self, flt: Optional[RoleFilter] = None) -> int:
        where, params = self._role_where(flt or RoleFilter())
        async with self.store._connect() as conn:
            cur = await conn.execute(f"SELECT COUNT(*) AS total FROM usr_role {where}", tuple(params))
            row = await cur.fetchone()
        return int(row["total"]) if row else 0

    async def create(self, role: Role) -> Role:
        try:
            async with self.store._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO usr_role (id, name, permissions, enabled, created_at, updated_at)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s)
                    """,
                    (role.id, role.name, list(role.permissions), role.enabled, role.created_at, role.updated_at),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return role

    async def update(self, role: Role) -> Role:
        try:
            async with self.store._connect() as conn:
                cur = await conn.execute(
                    """
                    UPDATE usr_role SET name = %s, permissions = %s, enabled = %s, updated_at = %s
                    WHERE id = %s::uuid
                    """,
                    (role.name, list(role.permissions), role.enabled, role.updated_at, role.id),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("role does not exist", {"field": "id"})
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return role

    async def delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        try:
            async with self.store._connect() as conn:
                cur = await conn.execute(
                    "DELETE FROM usr_role WHERE id = ANY(%s::uuid[])", (list(ids),)
                )
                return cur.rowcount
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "role is still assigned to users", {"field": "ids"}, kind=FOREIGN_KEY
            ) from exc


__all__ = ["PostgresStore", "PostgresRoleStore", "SCHEMA_DDL"]
