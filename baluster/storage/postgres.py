from __future__ import annotations

import contextlib
import json
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from baluster.logging import get_logger
from baluster.storage.common import (
    COLLECTION_API_KEYS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_SERVICE_KEYS,
    COLLECTION_USERS,
    COLLECTIONS,
    check_audit_pair,
    from_document,
    primary_entity_type,
    to_document,
)
from baluster.storage.errors import ConstraintViolation, StoreError, TransactionFailed
from baluster.storage.models import (
    ENTITY_API_KEY,
    ENTITY_AUDIT_HISTORY,
    ENTITY_ORGANIZATION,
    ENTITY_ORGANIZATION_MEMBER,
    ENTITY_SERVICE_KEY,
    ApiKey,
    AuditHistory,
    Organization,
    OrganizationMember,
    ServiceKey,
    User,
)

# Documents without a discriminator are read as the collection's primary entity
_ENTITY_TYPE_SQL = "COALESCE(entity_type, %s)"


class PostgresStore:
    """Postgres-backed credential store.

    One table per logical collection, keyed by ``(partition_key, id)``. The
    full document lives in a JSONB column; ``entity_type`` and
    ``token_value`` are lifted into columns so discriminator filters and
    hash lookups are index-backed.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("document already exists", {"error": str(exc)}) from exc
        except PoolTimeout as exc:
            raise StoreError("store connection timed out") from exc
        except errors.Error as exc:
            self.logger.error("postgres_store_error", error_type=type(exc).__name__, error=str(exc))
            raise StoreError("store operation failed", {"error_type": type(exc).__name__}) from exc

    def _ensure_schema(self) -> None:
        """Create the per-collection tables and lookup indexes if missing."""

        with self._connect() as conn:
            for table in COLLECTIONS:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        partition_key TEXT NOT NULL,
                        id TEXT NOT NULL,
                        entity_type TEXT,
                        token_value TEXT,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        doc JSONB NOT NULL,
                        PRIMARY KEY (partition_key, id)
                    )
                    """
                )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_entity_type_idx "
                    f"ON {table} (partition_key, entity_type)"
                )
            for table in (COLLECTION_SERVICE_KEYS, COLLECTION_API_KEYS):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_token_value_idx "
                    f"ON {table} (token_value) WHERE token_value IS NOT NULL"
                )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS organizations_member_user_idx "
                "ON organizations ((doc->>'user_id')) WHERE entity_type = 'organization_member'"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # -- write helpers -------------------------------------------------------

    @staticmethod
    def _row_params(doc: Dict[str, Any]) -> tuple:
        return (
            doc["partition_key"],
            doc["id"],
            doc.get("entity_type"),
            doc.get("token_value"),
            doc.get("created_at"),
            json.dumps(doc),
        )

    def _insert(self, conn: Any, table: str, doc: Dict[str, Any]) -> None:
        conn.execute(
            f"""
            INSERT INTO {table} (partition_key, id, entity_type, token_value, created_at, doc)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            self._row_params(doc),
        )

    def _upsert(self, conn: Any, table: str, doc: Dict[str, Any]) -> None:
        conn.execute(
            f"""
            INSERT INTO {table} (partition_key, id, entity_type, token_value, created_at, doc)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (partition_key, id) DO UPDATE
            SET entity_type = EXCLUDED.entity_type,
                token_value = EXCLUDED.token_value,
                doc = EXCLUDED.doc
            """,
            self._row_params(doc),
        )

    def _replace(self, conn: Any, table: str, doc: Dict[str, Any]) -> None:
        cur = conn.execute(
            f"""
            UPDATE {table}
            SET entity_type = %s, token_value = %s, doc = %s
            WHERE partition_key = %s AND id = %s
            """,
            (
                doc.get("entity_type"),
                doc.get("token_value"),
                json.dumps(doc),
                doc["partition_key"],
                doc["id"],
            ),
        )
        if cur.rowcount != 1:
            raise TransactionFailed("document not found", {"collection": table, "id": doc["id"]})

    def _delete(self, conn: Any, table: str, doc: Dict[str, Any]) -> None:
        cur = conn.execute(
            f"DELETE FROM {table} WHERE partition_key = %s AND id = %s",
            (doc["partition_key"], doc["id"]),
        )
        if cur.rowcount != 1:
            raise TransactionFailed("document not found", {"collection": table, "id": doc["id"]})

    # -- read helpers ----------------------------------------------------------

    def _fetch_one(self, table: str, sql: str, params: tuple) -> Optional[Any]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            return None
        return from_document(row["doc"], table)

    def _fetch_all(self, table: str, sql: str, params: tuple) -> List[Any]:
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [from_document(row["doc"], table) for row in rows]

    def _get_typed(self, table: str, partition_key: str, doc_id: str, entity_type: str) -> Optional[Any]:
        return self._fetch_one(
            table,
            f"SELECT doc FROM {table} WHERE partition_key = %s AND id = %s "
            f"AND {_ENTITY_TYPE_SQL} = %s",
            (partition_key, doc_id, primary_entity_type(table), entity_type),
        )

    # -- organizations & membership --------------------------------------

    def create_organization_with_membership(
        self, org: Organization, member: OrganizationMember
    ) -> Organization:
        if member.organization_id != org.id:
            raise TransactionFailed(
                "membership must belong to the new organization",
                {"organization_id": org.id, "member_organization_id": member.organization_id},
            )
        with self._connect() as conn, conn.transaction():
            self._insert(conn, COLLECTION_ORGANIZATIONS, to_document(org))
            self._insert(conn, COLLECTION_ORGANIZATIONS, to_document(member))
        return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        return self._get_typed(COLLECTION_ORGANIZATIONS, org_id, org_id, ENTITY_ORGANIZATION)

    def add_member(self, org_id: str, user_id: str) -> OrganizationMember:
        if self.get_organization(org_id) is None:
            raise TransactionFailed("organization not found", {"organization_id": org_id})
        member = OrganizationMember.new(org_id, user_id)
        with self._connect() as conn, conn.transaction():
            self._upsert(conn, COLLECTION_ORGANIZATIONS, to_document(member))
        return member

    def remove_member(self, org_id: str, user_id: str) -> bool:
        removed = False
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM organizations WHERE partition_key = %s AND id = %s "
                "AND entity_type = %s",
                (org_id, OrganizationMember.member_id(org_id, user_id), ENTITY_ORGANIZATION_MEMBER),
            )
            removed = cur.rowcount > 0
            row = conn.execute(
                f"SELECT doc FROM organizations WHERE partition_key = %s AND id = %s "
                f"AND {_ENTITY_TYPE_SQL} = %s FOR UPDATE",
                (org_id, org_id, ENTITY_ORGANIZATION, ENTITY_ORGANIZATION),
            ).fetchone()
            if row:
                org = from_document(row["doc"], COLLECTION_ORGANIZATIONS)
                if user_id in org.member_ids:
                    org.member_ids = [mid for mid in org.member_ids if mid != user_id]
                    self._replace(conn, COLLECTION_ORGANIZATIONS, to_document(org))
                    removed = True
        return removed

    def list_members(self, org_id: str) -> List[OrganizationMember]:
        members = {
            m.id: m
            for m in self._fetch_all(
                COLLECTION_ORGANIZATIONS,
                "SELECT doc FROM organizations WHERE partition_key = %s AND entity_type = %s",
                (org_id, ENTITY_ORGANIZATION_MEMBER),
            )
        }
        org = self.get_organization(org_id)
        if org is not None:
            for legacy_user_id in org.member_ids:
                legacy = OrganizationMember.new(org_id, legacy_user_id)
                members.setdefault(legacy.id, legacy)
        return sorted(members.values(), key=lambda m: m.created_at)

    def is_organization_member(self, org_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM organizations WHERE partition_key = %s AND id = %s "
                "AND entity_type = %s",
                (org_id, OrganizationMember.member_id(org_id, user_id), ENTITY_ORGANIZATION_MEMBER),
            ).fetchone()
        if row:
            return True
        org = self.get_organization(org_id)
        if org is None:
            return False
        return user_id in org.member_ids

    def list_organizations_for_member(self, user_id: str) -> List[Organization]:
        orgs = self._fetch_all(
            COLLECTION_ORGANIZATIONS,
            """
            SELECT o.doc FROM organizations o
            WHERE COALESCE(o.entity_type, %s) = %s
              AND (
                EXISTS (
                    SELECT 1 FROM organizations m
                    WHERE m.partition_key = o.id
                      AND m.entity_type = %s
                      AND m.doc->>'user_id' = %s
                )
                OR COALESCE(o.doc->'member_ids', '[]'::jsonb) ? %s
              )
            ORDER BY o.doc->>'name'
            """,
            (ENTITY_ORGANIZATION, ENTITY_ORGANIZATION, ENTITY_ORGANIZATION_MEMBER, user_id, user_id),
        )
        return orgs

    # -- audited tenant entities ------------------------------------------

    def create_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any:
        check_audit_pair(entity, audit)
        with self._connect() as conn, conn.transaction():
            self._insert(conn, collection, to_document(entity))
            self._insert(conn, collection, to_document(audit))
        return entity

    def update_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any:
        check_audit_pair(entity, audit)
        with self._connect() as conn, conn.transaction():
            self._replace(conn, collection, to_document(entity))
            self._insert(conn, collection, to_document(audit))
        return entity

    def delete_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> None:
        check_audit_pair(entity, audit)
        with self._connect() as conn, conn.transaction():
            self._delete(conn, collection, to_document(entity))
            self._insert(conn, collection, to_document(audit))

    def get_entity(self, collection: str, org_id: str, entity_id: str) -> Optional[Any]:
        return self._get_typed(collection, org_id, entity_id, primary_entity_type(collection))

    def list_by_organization(self, collection: str, org_id: str) -> List[Any]:
        default_type = primary_entity_type(collection)
        return self._fetch_all(
            collection,
            f"SELECT doc FROM {collection} WHERE partition_key = %s "
            f"AND {_ENTITY_TYPE_SQL} = %s ORDER BY created_at DESC",
            (org_id, default_type, default_type),
        )

    def count_by_organization(self, collection: str, org_id: str) -> int:
        default_type = primary_entity_type(collection)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM {collection} WHERE partition_key = %s "
                f"AND {_ENTITY_TYPE_SQL} = %s",
                (org_id, default_type, default_type),
            ).fetchone()
        return int(row["total"]) if row else 0

    def get_history(self, collection: str, org_id: str, entity_id: str) -> List[AuditHistory]:
        return self._fetch_all(
            collection,
            f"SELECT doc FROM {collection} WHERE partition_key = %s AND entity_type = %s "
            f"AND doc->>'entity_id' = %s ORDER BY created_at ASC",
            (org_id, ENTITY_AUDIT_HISTORY, entity_id),
        )

    # -- credential lookups -------------------------------------------------

    def find_service_key_by_hash_in_org(
        self, org_id: str, token_hash: str
    ) -> Optional[ServiceKey]:
        return self._fetch_one(
            COLLECTION_SERVICE_KEYS,
            f"SELECT doc FROM service_keys WHERE partition_key = %s AND token_value = %s "
            f"AND {_ENTITY_TYPE_SQL} = %s",
            (org_id, token_hash, ENTITY_SERVICE_KEY, ENTITY_SERVICE_KEY),
        )

    def find_service_key_by_hash(self, token_hash: str) -> Optional[ServiceKey]:
        return self._fetch_one(
            COLLECTION_SERVICE_KEYS,
            f"SELECT doc FROM service_keys WHERE token_value = %s AND {_ENTITY_TYPE_SQL} = %s",
            (token_hash, ENTITY_SERVICE_KEY, ENTITY_SERVICE_KEY),
        )

    def find_api_key_by_hash(self, token_hash: str) -> Optional[ApiKey]:
        return self._fetch_one(
            COLLECTION_API_KEYS,
            f"SELECT doc FROM api_keys WHERE token_value = %s AND {_ENTITY_TYPE_SQL} = %s",
            (token_hash, ENTITY_API_KEY, ENTITY_API_KEY),
        )

    # -- users -------------------------------------------------------------

    def upsert_user(self, user: User) -> User:
        with self._connect() as conn, conn.transaction():
            self._upsert(conn, COLLECTION_USERS, to_document(user))
        return user

    def get_user_by_github_id(self, github_id: str) -> Optional[User]:
        return self._fetch_one(
            COLLECTION_USERS,
            "SELECT doc FROM users WHERE partition_key = %s ORDER BY created_at LIMIT 1",
            (github_id,),
        )

    def get_user_by_id(self, user_id: str, partition_hint: str = "") -> Optional[User]:
        if partition_hint:
            return self._fetch_one(
                COLLECTION_USERS,
                "SELECT doc FROM users WHERE partition_key = %s AND id = %s",
                (partition_hint, user_id),
            )
        return self._fetch_one(
            COLLECTION_USERS, "SELECT doc FROM users WHERE id = %s LIMIT 1", (user_id,)
        )

    def delete_user(self, user: User) -> None:
        with self._connect() as conn, conn.transaction():
            self._delete(conn, COLLECTION_USERS, to_document(user))
