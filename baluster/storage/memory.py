from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from baluster.logging import get_logger
from baluster.storage.common import (
    COLLECTION_API_KEYS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_SERVICE_KEYS,
    COLLECTION_USERS,
    COLLECTIONS,
    TOKEN_COLLECTIONS,
    check_audit_pair,
    entity_type_of,
    from_document,
    primary_entity_type,
    to_document,
)
from baluster.storage.errors import ConstraintViolation, StoreError, TransactionFailed
from baluster.storage.models import (
    ENTITY_AUDIT_HISTORY,
    ENTITY_ORGANIZATION,
    ENTITY_ORGANIZATION_MEMBER,
    ApiKey,
    AuditHistory,
    Organization,
    OrganizationMember,
    ServiceKey,
    User,
)

_OP_CREATE = "create"
_OP_UPSERT = "upsert"
_OP_REPLACE = "replace"
_OP_DELETE = "delete"


@dataclass
class _BatchOp:
    kind: str
    doc: Dict[str, Any]


class MemoryStore:
    """In-process credential store for tests and single-node deployments.

    Documents are kept as ``collection -> partition -> id -> document``.
    Every mutation goes through a single-partition batch that is validated
    in full before any document is touched, so an entity and its audit
    record are written together or not at all.
    """

    def __init__(self, fs_root: str = "/tmp/baluster", *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.collections: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = {
            name: {} for name in COLLECTIONS
        }
        # token hash -> (partition, id) for service keys and API keys
        self._token_index: Dict[str, Dict[str, Tuple[str, str]]] = {
            name: {} for name in TOKEN_COLLECTIONS
        }
        # RLock so composite operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def verify_connection(self) -> None:
        return None

    # -- batch machinery -------------------------------------------------

    def _commit(self, collection: str, ops: List[_BatchOp]) -> None:
        partitions = {op.doc["partition_key"] for op in ops}
        if len(partitions) != 1:
            raise TransactionFailed(
                "batch must target exactly one partition",
                {"collection": collection, "partitions": sorted(partitions)},
            )
        partition_key = partitions.pop()
        with self._data_lock:
            current = self.collections[collection].get(partition_key, {})
            present = set(current.keys())
            for op in ops:
                doc_id = op.doc["id"]
                if op.kind == _OP_CREATE and doc_id in present:
                    raise ConstraintViolation(
                        "document already exists",
                        {"collection": collection, "id": doc_id},
                    )
                if op.kind in (_OP_REPLACE, _OP_DELETE) and doc_id not in present:
                    raise TransactionFailed(
                        "document not found",
                        {"collection": collection, "id": doc_id},
                    )
                if op.kind == _OP_DELETE:
                    present.discard(doc_id)
                else:
                    present.add(doc_id)

            updated = dict(current)
            for op in ops:
                if op.kind == _OP_DELETE:
                    updated.pop(op.doc["id"], None)
                else:
                    updated[op.doc["id"]] = dict(op.doc)
            self.collections[collection][partition_key] = updated
            self._rebuild_index(collection)
            try:
                self._persist_state()
            except StoreError:
                self.collections[collection][partition_key] = current
                self._rebuild_index(collection)
                raise

    def _rebuild_index(self, collection: str) -> None:
        if collection not in self._token_index:
            return
        expected_type = primary_entity_type(collection)
        index: Dict[str, Tuple[str, str]] = {}
        for partition_key, docs in self.collections[collection].items():
            for doc_id, doc in docs.items():
                token = doc.get("token_value")
                if token and entity_type_of(doc, collection) == expected_type:
                    index[token] = (partition_key, doc_id)
        self._token_index[collection] = index

    def _get_doc(
        self, collection: str, partition_key: str, doc_id: str
    ) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            doc = self.collections[collection].get(partition_key, {}).get(doc_id)
            return dict(doc) if doc is not None else None

    def _partition_docs(
        self, collection: str, partition_key: str, entity_type: str
    ) -> List[Dict[str, Any]]:
        with self._data_lock:
            docs = list(self.collections[collection].get(partition_key, {}).values())
        return [dict(doc) for doc in docs if entity_type_of(doc, collection) == entity_type]

    # -- organizations & membership --------------------------------------

    def create_organization_with_membership(
        self, org: Organization, member: OrganizationMember
    ) -> Organization:
        if member.organization_id != org.id:
            raise TransactionFailed(
                "membership must belong to the new organization",
                {"organization_id": org.id, "member_organization_id": member.organization_id},
            )
        self._commit(
            COLLECTION_ORGANIZATIONS,
            [
                _BatchOp(_OP_CREATE, to_document(org)),
                _BatchOp(_OP_CREATE, to_document(member)),
            ],
        )
        return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        doc = self._get_doc(COLLECTION_ORGANIZATIONS, org_id, org_id)
        if doc is None or entity_type_of(doc, COLLECTION_ORGANIZATIONS) != ENTITY_ORGANIZATION:
            return None
        return from_document(doc, COLLECTION_ORGANIZATIONS)

    def add_member(self, org_id: str, user_id: str) -> OrganizationMember:
        member = OrganizationMember.new(org_id, user_id)
        with self._data_lock:
            if self.get_organization(org_id) is None:
                raise TransactionFailed("organization not found", {"organization_id": org_id})
            self._commit(COLLECTION_ORGANIZATIONS, [_BatchOp(_OP_UPSERT, to_document(member))])
        return member

    def remove_member(self, org_id: str, user_id: str) -> bool:
        """Drop a membership from both the join records and the legacy list."""
        with self._data_lock:
            ops: List[_BatchOp] = []
            member_id = OrganizationMember.member_id(org_id, user_id)
            member_doc = self._get_doc(COLLECTION_ORGANIZATIONS, org_id, member_id)
            if member_doc is not None:
                ops.append(_BatchOp(_OP_DELETE, member_doc))
            org = self.get_organization(org_id)
            if org is not None and user_id in org.member_ids:
                org.member_ids = [mid for mid in org.member_ids if mid != user_id]
                ops.append(_BatchOp(_OP_REPLACE, to_document(org)))
            if not ops:
                return False
            self._commit(COLLECTION_ORGANIZATIONS, ops)
            return True

    def list_members(self, org_id: str) -> List[OrganizationMember]:
        members = {
            doc["id"]: from_document(doc, COLLECTION_ORGANIZATIONS)
            for doc in self._partition_docs(
                COLLECTION_ORGANIZATIONS, org_id, ENTITY_ORGANIZATION_MEMBER
            )
        }
        org = self.get_organization(org_id)
        if org is not None:
            for legacy_user_id in org.member_ids:
                legacy = OrganizationMember.new(org_id, legacy_user_id)
                members.setdefault(legacy.id, legacy)
        return sorted(members.values(), key=lambda m: m.created_at)

    def is_organization_member(self, org_id: str, user_id: str) -> bool:
        member_id = OrganizationMember.member_id(org_id, user_id)
        doc = self._get_doc(COLLECTION_ORGANIZATIONS, org_id, member_id)
        if doc is not None and entity_type_of(doc, COLLECTION_ORGANIZATIONS) == ENTITY_ORGANIZATION_MEMBER:
            return True
        org = self.get_organization(org_id)
        if org is None:
            return False
        return user_id in org.member_ids

    def list_organizations_for_member(self, user_id: str) -> List[Organization]:
        org_ids: set[str] = set()
        with self._data_lock:
            for partition_key, docs in self.collections[COLLECTION_ORGANIZATIONS].items():
                for doc in docs.values():
                    entity_type = entity_type_of(doc, COLLECTION_ORGANIZATIONS)
                    if entity_type == ENTITY_ORGANIZATION_MEMBER and doc.get("user_id") == user_id:
                        org_ids.add(partition_key)
                    elif entity_type == ENTITY_ORGANIZATION and user_id in (doc.get("member_ids") or []):
                        org_ids.add(partition_key)
        orgs = [org for org in (self.get_organization(oid) for oid in org_ids) if org is not None]
        return sorted(orgs, key=lambda o: o.name)

    # -- audited tenant entities ------------------------------------------

    def create_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any:
        check_audit_pair(entity, audit)
        self._commit(
            collection,
            [
                _BatchOp(_OP_CREATE, to_document(entity)),
                _BatchOp(_OP_CREATE, to_document(audit)),
            ],
        )
        return entity

    def update_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any:
        check_audit_pair(entity, audit)
        self._commit(
            collection,
            [
                _BatchOp(_OP_REPLACE, to_document(entity)),
                _BatchOp(_OP_CREATE, to_document(audit)),
            ],
        )
        return entity

    def delete_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> None:
        check_audit_pair(entity, audit)
        self._commit(
            collection,
            [
                _BatchOp(_OP_DELETE, to_document(entity)),
                _BatchOp(_OP_CREATE, to_document(audit)),
            ],
        )

    def get_entity(self, collection: str, org_id: str, entity_id: str) -> Optional[Any]:
        doc = self._get_doc(collection, org_id, entity_id)
        if doc is None or entity_type_of(doc, collection) != primary_entity_type(collection):
            return None
        return from_document(doc, collection)

    def list_by_organization(self, collection: str, org_id: str) -> List[Any]:
        docs = self._partition_docs(collection, org_id, primary_entity_type(collection))
        entities = [from_document(doc, collection) for doc in docs]
        return sorted(entities, key=lambda e: e.created_at, reverse=True)

    def count_by_organization(self, collection: str, org_id: str) -> int:
        return len(self._partition_docs(collection, org_id, primary_entity_type(collection)))

    def get_history(self, collection: str, org_id: str, entity_id: str) -> List[AuditHistory]:
        docs = self._partition_docs(collection, org_id, ENTITY_AUDIT_HISTORY)
        records = [
            from_document(doc, collection) for doc in docs if doc.get("entity_id") == entity_id
        ]
        return sorted(records, key=lambda r: r.created_at)

    # -- credential lookups -------------------------------------------------

    def _find_by_hash(
        self, collection: str, token_hash: str, org_id: Optional[str] = None
    ) -> Optional[Any]:
        with self._data_lock:
            location = self._token_index[collection].get(token_hash)
            if location is None:
                return None
            partition_key, doc_id = location
            if org_id is not None and partition_key != org_id:
                return None
            doc = self._get_doc(collection, partition_key, doc_id)
        if doc is None:
            return None
        return from_document(doc, collection)

    def find_service_key_by_hash_in_org(
        self, org_id: str, token_hash: str
    ) -> Optional[ServiceKey]:
        return self._find_by_hash(COLLECTION_SERVICE_KEYS, token_hash, org_id)

    def find_service_key_by_hash(self, token_hash: str) -> Optional[ServiceKey]:
        return self._find_by_hash(COLLECTION_SERVICE_KEYS, token_hash)

    def find_api_key_by_hash(self, token_hash: str) -> Optional[ApiKey]:
        return self._find_by_hash(COLLECTION_API_KEYS, token_hash)

    # -- users -------------------------------------------------------------

    def upsert_user(self, user: User) -> User:
        self._commit(COLLECTION_USERS, [_BatchOp(_OP_UPSERT, to_document(user))])
        return user

    def get_user_by_github_id(self, github_id: str) -> Optional[User]:
        docs = self._partition_docs(COLLECTION_USERS, github_id, primary_entity_type(COLLECTION_USERS))
        if not docs:
            return None
        return from_document(docs[0], COLLECTION_USERS)

    def get_user_by_id(self, user_id: str, partition_hint: str = "") -> Optional[User]:
        if partition_hint:
            doc = self._get_doc(COLLECTION_USERS, partition_hint, user_id)
        else:
            doc = None
            with self._data_lock:
                for docs in self.collections[COLLECTION_USERS].values():
                    if user_id in docs:
                        doc = dict(docs[user_id])
                        break
        if doc is None:
            return None
        return from_document(doc, COLLECTION_USERS)

    def delete_user(self, user: User) -> None:
        self._commit(COLLECTION_USERS, [_BatchOp(_OP_DELETE, to_document(user))])

    # -- persistence --------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        path = self._state_path()
        try:
            path.write_text(json.dumps({"collections": self.collections}, indent=2))
        except (OSError, TypeError) as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise StoreError("in-memory state file is corrupt", {"path": str(path)}) from exc
        stored = data.get("collections", {})
        for name in COLLECTIONS:
            self.collections[name] = stored.get(name, {})
            self._rebuild_index(name)
        self.logger.info(
            "memory_store_state_loaded",
            path=str(path),
            partitions={name: len(self.collections[name]) for name in COLLECTIONS},
        )
        return True
