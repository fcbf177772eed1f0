"""
Record store for directory businesses and their dependent relations.

The pipeline treats the store as a key-value-ish collection keyed by opaque
ids with a handful of indexed lookup fields (phone, email, ABN, suburb).
A ``BusinessStore`` is bound to one connection; ``run_in_transaction`` gives
callers an atomic unit of work.
"""
import logging
import re
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine

from bizdir.db.session import get_engine
from bizdir.utils.date import utcnow_db
from bizdir.utils.phone import extract_digits, phone_lookup_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUSINESS_STORE = "businesses"

# Attributes an import row or a merge may write
BUSINESS_FIELDS = (
    "name",
    "email",
    "phone",
    "website",
    "address",
    "suburb",
    "postcode",
    "category",
    "bio",
    "abn",
    "abn_status",
    "source",
)
STATUS_FIELDS = ("approval_status", "duplicate_of_id", "quality_score")

# Tables whose rows belong to a business through business_id
RELATION_TABLES = ("inquiries", "ownership_claims")

APPROVAL_STATUSES = ("PENDING", "APPROVED", "REJECTED")

_SELECT_COLUMNS = """
    id, name, slug, email, phone, website, address, suburb, postcode, category,
    bio, abn, abn_status, source, approval_status, quality_score, duplicate_of_id,
    phone_key, email_key, abn_key, created_at, updated_at
"""


def lookup_keys(record: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Normalized identifiers used by strict duplicate matching and their indexes."""
    email = (record.get("email") or "").strip().lower()
    abn = extract_digits(record.get("abn"))
    return {
        "phone_key": phone_lookup_key(record.get("phone")),
        "email_key": email or None,
        "abn_key": abn or None,
    }


def generate_slug(name: str) -> str:
    base = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    base = re.sub(r"\s+", "-", base.strip())
    base = re.sub(r"-+", "-", base)[:100].strip("-") or "business"
    return f"{base}-{uuid.uuid4().hex[:8]}"


def _row_to_record(row: Any) -> Dict[str, Any]:
    return dict(row._mapping)


class BusinessStore:
    """Business record access bound to a single connection."""

    def __init__(self, conn: Connection):
        self.conn = conn

    @property
    def supports_row_locks(self) -> bool:
        return self.conn.dialect.name == "postgresql"

    def get(self, business_id: str) -> Optional[Dict[str, Any]]:
        records = self.get_many([business_id])
        return records.get(business_id)

    def get_many(self, ids: Iterable[str], for_update: bool = False) -> Dict[str, Dict[str, Any]]:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return {}
        sql = f"SELECT {_SELECT_COLUMNS} FROM businesses WHERE id IN :ids ORDER BY id"
        if for_update and self.supports_row_locks:
            sql += " FOR UPDATE"
        stmt = text(sql).bindparams(bindparam("ids", expanding=True))
        result = self.conn.execute(stmt, {"ids": id_list})
        return {row.id: _row_to_record(row) for row in result}

    def find_candidates(
        self,
        *,
        phone_key: Optional[str] = None,
        email_key: Optional[str] = None,
        abn_key: Optional[str] = None,
        suburb: Optional[str] = None,
        suburb_case_sensitive: bool = True,
        exclude_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch records sharing any supplied identifier, or a suburb.

        Identifier criteria are OR-ed together; the suburb criterion is used
        on its own for loose matching. Canonical (non-archived) records sort
        first, then oldest first, so "first match" is stable.
        """
        conditions: List[str] = []
        params: Dict[str, Any] = {}
        for column, value in (("phone_key", phone_key), ("email_key", email_key), ("abn_key", abn_key)):
            if value:
                conditions.append(f"{column} = :{column}")
                params[column] = value
        if suburb:
            if suburb_case_sensitive:
                conditions.append("suburb = :suburb")
                params["suburb"] = suburb
            else:
                conditions.append("LOWER(suburb) = :suburb")
                params["suburb"] = suburb.lower()

        if not conditions:
            return []

        where = f"({' OR '.join(conditions)})"
        if exclude_id:
            where += " AND id <> :exclude_id"
            params["exclude_id"] = exclude_id

        sql = f"""
        SELECT {_SELECT_COLUMNS}
        FROM businesses
        WHERE {where}
        ORDER BY CASE WHEN duplicate_of_id IS NULL THEN 0 ELSE 1 END, created_at, id
        """
        if limit:
            sql += " LIMIT :limit"
            params["limit"] = limit
        return [_row_to_record(row) for row in self.conn.execute(text(sql), params)]

    def find_first(self, **criteria: Any) -> Optional[Dict[str, Any]]:
        """First record matching any of the lookup criteria accepted by ``find_candidates``."""
        matches = self.find_candidates(limit=1, **criteria)
        return matches[0] if matches else None

    def list_records(
        self,
        *,
        suburb_contains: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 5000,
    ) -> List[Dict[str, Any]]:
        """Most recent records first, optionally filtered, for duplicate grouping."""
        conditions = ["1 = 1"]
        params: Dict[str, Any] = {"limit": limit}
        if suburb_contains:
            conditions.append("LOWER(suburb) LIKE :suburb")
            params["suburb"] = f"%{suburb_contains.lower()}%"
        if category:
            conditions.append("category = :category")
            params["category"] = category

        sql = f"""
        SELECT {_SELECT_COLUMNS}
        FROM businesses
        WHERE {' AND '.join(conditions)}
        ORDER BY created_at DESC, id
        LIMIT :limit
        """
        return [_row_to_record(row) for row in self.conn.execute(text(sql), params)]

    def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a business from a candidate record, applying directory defaults."""
        name = record.get("name")
        if not name:
            raise ValueError("Business name is required")

        now = utcnow_db()
        values: Dict[str, Any] = {field: record.get(field) or None for field in BUSINESS_FIELDS}
        values.update(
            {
                "id": record.get("id") or str(uuid.uuid4()),
                "slug": generate_slug(name),
                "category": values["category"] or "General",
                "abn_status": values["abn_status"] or "NOT_PROVIDED",
                "source": values["source"] or "CSV",
                "approval_status": record.get("approval_status") or "PENDING",
                "quality_score": record.get("quality_score", 50),
                "duplicate_of_id": record.get("duplicate_of_id"),
                "created_at": now,
                "updated_at": now,
            }
        )
        values.update(lookup_keys(values))

        columns = list(values.keys())
        insert_sql = f"""
        INSERT INTO businesses ({', '.join(columns)})
        VALUES ({', '.join(':' + column for column in columns)})
        """
        self.conn.execute(text(insert_sql), values)
        return values

    def update_many(self, ids: Iterable[str], patch: Dict[str, Any]) -> int:
        """Apply the same patch to every id; returns the number of rows touched."""
        id_list = list(dict.fromkeys(ids))
        allowed = set(BUSINESS_FIELDS) | set(STATUS_FIELDS)
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"Cannot update unknown business fields: {sorted(unknown)}")
        if not id_list or not patch:
            return 0

        values = dict(patch)
        if {"phone", "email", "abn"} & set(values):
            if len(id_list) != 1:
                raise ValueError("Identifier fields can only be patched on a single record")
            current = self.get(id_list[0]) or {}
            merged = {**current, **values}
            keys = lookup_keys(merged)
            for key_column, field in (("phone_key", "phone"), ("email_key", "email"), ("abn_key", "abn")):
                if field in values:
                    values[key_column] = keys[key_column]
        values["updated_at"] = utcnow_db()

        set_clause = ", ".join(f"{column} = :set_{column}" for column in values)
        params = {f"set_{column}": value for column, value in values.items()}
        params["ids"] = id_list
        stmt = text(f"UPDATE businesses SET {set_clause} WHERE id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        return self.conn.execute(stmt, params).rowcount

    def repoint_duplicates(self, from_ids: Iterable[str], to_id: str) -> int:
        """Records archived as duplicates of ``from_ids`` now point at ``to_id``."""
        id_list = list(from_ids)
        if not id_list:
            return 0
        stmt = text(
            "UPDATE businesses SET duplicate_of_id = :to_id, updated_at = :now WHERE duplicate_of_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        return self.conn.execute(stmt, {"to_id": to_id, "now": utcnow_db(), "ids": id_list}).rowcount

    def reassign_relations(self, from_ids: Iterable[str], to_id: str) -> Dict[str, int]:
        """Point every dependent relation row of ``from_ids`` at ``to_id``."""
        id_list = list(from_ids)
        moved: Dict[str, int] = {}
        for table in RELATION_TABLES:
            if not id_list:
                moved[table] = 0
                continue
            stmt = text(f"UPDATE {table} SET business_id = :to_id WHERE business_id IN :ids").bindparams(
                bindparam("ids", expanding=True)
            )
            moved[table] = self.conn.execute(stmt, {"to_id": to_id, "ids": id_list}).rowcount
        return moved


def run_in_transaction(fn: Callable[[BusinessStore], T], engine: Optional[Engine] = None) -> T:
    """Run ``fn`` against a store whose writes commit together or not at all."""
    engine = engine or get_engine()
    with engine.begin() as conn:
        return fn(BusinessStore(conn))


@contextmanager
def open_store(engine: Optional[Engine] = None) -> Iterator[BusinessStore]:
    """Read-only store access."""
    engine = engine or get_engine()
    with engine.connect() as conn:
        yield BusinessStore(conn)
