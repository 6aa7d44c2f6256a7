"""
Document store: generic find / create / update / count / publish over the
SQLite tables, plus after-write hooks.

Structured sub-records live in JSON text columns and are decoded on read.
Writes to orders.extra are always merged into the stored bag inside a single
IMMEDIATE transaction, so concurrent writers never drop each other's keys.
"""

import copy
import json
import logging
import sqlite3
from datetime import datetime
from typing import Callable

from marketpay.database import get_db
from marketpay.models.schemas import merge_extra

logger = logging.getLogger(__name__)

# entity -> (table, {json column: empty value})
ENTITIES = {
    "store": ("stores", {"settings": {}, "fee_overrides": None}),
    "store_user": ("store_users", {}),
    "product": ("products", {"prices": []}),
    "order": (
        "orders",
        {
            "payment_attempts": [],
            "line_items": [],
            "shipping_address": {},
            "extra": {},
        },
    ),
}

WriteHook = Callable[[str, str, dict], None]


class DocumentNotFoundError(Exception):
    """The requested document does not exist."""
    pass


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class DocumentStore:
    """Generic document operations scoped by entity type."""

    def __init__(self):
        self._hooks: list[WriteHook] = []
        self._columns: dict[str, set[str]] = {}

    # ── Hooks ─────────────────────────────────────────────

    def use(self, hook: WriteHook) -> None:
        """Register a hook called as hook(entity, action, doc) after each create/update."""
        self._hooks.append(hook)

    def _run_hooks(self, entity: str, action: str, doc: dict) -> None:
        for hook in self._hooks:
            try:
                hook(entity, action, doc)
            except Exception:
                logger.exception(
                    "Write hook failed (entity=%s, action=%s, id=%s)",
                    entity, action, doc.get("id"),
                )

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _entity(entity: str) -> tuple[str, dict]:
        try:
            return ENTITIES[entity]
        except KeyError:
            raise ValueError(f"Unknown entity: {entity}")

    def _table_columns(self, db: sqlite3.Connection, table: str) -> set[str]:
        if table not in self._columns:
            rows = db.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = {row["name"] for row in rows}
        return self._columns[table]

    def _check_columns(self, db: sqlite3.Connection, table: str, names) -> None:
        unknown = set(names) - self._table_columns(db, table)
        if unknown:
            raise ValueError(f"Unknown fields for {table}: {', '.join(sorted(unknown))}")

    @staticmethod
    def _decode(row: sqlite3.Row, json_fields: dict) -> dict:
        doc = dict(row)
        for name, empty in json_fields.items():
            if name not in doc:
                continue
            raw = doc[name]
            if raw is None or raw == "":
                doc[name] = copy.deepcopy(empty)
                continue
            try:
                doc[name] = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("Undecodable JSON column %s (id=%s)", name, doc.get("id"))
                doc[name] = copy.deepcopy(empty)
        return doc

    @staticmethod
    def _encode(data: dict, json_fields: dict) -> dict:
        encoded = {}
        for name, value in data.items():
            if name in json_fields and value is not None:
                encoded[name] = json.dumps(value, ensure_ascii=False)
            else:
                encoded[name] = value
        return encoded

    @staticmethod
    def _where(filters: dict | None) -> tuple[str, list]:
        if not filters:
            return "", []
        clauses, params = [], []
        for name, value in filters.items():
            if value is None:
                clauses.append(f"{name} IS NULL")
            else:
                clauses.append(f"{name} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    def _populate(self, db: sqlite3.Connection, entity: str, doc: dict, populate) -> dict:
        if "users" in populate and entity == "store":
            rows = db.execute(
                "SELECT * FROM store_users WHERE store_id = ? ORDER BY id",
                (doc["id"],),
            ).fetchall()
            doc["users"] = [dict(r) for r in rows]
        if "store" in populate and entity == "order":
            doc["store"] = None
            if doc.get("store_id") is not None:
                row = db.execute(
                    "SELECT * FROM stores WHERE id = ?", (doc["store_id"],)
                ).fetchone()
                if row:
                    store = self._decode(row, ENTITIES["store"][1])
                    doc["store"] = self._populate(db, "store", store, ("users",))
        return doc

    # ── Reads ─────────────────────────────────────────────

    def find_one(self, entity: str, doc_id: int, populate=()) -> dict | None:
        """Fetch one document by id; populate may name 'store' (orders) or 'users' (stores)."""
        table, json_fields = self._entity(entity)
        db = get_db()
        try:
            row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (doc_id,)).fetchone()
            if not row:
                return None
            return self._populate(db, entity, self._decode(row, json_fields), populate)
        finally:
            db.close()

    def find(
        self,
        entity: str,
        filters: dict | None = None,
        fields: list[str] | None = None,
        limit: int | None = None,
        populate=(),
    ) -> list[dict]:
        """Fetch documents matching equality filters, optionally selecting fields."""
        table, json_fields = self._entity(entity)
        db = get_db()
        try:
            self._check_columns(db, table, (filters or {}).keys())
            if fields:
                self._check_columns(db, table, fields)
                columns = ", ".join(["id"] + [f for f in fields if f != "id"])
            else:
                columns = "*"
            where, params = self._where(filters)
            sql = f"SELECT {columns} FROM {table}{where} ORDER BY id"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(int(limit))
            rows = db.execute(sql, params).fetchall()
            return [
                self._populate(db, entity, self._decode(row, json_fields), populate)
                for row in rows
            ]
        finally:
            db.close()

    def count(self, entity: str, filters: dict | None = None) -> int:
        table, _ = self._entity(entity)
        db = get_db()
        try:
            self._check_columns(db, table, (filters or {}).keys())
            where, params = self._where(filters)
            row = db.execute(
                f"SELECT COUNT(*) AS cnt FROM {table}{where}", params
            ).fetchone()
            return row["cnt"]
        finally:
            db.close()

    # ── Writes ────────────────────────────────────────────

    def create(self, entity: str, data: dict) -> dict:
        """Insert a document and return it as stored."""
        table, json_fields = self._entity(entity)
        now = _now()
        values = {"created_at": now, "updated_at": now, **data}
        db = get_db()
        try:
            self._check_columns(db, table, values.keys())
            encoded = self._encode(values, json_fields)
            names = list(encoded.keys())
            placeholders = ", ".join("?" for _ in names)
            cursor = db.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                [encoded[n] for n in names],
            )
            db.commit()
            row = db.execute(
                f"SELECT * FROM {table} WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            doc = self._decode(row, json_fields)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._run_hooks(entity, "create", doc)
        return doc

    def update(self, entity: str, doc_id: int, data: dict) -> dict:
        """
        Update fields of a document and return it as stored.

        For orders, an 'extra' value is merged into the stored bag rather than
        replacing it.

        Raises:
            DocumentNotFoundError: no document with this id.
        """
        table, json_fields = self._entity(entity)
        db = get_db()
        try:
            self._check_columns(db, table, data.keys())
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (doc_id,)).fetchone()
            if not row:
                raise DocumentNotFoundError(f"{entity} {doc_id} not found")

            values = dict(data)
            if "extra" in values and "extra" in json_fields:
                current = self._decode(row, json_fields).get("extra")
                values["extra"] = merge_extra(current, values["extra"])
            values["updated_at"] = _now()

            encoded = self._encode(values, json_fields)
            assignments = ", ".join(f"{name} = ?" for name in encoded)
            db.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [*encoded.values(), doc_id],
            )
            db.commit()
            row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (doc_id,)).fetchone()
            doc = self._decode(row, json_fields)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._run_hooks(entity, "update", doc)
        return doc

    def merge_extra(self, order_id: int, *patches) -> dict:
        """
        Atomically read-merge-write an order's extra bag.

        Returns the merged bag.

        Raises:
            DocumentNotFoundError: the order does not exist.
        """
        table, json_fields = self._entity("order")
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (order_id,)).fetchone()
            if not row:
                raise DocumentNotFoundError(f"order {order_id} not found")
            merged = merge_extra(self._decode(row, json_fields).get("extra"), *patches)
            db.execute(
                f"UPDATE {table} SET extra = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged, ensure_ascii=False), _now(), order_id),
            )
            db.commit()
            row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (order_id,)).fetchone()
            doc = self._decode(row, json_fields)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._run_hooks("order", "update", doc)
        return merged

    def publish(self, entity: str, doc_id: int) -> None:
        """Mark a document as published so it is visible outside draft state."""
        table, _ = self._entity(entity)
        db = get_db()
        try:
            cursor = db.execute(
                f"UPDATE {table} SET published_at = ? WHERE id = ?",
                (_now(), doc_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise DocumentNotFoundError(f"{entity} {doc_id} not found")
        finally:
            db.close()
