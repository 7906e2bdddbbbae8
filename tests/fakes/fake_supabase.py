"""In-memory stand-in for the supabase-py client used in behavioural tests.

Covers the PostgREST builder calls the engine makes (select / insert /
update / upsert with eq, is_, in_, or_, ilike, order, limit, single), the
``rpc`` call and ``storage.from_(bucket)``. Every ``execute`` runs under a
lock, so upserts are atomic across threads like they are in Postgres.
"""

import copy
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID, uuid4

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _norm(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


def like_to_regex(pattern: str) -> re.Pattern:
    """Translate a LIKE pattern (with backslash escapes) into a regex."""
    out = ""
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out += re.escape(pattern[i + 1])
            i += 2
            continue
        if ch == "%":
            out += ".*"
        elif ch == "_":
            out += "."
        else:
            out += re.escape(ch)
        i += 1
    return re.compile(out, re.IGNORECASE | re.DOTALL)


class FakeResponse:
    def __init__(self, data: Any, count: int | None = None):
        self.data = data
        self.count = count


class FakeQuery:
    """One chained PostgREST request against a fake table."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list[Callable[[dict[str, Any]], bool]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._single = False
        self._on_conflict: str | None = None
        self._ignore_duplicates = False

    # Operations
    def select(self, *_columns: str, **_kwargs: Any) -> "FakeQuery":
        return self

    def insert(self, data: Any) -> "FakeQuery":
        self._op, self._payload = "insert", data
        return self

    def update(self, data: dict[str, Any]) -> "FakeQuery":
        self._op, self._payload = "update", data
        return self

    def upsert(self, data: Any, on_conflict: str = "id", ignore_duplicates: bool = False, **_kwargs: Any) -> "FakeQuery":
        self._op, self._payload = "upsert", data
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def delete(self) -> "FakeQuery":
        self._op = "delete"
        return self

    # Filters
    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: _norm(row.get(column)) == _norm(value))
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: _norm(row.get(column)) != _norm(value))
        return self

    def is_(self, column: str, value: Any) -> "FakeQuery":
        if value in ("null", None):
            self._filters.append(lambda row: row.get(column) is None)
        else:
            self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values: list[Any]) -> "FakeQuery":
        wanted = {_norm(v) for v in values}
        self._filters.append(lambda row: _norm(row.get(column)) in wanted)
        return self

    def ilike(self, column: str, pattern: str) -> "FakeQuery":
        regex = like_to_regex(pattern)
        self._filters.append(lambda row: bool(regex.fullmatch(str(row.get(column) or ""))))
        return self

    def or_(self, expression: str) -> "FakeQuery":
        clauses = []
        for part in expression.split(","):
            column, operator, pattern = part.split(".", 2)
            if operator != "ilike":
                raise NotImplementedError(f"or_ operator {operator}")
            clauses.append((column, like_to_regex(pattern)))
        self._filters.append(
            lambda row: any(regex.fullmatch(str(row.get(col) or "")) for col, regex in clauses)
        )
        return self

    # Modifiers
    def order(self, column: str, desc: bool = False, **_kwargs: Any) -> "FakeQuery":
        self._order.append((column, desc))
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def single(self) -> "FakeQuery":
        self._single = True
        return self

    def execute(self) -> FakeResponse:
        with self.db.lock:
            self.db.calls.append((self.table_name, self._op))
            failure = self.db.failures.get(self.table_name)
            if failure is not None:
                raise failure
            data = getattr(self, f"_execute_{self._op}")()

        if self._single:
            return FakeResponse(data[0] if data else None)
        return FakeResponse(data, count=len(data))

    def _matching(self) -> list[dict[str, Any]]:
        return [row for row in self.db.rows(self.table_name) if all(f(row) for f in self._filters)]

    def _execute_select(self) -> list[dict[str, Any]]:
        rows = self._matching()
        for column, desc in reversed(self._order):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=desc)
        if self._limit is not None:
            rows = rows[: self._limit]
        return copy.deepcopy(rows)

    def _execute_insert(self) -> list[dict[str, Any]]:
        payload = self._payload if isinstance(self._payload, list) else [self._payload]
        return [copy.deepcopy(self.db.add(self.table_name, row)) for row in payload]

    def _execute_update(self) -> list[dict[str, Any]]:
        rows = self._matching()
        for row in rows:
            row.update(copy.deepcopy(self._payload))
        return copy.deepcopy(rows)

    def _execute_delete(self) -> list[dict[str, Any]]:
        rows = self._matching()
        table = self.db.rows(self.table_name)
        for row in rows:
            table.remove(row)
        return copy.deepcopy(rows)

    def _execute_upsert(self) -> list[dict[str, Any]]:
        payload = self._payload if isinstance(self._payload, list) else [self._payload]
        keys = [k.strip() for k in (self._on_conflict or "id").split(",")]
        written = []
        for item in payload:
            existing = next(
                (
                    row
                    for row in self.db.rows(self.table_name)
                    if all(_norm(row.get(k)) == _norm(item.get(k)) for k in keys)
                ),
                None,
            )
            if existing is None:
                written.append(copy.deepcopy(self.db.add(self.table_name, item)))
            elif not self._ignore_duplicates:
                existing.update(copy.deepcopy(item))
                written.append(copy.deepcopy(existing))
        return written


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: dict[str, Any]):
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        with self.db.lock:
            self.db.rpc_calls.append((self.name, self.params))
        handler = self.db.rpc_handlers.get(self.name)
        if handler is None:
            return FakeResponse([])
        if isinstance(handler, BaseException):
            raise handler
        return FakeResponse(handler(self.params) if callable(handler) else copy.deepcopy(handler))


class FakeBucket:
    def __init__(self, db: "FakeSupabase", bucket: str):
        self.db = db
        self.bucket = bucket

    def download(self, path: str) -> bytes:
        try:
            return self.db.objects[(self.bucket, path)]
        except KeyError:
            raise RuntimeError(f"Object not found: {self.bucket}/{path}") from None

    def upload(self, path: str, content: bytes, file_options: dict[str, Any] | None = None) -> dict[str, Any]:
        self.db.objects[(self.bucket, path)] = content
        return {"path": path}

    def get_public_url(self, path: str) -> str:
        return f"https://test.supabase.co/storage/v1/object/public/{self.bucket}/{path}"


class FakeStorage:
    def __init__(self, db: "FakeSupabase"):
        self.db = db

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self.db, bucket)


class FakeSupabase:
    """Tables are lists of dict rows; ``id`` and ``created_at`` are filled on insert."""

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None):
        self.lock = threading.RLock()
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.failures: dict[str, Exception] = {}
        self.rpc_handlers: dict[str, Any] = {}
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.objects: dict[tuple[str, str], bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.storage = FakeStorage(self)
        self._tick = 0
        for name, rows in (tables or {}).items():
            for row in rows:
                self.add(name, row)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def add(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid4()))
        self._tick += 1
        stored.setdefault("created_at", (_BASE_TIME + timedelta(seconds=self._tick)).isoformat())
        self.rows(table).append(stored)
        return stored

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: dict[str, Any] | None = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})
