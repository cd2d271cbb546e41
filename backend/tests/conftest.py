"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import asyncio
import copy
import re
import sys
import uuid
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from bson.dbref import DBRef

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from middleware import RequestContext
from models import UserRole
from services.reporting_service import reporting_service


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


# ---------------------------------------------------------------------------
# In-memory stand-in for a Motor database
# ---------------------------------------------------------------------------

_MISSING = object()


def _path_values(doc, path):
    """All values found at a dotted path; lists fan out, DBRefs expose $id/$ref."""
    current = [doc]
    for part in path.split("."):
        nxt = []
        for value in current:
            if isinstance(value, DBRef):
                value = {"$id": value.id, "$ref": value.collection}
            if isinstance(value, dict):
                if part in value:
                    nxt.append(value[part])
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, DBRef):
                        item = {"$id": item.id, "$ref": item.collection}
                    if isinstance(item, dict) and part in item:
                        nxt.append(item[part])
        current = nxt
    flat = []
    for value in current:
        if isinstance(value, list):
            flat.extend(value)
        flat.append(value)
    return flat or [_MISSING]


def _match_condition(values, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            present = [v for v in values if v is not _MISSING]
            if op == "$in":
                ok = any(v in arg for v in present) or (None in arg and not present)
            elif op == "$nin":
                ok = not any(v in arg for v in present)
            elif op == "$ne":
                ok = all(v != arg for v in present) and not (arg is None and not present)
            elif op == "$exists":
                ok = bool(present) == bool(arg)
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                ok = any(isinstance(v, str) and re.search(arg, v, flags) for v in present)
            elif op == "$options":
                ok = True
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                cmp = {
                    "$lt": lambda a, b: a < b,
                    "$lte": lambda a, b: a <= b,
                    "$gt": lambda a, b: a > b,
                    "$gte": lambda a, b: a >= b,
                }[op]
                ok = any(v is not None and cmp(v, arg) for v in present)
            else:
                raise NotImplementedError(op)
            if not ok:
                return False
        return True
    if condition is None:
        return any(v is None or v is _MISSING for v in values)
    return any(v == condition for v in values if v is not _MISSING)


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, q) for q in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, q) for q in condition):
                return False
        elif not _match_condition(_path_values(doc, key), condition):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v and k != "_id"]
    if include:
        kept = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            kept["_id"] = doc["_id"]
        return kept
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def _sort_key(value):
    if value is None:
        return (0, "")
    return (1, value)


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, key, direction=1):
        if isinstance(key, list):
            for k, d in reversed(key):
                self._docs.sort(key=lambda doc: _sort_key(doc.get(k)), reverse=d < 0)
        else:
            self._docs.sort(key=lambda doc: _sort_key(doc.get(key)), reverse=direction < 0)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n or None
        return self

    def _window(self):
        docs = self._docs[self._skip:]
        if self._limit is not None:
            docs = docs[:self._limit]
        return docs

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = self._window()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


def _positional_index(doc, query, array_field):
    for key, condition in query.items():
        if key.startswith(array_field + "."):
            sub = key[len(array_field) + 1:]
            for i, item in enumerate(doc.get(array_field, [])):
                if _match_condition(_path_values(item, sub), condition):
                    return i
    return None


def _set_path(doc, path, value, query):
    parts = path.split(".")
    if len(parts) == 3 and parts[1] == "$":
        index = _positional_index(doc, query, parts[0])
        doc[parts[0]][index][parts[2]] = value
        return
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


class FakeCollection:
    """Just enough of a Motor collection for service tests. Every call yields to the loop."""

    def __init__(self, name):
        self.name = name
        self.docs = []
        self.writes = []

    async def insert_one(self, doc):
        await asyncio.sleep(0)
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None, sort=None):
        await asyncio.sleep(0)
        found = [d for d in self.docs if matches(d, query)]
        if sort:
            found = FakeCursor(found).sort(sort)._docs
        return _project(found[0], projection) if found else None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    def _apply(self, doc, query, update):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, copy.deepcopy(value), query)
        for path, value in update.get("$push", {}).items():
            items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
            doc.setdefault(path, []).extend(copy.deepcopy(items))
        for path, value in update.get("$inc", {}).items():
            doc[path] = doc.get(path, 0) + value

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, query):
                self._apply(doc, query, update)
                self.writes.append((query, update))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not k.startswith("$")}
            doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
            self._apply(doc, query, update)
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get("_id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        await asyncio.sleep(0)
        count = 0
        for doc in self.docs:
            if matches(doc, query):
                self._apply(doc, query, update)
                count += 1
        self.writes.append((query, update))
        return SimpleNamespace(matched_count=count, modified_count=count)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))

    async def create_index(self, *args, **kwargs):
        return None


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]


@pytest.fixture
def fake_db():
    """In-memory database patched in as the global database's handle."""
    db = FakeDB()
    with patch("database.database.get_db", return_value=db), \
            patch.object(reporting_service, "db", None):
        yield db


def make_ctx(role=UserRole.ADMIN, user_id=None, email=None, display_name=None):
    user_id = user_id or f"u-{role.value.lower()}"
    return RequestContext(
        user_id=user_id,
        email=email or f"{user_id}@sca.gov.pg",
        role=role,
        display_name=display_name,
    )


@pytest.fixture
def ctx_factory():
    return make_ctx
