"""Shared pytest fixtures.

Services run against an in-memory stand-in for the pymongo async API. It
implements the subset the services call: atomic find_one_and_update with
upsert, unique and partial unique indexes raising DuplicateKeyError, and
failure injection for storage errors.
"""

import asyncio
import copy
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError

from labseq.config import Config
from labseq.core.core import Core

_MISSING = object()


def _get(doc: dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set(doc: dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    for part in parents:
        doc = doc.setdefault(part, {})
    doc[last] = value


def _value(doc: dict[str, Any], path: str) -> Any:
    value = _get(doc, path)
    return None if value is _MISSING else value


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    for path, condition in query.items():
        value = _get(doc, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if not _apply(op, value, arg):
                    return False
        elif (None if value is _MISSING else value) != condition:
            return False
    return True


def _apply(op: str, value: Any, arg: Any) -> bool:
    present = value is not _MISSING and value is not None
    match op:
        case "$ne":
            return (None if value is _MISSING else value) != arg
        case "$in":
            return (None if value is _MISSING else value) in arg
        case "$gte":
            return present and value >= arg
        case "$gt":
            return present and value > arg
        case "$lte":
            return present and value <= arg
        case "$lt":
            return present and value < arg
    raise NotImplementedError(op)


def _sort_key(doc: dict[str, Any], path: str) -> tuple[Any, ...]:
    # None sorts lowest, as in MongoDB
    value = _value(doc, path)
    return (0,) if value is None else (1, value)


def _sort(docs: list[dict[str, Any]], keys: list[tuple[str, int]]) -> list[dict[str, Any]]:
    result = list(docs)
    for path, direction in reversed(keys):
        result.sort(key=lambda d, p=path: _sort_key(d, p), reverse=direction < 0)
    return result


def _update(doc: dict[str, Any], update: dict[str, Any], inserting: bool) -> None:
    for op, fields in update.items():
        for path, arg in fields.items():
            match op:
                case "$set":
                    _set(doc, path, copy.deepcopy(arg))
                case "$setOnInsert":
                    if inserting:
                        _set(doc, path, copy.deepcopy(arg))
                case "$inc":
                    _set(doc, path, (_value(doc, path) or 0) + arg)
                case "$max":
                    current = _value(doc, path)
                    _set(doc, path, arg if current is None else max(current, arg))
                case "$push":
                    _set(doc, path, [*(_value(doc, path) or []), copy.deepcopy(arg)])
                case _:
                    raise NotImplementedError(op)


@dataclass
class _Index:
    fields: tuple[str, ...]
    unique: bool
    partial: dict[str, Any] | None


@dataclass
class FakeInsertResult:
    inserted_id: Any


@dataclass
class FakeUpdateResult:
    matched_count: int
    modified_count: int


@dataclass
class FakeDeleteResult:
    deleted_count: int


@dataclass
class FakeBulkWriteResult:
    matched_count: int
    modified_count: int


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key: str | list[tuple[str, int]], direction: int = 1) -> "FakeCursor":
        keys = [(key, direction)] if isinstance(key, str) else list(key)
        self._docs = _sort(self._docs, keys)
        return self

    def skip(self, count: int) -> "FakeCursor":
        self._skip = count
        return self

    def limit(self, count: int) -> "FakeCursor":
        self._limit = count
        return self

    async def __aiter__(self) -> AsyncGenerator[dict[str, Any]]:
        docs = self._docs[self._skip :]
        if self._limit:
            docs = docs[: self._limit]
        for doc in docs:
            yield copy.deepcopy(doc)


class FakeCollection:
    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: list[dict[str, Any]] = []
        self.indexes: list[_Index] = [_Index(("_id",), True, None)]
        self._failures: dict[str, list[Exception]] = {}

    def fail_on(self, operation: str, error: Exception | None = None, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).extend([error or AutoReconnect("connection lost")] * times)

    async def _enter(self, operation: str) -> None:
        # Yield to the loop so concurrent callers interleave between operations
        await asyncio.sleep(0)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _check_unique(self, candidate: dict[str, Any], ignore: dict[str, Any] | None = None) -> None:
        for index in self.indexes:
            if not index.unique:
                continue
            if index.partial is not None and not _matches(candidate, index.partial):
                continue
            key = tuple(_value(candidate, f) for f in index.fields)
            for doc in self.docs:
                if doc is ignore:
                    continue
                if index.partial is not None and not _matches(doc, index.partial):
                    continue
                if tuple(_value(doc, f) for f in index.fields) == key:
                    key_pattern = {f: 1 for f in index.fields}
                    key_value = dict(zip(index.fields, key, strict=True))
                    name = "_".join(f"{f}_1" for f in index.fields)
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: labseq.{self.name} index: {name} dup key: {key_value}",
                        11000,
                        {"keyPattern": key_pattern, "keyValue": key_value},
                    )

    async def create_index(self, keys: list[tuple[str, int]], **kwargs: Any) -> str:
        fields = tuple(field for field, _ in keys)
        self.indexes.append(_Index(fields, kwargs.get("unique", False), kwargs.get("partialFilterExpression")))
        return "_".join(f"{field}_{direction}" for field, direction in keys)

    async def insert_one(self, document: dict[str, Any]) -> FakeInsertResult:
        await self._enter("insert_one")
        doc = copy.deepcopy(document)
        doc.setdefault("_id", uuid4())
        self._check_unique(doc)
        self.docs.append(doc)
        return FakeInsertResult(inserted_id=doc["_id"])

    async def find_one(self, query: dict[str, Any] | None = None, sort: list[tuple[str, int]] | None = None) -> Any:
        await self._enter("find_one")
        docs = [d for d in self.docs if _matches(d, query or {})]
        if sort:
            docs = _sort(docs, sort)
        return copy.deepcopy(docs[0]) if docs else None

    def find(self, query: dict[str, Any] | None = None) -> FakeCursor:
        pending = self._failures.get("find")
        if pending:
            raise pending.pop(0)
        return FakeCursor([d for d in self.docs if _matches(d, query or {})])

    async def count_documents(self, query: dict[str, Any]) -> int:
        await self._enter("count_documents")
        return sum(1 for d in self.docs if _matches(d, query))

    async def update_one(self, query: dict[str, Any], update: dict[str, Any]) -> FakeUpdateResult:
        await self._enter("update_one")
        return self._update_one(query, update)

    def _update_one(self, query: dict[str, Any], update: dict[str, Any]) -> FakeUpdateResult:
        for doc in self.docs:
            if _matches(doc, query):
                changed = copy.deepcopy(doc)
                _update(changed, update, inserting=False)
                self._check_unique(changed, ignore=doc)
                modified = changed != doc
                doc.clear()
                doc.update(changed)
                return FakeUpdateResult(matched_count=1, modified_count=int(modified))
        return FakeUpdateResult(matched_count=0, modified_count=0)

    async def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Any:
        await self._enter("find_one_and_update")
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _update(doc, update, inserting=False)
                return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before
        if not upsert:
            return None
        doc = {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}
        doc["_id"] = uuid4()
        _update(doc, update, inserting=True)
        self._check_unique(doc)
        self.docs.append(doc)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None

    async def delete_one(self, query: dict[str, Any]) -> FakeDeleteResult:
        await self._enter("delete_one")
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[i]
                return FakeDeleteResult(deleted_count=1)
        return FakeDeleteResult(deleted_count=0)

    async def bulk_write(self, requests: list[Any], ordered: bool = True) -> FakeBulkWriteResult:
        await self._enter("bulk_write")
        matched = modified = 0
        for request in requests:
            # pymongo.UpdateOne keeps its arguments in _filter and _doc
            result = self._update_one(request._filter, request._doc)
            matched += result.matched_count
            modified += result.modified_count
        return FakeBulkWriteResult(matched_count=matched, modified_count=modified)


class FakeDatabase:
    def __init__(self) -> None:
        self._collections: dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name: str) -> FakeCollection:
        return self.get_collection(name)


@pytest.fixture
def config():
    """Config for a lab in India; local dates differ from UTC around midnight."""
    return Config(database_url="mongodb://localhost:27017/labseq_test", timezone="Asia/Kolkata")


@pytest.fixture
def database():
    return FakeDatabase()


@pytest_asyncio.fixture
async def core(config, database):
    """Started core wired to the in-memory database."""
    core = Core(config, database)
    async with core.lifespan():
        yield core


@pytest.fixture
def services(core):
    return core.services
