import asyncio
import time

import pytest

from api.app.config import Settings
from api.app.models import Document


class FakeSubscription:
    def __init__(self, store, collection, on_change, on_error):
        self.store = store
        self.collection = collection
        self.on_change = on_change
        self.on_error = on_error
        self.cancelled = False

    @property
    def active(self):
        return not self.cancelled

    def cancel(self):
        self.cancelled = True


class FakeStore:
    """内存文档存储：投递由测试显式触发，便于断言“无乐观更新”"""

    def __init__(self):
        self.subscriptions = []
        self.inserts = []
        self.deletes = []
        self.insert_gate: asyncio.Event | None = None
        self.fail_insert = False
        self.fail_delete = False

    def subscribe(self, collection, on_change, on_error):
        sub = FakeSubscription(self, collection, on_change, on_error)
        self.subscriptions.append(sub)
        return sub

    def active(self, collection=None):
        return [
            s for s in self.subscriptions
            if s.active and (collection is None or s.collection == collection)
        ]

    def deliver(self, docs, sub=None):
        for s in [sub] if sub else self.active():
            s.on_change(list(docs))

    def fail(self, err, sub=None):
        for s in [sub] if sub else self.active():
            s.on_error(err)

    async def insert(self, collection, fields):
        self.inserts.append((collection, fields))
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.fail_insert:
            raise RuntimeError("insert failed")
        return f"doc{len(self.inserts)}"

    async def delete_by_id(self, collection, doc_id):
        self.deletes.append((collection, doc_id))
        if self.fail_delete:
            raise RuntimeError("delete failed")


def doc(doc_id, pages, timestamp):
    return Document(id=doc_id, data={"pages": pages, "timestamp": timestamp})


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings():
    return Settings(app_id="test-app", auth_secret="test_secret", timezone="UTC")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sqlite_settings(tmp_path):
    return Settings(
        app_id="test-app",
        auth_secret="test_secret",
        timezone="UTC",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/wird.db",
    )
