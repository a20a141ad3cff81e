"""
文档存储与实时订阅

职责：
- `DocumentStore`：按集合路径组织文档，支持订阅 / 插入 / 按 id 删除
- `Subscription`：单个订阅的取消句柄，内部持有一个 asyncio.Queue 与一个泵任务，
  保证同一订阅内的快照按产生顺序依次投递
- `SqlDocumentStore`：基于 SQLAlchemy 异步引擎的实现，每次写入提交后
  重新读取该集合并向所有订阅者推送完整快照

说明：
- 订阅建立后立即投递一次初始快照
- 加载失败时调用 `on_error` 并终止该订阅，不做自动重试
"""
import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Set

from prometheus_client import Counter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from .models import Document

logger = logging.getLogger(__name__)

STORE_DELIVERIES = Counter("wird_store_deliveries_total", "Snapshots delivered to subscribers")
STORE_ERRORS = Counter("wird_store_subscription_errors_total", "Subscription load failures")

OnChange = Callable[[List[Document]], None]
OnError = Callable[[Exception], None]

_REFRESH = object()


class Subscription:
    def __init__(self, store: "DocumentStore", collection: str, on_change: OnChange, on_error: OnError):
        self.collection = collection
        self._store = store
        self._on_change = on_change
        self._on_error = on_error
        self.cancelled = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def active(self) -> bool:
        return not self.cancelled

    def refresh(self):
        if not self.cancelled:
            self._queue.put_nowait(_REFRESH)

    async def _pump(self):
        while True:
            await self._queue.get()
            if self.cancelled:
                return
            try:
                docs = await self._store.load(self.collection)
            except Exception as e:
                STORE_ERRORS.inc()
                logger.error(f"[Store] Snapshot load failed for {self.collection}: {e}")
                self.cancel()
                self._on_error(e)
                return
            if self.cancelled:
                return
            STORE_DELIVERIES.inc()
            try:
                self._on_change(docs)
            except Exception:
                logger.exception(f"[Store] Subscriber callback failed for {self.collection}")

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self._store._unregister(self)
        if self._task is not asyncio.current_task():
            self._task.cancel()


class DocumentStore(ABC):
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, collection: str, on_change: OnChange, on_error: OnError) -> Subscription:
        sub = Subscription(self, collection, on_change, on_error)
        self._subscribers.setdefault(collection, set()).add(sub)
        sub.refresh()
        return sub

    def _unregister(self, sub: Subscription):
        subs = self._subscribers.get(sub.collection)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            self._subscribers.pop(sub.collection, None)

    def notify(self, collection: str):
        for sub in list(self._subscribers.get(collection, set())):
            sub.refresh()

    def subscriber_count(self, collection: str) -> int:
        return len(self._subscribers.get(collection, set()))

    def close(self):
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.cancel()

    @abstractmethod
    async def load(self, collection: str) -> List[Document]:
        ...

    @abstractmethod
    async def insert(self, collection: str, fields: dict) -> str:
        ...

    @abstractmethod
    async def delete_by_id(self, collection: str, doc_id: str) -> None:
        ...


class SqlDocumentStore(DocumentStore):
    def __init__(self, engine: AsyncEngine):
        super().__init__()
        self.engine = engine

    async def load(self, collection: str) -> List[Document]:
        async with self.engine.connect() as conn:
            res = await conn.execute(
                text("SELECT id, data FROM documents WHERE collection = :c ORDER BY created_at, id"),
                {"c": collection},
            )
            rows = res.fetchall()
        return [Document(id=r[0], data=json.loads(r[1])) for r in rows]

    async def insert(self, collection: str, fields: dict) -> str:
        doc_id = uuid.uuid4().hex
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    "INSERT INTO documents(id, collection, data, created_at) VALUES (:id, :c, :data, :ts)"
                ),
                {
                    "id": doc_id,
                    "c": collection,
                    "data": json.dumps(fields),
                    "ts": int(time.time() * 1000),
                },
            )
        logger.info(f"[Store] INSERT collection={collection} id={doc_id}")
        self.notify(collection)
        return doc_id

    async def delete_by_id(self, collection: str, doc_id: str) -> None:
        async with self.engine.begin() as conn:
            res = await conn.execute(
                text("DELETE FROM documents WHERE collection = :c AND id = :id"),
                {"c": collection, "id": doc_id},
            )
        logger.info(f"[Store] DELETE collection={collection} id={doc_id} rowcount={res.rowcount}")
        self.notify(collection)
