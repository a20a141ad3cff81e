"""
阅读列表同步投影

职责：
- 订阅当前用户的阅读集合，维护按时间倒序排列的内存列表与总页数
- 每次投递都是完整快照：整体替换列表（不做增量合并），再按 timestamp 倒序排序
- 用户 id 变化时取消旧订阅、建立新订阅；旧订阅迟到的投递一律丢弃

错误处理：
- 订阅失败只记录日志，保留最后一次成功的列表，不清空
- `is_loading` 在首次投递成功或失败后都会置为 False
"""
import logging
from typing import Callable, List, Optional

from .aggregator import total_pages
from .config import Settings
from .models import Document, ReadingEntry
from .store import DocumentStore, Subscription

logger = logging.getLogger(__name__)


class ReadingProjection:
    def __init__(self, store: Optional[DocumentStore], settings: Settings):
        self.store = store
        self.settings = settings
        self.user_id: Optional[str] = None
        self.readings: List[ReadingEntry] = []
        self.total_pages = 0
        self.is_loading = True
        self.failed = False
        self._subscription: Optional[Subscription] = None
        self._listeners: List[Callable[["ReadingProjection"], None]] = []

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def add_listener(self, callback: Callable[["ReadingProjection"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def activate(self, user_id: Optional[str]):
        if user_id is not None and user_id == self.user_id and self.active:
            return
        self.deactivate()
        if user_id != self.user_id:
            # 换用户时不能残留上一个用户的数据
            self.readings = []
            self.total_pages = 0
            self.is_loading = True
        self.user_id = user_id
        if self.store is None or not user_id:
            self.is_loading = False
            return
        path = self.settings.collection_path(user_id)
        self.failed = False
        sub_ref: List[Subscription] = []
        sub_ref.append(
            self.store.subscribe(
                path,
                lambda docs: self._on_change(sub_ref[0], docs),
                lambda err: self._on_error(sub_ref[0], err),
            )
        )
        self._subscription = sub_ref[0]
        logger.info(f"[Projection] Subscribed to {path}")

    def deactivate(self):
        if self._subscription is not None:
            self._subscription.cancel()
            logger.info(f"[Projection] Unsubscribed from {self._subscription.collection}")
            self._subscription = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.deactivate()

    def _on_change(self, sub: Subscription, docs: List[Document]):
        if sub is not self._subscription:
            return
        entries = []
        for doc in docs:
            entry = ReadingEntry.from_document(doc)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        self.readings = entries
        self.total_pages = total_pages(entries)
        self.is_loading = False
        self._emit()

    def _on_error(self, sub: Subscription, err: Exception):
        if sub is not self._subscription:
            return
        logger.error(f"[Projection] Failed to fetch readings: {err}")
        self.failed = True
        self.is_loading = False
        self._emit()

    def _emit(self):
        for cb in list(self._listeners):
            try:
                cb(self)
            except Exception:
                logger.exception("[Projection] Listener failed")
