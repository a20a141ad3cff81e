"""
阅读记录写命令

- `add_reading`：解析输入页数并插入一条记录；单飞保护，进行中的重复提交直接丢弃
- `delete_reading`：按 id 删除记录

两者都只改动远端集合，本地列表只会在下一次订阅投递时更新（不做乐观更新）。
失败只记录日志，不自动重试；添加失败时保留输入框内容以便用户重试。
"""
import logging
import re
import time
from typing import Callable, Optional

from prometheus_client import Counter

from .config import Settings
from .store import DocumentStore

logger = logging.getLogger(__name__)

READINGS_ADDED = Counter("wird_readings_added_total", "Reading entries inserted")
READINGS_DELETED = Counter("wird_readings_deleted_total", "Reading entries deleted")
COMMAND_REJECTED = Counter("wird_command_rejected_total", "Commands dropped by a guard", ["command", "reason"])
COMMAND_FAILED = Counter("wird_command_failed_total", "Commands whose store write failed", ["command"])

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_pages(value) -> Optional[int]:
    """按整数前缀解析页数：'12 pages' -> 12，'7.9' -> 7，'abc' -> None"""
    if value is None:
        return None
    m = _LEADING_INT.match(str(value))
    if not m:
        return None
    try:
        return int(m.group(1))
    except ValueError:
        # 超过解释器整数位数上限
        return None


def now_ms() -> int:
    return int(time.time() * 1000)


class ReadingCommands:
    def __init__(
        self,
        store: Optional[DocumentStore],
        settings: Settings,
        get_user_id: Callable[[], Optional[str]],
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.settings = settings
        self.get_user_id = get_user_id
        self.clock = clock
        self.pages_input = ""
        self.is_adding = False

    async def add_reading(self, pages_input: Optional[str] = None) -> bool:
        if pages_input is not None:
            self.pages_input = pages_input
        pages = parse_pages(self.pages_input)
        user_id = self.get_user_id()
        if pages is None or pages <= 0:
            COMMAND_REJECTED.labels("add", "invalid_pages").inc()
            return False
        if self.store is None or not user_id:
            COMMAND_REJECTED.labels("add", "no_identity").inc()
            return False
        if self.is_adding:
            COMMAND_REJECTED.labels("add", "in_flight").inc()
            return False
        self.is_adding = True
        try:
            path = self.settings.collection_path(user_id)
            doc_id = await self.store.insert(path, {"pages": pages, "timestamp": self.clock()})
            self.pages_input = ""
            READINGS_ADDED.inc()
            logger.info(f"[Commands] Added reading id={doc_id} pages={pages} user={user_id}")
            return True
        except Exception as e:
            COMMAND_FAILED.labels("add").inc()
            logger.error(f"[Commands] Error adding document: {e}")
            return False
        finally:
            self.is_adding = False

    async def delete_reading(self, reading_id: str) -> bool:
        user_id = self.get_user_id()
        if self.store is None or not user_id:
            COMMAND_REJECTED.labels("delete", "no_identity").inc()
            return False
        try:
            await self.store.delete_by_id(self.settings.collection_path(user_id), reading_id)
            READINGS_DELETED.inc()
            logger.info(f"[Commands] Deleted reading id={reading_id} user={user_id}")
            return True
        except Exception as e:
            COMMAND_FAILED.labels("delete").inc()
            logger.error(f"[Commands] Error deleting document: {e}")
            return False
