"""
阅读记录与视图模型

- `Document`：文档存储返回的原始文档（id + 字段字典）
- `ReadingEntry`：单条阅读记录（页数 + 毫秒时间戳），创建后不可变
- `TrackerView`：展示层消费的整体状态，序列化为 camelCase
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# 留出一天余量，任意时区换算本地日期都不会越界
_MIN_TIMESTAMP = int(datetime(1, 1, 2, tzinfo=timezone.utc).timestamp() * 1000)
_MAX_TIMESTAMP = int(datetime(9999, 12, 30, tzinfo=timezone.utc).timestamp() * 1000)


@dataclass(frozen=True)
class Document:
    id: str
    data: dict = field(default_factory=dict)


class ReadingEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    pages: int
    timestamp: int

    @classmethod
    def from_document(cls, doc: Document) -> Optional["ReadingEntry"]:
        """
        将存储文档转换为阅读记录

        旧版客户端把时间戳写在 `date` 字段，这里兼容读取。
        字段缺失、无法转为整数或时间戳超出日期范围时返回 None。
        """
        raw_ts = doc.data.get("timestamp", doc.data.get("date"))
        try:
            timestamp = int(raw_ts)
            if not _MIN_TIMESTAMP <= timestamp <= _MAX_TIMESTAMP:
                raise ValueError(f"timestamp out of range: {timestamp}")
            return cls(id=doc.id, pages=int(doc.data["pages"]), timestamp=timestamp)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            logger.warning(f"[Models] Skipping malformed reading document id={doc.id}")
            return None


class ViewEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    pages: int
    timestamp: int
    date: str


class TrackerView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    ready: bool = False
    readings: List[ViewEntry] = []
    total_pages: int = 0
    today_pages: int = 0
    is_loading: bool = True
    is_adding: bool = False
    pages_input: str = ""
