"""
追踪会话：把身份引导、同步投影与写命令组装在一起

- `TrackerSession`：身份就绪后激活投影；身份变化时重新订阅；`view()` 生成展示层状态
- `SessionRegistry`：HTTP 层按用户缓存会话，同一用户的 HTTP 请求与 WebSocket
  连接共享一个投影与一个单飞保护；无 WebSocket 持有且空闲超过
  `session_idle_ttl` 的会话在下次 acquire 时回收；登出后令牌作废
"""
import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from .aggregator import local_date, today_pages
from .commands import ReadingCommands
from .config import Settings
from .identity import IdentityBootstrap, IdentityProvider, InvalidToken, decode_token
from .models import TrackerView, ViewEntry
from .projection import ReadingProjection
from .store import DocumentStore

logger = logging.getLogger(__name__)


class TrackerSession:
    def __init__(
        self,
        store: Optional[DocumentStore],
        settings: Settings,
        provider: Optional[IdentityProvider] = None,
        token: Optional[str] = None,
    ):
        self.settings = settings
        self.provider = provider or IdentityProvider(settings)
        self.bootstrap = IdentityBootstrap(
            self.provider, token if token is not None else settings.initial_auth_token
        )
        self.projection = ReadingProjection(store, settings)
        self.commands = ReadingCommands(store, settings, lambda: self.bootstrap.user_id)
        self.bootstrap.on_change(self._on_identity)

    @property
    def user_id(self) -> Optional[str]:
        return self.bootstrap.user_id

    async def start(self):
        await self.bootstrap.start()

    def close(self):
        self.bootstrap.stop()
        self.projection.deactivate()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def _on_identity(self, user_id: Optional[str]):
        self.projection.activate(user_id)

    def add_listener(self, callback: Callable[["TrackerSession"], None]) -> Callable[[], None]:
        return self.projection.add_listener(lambda _p: callback(self))

    async def add_reading(self, pages_input: Optional[str] = None) -> bool:
        return await self.commands.add_reading(pages_input)

    async def delete_reading(self, reading_id: str) -> bool:
        return await self.commands.delete_reading(reading_id)

    def view(self, now: Optional[datetime] = None) -> TrackerView:
        tz = self.settings.tzinfo
        readings = self.projection.readings
        return TrackerView(
            user_id=self.bootstrap.user_id,
            ready=self.bootstrap.ready,
            readings=[
                ViewEntry(
                    id=r.id,
                    pages=r.pages,
                    timestamp=r.timestamp,
                    date=local_date(r.timestamp, tz).isoformat(),
                )
                for r in readings
            ],
            total_pages=self.projection.total_pages,
            today_pages=today_pages(readings, now, tz),
            is_loading=(not self.bootstrap.ready) or self.projection.is_loading,
            is_adding=self.commands.is_adding,
            pages_input=self.commands.pages_input,
        )


class SessionRegistry:
    def __init__(
        self,
        store: Optional[DocumentStore],
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self._sessions: Dict[str, TrackerSession] = {}
        self._last_used: Dict[str, float] = {}
        self._holders: Dict[str, int] = {}
        self._revoked: Set[str] = set()

    def __len__(self):
        return len(self._sessions)

    def get(self, user_id: str) -> Optional[TrackerSession]:
        return self._sessions.get(user_id)

    @staticmethod
    def _token_key(payload: dict, token: str) -> str:
        return payload.get("jti") or token

    def is_revoked(self, payload: dict, token: str) -> bool:
        return self._token_key(payload, token) in self._revoked

    def revoke(self, token: str):
        payload = decode_token(self.settings, token)
        self._revoked.add(self._token_key(payload, token))
        self.release(payload["sub"])

    async def acquire(self, token: str) -> TrackerSession:
        payload = decode_token(self.settings, token)
        if self.is_revoked(payload, token):
            raise InvalidToken("token revoked")
        user_id = payload["sub"]
        self.evict_idle()
        session = self._sessions.get(user_id)
        if session is None:
            session = TrackerSession(self.store, self.settings, token=token)
            self._sessions[user_id] = session
            await session.start()
            logger.info(f"[Sessions] Opened session user={user_id} total={len(self._sessions)}")
        self._last_used[user_id] = self.clock()
        return session

    def hold(self, user_id: str):
        self._holders[user_id] = self._holders.get(user_id, 0) + 1

    def unhold(self, user_id: str):
        count = self._holders.get(user_id, 0) - 1
        if count > 0:
            self._holders[user_id] = count
        else:
            self._holders.pop(user_id, None)
        if user_id in self._sessions:
            self._last_used[user_id] = self.clock()

    def evict_idle(self):
        now = self.clock()
        idle = [
            user_id
            for user_id, used in self._last_used.items()
            if not self._holders.get(user_id) and now - used > self.settings.session_idle_ttl
        ]
        for user_id in idle:
            logger.info(f"[Sessions] Evicting idle session user={user_id}")
            self.release(user_id)

    def release(self, user_id: str):
        self._last_used.pop(user_id, None)
        self._holders.pop(user_id, None)
        session = self._sessions.pop(user_id, None)
        if session is not None:
            session.provider.sign_out()
            session.close()
            logger.info(f"[Sessions] Closed session user={user_id} total={len(self._sessions)}")

    def close_all(self):
        users: List[str] = list(self._sessions)
        for user_id in users:
            self.release(user_id)
