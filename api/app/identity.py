"""
身份提供方与启动引导

职责：
- `IdentityProvider`：签发 / 校验 HS256 JWT，支持匿名登录、令牌登录、登出，
  并在身份变化时通知监听者（`on_identity_change`）
- `IdentityBootstrap`：启动时无交互地取得稳定的用户 id
  - 有预签发令牌：用令牌登录（绑定令牌中的 `sub`）
  - 无令牌：匿名登录（生成新的随机用户 id）
  - 失败：记录日志，`ready=True, user_id=None`，此后不做任何读写

说明：
- 匿名身份的“恢复”即用之前签发的令牌再次登录
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from jose import JWTError, jwt

from .config import Settings

logger = logging.getLogger(__name__)


class InvalidToken(Exception):
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    token: str
    is_anonymous: bool = False


def issue_token(settings: Settings, user_id: str, anonymous: bool = False) -> str:
    now = int(time.time())
    return jwt.encode(
        {
            "sub": user_id,
            "anon": anonymous,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + settings.access_expire,
        },
        settings.auth_secret,
        algorithm="HS256",
    )


def decode_token(settings: Settings, token: str) -> dict:
    if not token:
        raise InvalidToken("empty token")
    try:
        payload = jwt.decode(token, settings.auth_secret, algorithms=["HS256"])
    except JWTError as e:
        raise InvalidToken(str(e)) from e
    if not payload.get("sub"):
        raise InvalidToken("missing subject")
    return payload


class IdentityProvider:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.current: Optional[Identity] = None
        self._listeners: List[Callable[[Optional[Identity]], None]] = []

    def on_identity_change(self, callback: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set_current(self, identity: Optional[Identity]):
        self.current = identity
        for cb in list(self._listeners):
            cb(identity)

    async def sign_in_anonymously(self) -> Identity:
        user_id = str(uuid.uuid4())
        identity = Identity(
            user_id=user_id,
            token=issue_token(self.settings, user_id, anonymous=True),
            is_anonymous=True,
        )
        logger.info(f"[Identity] Anonymous sign-in user={user_id}")
        self._set_current(identity)
        return identity

    async def sign_in_with_token(self, token: str) -> Identity:
        payload = decode_token(self.settings, token)
        identity = Identity(
            user_id=payload["sub"],
            token=token,
            is_anonymous=bool(payload.get("anon")),
        )
        logger.info(f"[Identity] Token sign-in user={identity.user_id}")
        self._set_current(identity)
        return identity

    def sign_out(self):
        if self.current is not None:
            logger.info(f"[Identity] Sign-out user={self.current.user_id}")
        self._set_current(None)


class IdentityBootstrap:
    def __init__(self, provider: IdentityProvider, token: Optional[str] = None):
        self.provider = provider
        self.token = token
        self.user_id: Optional[str] = None
        self.ready = False
        self._listeners: List[Callable[[Optional[str]], None]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def on_change(self, callback: Callable[[Optional[str]], None]):
        self._listeners.append(callback)

    async def start(self):
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.provider.on_identity_change(self._handle)
        if self.provider.current is not None:
            self._handle(self.provider.current)
            return
        try:
            if self.token:
                await self.provider.sign_in_with_token(self.token)
            else:
                await self.provider.sign_in_anonymously()
        except Exception as e:
            logger.error(f"[Identity] Error signing in: {e}")
            self._apply(None)

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle(self, identity: Optional[Identity]):
        self._apply(identity.user_id if identity else None)

    def _apply(self, user_id: Optional[str]):
        first = not self.ready
        changed = user_id != self.user_id
        self.user_id = user_id
        self.ready = True
        if first or changed:
            for cb in list(self._listeners):
                cb(user_id)
