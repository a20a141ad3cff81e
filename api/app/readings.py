"""
每日阅读记录接口

职责：
- `GET /api/v1/readings`：返回当前视图（列表、今日页数、总页数、加载 / 添加状态）
- `POST /api/v1/readings`：`{"pages": "<文本>"}`，添加一条记录
- `DELETE /api/v1/readings/{id}`：删除一条记录
- `WS /ws/readings?token=`：每次订阅投递后推送最新视图；
  同时接收 `{"type": "add", "pages": ...}` 与 `{"type": "delete", "id": ...}`

说明：
- 写接口只触发远端变更，返回时列表未必已更新；以订阅投递为准
- 被保护条件拒绝的命令不是错误：返回 200 与 `accepted: false`
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Body, Depends, Request, WebSocket, WebSocketDisconnect

from .auth import require_user
from .identity import InvalidToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/readings", tags=["readings"])
ws_router = APIRouter()


def _dump(session) -> dict:
    return session.view().model_dump(by_alias=True)


@router.get("")
async def get_readings(request: Request, auth=Depends(require_user)):
    _, token = auth
    session = await request.app.state.sessions.acquire(token)
    return {"status": "success", "data": _dump(session)}


@router.post("")
async def add_reading(request: Request, body: dict = Body(...), auth=Depends(require_user)):
    _, token = auth
    session = await request.app.state.sessions.acquire(token)
    pages = body.get("pages")
    accepted = await session.add_reading("" if pages is None else str(pages))
    return {
        "status": "success",
        "data": {"accepted": accepted, "pagesInput": session.commands.pages_input},
    }


@router.delete("/{reading_id}")
async def delete_reading(reading_id: str, request: Request, auth=Depends(require_user)):
    _, token = auth
    session = await request.app.state.sessions.acquire(token)
    accepted = await session.delete_reading(reading_id)
    return {"status": "success", "data": {"accepted": accepted}}


@ws_router.websocket("/ws/readings")
async def ws_readings(websocket: WebSocket):
    await websocket.accept()
    token = websocket.query_params.get("token") or websocket.query_params.get(
        "access_token"
    )
    if not token:
        await websocket.send_text(json.dumps({"type": "error", "code": "unauthorized"}))
        await websocket.close()
        return
    try:
        session = await websocket.app.state.sessions.acquire(token)
    except InvalidToken:
        await websocket.send_text(
            json.dumps({"type": "error", "code": "invalid_token"})
        )
        await websocket.close()
        return

    sessions = websocket.app.state.sessions
    user_id = session.user_id
    sessions.hold(user_id)
    outbox: asyncio.Queue = asyncio.Queue()
    remove = session.add_listener(lambda s: outbox.put_nowait(_dump(s)))
    outbox.put_nowait(_dump(session))

    async def pump():
        while True:
            view = await outbox.get()
            await websocket.send_text(json.dumps({"type": "view", "data": view}))

    sender = asyncio.create_task(pump())
    try:
        while True:
            msg = await websocket.receive_text()
            try:
                data = json.loads(msg)
            except ValueError:
                data = {}
            kind = data.get("type") if isinstance(data, dict) else None
            if kind == "add":
                pages = data.get("pages")
                accepted = await session.add_reading("" if pages is None else str(pages))
                await websocket.send_text(
                    json.dumps({"type": "ack", "op": "add", "accepted": accepted})
                )
            elif kind == "delete":
                accepted = await session.delete_reading(str(data.get("id") or ""))
                await websocket.send_text(
                    json.dumps({"type": "ack", "op": "delete", "accepted": accepted})
                )
            else:
                await websocket.send_text(
                    json.dumps({"type": "error", "code": "bad_message"})
                )
    except WebSocketDisconnect:
        pass
    finally:
        remove()
        sessions.unhold(user_id)
        sender.cancel()
        [result] = await asyncio.gather(sender, return_exceptions=True)
        if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
            logger.warning(f"[Readings WS] Sender stopped user={user_id}: {result}")
