"""
认证接口

- `/anonymous`：匿名登录，签发新的访问令牌
- `/token`：用预签发令牌换取访问令牌（绑定令牌中的用户）
- `/me`：当前用户
- `/logout`：登出，作废当前令牌并关闭该用户的追踪会话
"""
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request

from .identity import Identity, IdentityProvider, InvalidToken, decode_token, issue_token

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def require_user(request: Request, authorization: str = Header(None)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="unauthorized")
    token = authorization.split(" ", 1)[1]
    try:
        payload = decode_token(request.app.state.settings, token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="invalid_token")
    if request.app.state.sessions.is_revoked(payload, token):
        raise HTTPException(status_code=401, detail="invalid_token")
    return payload["sub"], token


def _tokens(identity, settings):
    return {
        "user": {"id": identity.user_id, "is_anonymous": identity.is_anonymous},
        "tokens": {"access_token": identity.token, "expires_in": settings.access_expire},
    }


@router.post("/anonymous")
async def sign_in_anonymously(request: Request):
    settings = request.app.state.settings
    identity = await IdentityProvider(settings).sign_in_anonymously()
    return {"status": "success", "data": _tokens(identity, settings)}


@router.post("/token")
async def sign_in_with_token(request: Request, body: dict = Body(...)):
    settings = request.app.state.settings
    token = body.get("token")
    if not token:
        raise HTTPException(status_code=400, detail="missing_token")
    try:
        identity = await IdentityProvider(settings).sign_in_with_token(token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="invalid_token")
    fresh = Identity(
        user_id=identity.user_id,
        token=issue_token(settings, identity.user_id, identity.is_anonymous),
        is_anonymous=identity.is_anonymous,
    )
    return {"status": "success", "data": _tokens(fresh, settings)}


@router.get("/me")
async def get_me(auth=Depends(require_user)):
    user_id, _ = auth
    return {"status": "success", "data": {"id": user_id}}


@router.post("/logout")
async def logout(request: Request, auth=Depends(require_user)):
    _, token = auth
    request.app.state.sessions.revoke(token)
    return {"status": "success"}
