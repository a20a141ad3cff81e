"""
Wird API 入口

说明：
- 注册认证与阅读记录路由（HTTP + WebSocket）
- 生命周期：启动时建表、创建文档存储与会话注册表；关闭时取消全部订阅并释放引擎
- 接入 Sentry、Prometheus 指标与链路追踪中间件
- 全局异常处理：返回统一结构的 JSON 错误
"""
import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from .auth import router as auth_router
from .config import Settings, load_settings
from .db import ensure_schema, make_engine
from .readings import router as readings_router
from .readings import ws_router as readings_ws_router
from .session import SessionRegistry
from .store import SqlDocumentStore
from .tracing import init_tracer, tracer_middleware

logger = logging.getLogger(__name__)

settings = load_settings()
if settings.sentry_dsn:
    sentry_sdk.init(dsn=settings.sentry_dsn)


async def init_state(app: FastAPI, settings: Settings):
    engine = make_engine(settings.database_url)
    await ensure_schema(engine)
    store = SqlDocumentStore(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.sessions = SessionRegistry(store, settings)
    logger.info(f"[Main] Started app_id={settings.app_id}")


async def shutdown_state(app: FastAPI):
    app.state.sessions.close_all()
    app.state.store.close()
    await app.state.engine.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_state(app, app.state.settings)
    try:
        yield
    finally:
        await shutdown_state(app)


app = FastAPI(redirect_slashes=False, lifespan=lifespan)
app.state.settings = settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)
init_tracer(settings.service_name)
app.middleware("http")(tracer_middleware)
Instrumentator().instrument(app).expose(app)
app.include_router(auth_router)
app.include_router(readings_router)
app.include_router(readings_ws_router)


@app.exception_handler(HTTPException)
async def http_exc_handler(request: Request, exc: HTTPException):
    code = str(exc.detail) if isinstance(exc.detail, str) else "http_error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": {"code": code, "message": code}},
    )


@app.exception_handler(Exception)
async def generic_exc_handler(request: Request, exc: Exception):
    logger.exception(f"[Main] Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "error": {"code": "internal_error", "message": "internal_error"},
        },
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/")
def root():
    return {"status": "ok", "service": "wird-api"}


@app.get("/error")
def error():
    raise RuntimeError("intentional")
