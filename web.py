from fastapi import FastAPI, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import json
from typing import Any
from apis.auth import router as auth_router
from apis.user import router as user_router
from apis.order import router as order_router
from apis.payment import router as payment_router
from apis.recharge import router as recharge_router
from apis.subscription import router as subscription_router, public_router as subscription_public_router
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.log import get_logger, set_trace_id
from core.events import log_event, E
from jobs.orders import start_order_sweep_worker, start_fulfillment_retry_worker
from jobs.outbox import start_outbox_worker

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="SubGate API",
    description="订阅售卖、支付履约与订阅配置分发服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    swagger_ui_parameters={
        "persistAuthorization": True,
        "withCredentials": True,
    },
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = set_trace_id(request.headers.get("X-Trace-Id", ""))
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    response.headers["X-Version"] = VERSION
    response.headers["Server"] = cfg.get("app_name", "SubGate")
    return response


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(auth_router)
api_router.include_router(user_router)
api_router.include_router(order_router)
api_router.include_router(payment_router)
api_router.include_router(recharge_router)
api_router.include_router(subscription_router)
api_router.include_router(subscription_public_router)
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    if cfg.get_bool("jobs.enabled", True):
        start_order_sweep_worker()
        start_fulfillment_retry_worker()
        start_outbox_worker()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, api_base=API_BASE)


@app.get("/healthz", tags=["默认"], include_in_schema=False)
async def healthz():
    return {"status": "ok", "version": VERSION}
