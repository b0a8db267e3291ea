from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from core.access_gate import FORMAT_CLASH, FORMAT_UNIVERSAL, check_subscription_access
from core.auth import get_current_user, require_admin
from core.config import cfg, API_BASE
from core.config_renderer import render_config
from core.db import DB
from core.errors import ServiceError
from core.subscription_service import (
    RESET_TYPE_ADMIN,
    RESET_TYPE_MANUAL,
    ensure_user_subscription,
    get_subscription_by_user,
    list_devices,
    remove_device,
    rotate_subscription_url,
    subscription_to_dict,
)
from .base import success_response, error_response, service_http_error


router = APIRouter(prefix="/subscription", tags=["订阅"])
# 客户端拉取配置，仅凭订阅地址鉴权
public_router = APIRouter(tags=["订阅拉取"])

_MEDIA_TYPES = {
    FORMAT_CLASH: "text/yaml; charset=utf-8",
    FORMAT_UNIVERSAL: "text/plain; charset=utf-8",
}


class ResetRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class AdminResetRequest(BaseModel):
    user_id: str = Field(..., max_length=255)
    reason: str = Field(default="", max_length=500)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else ""


def _subscription_links(url: str) -> dict:
    site = str(cfg.get("subscription.site_url", "") or "").rstrip("/")
    return {
        "clash_url": f"{site}{API_BASE}/subscriptions/clash/{url}",
        "universal_url": f"{site}{API_BASE}/subscriptions/universal/{url}",
    }


def _serve(request: Request, url: str, fmt: str, device_id: str = ""):
    session = DB.get_session()
    try:
        result = check_subscription_access(
            session,
            url,
            user_agent=request.headers.get("User-Agent", ""),
            ip_address=_client_ip(request),
            device_id=device_id or request.headers.get("X-Device-ID", ""),
            fmt=fmt,
        )
        sub = result["subscription"]
        body = render_config(session, sub, fmt)
    except ServiceError as e:
        return PlainTextResponse(e.message, status_code=e.status_code)
    finally:
        session.close()

    headers = {"Profile-Update-Interval": "24"}
    if sub.expire_time:
        headers["Subscription-Userinfo"] = f"upload=0; download=0; total=0; expire={int(sub.expire_time.timestamp())}"
    return PlainTextResponse(body, media_type=_MEDIA_TYPES[fmt], headers=headers)


@public_router.get("/subscriptions/clash/{url}", summary="Clash 订阅配置")
async def fetch_clash(url: str, request: Request, device_id: str = Query("", max_length=128)):
    return _serve(request, url, FORMAT_CLASH, device_id)


@public_router.get("/subscriptions/universal/{url}", summary="通用订阅（Base64）")
async def fetch_universal(url: str, request: Request, device_id: str = Query("", max_length=128)):
    return _serve(request, url, FORMAT_UNIVERSAL, device_id)


@public_router.get("/subscribe/{url}", summary="订阅配置（默认 Clash）")
async def fetch_default(url: str, request: Request, device_id: str = Query("", max_length=128)):
    return _serve(request, url, FORMAT_CLASH, device_id)


@router.get("", summary="获取我的订阅")
async def my_subscription(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        sub = get_subscription_by_user(session, current_user.get("id"))
        if not sub:
            sub = ensure_user_subscription(session, current_user.get("id"))
            session.commit()
        data = subscription_to_dict(sub)
        data.update(_subscription_links(sub.subscription_url))
        return success_response(data)
    finally:
        session.close()


@router.post("/reset", summary="重置订阅地址")
async def reset_my_subscription(payload: ResetRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        sub = get_subscription_by_user(session, current_user.get("id"))
        if not sub:
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="订阅不存在"))
        reset = rotate_subscription_url(
            session,
            sub.id,
            actor=current_user.get("username", ""),
            reason=payload.reason,
            reset_type=RESET_TYPE_MANUAL,
        )
        data = _subscription_links(reset.new_subscription_url)
        data["devices_removed"] = reset.device_count_before
        return success_response(data, message="订阅地址已重置")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.post("/admin/reset", summary="管理员重置用户订阅地址")
async def admin_reset_subscription(payload: AdminResetRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        sub = get_subscription_by_user(session, payload.user_id)
        if not sub:
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="订阅不存在"))
        reset = rotate_subscription_url(
            session,
            sub.id,
            actor=current_user.get("username", ""),
            reason=payload.reason,
            reset_type=RESET_TYPE_ADMIN,
        )
        return success_response({"subscription_id": sub.id, "devices_removed": reset.device_count_before})
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.get("/devices", summary="我的设备列表")
async def my_devices(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        sub = get_subscription_by_user(session, current_user.get("id"))
        return success_response(list_devices(session, sub.id) if sub else [])
    finally:
        session.close()


@router.delete("/devices/{device_id}", summary="移除设备")
async def delete_device(device_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        sub = get_subscription_by_user(session, current_user.get("id"))
        if not sub:
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="订阅不存在"))
        remove_device(session, sub.id, device_id)
        return success_response(message="设备已移除")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()
