from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import ServiceError
from core.models.user import User as DBUser
from core.order_service import (
    ORDER_STATUS_PENDING,
    cancel_order,
    create_device_upgrade_order,
    create_order,
    get_order_by_no,
    list_orders,
    list_packages,
    mark_order_paid,
    order_payload,
    order_to_dict,
    quote_device_upgrade,
)
from core.payment_service import create_payment_for_order, reconcile_pending_order
from .base import success_response, error_response, service_http_error


router = APIRouter(prefix="/orders", tags=["订单"])


class CreateOrderRequest(BaseModel):
    package_id: str = Field(..., max_length=255)
    duration_months: int = Field(default=1, ge=1, le=60)
    coupon_code: str = Field(default="", max_length=50)
    use_balance: bool = False
    balance_amount: float = Field(default=0.0, ge=0)
    payment_method: str = Field(default="yipay", max_length=32)
    note: str = Field(default="", max_length=500)


class DeviceUpgradeRequest(BaseModel):
    additional_devices: int = Field(default=0, ge=0, le=100)
    additional_days: int = Field(default=0, ge=0, le=3650)
    use_balance: bool = False
    balance_amount: float = Field(default=0.0, ge=0)
    payment_method: str = Field(default="yipay", max_length=32)


class PayOrderRequest(BaseModel):
    payment_method: str = Field(default="yipay", max_length=32)


class CancelOrderRequest(BaseModel):
    reason: str = Field(default="", max_length=200)


class ManualPayRequest(BaseModel):
    external_txn_id: str = Field(default="", max_length=128)
    note: str = Field(default="", max_length=500)
    # 填写时按到账金额校验
    amount: Optional[float] = Field(default=None, ge=0)


def _load_user(session, current_user: dict) -> DBUser:
    user = session.query(DBUser).filter(DBUser.id == current_user.get("id")).first()
    if not user:
        raise HTTPException(status_code=404, detail=error_response(code=40400, message="用户不存在"))
    return user


def _with_payment(session, order, payment_method: str, user_id: str) -> dict:
    if order.status != ORDER_STATUS_PENDING:
        return order_payload(order)
    payment = create_payment_for_order(session, order.order_no, payment_method, user_id=user_id)
    return order_payload(order, payment)


@router.get("/packages", summary="获取可购买套餐")
async def get_packages():
    session = DB.get_session()
    try:
        return success_response(list_packages(session))
    finally:
        session.close()


@router.post("", summary="创建套餐订单")
async def create_package_order(payload: CreateOrderRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = _load_user(session, current_user)
        order = create_order(
            session,
            user,
            package_id=payload.package_id,
            duration_months=payload.duration_months,
            coupon_code=payload.coupon_code,
            use_balance=payload.use_balance,
            balance_amount=payload.balance_amount,
            payment_method=payload.payment_method,
            note=payload.note,
        )
        data = await run_in_threadpool(_with_payment, session, order, payload.payment_method, user.id)
        return success_response(data, message="订单创建成功")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.get("/device-upgrade/quote", summary="设备升级报价")
async def device_upgrade_quote(
    additional_devices: int = Query(0, ge=0, le=100),
    additional_days: int = Query(0, ge=0, le=3650),
    current_user: dict = Depends(get_current_user),
):
    return success_response({
        "additional_devices": additional_devices,
        "additional_days": additional_days,
        "amount": quote_device_upgrade(additional_devices, additional_days),
    })


@router.post("/device-upgrade", summary="创建设备升级订单")
async def create_upgrade_order(payload: DeviceUpgradeRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = _load_user(session, current_user)
        order = create_device_upgrade_order(
            session,
            user,
            additional_devices=payload.additional_devices,
            additional_days=payload.additional_days,
            use_balance=payload.use_balance,
            balance_amount=payload.balance_amount,
            payment_method=payload.payment_method,
        )
        data = await run_in_threadpool(_with_payment, session, order, payload.payment_method, user.id)
        return success_response(data, message="订单创建成功")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.get("", summary="获取当前用户订单列表")
async def get_my_orders(
    status: str = Query("", max_length=32),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(list_orders(session, user_id=current_user.get("id"), status=status, limit=limit))
    finally:
        session.close()


@router.get("/admin", summary="管理员获取全量订单")
async def get_all_orders(
    status: str = Query("", max_length=32),
    limit: int = Query(200, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_orders(session, status=status, limit=limit))
    finally:
        session.close()


@router.get("/{order_no}", summary="查询订单状态")
async def get_order_status(order_no: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        order = get_order_by_no(session, order_no)
        if not order or order.user_id != current_user.get("id"):
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="订单不存在"))
        if order.status == ORDER_STATUS_PENDING and await run_in_threadpool(reconcile_pending_order, session, order):
            order = get_order_by_no(session, order_no)
        return success_response(order_to_dict(order))
    finally:
        session.close()


@router.post("/{order_no}/pay", summary="发起订单支付")
async def pay_order(order_no: str, payload: PayOrderRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        payment = await run_in_threadpool(
            create_payment_for_order, session, order_no, payload.payment_method, user_id=current_user.get("id")
        )
        return success_response(payment)
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.post("/{order_no}/cancel", summary="取消待支付订单")
async def cancel_my_order(order_no: str, payload: CancelOrderRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        order = cancel_order(session, order_no, user_id=current_user.get("id"), reason=payload.reason)
        return success_response(order_to_dict(order), message="订单已取消")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.post("/{order_no}/manual-pay", summary="管理员手工确认支付")
async def manual_pay_order(order_no: str, payload: ManualPayRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        result = mark_order_paid(
            session,
            order_no,
            external_txn_id=payload.external_txn_id or f"manual-{order_no}",
            callback_amount=payload.amount,
            payment_method="manual",
            callback_payload=payload.note,
            skip_amount_check=payload.amount is None,
        )
        data = order_to_dict(result["order"])
        data["fulfillment_error"] = result["fulfillment_error"]
        return success_response(data, message="订单支付成功")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()
