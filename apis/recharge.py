from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from core.auth import get_current_user
from core.db import DB
from core.errors import ServiceError
from core.models.user import User as DBUser
from core.payment_service import create_payment_for_recharge, reconcile_pending_recharge
from core.recharge_service import (
    RECHARGE_STATUS_PENDING,
    cancel_recharge,
    create_recharge,
    get_recharge_by_no,
    list_recharges,
    recharge_to_dict,
)
from .base import success_response, error_response, service_http_error


router = APIRouter(prefix="/recharge", tags=["余额充值"])


class CreateRechargeRequest(BaseModel):
    amount: float = Field(..., gt=0)
    payment_method: str = Field(default="yipay", max_length=32)


@router.post("", summary="创建充值订单")
async def create_recharge_order(payload: CreateRechargeRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.id == current_user.get("id")).first()
        if not user:
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="用户不存在"))
        record = create_recharge(session, user, payload.amount, payment_method=payload.payment_method)
        payment = await run_in_threadpool(
            create_payment_for_recharge, session, record.order_no, payload.payment_method, user_id=user.id
        )
        data = recharge_to_dict(record)
        data["payment"] = payment
        return success_response(data, message="充值订单创建成功")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.get("", summary="充值记录")
async def my_recharges(limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response(list_recharges(session, current_user.get("id"), limit=limit))
    finally:
        session.close()


@router.get("/{order_no}", summary="查询充值状态")
async def recharge_status(order_no: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        record = get_recharge_by_no(session, order_no)
        if not record or record.user_id != current_user.get("id"):
            raise HTTPException(status_code=404, detail=error_response(code=40400, message="充值记录不存在"))
        if record.status == RECHARGE_STATUS_PENDING and await run_in_threadpool(reconcile_pending_recharge, session, record):
            record = get_recharge_by_no(session, order_no)
        return success_response(recharge_to_dict(record))
    finally:
        session.close()


@router.post("/{order_no}/cancel", summary="取消充值")
async def cancel_my_recharge(order_no: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        record = cancel_recharge(session, order_no, user_id=current_user.get("id"))
        return success_response(recharge_to_dict(record), message="充值已取消")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()
