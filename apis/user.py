from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.balance_service import REASON_ADMIN_ADJUST, apply_balance_change, list_entries
from core.db import DB
from core.errors import ServiceError
from core.invite_service import create_invite_code, list_invite_codes
from core.models.user import User as DBUser
from core.user_service import create_user, user_to_dict
from .base import success_response, error_response, service_http_error

router = APIRouter(prefix="/user", tags=["用户管理"])


class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=2, max_length=50)
    password: str = Field(..., min_length=6, max_length=64)
    email: str = Field(default="", max_length=120)
    role: str = Field(default="user", max_length=20)
    invite_code: str = Field(default="", max_length=32)


class BalanceAdjustRequest(BaseModel):
    amount: float
    reference_id: str = Field(..., min_length=1, max_length=128)
    note: str = Field(default="", max_length=500)


def _get_user(session, user_id: str) -> DBUser:
    user = session.query(DBUser).filter(DBUser.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response(code=40401, message="用户不存在"),
        )
    return user


@router.get("", summary="获取用户信息")
async def get_user_info(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = _get_user(session, current_user["id"])
        return success_response(user_to_dict(session, user))
    finally:
        session.close()


@router.get("/balance", summary="余额流水")
async def get_balance_entries(limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = _get_user(session, current_user["id"])
        return success_response({
            "balance": round(float(user.balance or 0), 2),
            "entries": list_entries(session, user.id, limit=limit),
        })
    finally:
        session.close()


@router.get("/invite-codes", summary="我的邀请码")
async def my_invite_codes(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response(list_invite_codes(session, current_user["id"]))
    finally:
        session.close()


@router.post("/invite-codes", summary="生成邀请码")
async def new_invite_code(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = _get_user(session, current_user["id"])
        invite = create_invite_code(session, user)
        return success_response({"code": invite.code}, message="邀请码已生成")
    finally:
        session.close()


@router.post("", summary="添加用户")
async def add_user(payload: CreateUserRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        user = create_user(
            session,
            payload.username,
            payload.password,
            email=payload.email,
            role=payload.role,
            invite_code=payload.invite_code,
        )
        return success_response(user_to_dict(session, user), message="用户已创建")
    except ServiceError as e:
        raise service_http_error(e)
    finally:
        session.close()


@router.post("/{user_id}/balance", summary="管理员调整余额")
async def adjust_balance(user_id: str, payload: BalanceAdjustRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.id == user_id).with_for_update().first()
        if not user:
            raise HTTPException(status_code=404, detail=error_response(code=40401, message="用户不存在"))
        applied = apply_balance_change(
            session,
            user,
            payload.amount,
            REASON_ADMIN_ADJUST,
            payload.reference_id,
            note=payload.note or f"管理员 {current_user.get('username')} 调整",
        )
        session.commit()
        return success_response(
            {"applied": applied, "balance": round(float(user.balance or 0), 2)},
            message="余额已调整" if applied else "该流水已存在",
        )
    finally:
        session.close()
