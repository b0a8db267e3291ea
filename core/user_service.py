import uuid
from datetime import datetime
from typing import Dict

from core.auth import pwd_context
from core.errors import ConflictError, ValidationError
from core.invite_service import bind_invite
from core.models.user import User as DBUser
from core.models.user_level import UserLevel
from core.subscription_service import ensure_user_subscription
from core.log import get_logger

logger = get_logger(__name__)


def create_user(
    session,
    username: str,
    password: str,
    email: str = "",
    role: str = "user",
    invite_code: str = "",
) -> DBUser:
    """创建用户并同时开通（未激活的）订阅，可选绑定邀请码。"""
    name = str(username or "").strip()
    if not name or len(password or "") < 6:
        raise ValidationError("用户名不能为空，密码至少 6 位")
    mail = str(email or "").strip() or None
    exists = session.query(DBUser.id).filter(DBUser.username == name).first()
    if not exists and mail:
        exists = session.query(DBUser.id).filter(DBUser.email == mail).first()
    if exists:
        raise ConflictError("用户名或邮箱已存在")

    now = datetime.now()
    user = DBUser(
        id=str(uuid.uuid4()),
        username=name,
        email=mail,
        password_hash=pwd_context.hash(password),
        is_active=True,
        role=role if role in ("admin", "user") else "user",
        nickname=name,
        balance=0.0,
        total_consumption=0.0,
        total_invite_reward=0.0,
        total_invite_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    session.flush()
    try:
        ensure_user_subscription(session, user.id)
        if invite_code:
            bind_invite(session, user, invite_code)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("用户已创建: username=%s role=%s", user.username, user.role)
    return user


def user_to_dict(session, user: DBUser) -> Dict:
    level = None
    if user.user_level_id:
        level = session.query(UserLevel).filter(UserLevel.id == user.user_level_id).first()
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email or "",
        "nickname": user.nickname or user.username,
        "role": user.role,
        "is_active": bool(user.is_active),
        "balance": round(float(user.balance or 0), 2),
        "total_consumption": round(float(user.total_consumption or 0), 2),
        "level": {"name": level.level_name, "discount_rate": float(level.discount_rate)} if level else None,
        "total_invite_count": int(user.total_invite_count or 0),
        "total_invite_reward": round(float(user.total_invite_reward or 0), 2),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
