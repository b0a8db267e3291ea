import secrets
import uuid
from datetime import datetime
from typing import Dict, List

from core.config import cfg
from core.errors import ConflictError, ValidationError
from core.models.invite import InviteCode, InviteRelation
from core.models.user import User as DBUser
from core.log import get_logger

logger = get_logger(__name__)

_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _new_code(length: int = 8) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def create_invite_code(session, user: DBUser, max_uses: int = None, expires_at: datetime = None) -> InviteCode:
    code = _new_code()
    while session.query(InviteCode.id).filter(InviteCode.code == code).first():
        code = _new_code()
    invite = InviteCode(
        id=str(uuid.uuid4()),
        code=code,
        user_id=user.id,
        inviter_reward=float(cfg.get("invite.inviter_reward", 0) or 0),
        invitee_reward=float(cfg.get("invite.invitee_reward", 0) or 0),
        min_order_amount=float(cfg.get("invite.min_order_amount", 0) or 0),
        new_user_only=cfg.get_bool("invite.new_user_only", True),
        used_count=0,
        max_uses=max_uses,
        is_active=True,
        expires_at=expires_at,
        created_at=datetime.now(),
    )
    session.add(invite)
    session.commit()
    logger.info("邀请码已创建: user_id=%s code=%s", user.id, code)
    return invite


def bind_invite(session, invitee: DBUser, code: str) -> InviteRelation:
    """建立邀请关系；奖励在被邀请人首单履约时发放。不提交事务。"""
    text = str(code or "").strip().upper()
    invite = session.query(InviteCode).filter(InviteCode.code == text).first()
    if not invite or not invite.is_active:
        raise ValidationError("邀请码无效")
    if invite.expires_at and invite.expires_at < datetime.now():
        raise ValidationError("邀请码已过期")
    if invite.max_uses is not None and int(invite.used_count or 0) >= int(invite.max_uses):
        raise ValidationError("邀请码使用次数已达上限")
    if invite.user_id == invitee.id:
        raise ValidationError("不能使用自己的邀请码")
    if session.query(InviteRelation.id).filter(InviteRelation.invitee_id == invitee.id).first():
        raise ConflictError("已绑定邀请关系")

    now = datetime.now()
    relation = InviteRelation(
        id=str(uuid.uuid4()),
        invite_code_id=invite.id,
        inviter_id=invite.user_id,
        invitee_id=invitee.id,
        inviter_reward_given=False,
        invitee_reward_given=False,
        inviter_reward_amount=0.0,
        invitee_reward_amount=0.0,
        invitee_total_consumption=0.0,
        created_at=now,
        updated_at=now,
    )
    session.add(relation)
    invite.used_count = int(invite.used_count or 0) + 1
    inviter = session.query(DBUser).filter(DBUser.id == invite.user_id).first()
    if inviter:
        inviter.total_invite_count = int(inviter.total_invite_count or 0) + 1
    session.flush()
    return relation


def list_invite_codes(session, user_id: str) -> List[Dict]:
    rows = session.query(InviteCode).filter(InviteCode.user_id == user_id).order_by(InviteCode.created_at.desc()).all()
    return [
        {
            "code": x.code,
            "used_count": int(x.used_count or 0),
            "max_uses": x.max_uses,
            "is_active": bool(x.is_active),
            "expires_at": x.expires_at.isoformat() if x.expires_at else None,
        }
        for x in rows
    ]
