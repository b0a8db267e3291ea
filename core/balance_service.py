import uuid
from datetime import datetime
from typing import Dict, List

from sqlalchemy import func

from core.models.balance_entry import BalanceEntry
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


REASON_ORDER_DEBIT = "order_debit"
REASON_RECHARGE = "recharge"
REASON_INVITER_REWARD = "inviter_reward"
REASON_INVITEE_REWARD = "invitee_reward"
REASON_ADMIN_ADJUST = "admin_adjust"


def has_entry(session, user_id: str, reason: str, reference_id: str) -> bool:
    return (
        session.query(BalanceEntry.id)
        .filter(
            BalanceEntry.user_id == user_id,
            BalanceEntry.reason == reason,
            BalanceEntry.reference_id == str(reference_id),
        )
        .first()
        is not None
    )


def apply_balance_change(
    session,
    user: DBUser,
    amount: float,
    reason: str,
    reference_id: str,
    note: str = "",
) -> bool:
    """
    追加一条余额流水并同步 User.balance，不提交事务。

    同一 (user, reason, reference_id) 已入账时返回 False 且不做任何修改，
    履约重放因此不会重复扣款或重复发放奖励。
    """
    value = round(float(amount or 0), 2)
    if value == 0:
        return False
    if has_entry(session, user.id, reason, reference_id):
        log_event(logger, E.BALANCE_DUPLICATE, user_id=user.id, reason=reason, ref=reference_id)
        return False
    balance_after = round(float(user.balance or 0) + value, 2)
    if balance_after < 0:
        # 下单与发起支付时已校验余额，这里只告警不拦截
        log_event(
            logger,
            E.BALANCE_NEGATIVE,
            level="warning",
            user_id=user.id,
            reason=reason,
            ref=reference_id,
            balance_after=f"{balance_after:.2f}",
        )
    session.add(
        BalanceEntry(
            id=str(uuid.uuid4()),
            user_id=user.id,
            amount=value,
            reason=reason,
            reference_id=str(reference_id),
            balance_after=balance_after,
            note=(note or "")[:500],
            created_at=datetime.now(),
        )
    )
    user.balance = balance_after
    user.updated_at = datetime.now()
    session.flush()
    log_event(
        logger,
        E.BALANCE_CHANGE,
        user_id=user.id,
        amount=f"{value:.2f}",
        reason=reason,
        ref=reference_id,
        balance_after=f"{balance_after:.2f}",
    )
    return True


def ledger_balance(session, user_id: str) -> float:
    total = session.query(func.coalesce(func.sum(BalanceEntry.amount), 0.0)).filter(BalanceEntry.user_id == user_id).scalar()
    return round(float(total or 0), 2)


def list_entries(session, user_id: str, limit: int = 50) -> List[Dict]:
    rows = (
        session.query(BalanceEntry)
        .filter(BalanceEntry.user_id == user_id)
        .order_by(BalanceEntry.created_at.desc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )
    return [
        {
            "id": x.id,
            "amount": round(float(x.amount or 0), 2),
            "reason": x.reason,
            "reference_id": x.reference_id,
            "balance_after": round(float(x.balance_after or 0), 2),
            "note": x.note or "",
            "created_at": x.created_at.isoformat() if x.created_at else None,
        }
        for x in rows
    ]
