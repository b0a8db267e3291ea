import uuid
from datetime import datetime
from typing import Dict, List

from core.balance_service import REASON_RECHARGE, apply_balance_change
from core.errors import (
    AlreadyProcessedError,
    AmountMismatchError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from core.models.recharge_record import RechargeRecord
from core.models.user import User as DBUser
from core.notify_service import KIND_RECHARGE_PAID, enqueue_notification
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


RECHARGE_STATUS_PENDING = "pending"
RECHARGE_STATUS_PAID = "paid"
RECHARGE_STATUS_CANCELLED = "cancelled"

RECHARGE_PREFIX = "RCH"
MIN_RECHARGE_AMOUNT = 1.0
MAX_RECHARGE_AMOUNT = 10000.0


def _new_recharge_no() -> str:
    return f"{RECHARGE_PREFIX}{datetime.now().strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"


def is_recharge_no(order_no: str) -> bool:
    return str(order_no or "").strip().upper().startswith(RECHARGE_PREFIX)


def recharge_to_dict(record: RechargeRecord) -> Dict:
    return {
        "id": record.id,
        "order_no": record.order_no,
        "user_id": record.user_id,
        "amount": round(float(record.amount or 0), 2),
        "status": record.status,
        "payment_method": record.payment_method or "",
        "paid_at": record.paid_at.isoformat() if record.paid_at else None,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def get_recharge_by_no(session, order_no: str) -> RechargeRecord:
    no = str(order_no or "").strip()
    if not no:
        return None
    return session.query(RechargeRecord).filter(RechargeRecord.order_no == no).first()


def create_recharge(session, user: DBUser, amount: float, payment_method: str = "yipay", ip_address: str = "") -> RechargeRecord:
    value = round(float(amount or 0), 2)
    if value < MIN_RECHARGE_AMOUNT or value > MAX_RECHARGE_AMOUNT:
        raise ValidationError(f"充值金额需在 {MIN_RECHARGE_AMOUNT:.0f} ~ {MAX_RECHARGE_AMOUNT:.0f} 元之间")
    now = datetime.now()
    record = RechargeRecord(
        id=str(uuid.uuid4()),
        order_no=_new_recharge_no(),
        user_id=user.id,
        amount=value,
        status=RECHARGE_STATUS_PENDING,
        payment_method=(payment_method or "").strip().lower(),
        ip_address=(ip_address or "")[:64],
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    session.commit()
    log_event(logger, E.RECHARGE_CREATE, order_no=record.order_no, user_id=user.id, amount=f"{value:.2f}")
    return record


def mark_recharge_paid(
    session,
    order_no: str,
    external_txn_id: str = "",
    callback_amount: float = None,
) -> RechargeRecord:
    """充值到账：条件更新 pending -> paid，成功者入账余额。缺少网关金额视为不匹配。"""
    record = get_recharge_by_no(session, order_no)
    if not record:
        raise NotFoundError("充值记录不存在")
    if record.status == RECHARGE_STATUS_PAID:
        raise AlreadyProcessedError("充值已处理")
    if record.status != RECHARGE_STATUS_PENDING:
        raise ConflictError("充值记录状态不可支付")
    if callback_amount is None or abs(float(callback_amount) - float(record.amount or 0)) > 0.01:
        log_event(
            logger,
            E.PAYMENT_NOTIFY_AMOUNT_MISMATCH,
            level="warning",
            order_no=record.order_no,
            expected=f"{float(record.amount):.2f}",
            callback=callback_amount,
        )
        raise AmountMismatchError("充值金额不匹配")

    now = datetime.now()
    rows = (
        session.query(RechargeRecord)
        .filter(RechargeRecord.id == record.id, RechargeRecord.status == RECHARGE_STATUS_PENDING)
        .update(
            {
                RechargeRecord.status: RECHARGE_STATUS_PAID,
                RechargeRecord.paid_at: now,
                RechargeRecord.external_transaction_id: (external_txn_id or "")[:128] or None,
                RechargeRecord.updated_at: now,
            },
            synchronize_session="evaluate",
        )
    )
    if rows == 0:
        session.rollback()
        raise AlreadyProcessedError("充值已处理")
    user = session.query(DBUser).filter(DBUser.id == record.user_id).with_for_update().first()
    if not user:
        session.rollback()
        raise NotFoundError("用户不存在")
    apply_balance_change(session, user, float(record.amount), REASON_RECHARGE, record.id, note=f"充值 {record.order_no}")
    enqueue_notification(
        session,
        KIND_RECHARGE_PAID,
        user.email or user.username,
        {"order_no": record.order_no, "amount": f"{float(record.amount):.2f}", "balance": f"{float(user.balance):.2f}"},
    )
    session.commit()
    log_event(logger, E.RECHARGE_PAY, order_no=record.order_no, user_id=user.id, amount=f"{float(record.amount):.2f}")
    return record


def cancel_recharge(session, order_no: str, user_id: str = "") -> RechargeRecord:
    record = get_recharge_by_no(session, order_no)
    if not record or (user_id and record.user_id != user_id):
        raise NotFoundError("充值记录不存在")
    rows = (
        session.query(RechargeRecord)
        .filter(RechargeRecord.id == record.id, RechargeRecord.status == RECHARGE_STATUS_PENDING)
        .update({RechargeRecord.status: RECHARGE_STATUS_CANCELLED, RechargeRecord.updated_at: datetime.now()}, synchronize_session="evaluate")
    )
    if rows == 0:
        session.rollback()
        raise ConflictError("只能取消待支付的充值")
    session.commit()
    log_event(logger, E.RECHARGE_CANCEL, order_no=record.order_no)
    return record


def list_recharges(session, user_id: str, limit: int = 50) -> List[Dict]:
    rows = (
        session.query(RechargeRecord)
        .filter(RechargeRecord.user_id == user_id)
        .order_by(RechargeRecord.created_at.desc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )
    return [recharge_to_dict(x) for x in rows]
