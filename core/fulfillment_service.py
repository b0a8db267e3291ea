import uuid
from datetime import datetime, timedelta
from typing import Dict

from core.balance_service import (
    REASON_INVITEE_REWARD,
    REASON_INVITER_REWARD,
    REASON_ORDER_DEBIT,
    apply_balance_change,
)
from core.config import cfg
from core.errors import NotFoundError, ValidationError
from core.models.coupon import Coupon
from core.models.fulfillment_task import FulfillmentTask
from core.models.invite import InviteCode, InviteRelation
from core.models.order import Order
from core.models.package import Package
from core.models.subscription import Subscription
from core.models.user import User as DBUser
from core.models.user_level import UserLevel
from core.notify_service import (
    KIND_FULFILLMENT_FAILED,
    KIND_ORDER_PAID,
    admin_recipient,
    enqueue_notification,
)
from core.order_kind import DeviceUpgradeKind, PackageKind, decode_order_kind
from core.subscription_service import SUBSCRIPTION_STATUS_ACTIVE, ensure_user_subscription
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


TASK_STATUS_PENDING = "pending"
TASK_STATUS_DONE = "done"
TASK_STATUS_DEAD = "dead"

MAX_FULFILLMENT_ATTEMPTS = 8


def paid_amount(order: Order) -> float:
    if order.final_amount is not None:
        return round(float(order.final_amount), 2)
    return round(float(order.amount or 0), 2)


def _extend_from(expire_time: datetime, now: datetime) -> datetime:
    if expire_time and expire_time > now:
        return expire_time
    return now


def _lock_subscription(session, user_id: str) -> Subscription:
    return (
        session.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .with_for_update()
        .first()
    )


def _apply_package(session, order: Order, kind: PackageKind, now: datetime) -> Subscription:
    package = session.query(Package).filter(Package.id == order.package_id).first()
    if not package:
        raise NotFoundError("套餐不存在")
    sub = _lock_subscription(session, order.user_id)
    if not sub:
        sub = ensure_user_subscription(session, order.user_id, device_limit=int(package.device_limit or 0))
    days = int(package.duration_days or 0) * int(kind.duration_months or 1)
    sub.expire_time = _extend_from(sub.expire_time, now) + timedelta(days=days)
    sub.device_limit = int(package.device_limit or 0)
    sub.package_id = package.id
    sub.is_active = True
    sub.status = SUBSCRIPTION_STATUS_ACTIVE
    sub.updated_at = now
    return sub


def _apply_device_upgrade(session, order: Order, kind: DeviceUpgradeKind, now: datetime) -> Subscription:
    sub = _lock_subscription(session, order.user_id)
    if not sub:
        raise NotFoundError("订阅不存在，无法升级设备")
    if kind.additional_devices > 0:
        sub.device_limit = int(sub.device_limit or 0) + int(kind.additional_devices)
    if kind.additional_days > 0:
        sub.expire_time = _extend_from(sub.expire_time, now) + timedelta(days=int(kind.additional_days))
    sub.updated_at = now
    return sub


def _upgrade_user_level(session, user: DBUser) -> None:
    total = float(user.total_consumption or 0)
    best = (
        session.query(UserLevel)
        .filter(UserLevel.is_active == True, UserLevel.min_consumption <= total)  # noqa: E712
        .order_by(UserLevel.level_order.desc())
        .first()
    )
    if not best or best.id == user.user_level_id:
        return
    if user.user_level_id:
        current = session.query(UserLevel).filter(UserLevel.id == user.user_level_id).first()
        if current and int(current.level_order or 0) >= int(best.level_order or 0):
            return
    user.user_level_id = best.id


def _apply_invite_rewards(session, user: DBUser, order: Order) -> bool:
    """被邀请用户首单满足门槛时，给邀请人与被邀请人各发放一次奖励。"""
    if not cfg.get_bool("invite.enabled", True):
        return False
    relation = session.query(InviteRelation).filter(InviteRelation.invitee_id == user.id).first()
    if not relation:
        return False
    amount = paid_amount(order)
    relation.invitee_total_consumption = round(float(relation.invitee_total_consumption or 0) + amount, 2)
    relation.updated_at = datetime.now()
    if relation.inviter_reward_given and relation.invitee_reward_given:
        return False
    if relation.invitee_first_order_id and relation.invitee_first_order_id != order.id:
        return False

    code = session.query(InviteCode).filter(InviteCode.id == relation.invite_code_id).first()
    inviter_reward = float((code.inviter_reward if code else 0) or cfg.get("invite.inviter_reward", 0) or 0)
    invitee_reward = float((code.invitee_reward if code else 0) or cfg.get("invite.invitee_reward", 0) or 0)
    min_order_amount = float((code.min_order_amount if code else 0) or cfg.get("invite.min_order_amount", 0) or 0)
    new_user_only = bool(code.new_user_only) if code else cfg.get_bool("invite.new_user_only", True)

    if amount < min_order_amount:
        return False
    if new_user_only:
        paid_count = session.query(Order).filter(Order.user_id == user.id, Order.status == "paid").count()
        if paid_count > 1:
            return False

    rewarded = False
    if not relation.inviter_reward_given and inviter_reward > 0:
        inviter = session.query(DBUser).filter(DBUser.id == relation.inviter_id).first()
        if inviter and apply_balance_change(session, inviter, inviter_reward, REASON_INVITER_REWARD, relation.id, note=f"邀请奖励 {order.order_no}"):
            inviter.total_invite_reward = round(float(inviter.total_invite_reward or 0) + inviter_reward, 2)
            relation.inviter_reward_given = True
            relation.inviter_reward_amount = inviter_reward
            rewarded = True
    if not relation.invitee_reward_given and invitee_reward > 0:
        if apply_balance_change(session, user, invitee_reward, REASON_INVITEE_REWARD, relation.id, note=f"新用户奖励 {order.order_no}"):
            relation.invitee_reward_given = True
            relation.invitee_reward_amount = invitee_reward
            rewarded = True
    relation.invitee_first_order_id = order.id
    if rewarded:
        log_event(
            logger,
            E.INVITE_REWARD,
            order_no=order.order_no,
            inviter_id=relation.inviter_id,
            invitee_id=user.id,
            inviter_reward=f"{inviter_reward:.2f}",
            invitee_reward=f"{invitee_reward:.2f}",
        )
    return rewarded


def process_paid_order(session, order: Order) -> Dict:
    """
    履约：把已支付订单的业务效果落到订阅、余额与邀请关系上。

    调用方负责提交事务。已履约的订单（fulfilled_at 非空）直接跳过，
    余额流水按订单号唯一，重复执行不会重复扣款。
    """
    if not order:
        raise NotFoundError("订单不存在")
    if order.status != "paid":
        raise ValidationError("订单未支付，无法履约")
    if order.fulfilled_at:
        log_event(logger, E.FULFILLMENT_SKIP, order_no=order.order_no, fulfilled_at=order.fulfilled_at.isoformat())
        return {
            "order_no": order.order_no,
            "skipped": True,
            "subscription": session.query(Subscription).filter(Subscription.user_id == order.user_id).first(),
        }

    user = session.query(DBUser).filter(DBUser.id == order.user_id).first()
    if not user:
        raise NotFoundError("用户不存在")
    now = datetime.now()
    kind, malformed = decode_order_kind(order)
    log_event(logger, E.FULFILLMENT_START, order_no=order.order_no, kind=kind.kind, malformed=malformed)

    if isinstance(kind, PackageKind):
        sub = _apply_package(session, order, kind, now)
    else:
        sub = _apply_device_upgrade(session, order, kind, now)

    balance_debited = False
    if kind.balance_used > 0:
        balance_debited = apply_balance_change(
            session,
            user,
            -float(kind.balance_used),
            REASON_ORDER_DEBIT,
            order.id,
            note=f"订单余额抵扣 {order.order_no}",
        )

    if order.coupon_id:
        coupon = session.query(Coupon).filter(Coupon.id == order.coupon_id).first()
        if coupon:
            coupon.used_quantity = int(coupon.used_quantity or 0) + 1

    user.total_consumption = round(float(user.total_consumption or 0) + paid_amount(order), 2)
    _upgrade_user_level(session, user)
    invite_rewarded = _apply_invite_rewards(session, user, order)

    order.fulfilled_at = now
    order.updated_at = now
    enqueue_notification(
        session,
        KIND_ORDER_PAID,
        user.email or user.username,
        {
            "order_no": order.order_no,
            "amount": f"{paid_amount(order):.2f}",
            "expire_time": sub.expire_time.isoformat() if sub.expire_time else None,
            "device_limit": int(sub.device_limit or 0),
        },
    )
    session.flush()
    log_event(
        logger,
        E.FULFILLMENT_COMPLETE,
        order_no=order.order_no,
        subscription_id=sub.id,
        expire_time=sub.expire_time.isoformat() if sub.expire_time else "",
        device_limit=sub.device_limit,
        balance_debited=balance_debited,
    )
    return {
        "order_no": order.order_no,
        "skipped": False,
        "kind": kind.kind,
        "malformed_extra": malformed,
        "subscription": sub,
        "balance_debited": balance_debited,
        "invite_rewarded": invite_rewarded,
    }


def record_fulfillment_failure(session, order: Order, error: Exception) -> FulfillmentTask:
    """登记履约失败的订单，等待 jobs.fulfillment 重试；不提交事务。"""
    now = datetime.now()
    task = session.query(FulfillmentTask).filter(FulfillmentTask.order_id == order.id).first()
    if not task:
        task = FulfillmentTask(
            id=str(uuid.uuid4()),
            order_id=order.id,
            status=TASK_STATUS_PENDING,
            attempts=0,
            created_at=now,
        )
        session.add(task)
    task.status = TASK_STATUS_PENDING
    task.last_error = str(error)[:2000]
    task.next_run_at = now + timedelta(seconds=60)
    task.updated_at = now
    enqueue_notification(
        session,
        KIND_FULFILLMENT_FAILED,
        admin_recipient(),
        {"order_no": order.order_no, "user_id": order.user_id, "error": str(error)[:300]},
    )
    log_event(logger, E.FULFILLMENT_FAIL, level="error", order_no=order.order_no, error=error)
    return task


def retry_failed_fulfillments(session, limit: int = 50) -> Dict:
    now = datetime.now()
    tasks = (
        session.query(FulfillmentTask)
        .filter(FulfillmentTask.status == TASK_STATUS_PENDING, FulfillmentTask.next_run_at <= now)
        .order_by(FulfillmentTask.created_at.asc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )
    done = []
    failed = []
    for task in tasks:
        task_id = task.id
        order = session.query(Order).filter(Order.id == task.order_id).first()
        try:
            process_paid_order(session, order)
            task.status = TASK_STATUS_DONE
            task.attempts = int(task.attempts or 0) + 1
            task.last_error = None
            task.updated_at = datetime.now()
            session.commit()
            done.append(order.order_no)
            log_event(logger, E.FULFILLMENT_RETRY, order_no=order.order_no, result="done")
        except Exception as e:
            session.rollback()
            task = session.query(FulfillmentTask).filter(FulfillmentTask.id == task_id).first()
            task.attempts = int(task.attempts or 0) + 1
            task.last_error = str(e)[:2000]
            task.next_run_at = datetime.now() + timedelta(seconds=min(3600, 60 * (2 ** task.attempts)))
            if task.attempts >= MAX_FULFILLMENT_ATTEMPTS:
                task.status = TASK_STATUS_DEAD
            task.updated_at = datetime.now()
            session.commit()
            failed.append(task.order_id)
            log_event(
                logger,
                E.FULFILLMENT_RETRY,
                level="warning",
                order_id=task.order_id,
                attempts=task.attempts,
                status=task.status,
                error=e,
            )
    return {"total": len(tasks), "done": done, "failed": failed}
