import json
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from core.config import cfg
from core.errors import (
    AlreadyProcessedError,
    AmountMismatchError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from core.fulfillment_service import paid_amount, process_paid_order, record_fulfillment_failure
from core.models.coupon import Coupon
from core.models.order import Order
from core.models.package import Package
from core.models.payment_transaction import PaymentTransaction
from core.models.user import User as DBUser
from core.models.user_level import UserLevel
from core.notify_service import KIND_ADMIN_ORDER_PAID, admin_recipient, enqueue_notification
from core.order_kind import (
    DeviceUpgradeKind,
    OrderKind,
    PackageKind,
    clamp_months,
    decode_order_kind,
    encode_order_kind,
)
from core.subscription_service import get_subscription_by_user
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_EXPIRED = "expired"

TXN_STATUS_PENDING = "pending"
TXN_STATUS_SUCCESS = "success"
TXN_STATUS_FAILED = "failed"

PAYMENT_METHOD_BALANCE = "balance"

# 金额比较容差（元）
AMOUNT_EPSILON = 0.01


def _new_order_no() -> str:
    return f"ORD{datetime.now().strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"


def order_to_dict(order: Order) -> Dict:
    kind, _ = decode_order_kind(order)
    return {
        "id": order.id,
        "order_no": order.order_no,
        "user_id": order.user_id,
        "package_id": order.package_id,
        "kind": kind.model_dump(),
        "amount": round(float(order.amount or 0), 2),
        "discount_amount": round(float(order.discount_amount or 0), 2),
        "final_amount": paid_amount(order),
        "payable_amount": expected_gateway_amount(order, kind),
        "status": order.status,
        "payment_method": order.payment_method or "",
        "payment_time": order.payment_time.isoformat() if order.payment_time else None,
        "fulfilled": order.fulfilled_at is not None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def expected_gateway_amount(order: Order, kind: OrderKind = None) -> float:
    """网关应支付的金额 = final_amount − 余额抵扣部分。"""
    if kind is None:
        kind, _ = decode_order_kind(order)
    return max(0.0, round(paid_amount(order) - float(kind.balance_used or 0), 2))


def get_order_by_no(session, order_no: str) -> Order:
    no = str(order_no or "").strip()
    if not no:
        return None
    return session.query(Order).filter(Order.order_no == no).first()


def list_orders(session, user_id: str = "", status: str = "", limit: int = 50) -> List[Dict]:
    query = session.query(Order)
    if user_id:
        query = query.filter(Order.user_id == user_id)
    status_text = str(status or "").strip().lower()
    if status_text:
        query = query.filter(Order.status == status_text)
    rows = query.order_by(Order.created_at.desc()).limit(max(1, min(int(limit or 50), 200))).all()
    return [order_to_dict(x) for x in rows]


def _level_discount_rate(session, user: DBUser) -> float:
    if not user.user_level_id:
        return 1.0
    level = session.query(UserLevel).filter(UserLevel.id == user.user_level_id, UserLevel.is_active == True).first()  # noqa: E712
    if level and 0 < float(level.discount_rate or 0) < 1:
        return float(level.discount_rate)
    return 1.0


def validate_coupon(session, code: str, amount: float) -> Tuple[Coupon, float]:
    """校验优惠券并返回 (coupon, 优惠金额)。"""
    text = str(code or "").strip()
    if not text:
        return None, 0.0
    coupon = session.query(Coupon).filter(Coupon.code == text).first()
    if not coupon or coupon.status != "active":
        raise ValidationError("优惠券无效")
    now = datetime.now()
    if coupon.valid_from and coupon.valid_from > now:
        raise ValidationError("优惠券尚未生效")
    if coupon.valid_until and coupon.valid_until < now:
        raise ValidationError("优惠券已过期")
    if coupon.total_quantity is not None and int(coupon.used_quantity or 0) >= int(coupon.total_quantity):
        raise ValidationError("优惠券已被领完")
    if amount < float(coupon.min_amount or 0):
        raise ValidationError(f"订单金额未满 {float(coupon.min_amount):.2f} 元，无法使用该优惠券")
    if coupon.type == "fixed":
        discount = float(coupon.discount_value or 0)
    else:
        discount = amount * float(coupon.discount_value or 0) / 100.0
        if coupon.max_discount:
            discount = min(discount, float(coupon.max_discount))
    return coupon, round(min(discount, amount), 2)


def _resolve_balance(user: DBUser, final_amount: float, use_balance: bool, balance_amount: float) -> float:
    if not use_balance:
        return 0.0
    available = round(float(user.balance or 0), 2)
    if available <= 0:
        raise ValidationError("余额为 0，无法使用余额支付")
    requested = round(float(balance_amount or 0), 2) or available
    if requested > available + AMOUNT_EPSILON:
        raise ValidationError("余额不足")
    return round(min(requested, final_amount), 2)


def _save_new_order(
    session,
    user: DBUser,
    kind: OrderKind,
    amount: float,
    discount: float,
    payment_method: str,
    package_id: str = None,
    coupon_id: str = None,
    note: str = "",
) -> Order:
    now = datetime.now()
    final_amount = round(amount - discount, 2)
    payable = round(final_amount - float(kind.balance_used or 0), 2)
    order = Order(
        id=str(uuid.uuid4()),
        order_no=_new_order_no(),
        user_id=user.id,
        package_id=package_id,
        amount=round(amount, 2),
        discount_amount=round(discount, 2) if discount > 0 else None,
        final_amount=final_amount,
        status=ORDER_STATUS_PENDING,
        coupon_id=coupon_id,
        extra_data=encode_order_kind(kind),
        payment_method=PAYMENT_METHOD_BALANCE if payable <= AMOUNT_EPSILON else (payment_method or "").strip().lower(),
        note=(note or "").strip()[:500],
        created_at=now,
        updated_at=now,
    )
    session.add(order)
    session.commit()
    log_event(
        logger,
        E.ORDER_CREATE,
        order_no=order.order_no,
        user_id=user.id,
        kind=kind.kind,
        amount=f"{order.amount:.2f}",
        final_amount=f"{final_amount:.2f}",
        balance_used=f"{kind.balance_used:.2f}",
    )
    if payable <= AMOUNT_EPSILON:
        # 余额全额抵扣，直接走支付与履约
        mark_order_paid(session, order.order_no, payment_method=PAYMENT_METHOD_BALANCE, skip_amount_check=True)
        session.refresh(order)
    return order


def create_order(
    session,
    user: DBUser,
    package_id: str,
    duration_months: int = 1,
    coupon_code: str = "",
    use_balance: bool = False,
    balance_amount: float = 0.0,
    payment_method: str = "yipay",
    note: str = "",
) -> Order:
    package = session.query(Package).filter(Package.id == package_id, Package.is_active == True).first()  # noqa: E712
    if not package:
        raise NotFoundError("套餐不存在或已下架")
    months = clamp_months(duration_months)
    amount = round(float(package.price or 0) * months, 2)

    level_discount = round(amount * (1 - _level_discount_rate(session, user)), 2)
    coupon, coupon_discount = validate_coupon(session, coupon_code, amount - level_discount)
    discount = round(min(amount, level_discount + coupon_discount), 2)

    balance_used = _resolve_balance(user, round(amount - discount, 2), use_balance, balance_amount)
    kind = PackageKind(duration_months=months, balance_used=balance_used)
    return _save_new_order(
        session,
        user,
        kind,
        amount=amount,
        discount=discount,
        payment_method=payment_method,
        package_id=package.id,
        coupon_id=coupon.id if coupon else None,
        note=note,
    )


def quote_device_upgrade(additional_devices: int, additional_days: int) -> float:
    price_per_device = float(cfg.get("order.device_upgrade.price_per_device_month", 10.0) or 10.0)
    price_per_day = float(cfg.get("order.device_upgrade.price_per_day", price_per_device / 30.0) or 0)
    return round(int(additional_devices or 0) * price_per_device + int(additional_days or 0) * price_per_day, 2)


def create_device_upgrade_order(
    session,
    user: DBUser,
    additional_devices: int = 0,
    additional_days: int = 0,
    use_balance: bool = False,
    balance_amount: float = 0.0,
    payment_method: str = "yipay",
) -> Order:
    devices = int(additional_devices or 0)
    days = int(additional_days or 0)
    if devices < 0 or days < 0 or (devices == 0 and days == 0):
        raise ValidationError("请填写要增加的设备数或天数")
    min_devices = int(cfg.get("order.device_upgrade.min_devices", 1) or 1)
    if 0 < devices < min_devices:
        raise ValidationError(f"每次至少增加 {min_devices} 个设备")
    if not get_subscription_by_user(session, user.id):
        raise NotFoundError("订阅不存在")

    amount = quote_device_upgrade(devices, days)
    discount = round(amount * (1 - _level_discount_rate(session, user)), 2)
    balance_used = _resolve_balance(user, round(amount - discount, 2), use_balance, balance_amount)
    kind = DeviceUpgradeKind(additional_devices=devices, additional_days=days, balance_used=balance_used)
    return _save_new_order(session, user, kind, amount=amount, discount=discount, payment_method=payment_method)


def _record_payment_leg(
    session,
    order: Order,
    amount: float,
    external_txn_id: str,
    payment_method: str,
    callback_payload: str,
) -> PaymentTransaction:
    now = datetime.now()
    existing_success = (
        session.query(PaymentTransaction)
        .filter(PaymentTransaction.order_id == order.id, PaymentTransaction.status == TXN_STATUS_SUCCESS)
        .first()
    )
    if existing_success:
        return existing_success
    txn = (
        session.query(PaymentTransaction)
        .filter(PaymentTransaction.order_id == order.id, PaymentTransaction.status == TXN_STATUS_PENDING)
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )
    if not txn:
        txn = PaymentTransaction(
            id=str(uuid.uuid4()),
            order_id=order.id,
            user_id=order.user_id,
            currency="CNY",
            created_at=now,
        )
        session.add(txn)
    txn.payment_method = payment_method or order.payment_method or PAYMENT_METHOD_BALANCE
    txn.amount = int(round(amount * 100))
    txn.status = TXN_STATUS_SUCCESS
    txn.external_transaction_id = (external_txn_id or "").strip()[:128] or None
    txn.callback_data = (callback_payload or "")[:8000] or None
    txn.updated_at = now
    enqueue_notification(
        session,
        KIND_ADMIN_ORDER_PAID,
        admin_recipient(),
        {"order_no": order.order_no, "amount": f"{amount:.2f}", "method": txn.payment_method},
    )
    return txn


def _transition_to_paid(session, order: Order, payment_method: str, now: datetime) -> bool:
    values = {
        Order.status: ORDER_STATUS_PAID,
        Order.payment_time: now,
        Order.updated_at: now,
    }
    if payment_method:
        values[Order.payment_method] = payment_method
    rows = (
        session.query(Order)
        .filter(Order.id == order.id, Order.status == ORDER_STATUS_PENDING)
        .update(values, synchronize_session="evaluate")
    )
    return rows > 0


def mark_order_paid(
    session,
    order_no: str,
    external_txn_id: str = "",
    callback_amount: float = None,
    payment_method: str = "",
    callback_payload: str = "",
    skip_amount_check: bool = False,
) -> Dict:
    """
    订单置为已支付并执行履约。

    状态迁移使用条件更新（WHERE status='pending'），并发回调只有一个能成功，
    其余得到 AlreadyProcessedError（调用方应按成功处理）。网关路径必须带 callback_amount，
    缺失视为金额不匹配；只有余额抵扣与管理员确认传 skip_amount_check=True。
    履约失败不回滚支付，登记后由后台任务重试。
    """
    order = get_order_by_no(session, order_no)
    if not order:
        raise NotFoundError("订单不存在")
    if order.status == ORDER_STATUS_PAID:
        log_event(logger, E.ORDER_PAY_DUPLICATE, order_no=order.order_no, txn=external_txn_id)
        raise AlreadyProcessedError("订单已处理")
    if order.status != ORDER_STATUS_PENDING:
        if not skip_amount_check:
            # 网关已扣款但订单已关闭，需要人工跟进
            enqueue_notification(
                session,
                KIND_ADMIN_ORDER_PAID,
                admin_recipient(),
                {"order_no": order.order_no, "status": order.status, "txn": external_txn_id, "manual_review": True},
            )
            session.commit()
            log_event(logger, E.ORDER_PAY, level="error", order_no=order.order_no, status=order.status, result="closed_order_paid")
        raise ConflictError("订单状态不可支付")

    kind, _ = decode_order_kind(order)
    expected = expected_gateway_amount(order, kind)
    if not skip_amount_check and (callback_amount is None or abs(float(callback_amount) - expected) > AMOUNT_EPSILON):
        log_event(
            logger,
            E.PAYMENT_NOTIFY_AMOUNT_MISMATCH,
            level="warning",
            order_no=order.order_no,
            expected=f"{expected:.2f}",
            callback=callback_amount,
            txn=external_txn_id,
        )
        raise AmountMismatchError("订单金额不匹配")

    now = datetime.now()
    if not _transition_to_paid(session, order, payment_method, now):
        session.rollback()
        raise AlreadyProcessedError("订单已处理")
    _record_payment_leg(session, order, expected, external_txn_id, payment_method, callback_payload)

    fulfillment = None
    fulfillment_error = ""
    try:
        fulfillment = process_paid_order(session, order)
        session.commit()
    except Exception as e:
        session.rollback()
        fulfillment_error = str(e)
        order = get_order_by_no(session, order_no)
        if not _transition_to_paid(session, order, payment_method, now):
            session.rollback()
            raise AlreadyProcessedError("订单已处理")
        _record_payment_leg(session, order, expected, external_txn_id, payment_method, callback_payload)
        record_fulfillment_failure(session, order, e)
        session.commit()

    log_event(
        logger,
        E.ORDER_PAY,
        order_no=order.order_no,
        method=order.payment_method,
        gateway_amount=f"{expected:.2f}",
        txn=external_txn_id,
        fulfilled=fulfillment is not None,
    )
    return {"order": order, "fulfillment": fulfillment, "fulfillment_error": fulfillment_error}


def cancel_order(session, order_no: str, user_id: str = "", reason: str = "") -> Order:
    order = get_order_by_no(session, order_no)
    if not order or (user_id and order.user_id != user_id):
        raise NotFoundError("订单不存在")
    now = datetime.now()
    rows = (
        session.query(Order)
        .filter(Order.id == order.id, Order.status == ORDER_STATUS_PENDING)
        .update(
            {
                Order.status: ORDER_STATUS_CANCELLED,
                Order.note: ((order.note or "") + f"\n取消原因: {reason}".rstrip())[:800],
                Order.updated_at: now,
            },
            synchronize_session="evaluate",
        )
    )
    if rows == 0:
        session.rollback()
        order = get_order_by_no(session, order_no)
        if order.status == ORDER_STATUS_CANCELLED:
            return order
        raise ConflictError("订单当前状态不可取消")
    session.commit()
    log_event(logger, E.ORDER_CANCEL, order_no=order.order_no, reason=reason)
    return order


def expire_pending_orders(session, ttl_minutes: int = None, limit: int = 500) -> Dict:
    ttl = int(ttl_minutes or cfg.get("order.pending_ttl_minutes", 30) or 30)
    cutoff = datetime.now() - timedelta(minutes=ttl)
    rows = (
        session.query(Order.id, Order.order_no)
        .filter(Order.status == ORDER_STATUS_PENDING, Order.created_at < cutoff)
        .limit(max(1, min(int(limit or 500), 2000)))
        .all()
    )
    expired = []
    for order_id, order_no in rows:
        changed = (
            session.query(Order)
            .filter(Order.id == order_id, Order.status == ORDER_STATUS_PENDING)
            .update({Order.status: ORDER_STATUS_EXPIRED, Order.updated_at: datetime.now()}, synchronize_session=False)
        )
        if changed:
            expired.append(order_no)
    session.commit()
    for order_no in expired:
        log_event(logger, E.ORDER_EXPIRE, order_no=order_no, ttl_minutes=ttl)
    return {"total": len(expired), "orders": expired}


def order_payload(order: Order, payment: Dict = None) -> Dict:
    data = order_to_dict(order)
    if payment:
        data["payment"] = payment
    return data


def parse_callback_payload(params: Dict) -> str:
    return json.dumps(params or {}, ensure_ascii=False, sort_keys=True)


def package_to_dict(package: Package) -> Dict:
    return {
        "id": package.id,
        "name": package.name,
        "description": package.description or "",
        "price": round(float(package.price or 0), 2),
        "duration_days": int(package.duration_days or 0),
        "device_limit": int(package.device_limit or 0),
        "is_recommended": bool(package.is_recommended),
    }


def list_packages(session) -> List[Dict]:
    rows = (
        session.query(Package)
        .filter(Package.is_active == True)  # noqa: E712
        .order_by(Package.sort_order.asc(), Package.price.asc())
        .all()
    )
    return [package_to_dict(x) for x in rows]
