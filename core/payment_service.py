import uuid
from datetime import datetime, timedelta
from typing import Dict, Tuple

from core.config import cfg
from core.errors import (
    AlreadyProcessedError,
    AmountMismatchError,
    BadGatewayError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from core.gateways import SUCCESS_TRADE_STATUSES, GatewayError, get_gateway
from core.models.order import Order
from core.models.payment_transaction import PaymentTransaction
from core.models.recharge_record import RechargeRecord
from core.models.user import User as DBUser
from core.order_kind import decode_order_kind
from core.order_service import (
    AMOUNT_EPSILON,
    ORDER_STATUS_PENDING,
    TXN_STATUS_PENDING,
    expected_gateway_amount,
    get_order_by_no,
    mark_order_paid,
    parse_callback_payload,
)
from core.recharge_service import RECHARGE_STATUS_PENDING, get_recharge_by_no, is_recharge_no, mark_recharge_paid
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

ACK_SUCCESS = "success"
ACK_FAIL = "fail"


def create_payment_for_order(session, order_no: str, provider: str, user_id: str = "") -> Dict:
    """为待支付订单发起网关支付，写入一条 pending 流水。"""
    order = get_order_by_no(session, order_no)
    if not order or (user_id and order.user_id != user_id):
        raise NotFoundError("订单不存在")
    if order.status != ORDER_STATUS_PENDING:
        raise ConflictError("订单状态不可支付")
    kind, _ = decode_order_kind(order)
    amount = expected_gateway_amount(order, kind)
    if amount <= AMOUNT_EPSILON:
        raise ValidationError("订单无需在线支付")
    if kind.balance_used > 0:
        # 余额在履约时才扣减，发起支付前按当前余额复核
        user = session.query(DBUser).filter(DBUser.id == order.user_id).first()
        if not user or float(user.balance or 0) + AMOUNT_EPSILON < kind.balance_used:
            raise ValidationError("余额不足，请取消订单后重新下单")

    adapter = get_gateway(provider)
    try:
        payment = adapter.create_payment(order.order_no, amount, subject=f"订单支付-{order.order_no}")
    except GatewayError as e:
        log_event(logger, E.PAYMENT_CREATE_FAIL, level="warning", order_no=order.order_no, provider=adapter.provider, error=e)
        raise BadGatewayError(str(e)) from e

    now = datetime.now()
    session.add(
        PaymentTransaction(
            id=str(uuid.uuid4()),
            order_id=order.id,
            user_id=order.user_id,
            payment_method=adapter.provider,
            amount=int(round(amount * 100)),
            currency="CNY",
            status=TXN_STATUS_PENDING,
            external_transaction_id=(payment.get("trade_no") or "")[:128] or None,
            created_at=now,
            updated_at=now,
        )
    )
    order.payment_method = adapter.provider
    order.updated_at = now
    session.commit()
    log_event(logger, E.PAYMENT_CREATE, order_no=order.order_no, provider=adapter.provider, amount=f"{amount:.2f}")
    return dict(payment, provider=adapter.provider, amount=round(amount, 2))


def create_payment_for_recharge(session, order_no: str, provider: str, user_id: str = "") -> Dict:
    record = get_recharge_by_no(session, order_no)
    if not record or (user_id and record.user_id != user_id):
        raise NotFoundError("充值记录不存在")
    if record.status != RECHARGE_STATUS_PENDING:
        raise ConflictError("充值记录状态不可支付")
    adapter = get_gateway(provider)
    try:
        payment = adapter.create_payment(record.order_no, float(record.amount), subject=f"余额充值-{record.order_no}")
    except GatewayError as e:
        log_event(logger, E.PAYMENT_CREATE_FAIL, level="warning", order_no=record.order_no, provider=adapter.provider, error=e)
        raise BadGatewayError(str(e)) from e
    record.payment_method = adapter.provider
    record.updated_at = datetime.now()
    session.commit()
    log_event(logger, E.PAYMENT_CREATE, order_no=record.order_no, provider=adapter.provider, amount=f"{float(record.amount):.2f}")
    return dict(payment, provider=adapter.provider, amount=round(float(record.amount), 2))


def handle_gateway_notify(session, provider: str, params: Dict[str, str]) -> Tuple[int, str]:
    """
    处理网关异步回调，返回 (HTTP 状态码, 响应体)。

    - 验签失败：400，记安全日志
    - 非成功交易状态：直接应答 success，不改动订单
    - 重复回调 / 已关闭订单：应答 success，避免网关无限重试
    - 金额不一致：400，订单保持 pending
    """
    params = {str(k): "" if v is None else str(v) for k, v in dict(params or {}).items()}
    try:
        adapter = get_gateway(provider)
    except NotFoundError:
        log_event(logger, E.PAYMENT_NOTIFY_BAD_SIGN, level="warning", provider=provider, reason="unknown_provider")
        return 400, ACK_FAIL

    if not adapter.verify_notify(params):
        log_event(
            logger,
            E.PAYMENT_NOTIFY_BAD_SIGN,
            level="warning",
            provider=adapter.provider,
            order_no=params.get("out_trade_no", ""),
        )
        return 400, ACK_FAIL

    try:
        notify = adapter.parse_notify(params)
    except ValueError:
        log_event(logger, E.PAYMENT_NOTIFY_BAD_SIGN, level="warning", provider=adapter.provider, reason="bad_amount")
        return 400, ACK_FAIL
    order_no = notify["order_no"]
    log_event(
        logger,
        E.PAYMENT_NOTIFY,
        provider=adapter.provider,
        order_no=order_no,
        trade_no=notify["trade_no"],
        trade_status=notify["trade_status"],
        amount=notify["amount"],
    )
    if notify["trade_status"] not in SUCCESS_TRADE_STATUSES:
        log_event(logger, E.PAYMENT_NOTIFY_IGNORED, order_no=order_no, trade_status=notify["trade_status"])
        return 200, adapter.ack_text
    if notify["amount"] is None:
        log_event(logger, E.PAYMENT_NOTIFY_AMOUNT_MISMATCH, level="warning", order_no=order_no, reason="missing_amount")
        return 400, ACK_FAIL

    try:
        if is_recharge_no(order_no):
            mark_recharge_paid(session, order_no, external_txn_id=notify["trade_no"], callback_amount=notify["amount"])
        else:
            mark_order_paid(
                session,
                order_no,
                external_txn_id=notify["trade_no"],
                callback_amount=notify["amount"],
                payment_method=adapter.provider,
                callback_payload=parse_callback_payload(params),
            )
    except AlreadyProcessedError:
        return 200, adapter.ack_text
    except AmountMismatchError:
        return 400, ACK_FAIL
    except ConflictError:
        # 订单已取消/过期，已登记人工复核
        return 200, adapter.ack_text
    except NotFoundError:
        log_event(logger, E.PAYMENT_NOTIFY_IGNORED, level="warning", order_no=order_no, reason="order_not_found")
        return 404, ACK_FAIL
    return 200, adapter.ack_text


def _reconcile_due(last_checked: datetime, created_at: datetime, now: datetime) -> bool:
    after = int(cfg.get("order.reconcile_after_seconds", 5) or 0)
    interval = int(cfg.get("order.reconcile_min_interval_seconds", 10) or 0)
    if created_at and now - created_at < timedelta(seconds=after):
        return False
    if last_checked and now - last_checked < timedelta(seconds=interval):
        return False
    return True


def reconcile_pending_order(session, order: Order) -> bool:
    """
    主动向网关查单：回调丢失时补单。

    返回 True 表示本次将订单置为已支付。查询失败只记日志，不影响调用方。
    """
    if order.status != ORDER_STATUS_PENDING or not order.payment_method:
        return False
    now = datetime.now()
    if not _reconcile_due(order.last_reconciled_at, order.created_at, now):
        return False
    try:
        adapter = get_gateway(order.payment_method)
    except NotFoundError:
        return False

    order.last_reconciled_at = now
    session.commit()
    try:
        result = adapter.query_order(order.order_no)
    except GatewayError as e:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=order.order_no, error=e)
        return False
    if result.get("trade_status") not in SUCCESS_TRADE_STATUSES:
        return False
    if result.get("amount") is None:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=order.order_no, error="missing_amount")
        return False
    try:
        mark_order_paid(
            session,
            order.order_no,
            external_txn_id=result.get("trade_no", ""),
            callback_amount=result.get("amount"),
            payment_method=adapter.provider,
            callback_payload=parse_callback_payload(dict(result, source="reconcile")),
        )
    except AlreadyProcessedError:
        return False
    except ServiceError as e:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=order.order_no, error=e)
        return False
    log_event(logger, E.ORDER_RECONCILE, order_no=order.order_no, trade_no=result.get("trade_no", ""))
    return True


def reconcile_pending_recharge(session, record: RechargeRecord) -> bool:
    if record.status != RECHARGE_STATUS_PENDING or not record.payment_method:
        return False
    if not _reconcile_due(None, record.created_at, datetime.now()):
        return False
    try:
        adapter = get_gateway(record.payment_method)
        result = adapter.query_order(record.order_no)
    except (NotFoundError, GatewayError) as e:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=record.order_no, error=e)
        return False
    if result.get("trade_status") not in SUCCESS_TRADE_STATUSES:
        return False
    if result.get("amount") is None:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=record.order_no, error="missing_amount")
        return False
    try:
        mark_recharge_paid(session, record.order_no, external_txn_id=result.get("trade_no", ""), callback_amount=result.get("amount"))
    except ServiceError as e:
        log_event(logger, E.ORDER_RECONCILE_FAIL, level="warning", order_no=record.order_no, error=e)
        return False
    log_event(logger, E.ORDER_RECONCILE, order_no=record.order_no, trade_no=result.get("trade_no", ""))
    return True
