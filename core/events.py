"""
core/events.py — 结构化事件日志

格式：event=xxx | key=val | key=val

    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.ORDER_PAY, order_no="ORD2024...", amount="30.00")
    # 输出：event=order.pay | order_no=ORD2024... | amount=30.00

安全相关事件（验签失败、金额不符）统一使用 level="warning" 以便告警检索。
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 认证 Auth ──────────────────────────────────────────────────────────────
    AUTH_LOGIN_SUCCESS = "auth.login.success"
    AUTH_LOGIN_FAIL = "auth.login.fail"

    # ── 订单 Order ─────────────────────────────────────────────────────────────
    ORDER_CREATE = "order.create"
    ORDER_PAY = "order.pay"
    ORDER_PAY_DUPLICATE = "order.pay.duplicate"
    ORDER_CANCEL = "order.cancel"
    ORDER_EXPIRE = "order.expire"
    ORDER_SWEEP_START = "order.sweep.start"
    ORDER_SWEEP_COMPLETE = "order.sweep.complete"
    ORDER_RECONCILE = "order.reconcile"
    ORDER_RECONCILE_FAIL = "order.reconcile.fail"

    # ── 支付 Payment ───────────────────────────────────────────────────────────
    PAYMENT_CREATE = "payment.create"
    PAYMENT_CREATE_FAIL = "payment.create.fail"
    PAYMENT_NOTIFY = "payment.notify"
    PAYMENT_NOTIFY_IGNORED = "payment.notify.ignored"
    PAYMENT_NOTIFY_BAD_SIGN = "payment.notify.bad_sign"
    PAYMENT_NOTIFY_AMOUNT_MISMATCH = "payment.notify.amount_mismatch"
    PAYMENT_GATEWAY_HTTP_FAIL = "payment.gateway.http_fail"

    # ── 履约 Fulfillment ───────────────────────────────────────────────────────
    FULFILLMENT_START = "fulfillment.start"
    FULFILLMENT_COMPLETE = "fulfillment.complete"
    FULFILLMENT_SKIP = "fulfillment.skip"
    FULFILLMENT_FAIL = "fulfillment.fail"
    FULFILLMENT_RETRY = "fulfillment.retry"
    FULFILLMENT_EXTRA_MALFORMED = "fulfillment.extra.malformed"
    INVITE_REWARD = "invite.reward"

    # ── 余额 Balance ───────────────────────────────────────────────────────────
    BALANCE_CHANGE = "balance.change"
    BALANCE_DUPLICATE = "balance.duplicate"
    BALANCE_NEGATIVE = "balance.negative"

    # ── 充值 Recharge ──────────────────────────────────────────────────────────
    RECHARGE_CREATE = "recharge.create"
    RECHARGE_PAY = "recharge.pay"
    RECHARGE_CANCEL = "recharge.cancel"

    # ── 订阅 Subscription ──────────────────────────────────────────────────────
    SUBSCRIPTION_CREATE = "subscription.create"
    SUBSCRIPTION_FETCH = "subscription.fetch"
    SUBSCRIPTION_DENY = "subscription.deny"
    SUBSCRIPTION_RESET = "subscription.reset"
    DEVICE_REGISTER = "device.register"
    DEVICE_REMOVE = "device.remove"
    DEVICE_LIMIT_REACHED = "device.limit_reached"

    # ── 通知 Outbox ────────────────────────────────────────────────────────────
    OUTBOX_ENQUEUE = "outbox.enqueue"
    OUTBOX_SEND_COMPLETE = "outbox.send.complete"
    OUTBOX_SEND_FAIL = "outbox.send.fail"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_JOB_START = "system.job.start"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

        log_event(logger, E.PAYMENT_NOTIFY_BAD_SIGN, level="warning",
                  provider="yipay", order_no="ORD...")
        # → event=payment.notify.bad_sign | provider=yipay | order_no=ORD...
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 单字段截断，避免回调原文撑爆日志
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    getattr(logger, level)(" | ".join(parts), stacklevel=2)
