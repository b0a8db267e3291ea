import json
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict

import requests

from core.config import cfg
from core.models.outbox_message import OutboxMessage
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


OUTBOX_STATUS_PENDING = "pending"
OUTBOX_STATUS_SENT = "sent"
OUTBOX_STATUS_DEAD = "dead"

KIND_ORDER_PAID = "order_paid"
KIND_ADMIN_ORDER_PAID = "admin_order_paid"
KIND_RECHARGE_PAID = "recharge_paid"
KIND_FULFILLMENT_FAILED = "admin_fulfillment_failed"
KIND_SUBSCRIPTION_RESET = "subscription_reset"


def enqueue_notification(session, kind: str, recipient: str, params: Dict = None) -> OutboxMessage:
    """在调用方事务内写入一条待发送通知，随业务数据一起提交。"""
    now = datetime.now()
    message = OutboxMessage(
        id=str(uuid.uuid4()),
        kind=str(kind or "")[:64],
        recipient=str(recipient or "")[:255],
        payload=json.dumps(params or {}, ensure_ascii=False, default=str),
        status=OUTBOX_STATUS_PENDING,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    session.add(message)
    log_event(logger, E.OUTBOX_ENQUEUE, kind=kind, recipient=recipient)
    return message


def admin_recipient() -> str:
    return str(cfg.get("notify.admin_recipient", "") or "")


def webhook_sender(message: OutboxMessage) -> None:
    """默认投递方式：配置了 notify.webhook_url 时 POST JSON，否则仅记录日志。"""
    url = str(cfg.get("notify.webhook_url", "") or "").strip()
    body = {
        "kind": message.kind,
        "recipient": message.recipient,
        "params": json.loads(message.payload or "{}"),
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
    if not url:
        logger.info("通知未配置投递地址，仅记录: kind=%s recipient=%s", message.kind, message.recipient)
        return
    timeout = float(cfg.get("payment.http_timeout_seconds", 10) or 10)
    resp = requests.post(url, json=body, timeout=timeout)
    resp.raise_for_status()


def _backoff(attempts: int) -> timedelta:
    return timedelta(seconds=min(3600, 30 * (2 ** max(0, attempts - 1))))


def dispatch_pending(session, sender: Callable[[OutboxMessage], None] = None, limit: int = 50) -> Dict:
    """投递到期的待发送通知。失败的记录错误并按指数退避重试，超过上限后标记为 dead。"""
    sender = sender or webhook_sender
    max_attempts = max(1, int(cfg.get("notify.max_attempts", 5) or 5))
    now = datetime.now()
    rows = (
        session.query(OutboxMessage)
        .filter(
            OutboxMessage.status == OUTBOX_STATUS_PENDING,
            OutboxMessage.next_attempt_at <= now,
        )
        .order_by(OutboxMessage.created_at.asc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )
    sent = 0
    failed = 0
    for message in rows:
        message.attempts = int(message.attempts or 0) + 1
        try:
            sender(message)
        except Exception as e:
            failed += 1
            message.last_error = str(e)[:1000]
            if message.attempts >= max_attempts:
                message.status = OUTBOX_STATUS_DEAD
            else:
                message.next_attempt_at = datetime.now() + _backoff(message.attempts)
            log_event(
                logger,
                E.OUTBOX_SEND_FAIL,
                level="warning",
                id=message.id,
                kind=message.kind,
                attempts=message.attempts,
                status=message.status,
                error=e,
            )
        else:
            sent += 1
            message.status = OUTBOX_STATUS_SENT
            message.sent_at = datetime.now()
            message.last_error = None
            log_event(logger, E.OUTBOX_SEND_COMPLETE, id=message.id, kind=message.kind)
        session.commit()
    return {"total": len(rows), "sent": sent, "failed": failed}
