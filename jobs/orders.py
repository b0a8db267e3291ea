import time
from threading import Thread

from core.config import cfg
from core.db import DB
from core.fulfillment_service import retry_failed_fulfillments
from core.order_service import expire_pending_orders
from core.log import get_logger, trace_ctx
from core.events import log_event, E

logger = get_logger(__name__)


def run_order_sweep_once() -> dict:
    session = DB.get_session()
    try:
        log_event(logger, E.ORDER_SWEEP_START)
        result = expire_pending_orders(session, limit=1000)
        log_event(logger, E.ORDER_SWEEP_COMPLETE, total=result.get("total", 0))
        return result
    finally:
        session.close()


def run_fulfillment_retry_once() -> dict:
    session = DB.get_session()
    try:
        result = retry_failed_fulfillments(session, limit=100)
        if result.get("total"):
            logger.info("履约补偿完成: done=%s failed=%s", len(result["done"]), len(result["failed"]))
        return result
    finally:
        session.close()


def _sweep_loop():
    interval = max(30, int(cfg.get("jobs.order_sweep_interval_seconds", 300) or 300))
    while True:
        with trace_ctx():
            try:
                run_order_sweep_once()
            except Exception:
                logger.exception("过期订单扫描异常")
        time.sleep(interval)


def _retry_loop():
    interval = max(10, int(cfg.get("jobs.fulfillment_retry_interval_seconds", 120) or 120))
    while True:
        with trace_ctx():
            try:
                run_fulfillment_retry_once()
            except Exception:
                logger.exception("履约补偿任务异常")
        time.sleep(interval)


def start_order_sweep_worker():
    log_event(logger, E.SYSTEM_JOB_START, job="order_sweep")
    t = Thread(target=_sweep_loop, daemon=True, name="order-sweep")
    t.start()
    return t


def start_fulfillment_retry_worker():
    log_event(logger, E.SYSTEM_JOB_START, job="fulfillment_retry")
    t = Thread(target=_retry_loop, daemon=True, name="fulfillment-retry")
    t.start()
    return t
