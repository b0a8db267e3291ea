import time
from threading import Thread

from core.config import cfg
from core.db import DB
from core.notify_service import dispatch_pending
from core.log import get_logger, trace_ctx
from core.events import log_event, E

logger = get_logger(__name__)


def run_dispatch_once(sender=None) -> dict:
    session = DB.get_session()
    try:
        return dispatch_pending(session, sender=sender, limit=100)
    finally:
        session.close()


def _worker_loop():
    interval = max(1, int(cfg.get("jobs.outbox_interval_seconds", 15) or 15))
    while True:
        with trace_ctx():
            try:
                run_dispatch_once()
            except Exception:
                logger.exception("通知投递异常")
        time.sleep(interval)


def start_outbox_worker():
    log_event(logger, E.SYSTEM_JOB_START, job="outbox")
    t = Thread(target=_worker_loop, daemon=True, name="outbox-dispatcher")
    t.start()
    return t
