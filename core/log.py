"""
core/log.py — 日志配置

• 根日志器挂载 colorlog 控制台 handler，可选按大小滚动的文件 handler
• trace_id 存放在 ContextVar 中，请求中间件与后台 Job 各自设置
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息

    from core.log import get_logger, trace_ctx
    logger = get_logger(__name__)

    with trace_ctx(order.order_no):
        logger.info("event=fulfillment.start | order_no=%s", order.order_no)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

import colorlog

from core.config import cfg

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """设置当前上下文的 trace_id，返回实际值。"""
    tid = str(tid or "").strip()[:16] or _new_trace_id()
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> str:
    return _trace_id_var.get()


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    """后台任务使用的 trace 上下文，退出时恢复原值。"""
    token = _trace_id_var.set(str(trace_id or "").strip()[:16] or _new_trace_id())
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
_level = _LEVEL_MAP.get(str(cfg.get("log.level", "INFO")).upper(), logging.INFO)
_LOG_FILE = str(cfg.get("log.file", "") or "")

_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


_trace_filter = _TraceIdFilter()
_APP_HANDLER_MARKER = "_is_app_log_handler"


def _setup_app_logging() -> None:
    """注册根日志 handler（幂等，uvicorn --reload 下不会重复添加）。"""
    root = logging.getLogger()
    if any(getattr(h, _APP_HANDLER_MARKER, False) for h in root.handlers):
        return
    root.setLevel(_level)

    ch = colorlog.StreamHandler(stream=sys.stdout)
    ch.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s" + _FMT,
            datefmt=_DATE_FMT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    ch.setLevel(_level)
    ch.addFilter(_trace_filter)
    setattr(ch, _APP_HANDLER_MARKER, True)
    root.addHandler(ch)

    if _LOG_FILE:
        fh = logging.handlers.RotatingFileHandler(
            f"{_LOG_FILE}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=7,
            encoding="utf-8",
        )
        fh.setLevel(_level)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        fh.addFilter(_trace_filter)
        setattr(fh, _APP_HANDLER_MARKER, True)
        root.addHandler(fh)


_setup_app_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
