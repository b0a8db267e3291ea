"""
订阅访问闸门：每次拉取配置都要经过这里。

检查顺序（遇到第一个失败即返回）：
    1. 订阅地址存在（否则 NotFound，重置过的旧地址给出单独提示）
    2. 用户未被禁用
    3. 订阅未过期
    4. 订阅状态为 active 且 is_active
    5. 设备上限（在订阅级锁内完成计数与登记）
"""

from datetime import datetime
from typing import Dict

from core.device_service import record_device_access, subscription_device_lock
from core.errors import ForbiddenError, NotFoundError, ServiceError
from core.models.subscription import Subscription
from core.models.user import User as DBUser
from core.subscription_service import SUBSCRIPTION_STATUS_ACTIVE, was_reset
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


FORMAT_CLASH = "clash"
FORMAT_UNIVERSAL = "universal"
FORMATS = (FORMAT_CLASH, FORMAT_UNIVERSAL)


def _check_state(session, sub: Subscription, now: datetime) -> DBUser:
    user = session.query(DBUser).filter(DBUser.id == sub.user_id).first()
    if not user or not user.is_active:
        raise ForbiddenError("账户已被禁用，请联系客服")
    if sub.expire_time is not None and sub.expire_time <= now:
        raise ForbiddenError(f"订阅已于 {sub.expire_time.strftime('%Y-%m-%d')} 过期，请续费后使用")
    if sub.status != SUBSCRIPTION_STATUS_ACTIVE or not sub.is_active:
        raise ForbiddenError("订阅已失效，请联系管理员")
    return user


def check_subscription_access(
    session,
    subscription_url: str,
    user_agent: str = "",
    ip_address: str = "",
    device_id: str = "",
    fmt: str = FORMAT_CLASH,
) -> Dict:
    """
    校验订阅地址并登记访问设备，成功时提交事务。

    返回 {"subscription", "user", "device"}；失败抛出 NotFoundError / ForbiddenError，
    此时事务已回滚，锁已释放。
    """
    url = str(subscription_url or "").strip()
    fmt = fmt if fmt in FORMATS else FORMAT_CLASH
    try:
        sub = (
            session.query(Subscription)
            .filter(Subscription.subscription_url == url)
            .with_for_update()
            .first()
        ) if url else None
        if not sub:
            if url and was_reset(session, url):
                raise NotFoundError("订阅地址已重置，请登录官网获取最新地址")
            raise NotFoundError("订阅不存在")

        with subscription_device_lock(sub.id):
            try:
                session.refresh(sub)
                now = datetime.now()
                user = _check_state(session, sub, now)
                device = record_device_access(
                    session,
                    sub,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    device_id=device_id,
                    subscription_type=fmt,
                )
                if fmt == FORMAT_CLASH:
                    sub.clash_count = int(sub.clash_count or 0) + 1
                else:
                    sub.universal_count = int(sub.universal_count or 0) + 1
                sub.updated_at = now
                session.commit()
            except Exception:
                # 回滚须在释放锁之前完成
                session.rollback()
                raise
    except ServiceError as e:
        session.rollback()
        log_event(
            logger,
            E.SUBSCRIPTION_DENY,
            url=url[:8] + "***" if url else "",
            status=e.status_code,
            reason=e.message,
        )
        raise
    except Exception:
        session.rollback()
        raise

    log_event(
        logger,
        E.SUBSCRIPTION_FETCH,
        subscription_id=sub.id,
        format=fmt,
        devices=f"{int(sub.current_devices or 0)}/{int(sub.device_limit or 0)}",
    )
    return {"subscription": sub, "user": user, "device": device}
