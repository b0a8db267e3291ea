import secrets
import uuid
from datetime import datetime
from typing import Dict, List

from sqlalchemy.exc import SQLAlchemyError

from core.config import cfg
from core.device_service import subscription_device_lock
from core.errors import InternalError, NotFoundError
from core.models.device import Device
from core.models.subscription import Subscription
from core.models.subscription_reset import SubscriptionReset
from core.models.user import User as DBUser
from core.notify_service import KIND_SUBSCRIPTION_RESET, enqueue_notification
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


SUBSCRIPTION_STATUS_ACTIVE = "active"
SUBSCRIPTION_STATUS_INACTIVE = "inactive"

RESET_TYPE_MANUAL = "manual"
RESET_TYPE_ADMIN = "admin"


def generate_subscription_url() -> str:
    return secrets.token_urlsafe(16)


def _unique_subscription_url(session) -> str:
    for _ in range(5):
        candidate = generate_subscription_url()
        exists = session.query(Subscription.id).filter(Subscription.subscription_url == candidate).first()
        if not exists:
            return candidate
    raise InternalError("订阅地址生成失败，请重试")


def get_subscription_by_user(session, user_id: str) -> Subscription:
    return session.query(Subscription).filter(Subscription.user_id == user_id).first()


def get_subscription_by_url(session, subscription_url: str) -> Subscription:
    url = str(subscription_url or "").strip()
    if not url:
        return None
    return session.query(Subscription).filter(Subscription.subscription_url == url).first()


def ensure_user_subscription(session, user_id: str, device_limit: int = None) -> Subscription:
    """返回用户的订阅，不存在时创建一个已到期的空订阅（只 flush，不提交）。"""
    sub = get_subscription_by_user(session, user_id)
    if sub:
        return sub
    now = datetime.now()
    limit = device_limit if device_limit is not None else int(cfg.get("subscription.default_device_limit", 3) or 3)
    sub = Subscription(
        id=str(uuid.uuid4()),
        user_id=user_id,
        subscription_url=_unique_subscription_url(session),
        device_limit=int(limit),
        current_devices=0,
        is_active=True,
        status=SUBSCRIPTION_STATUS_ACTIVE,
        expire_time=now,
        clash_count=0,
        universal_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(sub)
    session.flush()
    log_event(logger, E.SUBSCRIPTION_CREATE, user_id=user_id, subscription_id=sub.id)
    return sub


def rotate_subscription_url(
    session,
    subscription_id: str,
    actor: str = "",
    reason: str = "",
    reset_type: str = RESET_TYPE_MANUAL,
) -> SubscriptionReset:
    """
    重置订阅地址：生成新地址、清空设备并写入审计记录，全部在同一事务内完成。

    旧地址在提交后立即失效，没有宽限期。
    """
    try:
        sub = (
            session.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .first()
        )
        if not sub:
            raise NotFoundError("订阅不存在")
        now = datetime.now()
        old_url = sub.subscription_url
        device_count_before = session.query(Device).filter(Device.subscription_id == sub.id).count()
        session.query(Device).filter(Device.subscription_id == sub.id).delete(synchronize_session=False)

        sub.subscription_url = _unique_subscription_url(session)
        sub.current_devices = 0
        sub.updated_at = now
        reset = SubscriptionReset(
            id=str(uuid.uuid4()),
            user_id=sub.user_id,
            subscription_id=sub.id,
            reset_type=reset_type,
            reason=(reason or "")[:500],
            old_subscription_url=old_url,
            new_subscription_url=sub.subscription_url,
            device_count_before=device_count_before,
            device_count_after=0,
            reset_by=(actor or "")[:50],
            created_at=now,
        )
        session.add(reset)
        owner = session.query(DBUser).filter(DBUser.id == sub.user_id).first()
        if owner:
            enqueue_notification(
                session,
                KIND_SUBSCRIPTION_RESET,
                owner.email or owner.username,
                {"reset_type": reset_type, "devices_removed": device_count_before, "reason": reason or ""},
            )
        session.commit()
    except (NotFoundError, InternalError):
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("订阅地址重置失败: subscription_id=%s", subscription_id)
        raise InternalError("订阅重置失败，请稍后重试") from e
    log_event(
        logger,
        E.SUBSCRIPTION_RESET,
        subscription_id=subscription_id,
        devices_before=device_count_before,
        reset_type=reset_type,
        actor=actor,
    )
    return reset


def was_reset(session, subscription_url: str) -> bool:
    url = str(subscription_url or "").strip()
    if not url:
        return False
    return (
        session.query(SubscriptionReset.id)
        .filter(SubscriptionReset.old_subscription_url == url)
        .first()
        is not None
    )


def list_devices(session, subscription_id: str) -> List[Dict]:
    rows = (
        session.query(Device)
        .filter(Device.subscription_id == subscription_id)
        .order_by(Device.last_access.desc())
        .all()
    )
    return [device_to_dict(x) for x in rows]


def remove_device(session, subscription_id: str, device_id: str) -> bool:
    with subscription_device_lock(subscription_id):
        sub = (
            session.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .first()
        )
        if not sub:
            raise NotFoundError("订阅不存在")
        device = (
            session.query(Device)
            .filter(Device.id == device_id, Device.subscription_id == subscription_id)
            .first()
        )
        if not device:
            raise NotFoundError("设备不存在")
        session.delete(device)
        session.flush()
        sub.current_devices = session.query(Device).filter(
            Device.subscription_id == subscription_id,
            Device.is_active == True,  # noqa: E712
        ).count()
        sub.updated_at = datetime.now()
        session.commit()
    log_event(logger, E.DEVICE_REMOVE, subscription_id=subscription_id, device_id=device_id)
    return True


def device_to_dict(device: Device) -> Dict:
    return {
        "id": device.id,
        "device_name": device.device_name or "",
        "device_type": device.device_type or "unknown",
        "software_name": device.software_name or "",
        "software_version": device.software_version or "",
        "os_name": device.os_name or "",
        "os_version": device.os_version or "",
        "device_model": device.device_model or "",
        "device_brand": device.device_brand or "",
        "ip_address": device.ip_address or "",
        "subscription_type": device.subscription_type or "",
        "is_active": bool(device.is_active),
        "access_count": int(device.access_count or 0),
        "first_seen": device.first_seen.isoformat() if device.first_seen else None,
        "last_access": device.last_access.isoformat() if device.last_access else None,
    }


def subscription_to_dict(sub: Subscription) -> Dict:
    now = datetime.now()
    remaining_days = 0
    if sub.expire_time and sub.expire_time > now:
        remaining_days = (sub.expire_time - now).days
    return {
        "id": sub.id,
        "user_id": sub.user_id,
        "subscription_url": sub.subscription_url,
        "device_limit": int(sub.device_limit or 0),
        "current_devices": int(sub.current_devices or 0),
        "is_active": bool(sub.is_active),
        "status": sub.status,
        "expire_time": sub.expire_time.isoformat() if sub.expire_time else None,
        "remaining_days": remaining_days,
        "package_id": sub.package_id,
        "clash_count": int(sub.clash_count or 0),
        "universal_count": int(sub.universal_count or 0),
    }
