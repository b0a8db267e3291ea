from .base import Base, Column, String, Integer, DateTime, Text


class SubscriptionReset(Base):
    __tablename__ = "subscription_resets"

    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), index=True, nullable=False)
    subscription_id = Column(String(255), index=True, nullable=False)
    reset_type = Column(String(20), nullable=False, default="manual")  # manual/admin/auto
    reason = Column(Text, nullable=True)
    old_subscription_url = Column(String(100), index=True, nullable=True)
    new_subscription_url = Column(String(100), nullable=True)
    device_count_before = Column(Integer, default=0)
    device_count_after = Column(Integer, default=0)
    reset_by = Column(String(50), nullable=True)
    created_at = Column(DateTime)
