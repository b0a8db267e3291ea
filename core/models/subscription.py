from .base import Base, Column, String, Integer, DateTime, Boolean


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), unique=True, index=True, nullable=False)
    subscription_url = Column(String(100), unique=True, index=True, nullable=False)
    device_limit = Column(Integer, nullable=False, default=3)
    current_devices = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    status = Column(String(20), default="active")  # active/inactive
    expire_time = Column(DateTime, nullable=True)
    package_id = Column(String(255), nullable=True)
    clash_count = Column(Integer, default=0)
    universal_count = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
