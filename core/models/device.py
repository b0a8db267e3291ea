from .base import Base, Column, String, Integer, DateTime, Boolean, Text, UniqueConstraint


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (
        UniqueConstraint("subscription_id", "device_fingerprint", name="uq_device_subscription_fingerprint"),
    )

    id = Column(String(255), primary_key=True)
    subscription_id = Column(String(255), index=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)
    device_fingerprint = Column(String(64), index=True, nullable=False)
    device_name = Column(String(200), default="")
    device_type = Column(String(20), default="unknown")
    software_name = Column(String(50), default="")
    software_version = Column(String(50), default="")
    os_name = Column(String(50), default="")
    os_version = Column(String(50), default="")
    device_model = Column(String(100), default="")
    device_brand = Column(String(50), default="")
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    subscription_type = Column(String(20), default="")  # clash/universal
    is_active = Column(Boolean, default=True)
    access_count = Column(Integer, default=0)
    first_seen = Column(DateTime)
    last_access = Column(DateTime)
