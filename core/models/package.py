from .base import Base, Column, String, Integer, Float, DateTime, Boolean, Text


class Package(Base):
    __tablename__ = "packages"

    id = Column(String(255), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    duration_days = Column(Integer, nullable=False, default=30)
    device_limit = Column(Integer, nullable=False, default=3)
    sort_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    is_recommended = Column(Boolean, default=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
