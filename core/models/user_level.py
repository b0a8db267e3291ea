from .base import Base, Column, String, Integer, Float, Boolean


class UserLevel(Base):
    __tablename__ = "user_levels"

    id = Column(String(255), primary_key=True)
    level_name = Column(String(50), nullable=False)
    level_order = Column(Integer, nullable=False, default=0)
    min_consumption = Column(Float, nullable=False, default=0.0)
    discount_rate = Column(Float, nullable=False, default=1.0)
    is_active = Column(Boolean, default=True)
