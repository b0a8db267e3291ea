from .base import Base, Column, String, Integer, Float, DateTime


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(255), primary_key=True)
    code = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(100), default="")
    type = Column(String(20), nullable=False, default="discount")  # discount/fixed
    discount_value = Column(Float, nullable=False, default=0.0)
    min_amount = Column(Float, default=0.0)
    max_discount = Column(Float, nullable=True)
    total_quantity = Column(Integer, nullable=True)
    used_quantity = Column(Integer, default=0)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    status = Column(String(20), default="active")
    created_at = Column(DateTime)
