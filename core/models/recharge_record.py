from .base import Base, Column, String, Float, DateTime


class RechargeRecord(Base):
    __tablename__ = "recharge_records"

    id = Column(String(255), primary_key=True)
    order_no = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String(32), index=True, nullable=False, default="pending")
    payment_method = Column(String(32), nullable=True)
    external_transaction_id = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
