from .base import Base, Column, String, Integer, DateTime, Text


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(255), primary_key=True)
    order_id = Column(String(255), index=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)
    payment_method = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False, default=0)  # 分
    currency = Column(String(16), nullable=False, default="CNY")
    status = Column(String(32), index=True, nullable=False, default="pending")
    external_transaction_id = Column(String(128), nullable=True)
    callback_data = Column(Text, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
