from .base import Base, Column, String, Integer, DateTime, Text


class FulfillmentTask(Base):
    """已支付但履约失败的订单，等待重试或人工处理。"""

    __tablename__ = "fulfillment_tasks"

    id = Column(String(255), primary_key=True)
    order_id = Column(String(255), unique=True, index=True, nullable=False)
    status = Column(String(20), index=True, nullable=False, default="pending")  # pending/done/dead
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
