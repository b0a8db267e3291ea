from .base import Base, Column, String, Float, DateTime, Text


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(255), primary_key=True, index=True)
    order_no = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)
    # 为空表示设备升级等附加订单
    package_id = Column(String(255), nullable=True)
    amount = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=True)
    # 余额抵扣 + 网关实付
    final_amount = Column(Float, nullable=True)
    status = Column(String(32), index=True, nullable=False, default="pending")
    coupon_id = Column(String(255), nullable=True)
    # 订单类型（PackageKind / DeviceUpgradeKind）的 JSON 编码
    extra_data = Column(Text, nullable=True)
    payment_method = Column(String(32), nullable=True)
    payment_time = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    last_reconciled_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
