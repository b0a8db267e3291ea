from .base import Base, Column, String, Float, DateTime, Text, UniqueConstraint


class BalanceEntry(Base):
    """余额流水（只追加）。同一 reason + reference_id 只能入账一次。"""

    __tablename__ = "balance_entries"
    __table_args__ = (
        UniqueConstraint("reason", "reference_id", "user_id", name="uq_balance_entry_reference"),
    )

    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), index=True, nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(String(32), index=True, nullable=False)
    reference_id = Column(String(255), nullable=False)
    balance_after = Column(Float, nullable=False, default=0.0)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime)
