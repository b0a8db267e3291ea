from .base import Base, Column, String, Integer, Float, DateTime, Boolean


class InviteCode(Base):
    __tablename__ = "invite_codes"

    id = Column(String(255), primary_key=True)
    code = Column(String(32), unique=True, index=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)
    inviter_reward = Column(Float, default=0.0)
    invitee_reward = Column(Float, default=0.0)
    min_order_amount = Column(Float, default=0.0)
    new_user_only = Column(Boolean, default=True)
    used_count = Column(Integer, default=0)
    max_uses = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)


class InviteRelation(Base):
    __tablename__ = "invite_relations"

    id = Column(String(255), primary_key=True)
    invite_code_id = Column(String(255), index=True, nullable=False)
    inviter_id = Column(String(255), index=True, nullable=False)
    invitee_id = Column(String(255), unique=True, index=True, nullable=False)
    inviter_reward_given = Column(Boolean, default=False)
    invitee_reward_given = Column(Boolean, default=False)
    inviter_reward_amount = Column(Float, default=0.0)
    invitee_reward_amount = Column(Float, default=0.0)
    invitee_first_order_id = Column(String(255), nullable=True)
    invitee_total_consumption = Column(Float, default=0.0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
