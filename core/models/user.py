from .base import Base, Column, String, Integer, Float, DateTime, Boolean


class User(Base):
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(120), unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    role = Column(String(20), default="user")  # admin/user
    nickname = Column(String(50), default="")
    # 余额是 balance_entries 的缓存投影，只能经由 balance_service 修改
    balance = Column(Float, default=0.0, nullable=False)
    total_consumption = Column(Float, default=0.0, nullable=False)
    user_level_id = Column(String(255), nullable=True)
    total_invite_reward = Column(Float, default=0.0, nullable=False)
    total_invite_count = Column(Integer, default=0, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def verify_password(self, password: str) -> bool:
        from core.auth import pwd_context
        return pwd_context.verify(password, self.password_hash)
