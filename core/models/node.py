from .base import Base, Column, String, Integer, DateTime, Boolean, Text


class Node(Base):
    __tablename__ = "nodes"

    id = Column(String(255), primary_key=True)
    name = Column(String(100), nullable=False)
    region = Column(String(50), default="")
    type = Column(String(20), nullable=False)
    status = Column(String(20), default="offline")  # online/offline/timeout
    # JSON：{"type","server","port","uuid","password","cipher","network","tls",...}
    config = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class CustomNode(Base):
    """专线节点，仅对分配到的用户可见。"""

    __tablename__ = "custom_nodes"

    id = Column(String(255), primary_key=True)
    name = Column(String(100), nullable=False)
    display_name = Column(String(100), default="")
    protocol = Column(String(20), default="")
    domain = Column(String(255), default="")
    port = Column(Integer, default=443)
    config = Column(Text, nullable=True)
    status = Column(String(20), default="inactive")
    is_active = Column(Boolean, default=True)
    expire_time = Column(DateTime, nullable=True)
    follow_user_expire = Column(Boolean, default=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class UserCustomNode(Base):
    __tablename__ = "user_custom_nodes"

    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), index=True, nullable=False)
    custom_node_id = Column(String(255), index=True, nullable=False)
    created_at = Column(DateTime)
