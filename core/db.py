import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


class Db:
    """数据库连接：按需创建 engine，业务函数显式接收 session。"""

    def __init__(self, url: str = None):
        self._url = url
        self._engine = None
        self._session_factory = None

    @property
    def url(self) -> str:
        return str(self._url or cfg.get("db", "sqlite:///data/db.db"))

    @property
    def engine(self):
        if self._engine is None:
            url = self.url
            connect_args = {}
            if url.startswith("sqlite"):
                connect_args["check_same_thread"] = False
                path = url.split("sqlite:///", 1)[-1]
                folder = os.path.dirname(path)
                if path and path != ":memory:" and folder:
                    os.makedirs(folder, exist_ok=True)
            self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._engine

    def get_session(self):
        self.engine
        return self._session_factory()

    def create_tables(self):
        from core.models.base import Base
        import core.models  # noqa: F401

        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, level="debug", tables=len(Base.metadata.tables))


DB = Db()
