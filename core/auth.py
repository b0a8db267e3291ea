from datetime import datetime, timedelta
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext

from core.config import cfg, API_BASE
from core.db import DB
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

SECRET_KEY = str(cfg.get("secret", "change-me-in-config") or "change-me-in-config")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(cfg.get("token_expire_minutes", 60 * 24 * 7) or 60 * 24 * 7)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_BASE}/auth/login")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def authenticate_user(username: str, password: str) -> Optional[DBUser]:
    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.username == username).first()
        if not user or not user.is_active or not user.verify_password(password):
            log_event(logger, E.AUTH_LOGIN_FAIL, level="warning", username=username)
            return None
        user.last_login = datetime.now()
        session.commit()
        log_event(logger, E.AUTH_LOGIN_SUCCESS, username=username)
        return user
    finally:
        session.close()


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": 40101, "message": "登录已失效，请重新登录"},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict[str, str]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        raise _credentials_exception()
    username = payload.get("sub")
    if not username:
        raise _credentials_exception()

    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.username == username).first()
        if not user or not user.is_active:
            raise _credentials_exception()
        return {"id": user.id, "username": user.username, "role": user.role or "user"}
    finally:
        session.close()


def require_admin(current_user: dict) -> None:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"code": 40300, "message": "无权限执行此操作"})
