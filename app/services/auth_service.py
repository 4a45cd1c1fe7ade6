import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("auth_service")

security = HTTPBasic(auto_error=False)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Basic"},
    )


def check_admin_credentials(username: str, password: str) -> bool:
    expected_user = settings.admin_user
    expected_password = settings.admin_password
    if not expected_user or not expected_password:
        logger.error("ADMIN_USER or ADMIN_PASSWORD is not configured")
        return False
    user_ok = secrets.compare_digest(username.encode("utf-8"), expected_user.encode("utf-8"))
    password_ok = secrets.compare_digest(password.encode("utf-8"), expected_password.encode("utf-8"))
    return user_ok and password_ok


def require_admin(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
    if credentials is None or not check_admin_credentials(credentials.username, credentials.password):
        raise _unauthorized()
    return credentials.username
