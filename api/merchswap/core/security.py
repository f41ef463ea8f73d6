import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from merchswap.core.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Dependency: require ``Authorization: Bearer <CRON_SECRET>``."""
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), settings.CRON_SECRET.encode()
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
