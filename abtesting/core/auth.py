from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .settings import Settings, get_settings

# Tells FastAPI where to look for the token. Tokens are issued out of band;
# the service only checks them against the configured allow-list.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(
    token: Annotated[str, Depends(oauth2_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    """
    Dependency that requires a Bearer token present in ``TOKENS``.

    A missing Authorization header is rejected by OAuth2PasswordBearer itself
    with a 401 before this runs.
    """
    if not token or token not in settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
