import hmac
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.errors import AccountNotFound
from app.models.wallet import Account
from app.services.bootstrap_service import WalletEngine

security = HTTPBearer(auto_error=False)


def get_engine(request: Request) -> WalletEngine:
    return request.app.state.engine


async def get_current_account(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    engine: WalletEngine = Depends(get_engine),
) -> Account:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    token = creds.credentials
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"], options={"require": ["exp", "iat", "sub"]})
        sub = payload.get("sub")
        if not sub:
            raise ValueError("no sub")
        account_id = int(sub)
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from e

    try:
        return await engine.ledger.get_account(account_id)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="account not found") from e


async def require_admin(x_admin_secret: Optional[str] = Header(default=None)) -> None:
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, settings.ADMIN_SECRET):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin secret required")
