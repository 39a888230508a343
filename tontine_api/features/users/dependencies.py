"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from datetime import datetime, timezone
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core.database.engine import get_db
from tontine_api.core.errors import NotAuthenticated
from tontine_api.features.users.models import User
from tontine_api.features.users.auth import verify_jwt_token, get_appwrite_user


security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from the bearer token.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Decodes it (Appwrite issued)
    3. Looks up or creates the user in the local database
    4. Updates last_login_at

    Raises:
        NotAuthenticated: no token, bad token, or deactivated account
    """
    if credentials is None or not credentials.credentials:
        raise NotAuthenticated()

    payload = verify_jwt_token(credentials.credentials)
    appwrite_user_id = payload.get("userId")
    if not appwrite_user_id:
        raise NotAuthenticated("Invalid token payload")

    result = await db.execute(
        select(User).where(User.appwrite_id == appwrite_user_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        appwrite_user = await get_appwrite_user(appwrite_user_id)
        first_name, _, last_name = (appwrite_user.get("name") or "Unknown").partition(" ")
        user = User(
            appwrite_id=appwrite_user_id,
            first_name=first_name,
            last_name=last_name,
            email=appwrite_user.get("email") or None,
            phone_number=appwrite_user.get("phone") or None,
        )
        db.add(user)

    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)

    # Same answer as an unknown user: never reveal which accounts exist
    if not user.is_active:
        raise NotAuthenticated()

    return user


def get_authorization_header(request: Request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
