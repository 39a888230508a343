"""
Authentication utilities for Appwrite JWT verification.
"""
from typing import Optional
import jwt
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from tontine_api.core import config
from tontine_api.core.errors import NotAuthenticated
from tontine_api.utils import get_logger


log = get_logger(__name__)


class AppwriteClient:
    """Lazily built Appwrite client for server-side operations."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        if cls._instance is None:
            cls._instance = Client()
            cls._instance.set_endpoint(config.APPWRITE_ENDPOINT)
            cls._instance.set_project(config.APPWRITE_PROJECT_ID)
            cls._instance.set_key(config.APPWRITE_API_KEY)
        return cls._instance


def verify_jwt_token(token: str) -> dict:
    """
    Decode an Appwrite JWT and return its payload.

    Appwrite signs the token; we check expiry here and confirm the user
    exists in Appwrite on first sight.

    Raises:
        NotAuthenticated: if the token is expired or malformed
    """
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        log.debug("Rejected bearer token: %s", e)
        raise NotAuthenticated("Invalid token")


async def get_appwrite_user(user_id: str) -> dict:
    """
    Fetch a user from Appwrite.

    Raises:
        NotAuthenticated: if Appwrite does not know the user. The message
        never says whether the account exists.
    """
    try:
        users = Users(AppwriteClient.get_client())
        return users.get(user_id)
    except AppwriteException as e:
        log.info("Appwrite lookup failed for %s: %s", user_id, e)
        raise NotAuthenticated("Invalid credentials")
