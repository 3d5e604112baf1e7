import asyncio
import logging
from typing import Optional

from fastapi import Request
from supabase import AuthError, AuthRetryableError, Client, create_client

from timebill import config

logger = logging.getLogger(__name__)

supabase: Client = None


def init_supabase_client():
    """Initialises the global Supabase client. Must be called at application startup."""
    global supabase
    url: str | None = config.SUPABASE_URL
    key: str | None = config.SUPABASE_ANON_KEY

    if not url or not key:
        error_message = "SUPABASE_URL and SUPABASE_ANON_KEY were not found. " \
                        "Make sure the project root has a .env file containing them."
        raise ValueError(error_message)
    supabase = create_client(url, key)


class SessionExpiredError(Exception):
    """Both the access token and the refresh token are no longer valid."""
    pass


class User:
    """The signed-in user as reported by Supabase. `id` is the stable owner id for every record."""
    def __init__(self, id: str, email: str, token: str, refresh_token: str = None, new_session = None):
        self.id = id
        self.email = email
        self.token = token
        self.refresh_token = refresh_token
        # Set when the access token was refreshed, so the cookies can be updated
        self.new_session = new_session


async def get_user_from_token(access_token: str) -> Optional[User]:
    """Resolves an access token handed over after Google sign-in."""
    try:
        user_response = await asyncio.to_thread(supabase.auth.get_user, jwt=access_token)
    except AuthError as e:
        logger.warning("Rejected access token: %s", e)
        return None
    user_data = user_response.user
    return User(id=user_data.id, email=user_data.email, token=access_token)


async def get_current_user(request: Request) -> Optional[User]:
    """
    Validates the Supabase token stored in a cookie and returns the user.
    An expired access token is refreshed with the refresh token.
    Returns `None` when not signed in or when Supabase cannot be reached, and
    raises `SessionExpiredError` when the refresh token is no longer valid either.
    """
    access_token = request.cookies.get("access_token")
    refresh_token = request.cookies.get("refresh_token")

    if not access_token:
        return None

    try:
        # The Supabase client is synchronous; keep it off the event loop
        user_response = await asyncio.to_thread(supabase.auth.get_user, jwt=access_token)
        user_data = user_response.user
        return User(id=user_data.id, email=user_data.email, token=access_token, refresh_token=refresh_token)
    except AuthRetryableError as e:
        logger.warning("Supabase unavailable while validating the session: %s", e)
        return None
    except AuthError:
        # Most likely the access token expired. Try a refresh.
        if not refresh_token:
            return None

    try:
        new_session_response = await asyncio.to_thread(supabase.auth.refresh_session, refresh_token=refresh_token)
    except AuthRetryableError as e:
        logger.warning("Supabase unavailable while refreshing the session: %s", e)
        return None
    except (AuthError, TypeError):
        raise SessionExpiredError("Refresh token is invalid or expired")

    new_session = new_session_response.session
    if new_session is None:
        raise SessionExpiredError("Refresh token is invalid or expired")
    return User(
        id=new_session.user.id, email=new_session.user.email,
        token=new_session.access_token, refresh_token=new_session.refresh_token,
        new_session=new_session
    )
