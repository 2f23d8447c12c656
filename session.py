"""
Customer Session
================
Resolves the signed-in customer through Supabase Auth.

Checkout and tracking never run anonymously: no session is a
NotAuthenticatedError, raised before anything is read or written.
"""

import asyncio
import logging
from typing import Optional

from supabase import Client

from errors import NotAuthenticatedError

logger = logging.getLogger(__name__)


class SessionProvider:
    """Source of the current customer identity."""

    async def current_customer_id(self) -> Optional[str]:
        raise NotImplementedError


class SupabaseSessionProvider(SessionProvider):
    """Reads the session held by a Supabase client's auth module."""

    def __init__(self, client: Client):
        self.client = client

    async def current_customer_id(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        session = await loop.run_in_executor(None, self.client.auth.get_session)

        if session is None or session.user is None:
            logger.debug("No active Supabase session")
            return None

        return str(session.user.id)


async def require_customer_id(provider: SessionProvider) -> str:
    """
    Get the signed-in customer id.

    Raises:
        NotAuthenticatedError: No active session
    """
    customer_id = await provider.current_customer_id()
    if not customer_id:
        raise NotAuthenticatedError()
    return customer_id
