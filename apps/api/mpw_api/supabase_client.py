"""Supabase admin client for the REST storage backend.

SECURITY NOTICE:
- SUPABASE_SERVICE_ROLE_KEY is server-only and bypasses RLS
- The client never persists or refreshes an auth session
"""

import logging
from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from mpw_api.config import env

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_supabase_admin_client() -> Client:
    """Get Supabase admin client for server-side table access.

    Raises:
        ValueError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is not set
    """
    url = env.get_supabase_url()
    service_role_key = env.get_supabase_service_role_key()

    # Log initialization (without exposing keys)
    logger.info(
        "Initializing Supabase admin client",
        extra={"supabase_url": url, "key_type": "service_role", "schema": env.get_supabase_schema()},
    )

    return create_client(
        url,
        service_role_key,
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )
