from supabase import create_client, Client, ClientOptions
from core.config import settings, logger
from core.errors import AuthenticationError
from typing import Optional
import asyncio
from functools import partial

# Anon client used only for token verification; it carries no caller identity
_auth_client: Optional[Client] = None
_init_lock = asyncio.Lock()

async def get_supabase_client() -> Client:
    """
    Initializes and returns the shared anon-key Supabase client (thread-safe).

    Only used to verify bearer tokens against Supabase Auth. Table and bucket
    access always goes through `client_for` with the caller's token.
    """
    global _auth_client

    if _auth_client is None:
        async with _init_lock:
            # Double check after acquiring lock
            if _auth_client is None:
                url = settings.SUPABASE_URL
                key = settings.SUPABASE_KEY

                if url and key:
                    logger.info("Initializing Supabase auth client with anon key...")
                    try:
                        # Run create_client in a thread pool since it's synchronous
                        loop = asyncio.get_running_loop()
                        _auth_client = await loop.run_in_executor(
                            None,
                            partial(create_client, url, key)
                        )
                        logger.info("Supabase auth client initialized successfully.")
                    except Exception as e:
                        logger.error(f"Failed to initialize Supabase auth client: {e}", exc_info=True)
                        raise RuntimeError(f"Failed to initialize Supabase client: {e}")
                else:
                    logger.error("Supabase URL or Anon Key not configured. Cannot create client.")
                    raise ValueError("Supabase URL or Anon Key not configured")

    return _auth_client


def client_for(access_token: Optional[str]) -> Client:
    """
    Builds a new Supabase client bound to the caller's bearer token.

    Call once per request and discard afterwards. The token travels as the
    Authorization header for PostgREST and Storage so RLS policies see the
    caller's identity. There is no fallback credential: a missing token fails.
    """
    if not access_token or not access_token.strip():
        logger.warning("Refusing to build a scoped Supabase client without a bearer token.")
        raise AuthenticationError("No authentication token provided")

    url = settings.SUPABASE_URL
    key = settings.SUPABASE_KEY
    if not url or not key:
        logger.error("Supabase URL or Anon Key not configured. Cannot create scoped client.")
        raise ValueError("Supabase URL or Anon Key not configured")

    options = ClientOptions(headers={"Authorization": f"Bearer {access_token}"})
    client = create_client(url, key, options=options)
    # PostgREST keeps its own session header; pin it to the caller as well
    client.postgrest.auth(access_token)
    return client
