from typing import Optional
from supabase import AsyncClient, acreate_client
from .config import get_settings

_client: Optional[AsyncClient] = None


async def get_supabase_client() -> AsyncClient:
    """
    Returns a process-wide async Supabase client configured with service role credentials.
    """
    global _client
    if _client is None:
        settings = get_settings()
        _client = await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client
