"""Service-role Supabase client shared by the entity, artifact and job stores."""

from supabase import ClientOptions, create_client, Client
from app.config import settings

_client: Client | None = None


def get_supabase() -> Client:
    """Get or create the Supabase client using the service role key.

    The service role bypasses row-level security; callers of this service
    are already authorized admins.
    """
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set "
                "when a supabase backend is configured"
            )
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
            options=ClientOptions(
                postgrest_client_timeout=settings.supabase_timeout_seconds,
                storage_client_timeout=settings.supabase_timeout_seconds,
            ),
        )
    return _client
