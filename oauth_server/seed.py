"""
Seed an OAuth client from environment. No hardcoded credentials.
Optional: OAUTH_CLIENT_ID + OAUTH_REDIRECT_URIS (comma-separated), OAUTH_SEED_CLIENT_SECRET
(confidential when set), OAUTH_CLIENT_SCOPES and OAUTH_CLIENT_GRANT_TYPES (space-separated).
"""
import logging
import os

from oauth_server.clients import ClientRegistry
from oauth_server.errors import ClientNotFound
from oauth_server.models import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN

logger = logging.getLogger(__name__)


def seed_from_env(registry: ClientRegistry, environ=None) -> str | None:
    """Register the client described by the environment if it does not exist yet. Returns its id."""
    env = os.environ if environ is None else environ
    client_id = env.get("OAUTH_CLIENT_ID")
    redirect_uris_str = env.get("OAUTH_REDIRECT_URIS") or env.get("OAUTH_REDIRECT_URI")
    if not client_id or not redirect_uris_str:
        return None
    uris = [u.strip() for u in redirect_uris_str.split(",") if u.strip()]
    if not uris:
        return None

    try:
        registry.lookup(client_id)
    except ClientNotFound:
        exists = False
    else:
        exists = True
    if exists:
        logger.debug("Client already exists: %s", client_id)
        return client_id

    client_secret = env.get("OAUTH_SEED_CLIENT_SECRET") or None
    scopes = (env.get("OAUTH_CLIENT_SCOPES") or "").split()
    grant_types = (env.get("OAUTH_CLIENT_GRANT_TYPES") or f"{GRANT_AUTHORIZATION_CODE} {GRANT_REFRESH_TOKEN}").split()
    registry.register(
        name=client_id,
        redirect_uris=uris,
        scopes=scopes,
        grant_types=grant_types,
        is_public=client_secret is None,
        client_id=client_id,
        client_secret=client_secret,
    )
    logger.info("Seeded client: %s (confidential=%s)", client_id, client_secret is not None)
    return client_id
