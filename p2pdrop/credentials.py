"""
ICE server hints.

The relay can proxy a TURN credential provider; peers ask the relay and fall
back to a public STUN server whenever that request does not produce a usable
list.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import DEFAULT_ICE_SERVERS
from .models import IceServer

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0


class CredentialsError(Exception):
    pass


def default_ice_servers() -> List[Dict[str, Any]]:
    return [dict(server) for server in DEFAULT_ICE_SERVERS]


def validate_ice_servers(servers: List[Any]) -> List[Dict[str, Any]]:
    """Raises a ValueError for entries that are not ICE server descriptions"""
    return [IceServer.model_validate(server).model_dump(exclude_none=True) for server in servers]


async def fetch_upstream_credentials(url: Optional[str], client: Optional[httpx.AsyncClient] = None) -> List[Dict[str, Any]]:
    """Ask the configured TURN provider for ICE servers (server side).

    Without a configured provider the public STUN default is returned. Any
    provider failure raises ``CredentialsError``.
    """
    if not url:
        return default_ice_servers()

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
    try:
        response = await client.get(url)
        response.raise_for_status()
        ice_servers = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise CredentialsError(f"TURN credential request failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if isinstance(ice_servers, dict):
        ice_servers = ice_servers.get("iceServers")
    if not isinstance(ice_servers, list):
        raise CredentialsError("TURN credential provider returned no server list")
    try:
        return validate_ice_servers(ice_servers)
    except ValueError as e:
        raise CredentialsError(f"TURN credential provider returned bad servers: {e}") from e


async def fetch_ice_servers(http_origin: str, room: str, client: Optional[httpx.AsyncClient] = None) -> List[Dict[str, Any]]:
    """Ask the relay for ICE servers for ``room`` (client side), never failing"""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
    try:
        response = await client.post(f"{http_origin.rstrip('/')}/turn-credentials", json={"room": room})
        if response.is_error:
            logger.warning(f"⚠️ TURN creds request failed ({response.status_code}), falling back to STUN")
            return default_ice_servers()
        data = response.json()
        if isinstance(data, dict) and isinstance(data.get("iceServers"), list):
            return validate_ice_servers(data["iceServers"])
        logger.warning("⚠️ TURN creds response had no iceServers, falling back to STUN")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"⚠️ Failed to fetch TURN creds: {e}")
    finally:
        if owns_client:
            await client.aclose()
    return default_ice_servers()
