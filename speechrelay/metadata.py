"""External address lookup through the GCE metadata server."""
from typing import Optional

import httpx

FALLBACK_HOST = "localhost"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}


async def get_external_ip(
    url: str,
    timeout: float = 2.0,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Return this instance's external IP, or ``localhost`` when unavailable.

    Browsers need the instance address to open a WebSocket directly on
    App Engine flexible / Compute Engine hosts.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.get(url, headers=METADATA_HEADERS)
    except httpx.HTTPError:
        return FALLBACK_HOST
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != 200:
        return FALLBACK_HOST
    return response.text.strip() or FALLBACK_HOST
