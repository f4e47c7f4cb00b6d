import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class BillingClient:
    """
    Looks up the authoritative cost of a generation by id
    (GET {lookup_url}?id=<generation id>, cost at data.total_cost).

    Returns None whenever the cost is unavailable: lookup not configured,
    non-200 response, transport error or a malformed body.
    """

    def __init__(self, lookup_url: Optional[str], api_key: Optional[str], timeout_seconds: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.lookup_url = lookup_url
        self._api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def get_cost(self, generation_id: str) -> Optional[float]:
        if not self.lookup_url:
            return None
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as http:
                res = await http.get(self.lookup_url, params={"id": generation_id}, headers=headers)
            if res.status_code != 200:
                logger.debug("Billing lookup for %s returned %d", generation_id, res.status_code)
                return None
            cost = (res.json().get("data") or {}).get("total_cost")
            return float(cost) if cost is not None else None
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.debug("Billing lookup for %s failed: %s", generation_id, e)
            return None
