from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger("sigrelay.ice")

TWILIO_TOKENS_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Tokens.json"
FALLBACK_ICE_SERVERS: List[Dict[str, Any]] = [{"urls": "stun:stun.l.google.com:19302"}]


class IceServerProvider:
    """Fetches TURN/STUN descriptors from Twilio's token API.

    Any failure falls back to a single public STUN server; nothing is raised
    to the caller.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    async def fetch(self) -> Optional[List[Dict[str, Any]]]:
        if not self.configured:
            return None
        url = TWILIO_TOKENS_URL.format(sid=self.account_sid)
        try:
            resp = await self._client.post(
                url,
                auth=(self.account_sid, self.auth_token),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            log.error("Error fetching TURN credentials: %s", exc)
            return None
        if not resp.is_success:
            log.error("Twilio error: %s", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError as exc:
            log.error("Twilio returned an unreadable body: %s", exc)
            return None
        servers = data.get("ice_servers") if isinstance(data, dict) else None
        if not isinstance(servers, list):
            log.error("Twilio response has no ice_servers list")
            return None
        return servers

    async def ice_servers(self) -> List[Dict[str, Any]]:
        servers = await self.fetch()
        if servers is None:
            return [dict(entry) for entry in FALLBACK_ICE_SERVERS]
        return servers

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["IceServerProvider", "FALLBACK_ICE_SERVERS", "TWILIO_TOKENS_URL"]
