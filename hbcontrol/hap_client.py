import json, logging
from typing import Any, Dict, List, Optional, TypedDict

import httpx

from .errors import EndpointUnreachable, ProtocolError
from .mappings import HAP_STATUS_SUCCESS

log = logging.getLogger("hap")

HAP_MEDIA_TYPE = "application/hap+json"
DEFAULT_TIMEOUT = 8.0

class HapWrite(TypedDict):
    aid: int
    iid: int
    value: Any

class HapClient:
    """Insecure-mode HAP client for one bridge.

    Writes authenticate by sending the bridge PIN verbatim in ``Authorization``,
    which HAP-NodeJS accepts when the bridge runs with insecure requests allowed.
    No retries happen here; callers decide.
    """

    def __init__(self, base_url: str, pin: str, timeout: float = DEFAULT_TIMEOUT,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._pin = pin
        self._timeout = timeout
        self._http = http_client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                return await self._http.request(method, url, timeout=self._timeout, **kwargs)
            async with httpx.AsyncClient() as c:
                return await c.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.HTTPError as e:
            raise EndpointUnreachable(self.base_url, f"{method} {path} failed: {e}") from e

    async def fetch_graph(self) -> Dict[str, Any]:
        r = await self._request("GET", "/accessories", headers={"Accept": HAP_MEDIA_TYPE})
        if not r.is_success:
            raise ProtocolError(f"GET /accessories failed ({r.status_code}): {r.text}",
                                status=r.status_code, body=r.text)
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not isinstance(data.get("accessories"), list):
            raise ProtocolError("Malformed /accessories response", status=r.status_code, body=r.text)
        return data

    async def write_characteristics(self, writes: List[HapWrite]) -> None:
        r = await self._request(
            "PUT", "/characteristics",
            headers={"Content-Type": HAP_MEDIA_TYPE, "Authorization": self._pin},
            content=json.dumps({"characteristics": writes}),
        )
        if r.status_code == 204:
            return
        if r.status_code == 207:
            try:
                data = r.json()
            except ValueError as e:
                raise ProtocolError("Malformed multi-status response", status=207, body=r.text) from e
            entries = data.get("characteristics") if isinstance(data, dict) else None
            if not isinstance(entries, list):
                raise ProtocolError("Malformed multi-status response", status=207, body=r.text)
            failures = [
                item for item in entries
                if isinstance(item, dict) and item.get("status", HAP_STATUS_SUCCESS) != HAP_STATUS_SUCCESS
            ]
            if failures:
                raise ProtocolError(f"Characteristic write returned errors: {json.dumps(failures)}",
                                    status=207, body=r.text, failures=failures)
            return
        raise ProtocolError(f"PUT /characteristics failed ({r.status_code}): {r.text}",
                            status=r.status_code, body=r.text)

    async def ping(self) -> bool:
        try:
            await self.fetch_graph()
            return True
        except (EndpointUnreachable, ProtocolError) as e:
            log.debug("HAP ping failed (%s): %s", self.base_url, e)
            return False
