import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class APIError(Exception):
    def __init__(self, status: int, url: str, body: str):
        self.status = status
        self.url = url
        self.body = body
        text = f"HTTP API error (status={status}, url={url}, body={body[:200]})"
        super().__init__(text)


class RESTClient:
    """Shared aiohttp session for a single HTTP origin."""

    def __init__(self, base_url: str = "", timeout_s: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        session = await self._get_session()
        url = self._url(path)
        timeout = aiohttp.ClientTimeout(total=timeout_s) if timeout_s else self.timeout

        async with session.request(
            method.upper(),
            url,
            params=params,
            json=json_body,
            timeout=timeout,
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                raise APIError(resp.status, url, text)

            return payload

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        return await self._request("GET", path, params=params, timeout_s=timeout_s)

    async def post(
        self,
        path: str,
        json_body: Optional[Any] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        return await self._request("POST", path, json_body=json_body, timeout_s=timeout_s)
