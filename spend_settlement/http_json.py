from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

log = logging.getLogger(__name__)


class HttpStatusError(RuntimeError):
    def __init__(self, status: int, body: str, method: str, path: str) -> None:
        super().__init__(f"http_error status={status} method={method} path={path} body={body[:400]}")
        self.status = int(status)
        self.body = body
        self.method = method
        self.path = path


class JsonHttpClient:
    """Keep-alive JSON client for one base URL.

    Retries are not done here; callers wrap requests with the RPC caller so
    that 429/5xx get backoff and 4xx surface immediately.
    """

    def __init__(self, base_url: str, timeout_seconds: float, user_agent: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None
        self._headers: Dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        }

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _connect(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        return json.loads(text)

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        session = self._connect()
        body = None
        if payload is not None:
            body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        async with session.request(method, self._url(path), data=body) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise HttpStatusError(status=resp.status, body=text, method=method, path=path)
            return self._decode(text)

    async def get_json(self, path: str) -> Any:
        return await self._request("GET", path)

    async def post_json(self, path: str, payload: Any) -> Any:
        return await self._request("POST", path, payload)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
