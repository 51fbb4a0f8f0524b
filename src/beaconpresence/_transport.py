"""JSON-over-HTTP transport for the agent and beacon directories."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from beaconpresence._constants import ACCESS_TOKEN_HEADER, USER_AGENT
from beaconpresence._redact import redact_for_log
from beaconpresence.config import PresenceConfig
from beaconpresence.exceptions import DirectoryTransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the HTTP directories.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpTransport`) concrete.
    """

    async def get_json(self, path: str) -> Any | None:
        ...

    async def put_json(self, path: str, body: Any) -> Any | None:
        ...


class HttpTransport:
    """aiohttp transport that adds the access token and decodes JSON bodies.

    ``404`` responses resolve to ``None`` so directories can treat them as
    "absent"; every other non-2xx status raises
    :class:`~beaconpresence.exceptions.DirectoryTransportError`.
    """

    def __init__(self, config: PresenceConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self) -> dict[str, str]:
        headers = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if self._config.api_token:
            headers[ACCESS_TOKEN_HEADER] = self._config.api_token
        return headers

    async def get_json(self, path: str) -> Any | None:
        return await self._request("GET", path)

    async def put_json(self, path: str, body: Any) -> Any | None:
        return await self._request("PUT", path, body=body)

    async def _request(self, method: str, path: str, *, body: Any = None) -> Any | None:
        url = f"{self._config.directory_url.rstrip('/')}{path}"
        headers = self._headers()
        kwargs: dict[str, Any] = {"headers": headers, "timeout": self._timeout}
        if body is not None:
            headers["content-type"] = "application/json; charset=UTF-8"
            kwargs["data"] = json.dumps(body, separators=(",", ":"))

        _logger.debug("%s %s headers=%s", method, url, redact_for_log(headers))

        try:
            async with self._http.request(method, url, **kwargs) as resp:
                text = await resp.text()
                if resp.status == 404:
                    return None
                if not 200 <= resp.status < 300:
                    raise DirectoryTransportError(
                        f"HTTP {resp.status} from {path}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=path,
                    )
        except DirectoryTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise DirectoryTransportError(
                f"Request to {path} failed: {exc!r}",
                endpoint=path,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DirectoryTransportError(
                f"Invalid JSON from {path}: {text[:200]}",
                endpoint=path,
            ) from exc
