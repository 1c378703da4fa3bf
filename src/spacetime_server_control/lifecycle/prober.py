"""Application-level health probing of the server endpoint."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
import structlog

logger = structlog.get_logger(__name__)

AUTH_ERROR_STATUSES = (401, 403)


@dataclass
class ProbeResult:
    """Outcome of one round trip to the server endpoint."""

    online: bool
    message: str
    status_code: Optional[int] = None
    auth_error: bool = False
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "message": self.message,
            "status_code": self.status_code,
            "auth_error": self.auth_error,
            "duration_ms": self.duration_ms,
        }


class HealthProber:
    """Reaches the server's own HTTP endpoint independently of any backend.

    Every probe is bounded by a hard timeout; a hang resolves to offline.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        ping_path: str = "/v1/ping",
        auth_token: Optional[str] = None,
    ):
        self.timeout = timeout
        self.ping_path = ping_path
        self.auth_token = auth_token
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def ping(self, endpoint_url: str, timeout: Optional[float] = None) -> bool:
        """Attempt one round trip. True only when the server answered."""
        result = await self.probe(endpoint_url, timeout=timeout)
        return result.online

    async def probe(
        self, endpoint_url: str, timeout: Optional[float] = None
    ) -> ProbeResult:
        """Probe the endpoint and describe the answer.

        Args:
            endpoint_url: Base URL of the server (no trailing slash needed)
            timeout: Hard timeout in seconds (default: prober timeout)

        Returns:
            ProbeResult: Never raises; failures resolve to offline
        """
        if not endpoint_url:
            return ProbeResult(online=False, message="No endpoint configured")

        limit = timeout if timeout is not None else self.timeout
        url = endpoint_url.rstrip("/") + self.ping_path
        start_time = time.time()

        try:
            return await asyncio.wait_for(self._request(url, limit), timeout=limit)
        except asyncio.TimeoutError:
            return ProbeResult(
                online=False,
                message=f"Probe timed out after {limit}s",
                duration_ms=(time.time() - start_time) * 1000,
            )
        except aiohttp.ClientConnectorError:
            return ProbeResult(
                online=False,
                message=f"Cannot connect to {endpoint_url}",
                duration_ms=(time.time() - start_time) * 1000,
            )
        except Exception as e:
            logger.debug("Probe failed", url=url, error=str(e))
            return ProbeResult(
                online=False,
                message=f"Probe failed: {str(e)}",
                duration_ms=(time.time() - start_time) * 1000,
            )

    async def _request(self, url: str, limit: float) -> ProbeResult:
        session = self._ensure_session()
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        start_time = time.time()
        async with session.get(
            url, headers=headers, timeout=aiohttp.ClientTimeout(total=limit)
        ) as response:
            duration_ms = (time.time() - start_time) * 1000
            status = response.status

            if 200 <= status < 300:
                return ProbeResult(
                    online=True,
                    message="Server is online",
                    status_code=status,
                    duration_ms=duration_ms,
                )
            if status in AUTH_ERROR_STATUSES:
                # Answering with an auth error still proves the server is up
                return ProbeResult(
                    online=True,
                    message=f"Server is online but rejected credentials ({status})",
                    status_code=status,
                    auth_error=True,
                    duration_ms=duration_ms,
                )
            return ProbeResult(
                online=False,
                message=f"Endpoint returned status {status}",
                status_code=status,
                duration_ms=duration_ms,
            )

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session
