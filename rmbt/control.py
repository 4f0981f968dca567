"""
RMBT control server client.

Asks a control server where and how to measure.  All HTTP work goes through
a single ``aiohttp.ClientSession`` managed via async-context-manager
protocol (``async with ControlServerAPI(url) as api: ...``).
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp

from .constants import CLIENT_NAME, CLIENT_TYPE, CLIENT_VERSION, CONTROL_TIMEOUT
from .errors import ControlServerError
from .params import TestParameters


class ControlServerAPI:
    """Async context-manager wrapping the control server's REST API."""

    def __init__(self, base_url: str, timeout: float = CONTROL_TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> ControlServerAPI:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "ControlServerAPI must be used as an async context manager "
                "(async with ControlServerAPI(url) as api: ...)"
            )
        return self._session

    # -- Public methods -----------------------------------------------------

    async def request_test(
        self,
        client_uuid: str = "",
        num_threads: Optional[int] = None,
        **overrides: Any,
    ) -> TestParameters:
        """Request a test slot; *overrides* replace fields of the reply."""
        session = self._ensure_session()

        payload: Dict[str, Any] = {
            "uuid": client_uuid,
            "client": CLIENT_NAME,
            "version": CLIENT_VERSION,
            "type": CLIENT_TYPE,
        }
        if num_threads is not None:
            payload["num_threads"] = num_threads

        try:
            async with session.post(f"{self.base_url}/testRequest", json=payload) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as exc:
            raise ControlServerError(f"test request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise ControlServerError("test request reply is not a JSON object")
        errors = data.get("error") or []
        if errors:
            raise ControlServerError("; ".join(str(e) for e in errors))

        return TestParameters.from_control_response(data, **overrides)
