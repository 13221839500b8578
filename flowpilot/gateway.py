"""
Remote Action Gateway — send one UI action to the remote agent, await its result.

The agent owns the browser session and performs the DOM work. flowpilot
only depends on ActionGateway.dispatch(); HttpActionGateway is the concrete
transport:

  POST {agent_url}/actions              {"action": ..., "params": {...}}
  POST {agent_url}/session/reestablish  re-attach the agent to the page

A "no remote endpoint" condition (connection refused, 502/503/504) gets
exactly one re-establish + retry before surfacing as RemoteUnavailableError.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, Field

from .actions import Action
from .errors import ActionFailedError, GatewayError, RemoteUnavailableError

logger = logging.getLogger(__name__)

UNAVAILABLE_STATUS_CODES = {502, 503, 504}


class ActionResult(BaseModel):
    success: bool = False
    error: Optional[str] = None
    policy_violation: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ActionResult":
        """Build from the agent's JSON body; unknown keys land in data."""
        body = dict(payload or {})
        success = bool(body.pop("success", False))
        error = body.pop("error", None)
        violation = body.pop("policyViolation", None)
        if violation is None:
            violation = body.pop("policy_violation", False)
        return cls(success=success, error=error, policy_violation=bool(violation), data=body)

    @classmethod
    def ok(cls, **data) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, **data) -> "ActionResult":
        return cls(success=False, error=error, data=data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def require_success(result: ActionResult, what: str, action: Union[Action, str] = "") -> ActionResult:
    """Raise ActionFailedError unless the action reported success."""
    if not result.success:
        raise ActionFailedError(result.error or f"Failed to {what}", action=str(action))
    return result


class ActionGateway(ABC):
    @abstractmethod
    async def dispatch(self, action: Action, params: Optional[dict] = None) -> ActionResult:
        """Run one remote action. Transport failures raise GatewayError."""

    async def aclose(self) -> None:
        return None


class HttpActionGateway(ActionGateway):
    def __init__(
        self,
        base_url: str,
        timeout: float = 360.0,
        reconnect_delay: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.reconnect_delay = reconnect_delay
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def dispatch(self, action: Action, params: Optional[dict] = None) -> ActionResult:
        name = action.value if isinstance(action, Action) else str(action)
        body = {"action": name, "params": params or {}}

        try:
            return await self._post_action(name, body)
        except RemoteUnavailableError as e:
            logger.warning(f"Agent unreachable for {name} ({e}) — re-establishing session")

        await self._reestablish()
        await asyncio.sleep(self.reconnect_delay)

        try:
            return await self._post_action(name, body)
        except RemoteUnavailableError as e:
            raise RemoteUnavailableError(
                f"Remote agent not responding after re-establishing session: {e}"
            ) from e

    async def _post_action(self, name: str, body: dict) -> ActionResult:
        try:
            response = await self._client.post(f"{self.base_url}/actions", json=body)
        except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
            raise RemoteUnavailableError(str(e) or type(e).__name__) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{name} transport error: {e}") from e

        if response.status_code in UNAVAILABLE_STATUS_CODES:
            raise RemoteUnavailableError(f"agent returned {response.status_code}")
        if response.status_code >= 400:
            raise GatewayError(f"{name} failed with HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"{name} returned a non-JSON body") from e
        return ActionResult.from_payload(payload)

    async def _reestablish(self) -> None:
        try:
            response = await self._client.post(f"{self.base_url}/session/reestablish")
            response.raise_for_status()
            logger.info("Agent session re-established")
        except httpx.HTTPError as e:
            logger.warning(f"Session re-establish failed: {e}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
