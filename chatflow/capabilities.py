"""External capabilities the StepExecutor calls on behalf of nodes.

Capabilities are the only way a flow touches the outside world. Each is a
Protocol so hosts can plug in their own messaging provider, CRM or HTTP
client. Implementations signal failures by raising:

- TransientExternalFailure: timeouts, network errors, 5xx (retried)
- ExternalCallError: anything else (rejected send, 4xx from a mutation)

An HTTP capability returns 4xx responses instead of raising so the ``api``
node can route them to its ``failure`` edge.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from chatflow.core.effects import HttpCall, OutboundMessage
from chatflow.utils.errors import TransientExternalFailure

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Response returned by an HttpCapability.

    Attributes:
        status_code: HTTP status
        body: Parsed JSON, or raw text for non-JSON responses
        headers: Response headers
    """

    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class MessagingCapability(Protocol):
    async def send_message(self, conversation_id: Optional[str], message: OutboundMessage) -> Any:
        """Deliver a text, template or interactive message to a conversation."""
        ...


@runtime_checkable
class HttpCapability(Protocol):
    async def request(self, call: HttpCall) -> HttpResponse:
        """Perform an HTTP call; raise TransientExternalFailure for 5xx/timeouts."""
        ...


@runtime_checkable
class ConversationCapability(Protocol):
    async def assign(
        self,
        conversation_id: Optional[str],
        agent_id: Optional[str],
        team_id: Optional[str],
    ) -> Any:
        """Assign the conversation to an agent and/or team."""
        ...


@runtime_checkable
class ContactCapability(Protocol):
    async def update_tags(self, contact_id: Optional[str], action: str, tags: List[str]) -> Any:
        """Add or remove contact tags."""
        ...

    async def update_fields(self, contact_id: Optional[str], fields: Dict[str, Any]) -> Any:
        """Overwrite contact fields with the given values."""
        ...


@dataclass
class Capabilities:
    """Bundle of capabilities handed to the StepExecutor."""

    messaging: MessagingCapability
    http: HttpCapability
    conversations: ConversationCapability
    contacts: ContactCapability


class HttpxCapability:
    """HttpCapability backed by an httpx.AsyncClient.

    Example:
        >>> async with httpx.AsyncClient() as client:
        ...     http = HttpxCapability(client)
        ...     response = await http.request(HttpCall(method="GET", url="https://example.com"))
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = 30.0):
        """Initialize capability.

        Args:
            client: Shared client; a short-lived client is created per call if omitted
            timeout_seconds: Default request timeout when the call has none
        """
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def request(self, call: HttpCall) -> HttpResponse:
        timeout = call.timeout_seconds or self.timeout_seconds
        kwargs: Dict[str, Any] = {
            "method": call.method,
            "url": call.url,
            "headers": call.headers or None,
            "params": call.params or None,
            "timeout": timeout,
        }
        if call.body is not None and call.method != "GET":
            if isinstance(call.body, (dict, list)):
                kwargs["json"] = call.body
            else:
                kwargs["content"] = str(call.body)

        try:
            if self.client is not None:
                response = await self.client.request(**kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(**kwargs)
        except httpx.TimeoutException as e:
            raise TransientExternalFailure(
                f"HTTP {call.method} {call.url} timed out after {timeout} seconds"
            ) from e
        except httpx.TransportError as e:
            raise TransientExternalFailure(f"HTTP {call.method} {call.url} failed: {e}") from e

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                body = response.json()
            except (json.JSONDecodeError, ValueError):
                body = response.text
        else:
            body = response.text

        if response.status_code >= 500:
            raise TransientExternalFailure(
                f"HTTP {call.method} {call.url} returned {response.status_code}",
                status_code=response.status_code,
                response=body,
            )

        logger.debug(
            "HTTP call finished",
            extra={"method": call.method, "url": call.url, "status_code": response.status_code},
        )
        return HttpResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )
