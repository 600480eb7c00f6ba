"""External collaborators of the execution engine.

Each collaborator is an ABC with one production implementation and, where
useful, an in-memory one for development and tests:

- ChannelSender: outbound message delivery (webhook transport via httpx)
- ContactResolver: contact attribute lookup for splits and message rendering
- GoalSink: fire-and-forget goal-completion records
- AudienceResolver: contacts a schedule fire should start executions for
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import httpx
import structlog

from core.utils import utcnow

logger = structlog.get_logger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class ChannelError(Exception):
    """Delivery failure classified by the channel as transient or permanent."""

    def __init__(self, message: str, transient: bool = False):
        self.message = message
        self.transient = transient
        super().__init__(message)


@dataclass
class MessageContent:
    """Rendered message handed to the channel sender."""
    text: Optional[str] = None
    template_id: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    media_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v not in (None, {})}


@dataclass
class DeliveryReceipt:
    """Result of a successful delivery."""
    message_id: str
    recipient: str
    channel: str = "webhook"
    delivered_at: datetime = field(default_factory=utcnow)


@dataclass
class GoalEvent:
    """A goal-completion record emitted by a goal node."""
    node_id: str
    goal_type: str
    goal_name: str = ""
    revenue_amount: Optional[float] = None
    currency: str = "USD"
    metrics: dict[str, Any] = field(default_factory=dict)
    contact_id: Optional[str] = None
    workflow_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.isoformat()
        return data


# ─── Channel Sender ────────────────────────────────────────────

class ChannelSender(ABC):
    """Outbound message delivery."""

    @abstractmethod
    async def send(self, recipient: str, content: MessageContent) -> DeliveryReceipt:
        """Deliver ``content`` to ``recipient``.

        Raises:
            ChannelError: delivery failed; ``transient`` tells the engine
                whether a retry may succeed.
        """
        ...


class WebhookChannelSender(ChannelSender):
    """Deliver messages by POSTing them to a messaging gateway.

    Config:
        url: Gateway endpoint
        token: Optional bearer token
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client

    async def send(self, recipient: str, content: MessageContent) -> DeliveryReceipt:
        headers = {"Content-Type": "application/json", "X-Journey-Event": "message"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"recipient": recipient, **content.to_dict()}

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise ChannelError(f"Gateway unreachable: {e}", transient=True) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise ChannelError(f"Gateway returned HTTP {status}", transient=True)
        if status >= 400:
            raise ChannelError(f"Gateway rejected message (HTTP {status}): {response.text[:200]}")

        message_id = ""
        if response.content:
            try:
                message_id = str(response.json().get("message_id") or "")
            except ValueError:
                message_id = ""
        return DeliveryReceipt(message_id=message_id or str(uuid4()), recipient=recipient)


class LoggingChannelSender(ChannelSender):
    """Development sender: logs the message instead of delivering it."""

    async def send(self, recipient: str, content: MessageContent) -> DeliveryReceipt:
        receipt = DeliveryReceipt(message_id=str(uuid4()), recipient=recipient, channel="log")
        logger.info("message_logged", recipient=recipient, message_id=receipt.message_id, **content.to_dict())
        return receipt


# ─── Contact Resolver ──────────────────────────────────────────

class ContactResolver(ABC):
    """Contact attribute lookup."""

    @abstractmethod
    async def resolve(self, contact_id: str, field_name: str) -> Any:
        """Return the attribute value, or None when the contact lacks it."""
        ...


class InMemoryContactResolver(ContactResolver):
    def __init__(self, contacts: Optional[dict[str, dict[str, Any]]] = None):
        self.contacts = contacts or {}

    async def resolve(self, contact_id: str, field_name: str) -> Any:
        return self.contacts.get(contact_id, {}).get(field_name)


# ─── Goal Sink ─────────────────────────────────────────────────

class GoalSink(ABC):
    """Fire-and-forget goal recording; callers log failures and move on."""

    @abstractmethod
    async def record_goal(self, execution_id: str, goal: GoalEvent) -> None:
        ...


class LoggingGoalSink(GoalSink):
    async def record_goal(self, execution_id: str, goal: GoalEvent) -> None:
        logger.info("goal_recorded", execution_id=execution_id, **goal.to_dict())


# ─── Audience Resolver ─────────────────────────────────────────

class AudienceResolver(ABC):
    """Contacts a schedule fire targets."""

    @abstractmethod
    async def resolve(self, schedule) -> list[str]:
        ...


class ScheduleConfigAudience(AudienceResolver):
    """Reads ``contactIds`` (or ``contact_ids``) from the schedule config."""

    async def resolve(self, schedule) -> list[str]:
        config = schedule.schedule_config or {}
        contact_ids = config.get("contactIds", config.get("contact_ids", []))
        if isinstance(contact_ids, str):
            contact_ids = [contact_ids]
        # Preserve order, drop duplicates
        return list(dict.fromkeys(str(c) for c in contact_ids if c))
