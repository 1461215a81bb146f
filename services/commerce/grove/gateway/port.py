"""Payment gateway port (abstract interface).

The payment reconciliation code only talks to this contract, so the
FakeGateway (dev/test) and StripeGateway (production) adapters can be
swapped without touching order or payment logic. Every method is async;
callers bound each call with their own timeout.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Intent statuses after which an intent can no longer collect money
TERMINAL_INTENT_STATUSES = frozenset({"succeeded", "canceled"})


@dataclass(frozen=True)
class PaymentIntent:
    """Gateway-side payment attempt for one order."""

    id: str
    amount: int
    currency: str
    status: str
    client_secret: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INTENT_STATUSES


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund attempt."""

    success: bool
    gateway_refund_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """A verified webhook notification."""

    id: str
    type: str
    intent_id: str | None
    payload: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentIntent:
        """Create an intent for `amount` minor units of `currency`."""
        ...

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        ...

    @abstractmethod
    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        ...

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount: int | None,
        reason: str,
    ) -> RefundResult:
        """Refund a captured intent. `amount=None` refunds the full charge."""
        ...

    @abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify the signature over the raw body and parse the event.

        Raises SignatureVerificationError when the payload is not authentic.
        """
        ...
