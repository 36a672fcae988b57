from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)


class OtpEventKind(str, Enum):
    ISSUED = "issued"
    REISSUED = "reissued"
    RATE_LIMITED = "rate_limited"
    DISPATCH_FAILED = "dispatch_failed"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"
    STORE_FAILED = "store_failed"


@dataclass(frozen=True)
class OtpEvent:
    kind: OtpEventKind
    recipient: str
    purpose: str
    occurred_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)


EventListener = Callable[[OtpEvent], None]


class EventBus:
    """Fan-out of issuance/verification outcomes to presentation or audit hooks."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: OtpEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception(
                    "OTP event listener failed kind=%s recipient=%s",
                    event.kind.value,
                    event.recipient,
                )
