# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Domain events for agentnet.

Stores publish an event only after their conditional write lands, so each
terminal transition is delivered once. Handlers run synchronously in the
publisher's thread; a handler error propagates to the publisher.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskCompleted:
    task_id: str
    agent_id: str  # the agent that performed the work


@dataclass(frozen=True)
class TaskFailed:
    task_id: str
    agent_id: str


@dataclass(frozen=True)
class PaymentVerified:
    payment_id: str
    payee_agent_id: str
    amount: Decimal
    tx_ref: str


class EventBus:
    """Type-keyed synchronous pub/sub."""

    def __init__(self):
        self._handlers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Callable) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event) -> int:
        """Deliver *event* to every handler for its type. Returns the handler count."""
        handlers = list(self._handlers.get(type(event), ()))
        log.debug("publish %s to %d handler(s)", type(event).__name__, len(handlers))
        for handler in handlers:
            handler(event)
        return len(handlers)
