"""
Inbound processor event dispatcher with deduplication.

Events arrive already verified. The dispatcher:
- drops replays of an event with the same payload (counted, logged)
- flags replays that carry a different payload for review
- routes new events to the handler registered for their type
- remembers an event only after its handler succeeded, so a failed event
  can be delivered again
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from payout_core.core.idempotency import DedupOutcome, EventRegistry
from payout_core.core.locks import KeyedLock
from payout_core.database.repository import Repository
from payout_core.domain.models import InboundEvent, IntegrityFlag
from payout_core.integrations.notifications import Notifier

logger = structlog.get_logger(__name__)

EventHandler = Callable[[InboundEvent], Awaitable[Any]]


class EventDispatcher:
    """Routes verified inbound events to their handlers exactly once."""

    def __init__(
        self,
        registry: EventRegistry,
        repository: Repository,
        notifier: Notifier,
    ):
        self.registry = registry
        self.repository = repository
        self.notifier = notifier
        self.event_handlers: Dict[str, EventHandler] = {}
        self._locks = KeyedLock()

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: Event type (e.g. ``charge.captured``)
            handler: Async callable receiving the event
        """
        self.event_handlers[event_type] = handler
        logger.info("event_handler_registered", event_type=event_type)

    async def dispatch(self, event: InboundEvent) -> Dict[str, Any]:
        """
        Process one inbound event.

        Args:
            event: Verified event

        Returns:
            Dict[str, Any]: ``status`` is one of processed, duplicate,
                conflict or no_handler

        Raises:
            PayoutCoreError: Whatever the handler raised; the event is not
                remembered and may be delivered again
        """
        key = event.dedup_key
        async with self._locks.hold(key):
            outcome = await self.registry.check(key, event.payload_fingerprint())

            if outcome == DedupOutcome.DUPLICATE:
                return self._result("duplicate", event)

            if outcome == DedupOutcome.CONFLICT:
                await self.repository.save_flag(
                    IntegrityFlag(
                        kind="conflicting_duplicate_event",
                        reference=key,
                        details={
                            "event_type": event.event_type,
                            "transaction_id": event.transaction_id,
                            "payload": event.payload,
                        },
                    )
                )
                await self.notifier.alert(
                    "conflicting_duplicate_event",
                    {"event_key": key, "event_type": event.event_type},
                )
                return self._result("conflict", event)

            handler = self.event_handlers.get(event.event_type)
            if handler is None:
                logger.warning("event_no_handler", event_id=event.event_id, event_type=event.event_type)
                await self.registry.remember(key, event.payload_fingerprint())
                return self._result("no_handler", event)

            try:
                result = await handler(event)
            except Exception as e:
                logger.error(
                    "event_processing_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                )
                raise

            await self.registry.remember(key, event.payload_fingerprint())
            logger.info(
                "event_processed",
                event_id=event.event_id,
                event_type=event.event_type,
                processor=event.processor,
            )
            return self._result("processed", event, result)

    @staticmethod
    def _result(status: str, event: InboundEvent, result: Optional[Any] = None) -> Dict[str, Any]:
        return {
            "status": status,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "result": result,
        }
