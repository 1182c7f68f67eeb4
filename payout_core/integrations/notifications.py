"""Creator notifications and operational alerts."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

import structlog

from payout_core.domain.models import Refund

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify_creator(self, payee_id: str, refund: Refund) -> None: ...

    @abstractmethod
    async def alert(self, kind: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotifier(Notifier):
    """Writes notifications and alerts to the structured log and keeps them for inspection."""

    def __init__(self) -> None:
        self.creator_notifications: List[Tuple[str, str, str]] = []
        self.alerts: List[Tuple[str, Dict[str, Any]]] = []

    async def notify_creator(self, payee_id: str, refund: Refund) -> None:
        self.creator_notifications.append((payee_id, refund.id, refund.status.value))
        logger.info(
            "creator_notified",
            payee_id=payee_id,
            refund_id=refund.id,
            refund_status=refund.status.value,
            amount_cents=refund.amount_cents,
        )

    async def alert(self, kind: str, payload: Dict[str, Any]) -> None:
        self.alerts.append((kind, payload))
        logger.warning("operational_alert", alert_kind=kind, **payload)
