"""
Trust scoring service: collect signals, score, persist.
"""
from typing import Optional

import structlog

from payout_core.config.policy import PolicyStore
from payout_core.database.repository import Repository
from payout_core.domain.exceptions import NotFoundError
from payout_core.domain.models import EntityType, TrustScoreRecord
from payout_core.trust.models import SignalContext
from payout_core.trust.scorer import TrustScoringEngine
from payout_core.trust.signal_collector import SignalCollector

logger = structlog.get_logger(__name__)


class TrustService:
    """
    Scores transactions, refund requests and users.

    Every call produces a new TrustScoreRecord; records are never updated.
    """

    def __init__(
        self,
        collector: SignalCollector,
        repository: Repository,
        policy_store: PolicyStore,
        engine: Optional[TrustScoringEngine] = None,
    ):
        self.collector = collector
        self.repository = repository
        self.policy_store = policy_store
        self.engine = engine or TrustScoringEngine()

    async def score_entity(self, context: SignalContext) -> TrustScoreRecord:
        """
        Collect signals for an entity and score them with the active policy.

        Args:
            context: Entity to score

        Returns:
            TrustScoreRecord: Persisted scoring outcome
        """
        policy = self.policy_store.current().scoring
        bag = await self.collector.collect(context)
        record = self.engine.score(bag, context.entity_type, context.entity_id, policy)
        await self.repository.save_trust_score(record)
        return record

    async def get_trust_score(self, entity_type: EntityType, entity_id: str) -> TrustScoreRecord:
        """
        Latest trust score of an entity.

        Raises:
            NotFoundError: If the entity was never scored
        """
        record = await self.repository.latest_trust_score(entity_type, entity_id)
        if record is None:
            raise NotFoundError(
                f"No trust score for {entity_type.value} {entity_id}",
                details={"entity_type": entity_type.value, "entity_id": entity_id},
            )
        return record

    async def latest_user_score(self, user_id: str) -> Optional[TrustScoreRecord]:
        return await self.repository.latest_trust_score(EntityType.USER, user_id)
