"""Trust signal collection and scoring."""
from .models import SignalBag, SignalContext
from .scorer import TrustScoringEngine, decide, risk_tier_for
from .service import TrustService
from .signal_collector import SignalCollector

__all__ = [
    "SignalBag",
    "SignalCollector",
    "SignalContext",
    "TrustScoringEngine",
    "TrustService",
    "decide",
    "risk_tier_for",
]
