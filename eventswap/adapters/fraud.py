"""
EventSwap Platform - Fraud Signal Adapter
Opaque, synchronous, side-effect-free risk lookup. The scoring model lives
outside this service; only its verdict is consumed here.
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
from uuid import UUID


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recommendation(str, enum.Enum):
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"


@dataclass(frozen=True)
class AccountFacts:
    user_id: UUID
    account_age_days: int
    is_verified: bool
    has_payer_identity: bool


@dataclass(frozen=True)
class ListingFacts:
    listing_id: UUID
    asking_price: Decimal
    original_price: Optional[Decimal] = None


@dataclass(frozen=True)
class FraudAssessment:
    score: int  # 0-100
    level: RiskLevel
    recommendation: Recommendation
    signals: List[str] = field(default_factory=list)


class FraudSignalAdapter(ABC):
    @abstractmethod
    def score(self, account: AccountFacts, listing: ListingFacts) -> FraudAssessment:
        ...


class PermissiveFraudSignals(FraudSignalAdapter):
    """Used when no risk service is configured: everything is allowed."""

    def score(self, account: AccountFacts, listing: ListingFacts) -> FraudAssessment:
        return FraudAssessment(score=0, level=RiskLevel.LOW, recommendation=Recommendation.ALLOW)
