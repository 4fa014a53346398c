"""
Distribution strategies as a closed tagged union.

Each variant carries exactly the fields it needs:
- single:     one party receives the whole pending amount
- equal:      pending amount split evenly
- percentage: each party supplies a percentage (sum 100)
- fixed:      each party supplies an amount (sum == pending amount)

`Target` is the flat shape the folio backend accepts; `Strategy.targets()`
produces it and `strategy_from_targets()` parses it back.
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import Field

from frontdesk.models.base import DomainModel, Money, Percentage
from frontdesk.utils.money import money_sum


class StrategyKind(str, Enum):
    SINGLE = "single"
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Target(DomainModel):
    party_id: str
    percentage: Optional[Percentage] = None
    amount: Optional[Money] = None


class PercentageShare(DomainModel):
    party_id: str
    percentage: Percentage


class FixedAmount(DomainModel):
    party_id: str
    amount: Money


class SingleStrategy(DomainModel):
    kind: Literal["single"] = "single"
    party_ids: List[str]

    def targets(self) -> List[Target]:
        return [Target(party_id=pid) for pid in self.party_ids]


class EqualStrategy(DomainModel):
    kind: Literal["equal"] = "equal"
    party_ids: List[str]

    def targets(self) -> List[Target]:
        return [Target(party_id=pid) for pid in self.party_ids]


class PercentageStrategy(DomainModel):
    kind: Literal["percentage"] = "percentage"
    shares: List[PercentageShare]

    @property
    def party_ids(self) -> List[str]:
        return [share.party_id for share in self.shares]

    def targets(self) -> List[Target]:
        return [Target(party_id=s.party_id, percentage=s.percentage) for s in self.shares]


class FixedStrategy(DomainModel):
    kind: Literal["fixed"] = "fixed"
    amounts: List[FixedAmount]

    @property
    def party_ids(self) -> List[str]:
        return [entry.party_id for entry in self.amounts]

    def targets(self) -> List[Target]:
        return [Target(party_id=a.party_id, amount=a.amount) for a in self.amounts]


Strategy = Annotated[
    Union[SingleStrategy, EqualStrategy, PercentageStrategy, FixedStrategy],
    Field(discriminator="kind"),
]


def strategy_from_targets(kind: Union[StrategyKind, str], targets: List[Target]) -> Strategy:
    """Build the tagged strategy from the flat target list.

    Raises ValueError when a target lacks the field its strategy requires.
    """
    kind = StrategyKind(kind)
    if kind == StrategyKind.SINGLE:
        return SingleStrategy(party_ids=[t.party_id for t in targets])
    if kind == StrategyKind.EQUAL:
        return EqualStrategy(party_ids=[t.party_id for t in targets])
    if kind == StrategyKind.PERCENTAGE:
        missing = [t.party_id for t in targets if t.percentage is None]
        if missing:
            raise ValueError(f"percentage is required for parties: {', '.join(missing)}")
        return PercentageStrategy(
            shares=[PercentageShare(party_id=t.party_id, percentage=t.percentage) for t in targets]
        )
    missing = [t.party_id for t in targets if t.amount is None]
    if missing:
        raise ValueError(f"amount is required for parties: {', '.join(missing)}")
    return FixedStrategy(
        amounts=[FixedAmount(party_id=t.party_id, amount=t.amount) for t in targets]
    )


class DistributionRequest(DomainModel):
    """Intent to assign pending charges, sent to the folio backend."""
    strategy: Strategy
    idempotency_key: str


class PlannedShare(DomainModel):
    party_id: str
    amount: Money
    percentage: Optional[Percentage] = None


class DistributionPlan(DomainModel):
    """Resolved amounts per party. Does not mutate the folio by itself."""
    pending_amount: Money
    strategy: StrategyKind
    shares: List[PlannedShare]
    idempotency_key: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return money_sum(share.amount for share in self.shares)
