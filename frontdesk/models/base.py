from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer

from frontdesk.utils.money import to_money, to_percentage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Decimals rounded to cents on the way in, plain numbers on the way out to JSON.
Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]

Percentage = Annotated[
    Decimal,
    BeforeValidator(to_percentage),
    PlainSerializer(float, return_type=float, when_used="json"),
]


class DomainModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True
    )
