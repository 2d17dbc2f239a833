"""
Product Event Schema

Events describe what happened to a product after it was recorded.
They reference a product by id and are appended in arrival order.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """
    Well-known event types.
    Any other non-empty event type string is accepted as well.
    """
    PRODUCTION_START = "ProductionStart"
    QUALITY_CHECK = "QualityCheck"
    SHIPMENT = "Shipment"
    STORAGE = "Storage"
    DELIVERY = "Delivery"
    ALERT = "Alert"

    @classmethod
    def is_known(cls, value: str) -> bool:
        return value in cls._value2member_map_


class EventRecord(BaseModel):
    """A single immutable product event."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    product_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    key: Optional[str] = None
    value: Optional[str] = None
    wallet_address: Optional[str] = None
    timestamp: str
