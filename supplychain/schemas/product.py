"""
Product Block Schema

A product is recorded exactly once, as a block appended to the chain.
Blocks are never edited and never removed.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Sentinel previous link value for the first block
GENESIS_LINK_VALUE = "0"


class ProductData(BaseModel):
    """
    The product fields carried inside a block.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    product_id: str = Field(..., min_length=1, description="Unique product identifier")
    description: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    wallet_address: Optional[str] = Field(
        default=None,
        description="Wallet that recorded the product, if one was connected",
    )

    def link_fields(self) -> dict:
        """
        Fields that feed the link value, in their fixed order.

        An absent wallet address is left out rather than written as null.
        """
        fields = {
            "productId": self.product_id,
            "description": self.description,
            "owner": self.owner,
        }
        if self.wallet_address is not None:
            fields["walletAddress"] = self.wallet_address
        return fields


class ProductBlock(BaseModel):
    """
    One immutable record in the product chain.

    link_value is an append-order fingerprint, NOT a cryptographic hash.
    Recomputing every link after editing an earlier block is trivial, so
    the chain offers no tamper resistance.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    index: int = Field(..., ge=0)
    timestamp: str = Field(..., description="ISO-8601 UTC, millisecond precision")
    data: ProductData
    previous_link_value: str
    link_value: str

    @property
    def product_id(self) -> str:
        return self.data.product_id
