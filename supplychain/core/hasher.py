"""
Link Value Derivation

Computes the value that chains each product block to its predecessor.

THIS IS NOT A SECURITY MECHANISM.

The default scheme is a plain string concatenation:

    "{index}-{timestamp}-{data_json}-{previous_link_value}"

and the optional sha256 scheme only digests that same string. Neither is
anchored anywhere outside the process, so anyone able to edit an earlier
block can recompute every later link. The link is an append-order
fingerprint and nothing more.

DATA SERIALIZATION RULES:
1. Key order is fixed: productId, description, owner, walletAddress
2. walletAddress is omitted when absent (never written as null)
3. Compact separators, no whitespace
4. Non-ASCII characters are kept as-is (not escaped)
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import LinkScheme
from ..schemas import ProductBlock, ProductData


class LinkSerializationError(Exception):
    """Raised when block data cannot be serialized for linking."""
    pass


class Hasher:
    """
    Deterministic link values for the product chain.

    Same (index, timestamp, data, previous) -> same link value.
    """

    @staticmethod
    def iso_timestamp(moment: Optional[datetime] = None) -> str:
        """
        Format a moment as ISO 8601 UTC with milliseconds and Z suffix.

        Format: YYYY-MM-DDTHH:MM:SS.mmmZ
        """
        if moment is None:
            moment = datetime.now(timezone.utc)
        if moment.tzinfo is None:
            raise LinkSerializationError(
                "Timestamp is timezone-naive. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )
        utc = moment.astimezone(timezone.utc)
        return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"

    @classmethod
    def serialize_data(cls, data: ProductData | dict[str, Any]) -> str:
        """
        Serialize block data to its compact JSON form.

        Dicts are serialized in their own key order; ProductData uses
        its fixed link field order.
        """
        if isinstance(data, ProductData):
            data = data.link_fields()
        if not isinstance(data, dict):
            raise LinkSerializationError(
                f"Block data must be an object, got {type(data).__name__}"
            )
        try:
            return json.dumps(
                data,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
            )
        except (TypeError, ValueError) as e:
            raise LinkSerializationError(f"Cannot serialize block data: {e}") from e

    @classmethod
    def link_input(
        cls,
        index: int,
        timestamp: str,
        data: ProductData | dict[str, Any],
        previous_link_value: str,
    ) -> str:
        """Build the concatenated string both schemes start from."""
        return f"{index}-{timestamp}-{cls.serialize_data(data)}-{previous_link_value}"

    @classmethod
    def link_value(
        cls,
        index: int,
        timestamp: str,
        data: ProductData | dict[str, Any],
        previous_link_value: str,
        scheme: LinkScheme = LinkScheme.CONCAT,
    ) -> str:
        """
        Compute the link value for a block.

        Args:
            index: Position of the block in the chain
            timestamp: The block's ISO timestamp string
            data: Product data carried by the block
            previous_link_value: Link value of the previous block ("0" for the first)
            scheme: Derivation scheme

        Returns:
            The link value string
        """
        raw = cls.link_input(index, timestamp, data, previous_link_value)
        if scheme == LinkScheme.SHA256:
            return hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return raw

    @classmethod
    def verify_block(
        cls,
        block: ProductBlock,
        scheme: LinkScheme = LinkScheme.CONCAT,
    ) -> bool:
        """Check that a block's link value matches its own fields."""
        try:
            computed = cls.link_value(
                block.index,
                block.timestamp,
                block.data,
                block.previous_link_value,
                scheme,
            )
        except LinkSerializationError:
            return False
        return computed == block.link_value
