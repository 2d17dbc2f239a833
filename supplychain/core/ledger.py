"""
Ledger Service - Product Chain and Event Log

This is an append-only ledger.
Products are recorded once. Events are added as things happen.
Nothing is edited and nothing is deleted.

The ledger:
- Validates input
- Rejects duplicate product ids
- Rejects events for products it has never seen
- Builds blocks and chains them by link value
- Exposes read-only snapshots

KNOWN WEAKNESS:
Link values are derived from public fields with a non-cryptographic
(or, at most, unanchored SHA-256) function. A retroactive edit of an
earlier block followed by recomputing the later links is NOT detected.
verify_links() only reports whether the chain is self-consistent.

Storage is delegated to ProductChainStore and EventLogStore, which own
the locks that keep indexes monotonic and the duplicate check race-free.
"""

import time
from enum import Enum
from typing import Any, Iterable, Optional

from ..config import LinkScheme
from ..observability import get_logger, get_metrics
from ..schemas import (
    GENESIS_LINK_VALUE,
    EventRecord,
    EventType,
    ProductBlock,
    ProductData,
)
from .hasher import Hasher
from .store import DuplicateKeyError, EventLogStore, ProductChainStore

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when required input is missing or malformed."""
    pass


class DuplicateProductError(LedgerError):
    """Raised when a product id is already recorded."""

    def __init__(self, product_id: str):
        super().__init__(f"Product ID already exists: {product_id}")
        self.product_id = product_id


class NotFoundError(LedgerError):
    """Raised when an event references an unknown product."""

    def __init__(self, product_id: str):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


def _require_text(value: Any, field_name: str) -> str:
    if value is None or value == "":
        raise ValidationError(f"Missing required field: {field_name}")
    if not isinstance(value, str):
        raise ValidationError(
            f"Field {field_name} must be a string, got {type(value).__name__}"
        )
    return value


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(
            f"Field {field_name} must be a string, got {type(value).__name__}"
        )
    return value


class LedgerService:
    """
    The supply-chain ledger.

    CHAIN GUARANTEES:
    - Block index is 0, 1, 2, ... in append order
    - previous_link_value is "0" for the first block, else the prior link value
    - link_value is a deterministic function of (index, timestamp, data, previous)
    - product ids are unique across the chain

    EVENT GUARANTEES:
    - Every event references a product that existed when it was appended
    - Events keep arrival order; duplicates are allowed
    """

    def __init__(
        self,
        product_store: Optional[ProductChainStore] = None,
        event_store: Optional[EventLogStore] = None,
        link_scheme: LinkScheme = LinkScheme.CONCAT,
    ):
        self._products = product_store or ProductChainStore()
        self._events = event_store or EventLogStore()
        self._link_scheme = link_scheme

    @property
    def link_scheme(self) -> LinkScheme:
        return self._link_scheme

    @property
    def product_count(self) -> int:
        return self._products.count()

    @property
    def event_count(self) -> int:
        return self._events.count()

    @property
    def last_link_value(self) -> Optional[str]:
        """Link value of the newest block, or None for an empty chain."""
        head = self._products.get_head()
        return None if head.is_empty else head.last_link_value

    # ================================================================
    # COMMANDS
    # ================================================================

    def append_product(
        self,
        product_id: Any,
        description: Any,
        owner: Any,
        wallet_address: Any = None,
    ) -> ProductBlock:
        """
        Record a new product as the next block in the chain.

        Raises:
            ValidationError: if product_id, description or owner is empty
            DuplicateProductError: if product_id is already recorded
        """
        start = time.perf_counter()

        data = ProductData(
            product_id=_require_text(product_id, "productId"),
            description=_require_text(description, "description"),
            owner=_require_text(owner, "owner"),
            wallet_address=_optional_text(wallet_address, "walletAddress"),
        )

        try:
            with self._products.begin_append(data.product_id) as ctx:
                index = ctx.head.next_index
                previous = ctx.head.last_link_value
                timestamp = Hasher.iso_timestamp()
                block = ProductBlock(
                    index=index,
                    timestamp=timestamp,
                    data=data,
                    previous_link_value=previous,
                    link_value=Hasher.link_value(
                        index, timestamp, data, previous, self._link_scheme
                    ),
                )
                ctx.commit(block)
        except DuplicateKeyError as e:
            logger.warning("Duplicate product rejected", product_id=e.product_id)
            raise DuplicateProductError(e.product_id) from e

        get_metrics().record_append((time.perf_counter() - start) * 1000)
        logger.info(
            "Block added",
            product_id=data.product_id,
            index=block.index,
            owner=data.owner,
        )
        return block

    def append_event(
        self,
        product_id: Any,
        event_type: Any,
        key: Any = None,
        value: Any = None,
        wallet_address: Any = None,
    ) -> EventRecord:
        """
        Append an event for an existing product.

        Raises:
            ValidationError: if product_id or event_type is missing
            NotFoundError: if no block carries product_id
        """
        start = time.perf_counter()

        if isinstance(event_type, Enum):
            event_type = event_type.value
        product_id = _require_text(product_id, "productId")
        event_type = _require_text(event_type, "eventType")

        # Products are never removed, so this check cannot go stale.
        if not self._products.contains(product_id):
            logger.warning("Event for unknown product rejected", product_id=product_id)
            raise NotFoundError(product_id)

        if not EventType.is_known(event_type):
            logger.debug("Custom event type", event_type=event_type)

        event = EventRecord(
            product_id=product_id,
            event_type=event_type,
            key=_optional_text(key, "key"),
            value=_optional_text(value, "value"),
            wallet_address=_optional_text(wallet_address, "walletAddress"),
            timestamp=Hasher.iso_timestamp(),
        )
        self._events.append(event)

        get_metrics().record_append((time.perf_counter() - start) * 1000)
        logger.info("Event added", product_id=product_id, event_type=event_type)
        return event

    # ================================================================
    # QUERIES
    # ================================================================

    def list_products(self) -> tuple[ProductBlock, ...]:
        """All blocks in chain order (read-only snapshot)."""
        return self._products.list_all()

    def list_events(self) -> tuple[EventRecord, ...]:
        """All events in arrival order (read-only snapshot)."""
        return self._events.list_all()

    def get_product(self, product_id: str) -> Optional[ProductBlock]:
        return self._products.get(product_id)

    def events_for_product(self, product_id: str) -> tuple[EventRecord, ...]:
        return self._events.list_for_product(product_id)

    def verify_links(self) -> bool:
        """
        Check that the chain is self-consistent.

        This proves append-order consistency only; see the module
        docstring for why it proves nothing about tampering.
        """
        return find_broken_link(self._products.list_all(), self._link_scheme) is None


def find_broken_link(
    blocks: Iterable[ProductBlock],
    scheme: LinkScheme = LinkScheme.CONCAT,
) -> Optional[int]:
    """
    Walk blocks in order and check index, predecessor link and link value.

    Returns:
        Position of the first inconsistent block, or None if all are consistent
    """
    previous = GENESIS_LINK_VALUE
    for position, block in enumerate(blocks):
        if block.index != position:
            logger.error("Index gap in chain", expected=position, found=block.index)
            return position
        if block.previous_link_value != previous:
            logger.error("Broken predecessor link", index=block.index)
            return position
        if not Hasher.verify_block(block, scheme):
            logger.error("Link value mismatch", index=block.index)
            return position
        previous = block.link_value
    return None


# ============================================================
# DEMO DATA
# ============================================================

DEMO_PRODUCTS = (
    ("P1001", "Organic Apples", "Farm Co."),
    ("P1002", "Cold-Pressed Olive Oil", "Grove Partners"),
    ("P1003", "Arabica Coffee Beans", "Highland Cooperative"),
)

DEMO_EVENTS = (
    ("P1001", EventType.PRODUCTION_START, "harvest", "orchard-7"),
    ("P1001", EventType.QUALITY_CHECK, "grade", "A"),
    ("P1001", EventType.SHIPMENT, "carrier", "FreshFreight"),
    ("P1002", EventType.STORAGE, "temperature", "14C"),
    ("P1003", EventType.DELIVERY, "receiver", "Roastery 12"),
)


def seed_demo_data(ledger: LedgerService) -> int:
    """
    Populate an empty ledger with a few demo products and events.

    Returns:
        Number of blocks added (0 if the ledger was not empty)
    """
    if ledger.product_count > 0:
        return 0
    for product_id, description, owner in DEMO_PRODUCTS:
        ledger.append_product(product_id, description, owner)
    for product_id, event_type, key, value in DEMO_EVENTS:
        ledger.append_event(product_id, event_type, key=key, value=value)
    logger.info("Seeded demo data", products=len(DEMO_PRODUCTS), events=len(DEMO_EVENTS))
    return len(DEMO_PRODUCTS)
