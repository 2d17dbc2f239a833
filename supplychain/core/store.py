"""
In-Memory Ledger Stores

Two append-only logs, each owned by its store and guarded by its own lock:

- ProductChainStore: ordered product blocks, indexed by product id
- EventLogStore: ordered product events

Neither store persists anything. Everything is lost on restart.

TRANSACTION CONTRACT:
Block appends MUST use the begin_append() context manager:

    with store.begin_append(product_id) as ctx:
        index, previous = ctx.head.next_index, ctx.head.last_link_value
        # ... build the block ...
        ctx.commit(block)

The lock is held from begin_append() until commit or exit, so the index,
the previous link value and the duplicate check all see the same chain.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Generator, Optional

from ..schemas import GENESIS_LINK_VALUE, EventRecord, ProductBlock


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class DuplicateKeyError(StoreError):
    """Raised when a product id is already present in the chain."""

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} already exists")
        self.product_id = product_id


class ChainIntegrityError(StoreError):
    """Raised when a committed block does not extend the current head."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class ChainHead:
    """
    Current end of the product chain.
    """
    last_index: int  # -1 means empty chain
    last_link_value: str  # GENESIS_LINK_VALUE for an empty chain

    @property
    def next_index(self) -> int:
        return self.last_index + 1

    @property
    def is_empty(self) -> bool:
        return self.last_index == -1


@dataclass
class AppendContext:
    """
    Transaction context for one block append.

    Holds the head snapshot taken under the store lock.
    """
    head: ChainHead
    product_id: str
    _store: "ProductChainStore"
    _committed: bool = field(default=False, init=False)

    def commit(self, block: ProductBlock) -> ProductBlock:
        if self._committed:
            raise StoreError("Transaction already committed")
        result = self._store._do_commit(self, block)
        self._committed = True
        return result


# ============================================================
# PRODUCT CHAIN
# ============================================================

class ProductChainStore:
    """
    Append-only, insertion-ordered product blocks.

    Guarantees (under the store lock):
    - block.index equals its position
    - block.previous_link_value equals the prior block's link value
    - product ids are unique (O(1) lookup through an id -> index map)
    """

    def __init__(self):
        self._blocks: list[ProductBlock] = []
        self._by_product: dict[str, int] = {}
        self._lock = Lock()

    def _head(self) -> ChainHead:
        if not self._blocks:
            return ChainHead(last_index=-1, last_link_value=GENESIS_LINK_VALUE)
        last = self._blocks[-1]
        return ChainHead(last_index=last.index, last_link_value=last.link_value)

    @contextmanager
    def begin_append(self, product_id: str) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic block append.

        Raises:
            DuplicateKeyError: if product_id is already in the chain
        """
        with self._lock:
            if product_id in self._by_product:
                raise DuplicateKeyError(product_id)
            yield AppendContext(head=self._head(), product_id=product_id, _store=self)

    def _do_commit(self, ctx: AppendContext, block: ProductBlock) -> ProductBlock:
        """Internal: validate against the head and append. Use ctx.commit()."""
        head = self._head()
        if block.product_id != ctx.product_id:
            raise ChainIntegrityError(
                f"Block carries product {block.product_id}, "
                f"transaction was opened for {ctx.product_id}"
            )
        if block.index != head.next_index:
            raise ChainIntegrityError(
                f"Index mismatch: expected {head.next_index}, got {block.index}"
            )
        if block.previous_link_value != head.last_link_value:
            raise ChainIntegrityError(
                f"Previous link mismatch at index {block.index}"
            )
        self._blocks.append(block)
        self._by_product[block.product_id] = block.index
        return block

    def list_all(self) -> tuple[ProductBlock, ...]:
        """Snapshot of all blocks in chain order."""
        with self._lock:
            return tuple(self._blocks)

    def get(self, product_id: str) -> Optional[ProductBlock]:
        with self._lock:
            index = self._by_product.get(product_id)
            return self._blocks[index] if index is not None else None

    def contains(self, product_id: str) -> bool:
        with self._lock:
            return product_id in self._by_product

    def get_head(self) -> ChainHead:
        """Get current head."""
        with self._lock:
            return self._head()

    def count(self) -> int:
        return len(self._blocks)

    def clear(self) -> None:
        """Clear all blocks (for testing only)."""
        with self._lock:
            self._blocks.clear()
            self._by_product.clear()


# ============================================================
# EVENT LOG
# ============================================================

class EventLogStore:
    """
    Append-only, insertion-ordered product events.

    No uniqueness constraint. Referential checks are the caller's job.
    """

    def __init__(self):
        self._events: list[EventRecord] = []
        self._lock = Lock()

    def append(self, event: EventRecord) -> EventRecord:
        with self._lock:
            self._events.append(event)
        return event

    def list_all(self) -> tuple[EventRecord, ...]:
        with self._lock:
            return tuple(self._events)

    def list_for_product(self, product_id: str) -> tuple[EventRecord, ...]:
        with self._lock:
            return tuple(e for e in self._events if e.product_id == product_id)

    def count(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        """Clear all events (for testing only)."""
        with self._lock:
            self._events.clear()
