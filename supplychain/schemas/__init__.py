# Canonical schemas for the supply-chain ledger and the escrow session.

from .product import GENESIS_LINK_VALUE, ProductBlock, ProductData
from .events import EventRecord, EventType
from .escrow import (
    ActionPhase,
    ConnectionState,
    EscrowAction,
    EscrowRole,
    EscrowState,
)

__all__ = [
    # Product chain
    "GENESIS_LINK_VALUE",
    "ProductBlock",
    "ProductData",
    # Events
    "EventRecord",
    "EventType",
    # Escrow
    "ActionPhase",
    "ConnectionState",
    "EscrowAction",
    "EscrowRole",
    "EscrowState",
]
