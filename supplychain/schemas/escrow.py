"""
Escrow Schema

Names for the remote escrow contract's states and actions, and for the
local session's connection lifecycle.

The contract is the authority on state. These enums only give the
client a vocabulary to mirror it with.
"""

from enum import Enum
from typing import Optional


class EscrowState(str, Enum):
    """
    Remote contract state, decoded from the contract's uint8.
    Declaration order is the on-chain ordinal order.
    """
    AWAITING_DELIVERY = "AwaitingDelivery"
    DELIVERY_CONFIRMED = "DeliveryConfirmed"
    PAYOUT_REQUESTED = "PayoutRequested"
    DISPUTED = "Disputed"
    REFUNDED = "Refunded"
    RELEASED = "Released"

    @classmethod
    def from_code(cls, code: int) -> Optional["EscrowState"]:
        """Decode an on-chain ordinal. Unknown codes return None."""
        members = list(cls)
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        if 0 <= code < len(members):
            return members[code]
        return None

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowState.RELEASED, EscrowState.REFUNDED)


class EscrowAction(str, Enum):
    """
    State-changing contract functions.
    Values are the exact contract function names.
    """
    LOCK_FUNDS = "lockFunds"
    CONFIRM_DELIVERY = "confirmDelivery"
    REQUEST_PAYOUT = "requestPayout"
    REFUND_BUYER = "refundBuyer"
    RESOLVE_DISPUTE = "resolveDispute"


class EscrowRole(str, Enum):
    """Participant roles recorded by the contract."""
    BUYER = "buyer"
    SELLER = "seller"
    ARBITRATOR = "arbitrator"


class ConnectionState(str, Enum):
    """
    Session lifecycle:
    Disconnected -> Connecting -> Connected -> (action) -> Connected | Error
    """
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


class ActionPhase(str, Enum):
    """
    Progress of the current state-changing call.

    SUBMITTED means the transaction left this process and can no longer
    be taken back, even if we stop waiting for it.
    """
    IDLE = "Idle"
    SUBMITTING = "Submitting"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
