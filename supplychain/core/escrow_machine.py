"""
Escrow State Machine (local mirror)

The remote contract is the only authority on escrow state. This table
mirrors it so that obviously invalid actions fail before a transaction
is built, signed and sent.

    AwaitingDelivery --confirmDelivery (buyer)--> Released
    AwaitingDelivery --requestPayout (seller)---> PayoutRequested
    AwaitingDelivery --refundBuyer (buyer)------> Refunded
    AwaitingDelivery --lockFunds (buyer)--------> AwaitingDelivery
    DeliveryConfirmed --requestPayout (seller)--> PayoutRequested
    PayoutRequested --confirmDelivery (buyer)---> Released
    PayoutRequested --refundBuyer (buyer)-------> Disputed
    PayoutRequested|Disputed --resolveDispute(true) (arbitrator)--> Released
    PayoutRequested|Disputed --resolveDispute(false) (arbitrator)-> Refunded

Released and Refunded are terminal.

When the remote state is unknown (unrecognised code, or not fetched),
only terminal/argument checks that need no state are applied and the
remote decides the rest.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..schemas import EscrowAction, EscrowRole, EscrowState
from .escrow_errors import InvalidTransitionError, TerminalStateError


@dataclass(frozen=True)
class Transition:
    """Who may perform an action, and from which states to which."""
    action: EscrowAction
    role: EscrowRole
    outcomes: dict = field(default_factory=dict)  # source state -> expected target
    payable: bool = False

    @property
    def sources(self) -> frozenset:
        return frozenset(self.outcomes)


S = EscrowState

TRANSITIONS: dict[EscrowAction, Transition] = {
    EscrowAction.LOCK_FUNDS: Transition(
        action=EscrowAction.LOCK_FUNDS,
        role=EscrowRole.BUYER,
        outcomes={S.AWAITING_DELIVERY: S.AWAITING_DELIVERY},
        payable=True,
    ),
    EscrowAction.CONFIRM_DELIVERY: Transition(
        action=EscrowAction.CONFIRM_DELIVERY,
        role=EscrowRole.BUYER,
        outcomes={
            S.AWAITING_DELIVERY: S.RELEASED,
            S.PAYOUT_REQUESTED: S.RELEASED,
        },
    ),
    EscrowAction.REQUEST_PAYOUT: Transition(
        action=EscrowAction.REQUEST_PAYOUT,
        role=EscrowRole.SELLER,
        outcomes={
            S.AWAITING_DELIVERY: S.PAYOUT_REQUESTED,
            S.DELIVERY_CONFIRMED: S.PAYOUT_REQUESTED,
        },
    ),
    EscrowAction.REFUND_BUYER: Transition(
        action=EscrowAction.REFUND_BUYER,
        role=EscrowRole.BUYER,
        outcomes={
            S.AWAITING_DELIVERY: S.REFUNDED,
            S.PAYOUT_REQUESTED: S.DISPUTED,
        },
    ),
    # Target depends on the releaseToSeller argument; see expected_outcome()
    EscrowAction.RESOLVE_DISPUTE: Transition(
        action=EscrowAction.RESOLVE_DISPUTE,
        role=EscrowRole.ARBITRATOR,
        outcomes={
            S.PAYOUT_REQUESTED: S.RELEASED,
            S.DISPUTED: S.RELEASED,
        },
    ),
}


def parse_action(action: Any) -> EscrowAction:
    """
    Accept an EscrowAction or its contract function name.

    Raises:
        InvalidTransitionError: for anything outside the role-gated set
    """
    try:
        return EscrowAction(action)
    except ValueError:
        allowed = ", ".join(a.value for a in EscrowAction)
        raise InvalidTransitionError(f"Unknown escrow action {action!r}. Allowed: {allowed}")


class EscrowStateMachine:
    """Checks against the mirrored transition table."""

    @staticmethod
    def validate_arguments(action: EscrowAction, args: tuple, value: Optional[int]) -> None:
        """
        Raises:
            InvalidTransitionError: if the arguments do not fit the action
        """
        transition = TRANSITIONS[action]
        if action == EscrowAction.RESOLVE_DISPUTE:
            if len(args) != 1 or not isinstance(args[0], bool):
                raise InvalidTransitionError(
                    "resolveDispute takes exactly one boolean: releaseToSeller"
                )
        elif args:
            raise InvalidTransitionError(f"{action.value} takes no arguments")

        if value:
            if not transition.payable:
                raise InvalidTransitionError(f"{action.value} does not accept a value")
            if value < 0:
                raise InvalidTransitionError("Value must be non-negative")

    @staticmethod
    def check_not_terminal(state: Optional[EscrowState]) -> None:
        """
        Raises:
            TerminalStateError: if state is Released or Refunded
        """
        if state is not None and state.is_terminal:
            raise TerminalStateError(state)

    @staticmethod
    def check(
        action: EscrowAction,
        state: Optional[EscrowState],
        roles: Optional[Iterable[EscrowRole]] = None,
    ) -> Transition:
        """
        Check an action against the mirrored state and the caller's roles.

        Args:
            action: The action to perform
            state: Mirrored remote state, or None if unknown
            roles: Roles the caller holds on this contract, or None if unknown

        Raises:
            TerminalStateError: if state is Released or Refunded
            InvalidTransitionError: if state or role disallows the action
        """
        transition = TRANSITIONS[action]

        if state is None:
            return transition

        EscrowStateMachine.check_not_terminal(state)

        if state not in transition.sources:
            allowed = ", ".join(sorted(s.value for s in transition.sources))
            raise InvalidTransitionError(
                f"{action.value} is not allowed in state {state.value}. "
                f"Allowed from: {allowed}"
            )

        if roles is not None and transition.role not in set(roles):
            raise InvalidTransitionError(
                f"{action.value} can only be called by the {transition.role.value}"
            )

        return transition

    @staticmethod
    def expected_outcome(
        action: EscrowAction,
        state: Optional[EscrowState],
        args: tuple = (),
    ) -> Optional[EscrowState]:
        """The state the mirror expects after a confirmed action, if known."""
        if state is None:
            return None
        if action == EscrowAction.RESOLVE_DISPUTE and args:
            return S.RELEASED if args[0] else S.REFUNDED
        return TRANSITIONS[action].outcomes.get(state)

    @staticmethod
    def available_actions(
        state: Optional[EscrowState],
        roles: Optional[Iterable[EscrowRole]] = None,
    ) -> list[EscrowAction]:
        """Actions the mirror would let through for this state and caller."""
        if state is None or state.is_terminal:
            return []
        role_set = set(roles) if roles is not None else None
        return [
            t.action for t in TRANSITIONS.values()
            if state in t.sources and (role_set is None or t.role in role_set)
        ]
