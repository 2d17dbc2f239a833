"""
Escrow Errors

Every failure an escrow session can surface, grouped by where it comes from:

- Environment preconditions: the wallet, its account, its network
- Remote-call failures: the contract could not be reached, rejected the
  call, or did not confirm it in time
- Local state-machine guards: refused before anything is sent

Remote reasons are carried verbatim so they can be shown to the user.
"""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow session errors."""
    pass


# ------------------------------------------------------------
# Environment preconditions
# ------------------------------------------------------------

class WalletUnavailableError(EscrowError):
    """Raised when no wallet provider is available."""

    def __init__(self, message: str = "No wallet provider detected. Install or start a wallet and retry."):
        super().__init__(message)


class NoAccountError(EscrowError):
    """Raised when the wallet exposes no account."""

    def __init__(self, message: str = "No wallet account available. Unlock the wallet and connect an account."):
        super().__init__(message)


class NetworkMismatchError(EscrowError):
    """Raised when the wallet is on the wrong network and could not be switched."""

    def __init__(self, expected: int, actual: Optional[int], detail: str = ""):
        message = (
            f"Wallet is on network {actual}, expected {expected}. "
            f"Switch the wallet to network {expected} manually."
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


# ------------------------------------------------------------
# Remote-call failures
# ------------------------------------------------------------

class ContractUnreachableError(EscrowError):
    """Raised when the contract binding cannot be created or read."""
    pass


class ActionRejectedError(EscrowError):
    """
    Raised when the remote contract rejects a call.

    reason is the remote-supplied string, unmodified.
    """

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(EscrowError):
    """
    Raised when a submitted transaction is not confirmed in time.

    The transaction was already sent and may still be mined.
    """

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(
            f"Transaction {tx_hash} not confirmed after {timeout}s. "
            "It was submitted and may still be confirmed later."
        )
        self.tx_hash = tx_hash
        self.timeout = timeout


# ------------------------------------------------------------
# Local state-machine guards
# ------------------------------------------------------------

class ActionInFlightError(EscrowError):
    """Raised when an action is attempted while another is unconfirmed."""
    pass


class TerminalStateError(EscrowError):
    """Raised when the escrow has already been released or refunded."""

    def __init__(self, state):
        super().__init__(
            f"Escrow is in terminal state {state.value}; no further actions are accepted"
        )
        self.state = state


class InvalidTransitionError(EscrowError):
    """Raised when an action is not allowed for the current state or caller."""
    pass


class SessionNotConnectedError(InvalidTransitionError):
    """Raised when an action is attempted on a session that is not connected."""
    pass
