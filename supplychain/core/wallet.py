"""
Wallet and Contract Binding Interfaces

The escrow session never talks to a network library directly. It goes
through two seams:

- WalletProvider: accounts, network identity, network switching, and
  change notifications (an opaque signer + account provider)
- ContractBinding: read calls, state-changing calls, and confirmation
  waits against one deployed contract

Change notifications are explicit subscriptions. Every subscribe() call
returns a Subscription that the caller must unsubscribe() when done.
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional

from ..observability import get_logger

logger = get_logger(__name__)


# Wallet RPC error codes (EIP-1193 / EIP-3085)
USER_REJECTED_REQUEST = 4001
UNRECOGNIZED_CHAIN = 4902


class WalletRequestError(Exception):
    """Raised by a wallet provider when it refuses or fails a request."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"[{code}] {message}" if code is not None else message)
        self.code = code
        self.message = message


class WalletEvent(str, Enum):
    """Notifications a wallet provider can emit."""
    ACCOUNTS_CHANGED = "accountsChanged"
    CHAIN_CHANGED = "chainChanged"


@dataclass(frozen=True)
class TransactionReceipt:
    """Confirmation of a mined transaction."""
    tx_hash: str
    block_number: Optional[int]
    status: int  # 1 success, 0 reverted
    gas_used: Optional[int] = None
    action: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class Subscription:
    """
    Handle for one registered callback.

    unsubscribe() is idempotent.
    """

    def __init__(self, subscription_id: int, event: WalletEvent, cancel: Callable[[int], None]):
        self.id = subscription_id
        self.event = event
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._cancel(self.id)


class SubscriptionRegistry:
    """
    Callback bookkeeping shared by wallet providers.
    """

    def __init__(self):
        self._callbacks: dict[int, tuple[WalletEvent, Callable[[Any], None]]] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def subscribe(self, event: WalletEvent, callback: Callable[[Any], None]) -> Subscription:
        event = WalletEvent(event)
        with self._lock:
            subscription_id = next(self._ids)
            self._callbacks[subscription_id] = (event, callback)
        return Subscription(subscription_id, event, self._remove)

    def _remove(self, subscription_id: int) -> None:
        with self._lock:
            self._callbacks.pop(subscription_id, None)

    def emit(self, event: WalletEvent, payload: Any) -> int:
        """
        Deliver payload to every callback registered for event.

        Returns:
            Number of callbacks invoked
        """
        with self._lock:
            targets = [cb for ev, cb in self._callbacks.values() if ev == event]
        for callback in targets:
            callback(payload)
        logger.debug("Wallet event delivered", wallet_event=event.value, listeners=len(targets))
        return len(targets)

    def count(self, event: Optional[WalletEvent] = None) -> int:
        with self._lock:
            if event is None:
                return len(self._callbacks)
            return sum(1 for ev, _ in self._callbacks.values() if ev == event)


class ContractBinding(ABC):
    """
    One deployed contract, bound to a wallet's signer.

    Implementations translate remote rejections into ActionRejectedError
    and confirmation timeouts into ConfirmationTimeoutError.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    def call(self, function_name: str, *args: Any) -> Any:
        """Run a read-only function and return its decoded result."""
        pass

    @abstractmethod
    def transact(self, function_name: str, *args: Any, sender: str, value: int = 0) -> str:
        """
        Submit a state-changing call.

        Returns:
            The transaction hash (0x-prefixed hex)
        """
        pass

    @abstractmethod
    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float,
        poll_latency: float = 0.5,
    ) -> TransactionReceipt:
        """Block until tx_hash is mined or timeout seconds pass."""
        pass


class WalletProvider(ABC):
    """
    Account and network access, as a browser wallet would provide it.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """True if the provider can service requests at all."""
        pass

    @abstractmethod
    def request_accounts(self) -> list[str]:
        """
        Return the accounts the user has exposed.

        Raises:
            WalletRequestError: if the user refuses (code 4001)
        """
        pass

    @abstractmethod
    def get_chain_id(self) -> int:
        pass

    @abstractmethod
    def switch_chain(self, chain_id: int) -> None:
        """
        Ask the wallet to switch networks.

        Raises:
            WalletRequestError: code 4902 if the wallet does not know the chain
        """
        pass

    @abstractmethod
    def add_chain(self, chain_id: int, chain_name: str, rpc_url: str) -> None:
        pass

    @abstractmethod
    def bind_contract(self, address: str, abi: list[dict]) -> ContractBinding:
        pass

    @abstractmethod
    def subscribe(self, event: WalletEvent, callback: Callable[[Any], None]) -> Subscription:
        pass
