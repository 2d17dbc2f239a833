"""
Escrow Session

A client-side handle on one deployed escrow contract.

Lifecycle:
    Disconnected -> Connecting -> Connected -> (action) -> Connected | Error

Rules (enforced in code):
- One state-changing action at a time. A second call while the first is
  unconfirmed fails with ActionInFlightError; it is never queued.
- A submitted transaction cannot be taken back. If we stop waiting
  (timeout), it stays recorded as pending and blocks new actions until
  it is confirmed via wait_for_pending() or acknowledged via
  forget_pending().
- Terminal escrows (Released, Refunded) refuse every action locally.
- After every call the remote state is re-read. The remote answer always
  wins over the local mirror.

Wallet notifications are consumed through explicit subscriptions that
close() cancels.
"""

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import EscrowConfig
from ..observability import get_logger, get_metrics
from ..schemas import (
    ActionPhase,
    ConnectionState,
    EscrowAction,
    EscrowRole,
    EscrowState,
)
from .contract_abi import ESCROW_ABI, ESCROW_INTERFACE_VERSION
from .escrow_errors import (
    ActionInFlightError,
    ActionRejectedError,
    ConfirmationTimeoutError,
    ContractUnreachableError,
    EscrowError,
    InvalidTransitionError,
    NetworkMismatchError,
    NoAccountError,
    SessionNotConnectedError,
    WalletUnavailableError,
)
from .escrow_machine import EscrowStateMachine, parse_action
from .wallet import (
    UNRECOGNIZED_CHAIN,
    USER_REJECTED_REQUEST,
    ContractBinding,
    Subscription,
    TransactionReceipt,
    WalletEvent,
    WalletProvider,
    WalletRequestError,
)

logger = get_logger(__name__)


def parse_chain_id(value: Any) -> int:
    """Accept 31337, "31337" or "0x7a69"."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid network id: {value!r}")
    if isinstance(value, int):
        return value
    return int(str(value).strip(), 0)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


@dataclass(frozen=True)
class EscrowSnapshot:
    """
    One read of the remote contract.
    state is None when the remote code is not one we recognise.
    """
    state: Optional[EscrowState]
    state_code: int
    buyer: str
    seller: str
    arbitrator: str
    amount: int
    delivery_deadline: int
    buyer_confirmed_delivery: Optional[bool]
    seller_requested_payout: Optional[bool]
    fetched_at: datetime

    def roles_of(self, account: Optional[str]) -> frozenset:
        roles = set()
        if _same_address(account, self.buyer):
            roles.add(EscrowRole.BUYER)
        if _same_address(account, self.seller):
            roles.add(EscrowRole.SELLER)
        if _same_address(account, self.arbitrator):
            roles.add(EscrowRole.ARBITRATOR)
        return frozenset(roles)


@dataclass(frozen=True)
class PendingTransaction:
    """A transaction that left this process and has not been confirmed."""
    action: EscrowAction
    tx_hash: str
    sender: str
    submitted_at: datetime
    expected_state: Optional[EscrowState] = None


class EscrowSession:
    """
    Connection to a remote escrow contract plus the locally tracked
    account, network and mirrored state.

    Use EscrowSession.connect(...) to obtain a connected session.
    """

    def __init__(
        self,
        wallet: Optional[WalletProvider],
        contract_address: str,
        expected_network_id: Any,
        config: Optional[EscrowConfig] = None,
    ):
        self._wallet = wallet
        self._contract_address = contract_address
        self._network_id = parse_chain_id(expected_network_id)
        self._config = config or EscrowConfig(
            contract_address=contract_address,
            chain_id=self._network_id,
        )

        self._account: Optional[str] = None
        self._binding: Optional[ContractBinding] = None
        self._snapshot: Optional[EscrowSnapshot] = None
        self._connection_state = ConnectionState.DISCONNECTED
        self._phase = ActionPhase.IDLE
        self._pending: Optional[PendingTransaction] = None
        self._last_error: Optional[str] = None
        self._subscriptions: list[Subscription] = []

        # Held for the whole of an action; never waited on
        self._action_lock = threading.Lock()

    # ================================================================
    # PROPERTIES
    # ================================================================

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def network_id(self) -> int:
        return self._network_id

    @property
    def interface_version(self) -> str:
        return ESCROW_INTERFACE_VERSION

    @property
    def connected_account(self) -> Optional[str]:
        return self._account

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def phase(self) -> ActionPhase:
        return self._phase

    @property
    def in_flight(self) -> bool:
        return self._phase in (ActionPhase.SUBMITTING, ActionPhase.SUBMITTED)

    @property
    def pending(self) -> Optional[PendingTransaction]:
        return self._pending

    @property
    def snapshot(self) -> Optional[EscrowSnapshot]:
        return self._snapshot

    @property
    def mirrored_state(self) -> Optional[EscrowState]:
        return self._snapshot.state if self._snapshot else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def roles(self) -> Optional[frozenset]:
        """Roles of the connected account, or None before the first read."""
        if self._snapshot is None:
            return None
        return self._snapshot.roles_of(self._account)

    # ================================================================
    # CONNECT
    # ================================================================

    @classmethod
    def connect(
        cls,
        wallet: Optional[WalletProvider],
        contract_address: str,
        expected_network_id: Any,
        config: Optional[EscrowConfig] = None,
    ) -> "EscrowSession":
        """
        Open a session against a deployed escrow contract.

        Raises:
            WalletUnavailableError: no usable wallet provider
            NoAccountError: the wallet exposes no account
            NetworkMismatchError: wrong network and the switch was refused
            ContractUnreachableError: the contract could not be bound or read
        """
        session = cls(wallet, contract_address, expected_network_id, config)
        session.open()
        return session

    def open(self) -> "EscrowSession":
        """Run the connection sequence on this session."""
        if self._connection_state == ConnectionState.CONNECTED:
            return self

        self._release_subscriptions()
        self._connection_state = ConnectionState.CONNECTING
        self._last_error = None
        try:
            self._require_wallet()
            self._account = self._require_account()
            self._ensure_network()
            self._binding = self._bind()
            self._snapshot = self._read_snapshot()
        except Exception as e:
            self._fail(e)
            raise

        self._subscribe()
        self._connection_state = ConnectionState.CONNECTED
        logger.info(
            "Escrow session connected",
            contract=self._contract_address,
            account=self._account,
            network_id=self._network_id,
            escrow_state=self._state_label(),
        )
        return self

    def _fail(self, error: Exception) -> None:
        self._connection_state = ConnectionState.ERROR
        self._last_error = str(error)
        logger.warning(
            "Escrow session connection failed",
            contract=self._contract_address,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _require_wallet(self) -> None:
        if self._wallet is None:
            raise WalletUnavailableError()
        try:
            available = self._wallet.is_available()
        except Exception as e:
            raise WalletUnavailableError(f"Wallet provider failed to respond: {e}") from e
        if not available:
            raise WalletUnavailableError(
                "Wallet provider is not responding. Check that it is running and reachable."
            )

    def _require_account(self) -> str:
        try:
            accounts = self._wallet.request_accounts()
        except WalletRequestError as e:
            if e.code == USER_REJECTED_REQUEST:
                raise NoAccountError("Connection rejected by user") from e
            raise NoAccountError(f"Wallet refused account access: {e.message}") from e
        except EscrowError:
            raise
        except Exception as e:
            raise WalletUnavailableError(f"Wallet could not list accounts: {e}") from e
        if not accounts:
            raise NoAccountError()
        return accounts[0]

    def _ensure_network(self) -> None:
        actual = self._read_chain_id()
        if actual == self._network_id:
            return

        logger.info("Requesting network switch", current=actual, expected=self._network_id)
        try:
            self._wallet.switch_chain(self._network_id)
        except WalletRequestError as e:
            if e.code != UNRECOGNIZED_CHAIN:
                raise NetworkMismatchError(self._network_id, actual, e.message) from e
            self._add_network(actual)
        except NotImplementedError as e:
            raise NetworkMismatchError(
                self._network_id, actual, "wallet does not support switching"
            ) from e

        switched = self._read_chain_id()
        if switched != self._network_id:
            raise NetworkMismatchError(self._network_id, switched, "switch did not take effect")

    def _add_network(self, actual: int) -> None:
        try:
            self._wallet.add_chain(
                self._network_id,
                self._config.chain_name,
                self._config.rpc_url,
            )
        except (WalletRequestError, NotImplementedError) as e:
            raise NetworkMismatchError(
                self._network_id, actual, f"could not add network: {e}"
            ) from e

    def _read_chain_id(self) -> int:
        try:
            return parse_chain_id(self._wallet.get_chain_id())
        except (WalletRequestError, ValueError) as e:
            raise NetworkMismatchError(self._network_id, None, f"cannot read network: {e}") from e
        except EscrowError:
            raise
        except Exception as e:
            raise WalletUnavailableError(f"Wallet could not report its network: {e}") from e

    def _bind(self) -> ContractBinding:
        try:
            binding = self._wallet.bind_contract(self._contract_address, ESCROW_ABI)
            # Liveness check: one cheap read
            binding.call("buyer")
        except EscrowError:
            raise
        except Exception as e:
            raise ContractUnreachableError(
                f"Failed to connect to contract at {self._contract_address}: {e}"
            ) from e
        return binding

    def _subscribe(self) -> None:
        self._subscriptions = [
            self._wallet.subscribe(WalletEvent.ACCOUNTS_CHANGED, self._on_accounts_changed),
            self._wallet.subscribe(WalletEvent.CHAIN_CHANGED, self._on_chain_changed),
        ]

    def _release_subscriptions(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    # ================================================================
    # READS
    # ================================================================

    def _read_snapshot(self) -> EscrowSnapshot:
        binding = self._binding
        try:
            state_code = int(binding.call("state"))
            return EscrowSnapshot(
                state=EscrowState.from_code(state_code),
                state_code=state_code,
                buyer=binding.call("buyer"),
                seller=binding.call("seller"),
                arbitrator=binding.call("arbitrator"),
                amount=int(binding.call("amount")),
                delivery_deadline=int(binding.call("deliveryDeadline")),
                buyer_confirmed_delivery=binding.call("buyerConfirmedDelivery"),
                seller_requested_payout=binding.call("sellerRequestedPayout"),
                fetched_at=datetime.now(timezone.utc),
            )
        except EscrowError:
            raise
        except Exception as e:
            raise ContractUnreachableError(f"Failed to read escrow contract: {e}") from e

    def refresh(self) -> EscrowSnapshot:
        """
        Re-read the remote contract and replace the mirror.

        Raises:
            SessionNotConnectedError: if the session is not connected
            ContractUnreachableError: if the read fails
        """
        self._require_connected()
        self._snapshot = self._read_snapshot()
        if self._snapshot.state is None:
            logger.warning(
                "Unrecognised escrow state code; local checks disabled",
                state_code=self._snapshot.state_code,
            )
        return self._snapshot

    def _reconcile(self, expected: Optional[EscrowState] = None) -> None:
        """Refresh after a call. A failed read leaves the mirror unknown."""
        try:
            snapshot = self.refresh()
        except EscrowError as e:
            self._snapshot = None
            logger.warning("Could not reconcile escrow state", error=str(e))
            return
        if expected is not None and snapshot.state != expected:
            logger.info(
                "Remote state differs from mirrored expectation",
                expected=expected.value,
                remote=self._state_label(),
            )

    def available_actions(self) -> list[EscrowAction]:
        """Actions the connected account could take in the mirrored state."""
        if self._connection_state != ConnectionState.CONNECTED or self._pending is not None:
            return []
        return EscrowStateMachine.available_actions(self.mirrored_state, self.roles)

    # ================================================================
    # ACTIONS
    # ================================================================

    def invoke(self, action: Any, *args: Any, value: Optional[int] = None) -> TransactionReceipt:
        """
        Perform one state-changing contract call and wait for confirmation.

        Args:
            action: EscrowAction or contract function name
            *args: Function arguments (resolveDispute takes releaseToSeller)
            value: Wei to send with lockFunds

        Raises:
            InvalidTransitionError: unknown action, bad arguments, or the
                mirrored state/role disallows it
            SessionNotConnectedError: session is not connected
            ActionInFlightError: another action is unconfirmed
            TerminalStateError: the escrow is already settled
            ActionRejectedError: the contract rejected the call
            ConfirmationTimeoutError: no confirmation within the timeout
        """
        action = parse_action(action)

        if not self._action_lock.acquire(blocking=False):
            raise ActionInFlightError(
                f"Another escrow action is in progress; {action.value} was not submitted"
            )
        try:
            self._require_connected()
            EscrowStateMachine.validate_arguments(action, args, value)
            EscrowStateMachine.check_not_terminal(self.mirrored_state)
            if self._pending is not None:
                raise ActionInFlightError(
                    f"Transaction {self._pending.tx_hash} ({self._pending.action.value}) "
                    "is still unconfirmed"
                )
            EscrowStateMachine.check(action, self.mirrored_state, self.roles)
            return self._submit_and_wait(action, args, value or 0)
        finally:
            self._action_lock.release()

    def _submit_and_wait(self, action: EscrowAction, args: tuple, value: int) -> TransactionReceipt:
        expected = EscrowStateMachine.expected_outcome(action, self.mirrored_state, args)
        sender = self._account
        self._phase = ActionPhase.SUBMITTING

        try:
            tx_hash = self._binding.transact(action.value, *args, sender=sender, value=value)
        except ActionRejectedError as e:
            self._phase = ActionPhase.IDLE
            get_metrics().record_escrow_outcome("rejected")
            logger.warning("Escrow action rejected", action=action.value, reason=e.reason)
            self._reconcile()
            raise
        except EscrowError:
            self._phase = ActionPhase.IDLE
            raise
        except Exception as e:
            self._phase = ActionPhase.IDLE
            raise ContractUnreachableError(f"{action.value} could not be submitted: {e}") from e

        self._pending = PendingTransaction(
            action=action,
            tx_hash=tx_hash,
            sender=sender,
            submitted_at=datetime.now(timezone.utc),
            expected_state=expected,
        )
        self._phase = ActionPhase.SUBMITTED
        get_metrics().record_escrow_outcome("submitted")
        logger.info("Escrow action submitted", action=action.value, tx_hash=tx_hash, account=sender)

        return self._await_confirmation(self._config.confirmation_timeout)

    def _await_confirmation(self, timeout: float) -> TransactionReceipt:
        pending = self._pending
        start = time.perf_counter()
        try:
            receipt = self._binding.wait_for_receipt(
                pending.tx_hash,
                timeout=timeout,
                poll_latency=self._config.poll_interval,
            )
        except ConfirmationTimeoutError:
            get_metrics().record_escrow_outcome("timeout")
            logger.warning(
                "Escrow transaction unconfirmed; it may still be mined",
                action=pending.action.value,
                tx_hash=pending.tx_hash,
                timeout=timeout,
            )
            raise
        except ActionRejectedError:
            self._clear_pending(ActionPhase.IDLE)
            get_metrics().record_escrow_outcome("rejected")
            self._reconcile()
            raise
        except EscrowError:
            raise
        except Exception as e:
            # Still pending: the transaction was sent and may yet be mined
            logger.warning(
                "Lost contact while awaiting confirmation",
                action=pending.action.value,
                tx_hash=pending.tx_hash,
                error=str(e),
            )
            raise ContractUnreachableError(
                f"Could not confirm {pending.action.value} ({pending.tx_hash}): {e}"
            ) from e

        latency_ms = (time.perf_counter() - start) * 1000
        receipt = replace(receipt, action=pending.action.value)

        if not receipt.succeeded:
            self._clear_pending(ActionPhase.IDLE)
            get_metrics().record_escrow_outcome("rejected")
            logger.warning(
                "Escrow transaction reverted",
                action=pending.action.value,
                tx_hash=receipt.tx_hash,
            )
            self._reconcile()
            raise ActionRejectedError("Transaction reverted", tx_hash=receipt.tx_hash)

        self._clear_pending(ActionPhase.CONFIRMED)
        get_metrics().record_escrow_outcome("confirmed", latency_ms)
        logger.info(
            "Escrow action confirmed",
            action=pending.action.value,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
        self._reconcile(pending.expected_state)
        return receipt

    def _clear_pending(self, phase: ActionPhase) -> None:
        self._pending = None
        self._phase = phase

    def wait_for_pending(self, timeout: Optional[float] = None) -> TransactionReceipt:
        """
        Resume waiting on a transaction whose confirmation timed out.

        Raises:
            InvalidTransitionError: if nothing is pending
            ActionInFlightError: if another call is already waiting
            ConfirmationTimeoutError: if it is still unconfirmed
        """
        if not self._action_lock.acquire(blocking=False):
            raise ActionInFlightError("Another escrow action is in progress")
        try:
            if self._pending is None:
                raise InvalidTransitionError("No pending escrow transaction")
            self._require_connected()
            return self._await_confirmation(
                timeout if timeout is not None else self._config.confirmation_timeout
            )
        finally:
            self._action_lock.release()

    def forget_pending(self) -> Optional[PendingTransaction]:
        """
        Stop tracking an unconfirmed transaction.

        The transaction itself may still be mined; the mirror is
        re-read so that its effect shows up if it already was.
        """
        if not self._action_lock.acquire(blocking=False):
            raise ActionInFlightError("Another escrow action is in progress")
        try:
            pending = self._pending
            if pending is None:
                return None
            self._clear_pending(ActionPhase.IDLE)
            logger.warning(
                "Stopped tracking unconfirmed transaction",
                action=pending.action.value,
                tx_hash=pending.tx_hash,
            )
            if self._connection_state == ConnectionState.CONNECTED:
                self._reconcile()
            return pending
        finally:
            self._action_lock.release()

    def _require_connected(self) -> None:
        if self._connection_state != ConnectionState.CONNECTED or self._binding is None:
            raise SessionNotConnectedError(
                f"Escrow session is {self._connection_state.value}; connect first"
            )

    # ================================================================
    # WALLET NOTIFICATIONS
    # ================================================================

    def _on_accounts_changed(self, accounts: list[str]) -> None:
        if not accounts:
            logger.info("Wallet disconnected all accounts", contract=self._contract_address)
            self.close()
            return
        if not _same_address(accounts[0], self._account):
            logger.info("Wallet account changed", previous=self._account, current=accounts[0])
            self._account = accounts[0]

    def _on_chain_changed(self, chain_id: Any) -> None:
        try:
            new_id = parse_chain_id(chain_id)
        except ValueError:
            new_id = None
        if new_id == self._network_id:
            return
        self._connection_state = ConnectionState.ERROR
        self._last_error = f"Wallet switched to network {new_id}; reconnect on {self._network_id}"
        logger.warning("Wallet network changed", expected=self._network_id, current=new_id)

    def close(self) -> None:
        """Cancel wallet subscriptions and disconnect."""
        self._release_subscriptions()
        self._binding = None
        self._account = None
        self._connection_state = ConnectionState.DISCONNECTED
        logger.info("Escrow session closed", contract=self._contract_address)

    def _state_label(self) -> str:
        if self._snapshot is None:
            return "unknown"
        if self._snapshot.state is None:
            return f"code {self._snapshot.state_code}"
        return self._snapshot.state.value


# ============================================================
# MODULE-LEVEL ENTRY POINTS
# ============================================================

def connect(
    wallet: Optional[WalletProvider],
    contract_address: str,
    expected_network_id: Any,
    config: Optional[EscrowConfig] = None,
) -> EscrowSession:
    """Open a connected escrow session. See EscrowSession.connect."""
    return EscrowSession.connect(wallet, contract_address, expected_network_id, config)


def invoke(
    session: EscrowSession,
    action: Any,
    *args: Any,
    value: Optional[int] = None,
) -> TransactionReceipt:
    """Perform an escrow action on a session. See EscrowSession.invoke."""
    return session.invoke(action, *args, value=value)
