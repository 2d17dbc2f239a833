"""
Tests for the Escrow Session

The remote contract and the wallet are replaced by in-memory fakes that
speak the WalletProvider / ContractBinding interfaces.
"""

import threading
from types import SimpleNamespace

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from supplychain.config import EscrowConfig
from supplychain.core import (
    ActionInFlightError,
    ActionRejectedError,
    ConfirmationTimeoutError,
    ContractBinding,
    ContractUnreachableError,
    EscrowSession,
    EscrowStateMachine,
    InvalidTransitionError,
    NetworkMismatchError,
    NoAccountError,
    SessionNotConnectedError,
    SubscriptionRegistry,
    TerminalStateError,
    TransactionReceipt,
    WalletEvent,
    WalletProvider,
    WalletRequestError,
    WalletUnavailableError,
    Web3EscrowBinding,
    Web3Wallet,
    connect,
    invoke,
)
from supplychain.core.contract_abi import ACTION_FUNCTIONS, ESCROW_ABI, VIEW_FUNCTIONS
from supplychain.core.escrow_machine import parse_action
from supplychain.core.escrow_session import parse_chain_id
from supplychain.core.web3_wallet import revert_reason
from supplychain.schemas import (
    ActionPhase,
    ConnectionState,
    EscrowAction,
    EscrowRole,
    EscrowState,
)


CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
BUYER = "0x" + "b" * 40
SELLER = "0x" + "5" * 40
ARBITRATOR = "0x" + "a" * 40
LOCAL_CHAIN = 31337


# ============================================================
# FAKES
# ============================================================

class FakeBinding(ContractBinding):
    """In-memory escrow contract."""

    def __init__(self, state=0):
        self.views = {
            "state": state,
            "buyer": BUYER,
            "seller": SELLER,
            "arbitrator": ARBITRATOR,
            "amount": 10 ** 18,
            "deliveryDeadline": 1_700_000_000,
            "buyerConfirmedDelivery": False,
            "sellerRequestedPayout": False,
        }
        self.reads = []
        self.transactions = []
        self.reject_with = None
        self.transact_error = None
        self.receipt_status = 1
        self.timeout = False
        self.receipt_error = None
        self.next_state = None
        self.fail_reads = False
        self.fail_reads_on_confirm = False
        self.gate = None
        self.entered = threading.Event()

    @property
    def address(self):
        return CONTRACT

    def call(self, function_name, *args):
        self.reads.append(function_name)
        if self.fail_reads:
            raise ConnectionError("node unreachable")
        return self.views[function_name]

    def transact(self, function_name, *args, sender, value=0):
        if self.transact_error is not None:
            raise self.transact_error
        if self.reject_with is not None:
            raise ActionRejectedError(self.reject_with)
        self.transactions.append((function_name, args, sender, value))
        return "0x" + f"{len(self.transactions):064x}"

    def wait_for_receipt(self, tx_hash, timeout, poll_latency=0.5):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.receipt_error is not None:
            raise self.receipt_error
        if self.timeout:
            raise ConfirmationTimeoutError(tx_hash, timeout)
        if self.receipt_status == 1 and self.next_state is not None:
            self.views["state"] = self.next_state
        if self.fail_reads_on_confirm:
            self.fail_reads = True
        return TransactionReceipt(tx_hash=tx_hash, block_number=7, status=self.receipt_status)


class FakeWallet(WalletProvider):
    """In-memory wallet holding one or more accounts."""

    def __init__(self, accounts=(BUYER,), chain_id=LOCAL_CHAIN, binding=None):
        self.accounts = list(accounts)
        self.chain_id = chain_id
        self.known_chains = {LOCAL_CHAIN, 1}
        self.binding = binding or FakeBinding()
        self.registry = SubscriptionRegistry()
        self.available = True
        self.accounts_error = None
        self.switch_error = None
        self.chain_error = None
        self.bind_error = None
        self.switch_calls = []
        self.added_chains = []
        self.bound_abi = None

    def is_available(self):
        return self.available

    def request_accounts(self):
        if self.accounts_error is not None:
            raise self.accounts_error
        return list(self.accounts)

    def get_chain_id(self):
        if self.chain_error is not None:
            raise self.chain_error
        return self.chain_id

    def switch_chain(self, chain_id):
        self.switch_calls.append(chain_id)
        if self.switch_error is not None:
            raise self.switch_error
        if chain_id not in self.known_chains:
            raise WalletRequestError(4902, "Unrecognized chain ID")
        self.chain_id = chain_id

    def add_chain(self, chain_id, chain_name, rpc_url):
        self.added_chains.append((chain_id, chain_name, rpc_url))
        self.known_chains.add(chain_id)
        self.chain_id = chain_id

    def bind_contract(self, address, abi):
        if self.bind_error is not None:
            raise self.bind_error
        self.bound_abi = abi
        return self.binding

    def subscribe(self, event, callback):
        return self.registry.subscribe(event, callback)


@pytest.fixture
def config():
    return EscrowConfig(
        contract_address=CONTRACT,
        chain_id=LOCAL_CHAIN,
        confirmation_timeout=1.0,
        poll_interval=0.01,
    )


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def session(wallet, config):
    return EscrowSession.connect(wallet, CONTRACT, LOCAL_CHAIN, config)


def connect_as(account, state, config):
    wallet = FakeWallet(accounts=(account,), binding=FakeBinding(state=state))
    return wallet, EscrowSession.connect(wallet, CONTRACT, LOCAL_CHAIN, config)


# ============================================================
# STATE MACHINE MIRROR
# ============================================================

class TestEscrowState:

    def test_decode_in_declared_order(self):
        assert EscrowState.from_code(0) == EscrowState.AWAITING_DELIVERY
        assert EscrowState.from_code(1) == EscrowState.DELIVERY_CONFIRMED
        assert EscrowState.from_code(2) == EscrowState.PAYOUT_REQUESTED
        assert EscrowState.from_code(3) == EscrowState.DISPUTED
        assert EscrowState.from_code(4) == EscrowState.REFUNDED
        assert EscrowState.from_code(5) == EscrowState.RELEASED

    def test_unknown_code(self):
        assert EscrowState.from_code(6) is None
        assert EscrowState.from_code(-1) is None

    def test_terminal_states(self):
        terminal = {s for s in EscrowState if s.is_terminal}
        assert terminal == {EscrowState.RELEASED, EscrowState.REFUNDED}


class TestStateMachine:

    def test_buyer_confirms_delivery(self):
        EscrowStateMachine.check(
            EscrowAction.CONFIRM_DELIVERY,
            EscrowState.AWAITING_DELIVERY,
            {EscrowRole.BUYER},
        )

    @pytest.mark.parametrize("state", [EscrowState.RELEASED, EscrowState.REFUNDED])
    @pytest.mark.parametrize("action", list(EscrowAction))
    def test_terminal_refuses_everything(self, state, action):
        with pytest.raises(TerminalStateError, match="terminal state"):
            EscrowStateMachine.check(action, state, None)

    def test_state_disallows(self):
        with pytest.raises(InvalidTransitionError, match="not allowed in state Disputed"):
            EscrowStateMachine.check(EscrowAction.REQUEST_PAYOUT, EscrowState.DISPUTED)

    def test_role_disallows(self):
        with pytest.raises(InvalidTransitionError, match="only be called by the buyer"):
            EscrowStateMachine.check(
                EscrowAction.CONFIRM_DELIVERY,
                EscrowState.AWAITING_DELIVERY,
                {EscrowRole.SELLER},
            )

    def test_unknown_state_defers_to_remote(self):
        EscrowStateMachine.check(EscrowAction.REQUEST_PAYOUT, None, {EscrowRole.BUYER})

    @pytest.mark.parametrize("action,state,args,expected", [
        (EscrowAction.CONFIRM_DELIVERY, EscrowState.AWAITING_DELIVERY, (), EscrowState.RELEASED),
        (EscrowAction.REQUEST_PAYOUT, EscrowState.DELIVERY_CONFIRMED, (), EscrowState.PAYOUT_REQUESTED),
        (EscrowAction.REFUND_BUYER, EscrowState.AWAITING_DELIVERY, (), EscrowState.REFUNDED),
        (EscrowAction.REFUND_BUYER, EscrowState.PAYOUT_REQUESTED, (), EscrowState.DISPUTED),
        (EscrowAction.RESOLVE_DISPUTE, EscrowState.DISPUTED, (True,), EscrowState.RELEASED),
        (EscrowAction.RESOLVE_DISPUTE, EscrowState.DISPUTED, (False,), EscrowState.REFUNDED),
        (EscrowAction.LOCK_FUNDS, EscrowState.AWAITING_DELIVERY, (), EscrowState.AWAITING_DELIVERY),
    ])
    def test_expected_outcome(self, action, state, args, expected):
        assert EscrowStateMachine.expected_outcome(action, state, args) == expected

    def test_resolve_dispute_needs_bool(self):
        with pytest.raises(InvalidTransitionError, match="exactly one boolean"):
            EscrowStateMachine.validate_arguments(EscrowAction.RESOLVE_DISPUTE, (), None)
        with pytest.raises(InvalidTransitionError, match="exactly one boolean"):
            EscrowStateMachine.validate_arguments(EscrowAction.RESOLVE_DISPUTE, ("yes",), None)

    def test_value_only_for_payable(self):
        EscrowStateMachine.validate_arguments(EscrowAction.LOCK_FUNDS, (), 100)
        with pytest.raises(InvalidTransitionError, match="does not accept a value"):
            EscrowStateMachine.validate_arguments(EscrowAction.CONFIRM_DELIVERY, (), 100)

    def test_no_args_for_plain_actions(self):
        with pytest.raises(InvalidTransitionError, match="takes no arguments"):
            EscrowStateMachine.validate_arguments(EscrowAction.REFUND_BUYER, (True,), None)

    def test_unknown_action(self):
        with pytest.raises(InvalidTransitionError, match="Unknown escrow action"):
            parse_action("selfDestruct")

    def test_action_by_name(self):
        assert parse_action("confirmDelivery") == EscrowAction.CONFIRM_DELIVERY

    def test_available_actions(self):
        actions = EscrowStateMachine.available_actions(
            EscrowState.AWAITING_DELIVERY, {EscrowRole.BUYER}
        )
        assert actions == [
            EscrowAction.LOCK_FUNDS,
            EscrowAction.CONFIRM_DELIVERY,
            EscrowAction.REFUND_BUYER,
        ]
        assert EscrowStateMachine.available_actions(EscrowState.RELEASED, None) == []


class TestContractInterface:

    def test_actions_are_abi_functions(self):
        assert {a.value for a in EscrowAction} == ACTION_FUNCTIONS

    def test_snapshot_reads_are_views(self):
        assert {
            "state", "buyer", "seller", "arbitrator", "amount",
            "deliveryDeadline", "buyerConfirmedDelivery", "sellerRequestedPayout",
        } == VIEW_FUNCTIONS


# ============================================================
# CONNECT
# ============================================================

class TestConnect:

    def test_connects(self, wallet, session):
        assert session.connection_state == ConnectionState.CONNECTED
        assert session.connected_account == BUYER
        assert session.network_id == LOCAL_CHAIN
        assert session.mirrored_state == EscrowState.AWAITING_DELIVERY
        assert session.roles == {EscrowRole.BUYER}
        assert session.snapshot.amount == 10 ** 18
        assert wallet.bound_abi is ESCROW_ABI
        assert wallet.switch_calls == []
        assert wallet.registry.count() == 2

    def test_no_wallet(self, config):
        with pytest.raises(WalletUnavailableError):
            connect(None, CONTRACT, LOCAL_CHAIN, config)

    def test_wallet_not_responding(self, wallet, config):
        wallet.available = False
        session = EscrowSession(wallet, CONTRACT, LOCAL_CHAIN, config)
        with pytest.raises(WalletUnavailableError):
            session.open()
        assert session.connection_state == ConnectionState.ERROR
        assert session.last_error

    def test_user_rejects_connection(self, wallet, config):
        wallet.accounts_error = WalletRequestError(4001, "User rejected the request.")
        with pytest.raises(NoAccountError, match="rejected by user"):
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)

    def test_no_accounts(self, config):
        wallet = FakeWallet(accounts=())
        with pytest.raises(NoAccountError):
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)

    def test_switches_network(self, config):
        wallet = FakeWallet(chain_id=1)
        session = connect(wallet, CONTRACT, LOCAL_CHAIN, config)
        assert wallet.switch_calls == [LOCAL_CHAIN]
        assert wallet.added_chains == []
        assert session.connection_state == ConnectionState.CONNECTED

    def test_adds_unknown_network(self, config):
        wallet = FakeWallet(chain_id=1)
        wallet.known_chains = {1}
        connect(wallet, CONTRACT, LOCAL_CHAIN, config)
        assert wallet.added_chains == [
            (LOCAL_CHAIN, "Hardhat Local Network", "http://127.0.0.1:8545")
        ]
        assert wallet.chain_id == LOCAL_CHAIN

    def test_switch_refused(self, config):
        wallet = FakeWallet(chain_id=1)
        wallet.switch_error = WalletRequestError(4001, "User rejected the request.")
        with pytest.raises(NetworkMismatchError, match="expected 31337") as exc_info:
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)
        assert exc_info.value.actual == 1

    def test_switch_unsupported(self, config):
        wallet = FakeWallet(chain_id=1)
        wallet.switch_error = NotImplementedError()
        with pytest.raises(NetworkMismatchError, match="does not support switching"):
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)

    def test_hex_network_ids(self, config):
        wallet = FakeWallet()
        wallet.chain_id = "0x7a69"
        session = connect(wallet, CONTRACT, "0x7a69", config)
        assert session.network_id == LOCAL_CHAIN
        assert wallet.switch_calls == []

    def test_bind_failure(self, wallet, config):
        wallet.bind_error = ValueError("bad address")
        with pytest.raises(ContractUnreachableError, match="bad address"):
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)

    def test_contract_not_answering(self, wallet, config):
        wallet.binding.fail_reads = True
        session = EscrowSession(wallet, CONTRACT, LOCAL_CHAIN, config)
        with pytest.raises(ContractUnreachableError):
            session.open()
        assert session.connection_state == ConnectionState.ERROR
        assert wallet.registry.count() == 0

    def test_node_error_listing_accounts(self, wallet, config):
        wallet.accounts_error = ConnectionError("connection refused")
        session = EscrowSession(wallet, CONTRACT, LOCAL_CHAIN, config)
        with pytest.raises(WalletUnavailableError, match="connection refused"):
            session.open()
        assert session.connection_state == ConnectionState.ERROR

    def test_node_error_reading_network(self, wallet, config):
        wallet.chain_error = ConnectionError("connection refused")
        with pytest.raises(WalletUnavailableError, match="could not report its network"):
            connect(wallet, CONTRACT, LOCAL_CHAIN, config)

    def test_unrecognised_state_code(self, config):
        _, session = connect_as(BUYER, 9, config)
        assert session.mirrored_state is None
        assert session.snapshot.state_code == 9

    def test_roles_ignore_address_case(self, config):
        _, session = connect_as(ARBITRATOR.upper().replace("0X", "0x"), 3, config)
        assert session.roles == {EscrowRole.ARBITRATOR}
        assert session.available_actions() == [EscrowAction.RESOLVE_DISPUTE]


class TestParseChainId:

    @pytest.mark.parametrize("value", [31337, "31337", "0x7a69", " 0x7A69 "])
    def test_forms(self, value):
        assert parse_chain_id(value) == 31337

    def test_rejects_bool(self):
        with pytest.raises(ValueError):
            parse_chain_id(True)


# ============================================================
# INVOKE
# ============================================================

class TestInvoke:

    def test_confirm_delivery(self, wallet, session):
        wallet.binding.next_state = 5
        receipt = invoke(session, "confirmDelivery")
        assert receipt.succeeded
        assert receipt.action == "confirmDelivery"
        assert wallet.binding.transactions == [("confirmDelivery", (), BUYER, 0)]
        assert session.phase == ActionPhase.CONFIRMED
        assert session.pending is None
        assert session.mirrored_state == EscrowState.RELEASED

    def test_remote_state_wins(self, wallet, session):
        # Remote ends somewhere the mirror did not predict
        wallet.binding.next_state = 2
        session.invoke(EscrowAction.CONFIRM_DELIVERY)
        assert session.mirrored_state == EscrowState.PAYOUT_REQUESTED

    def test_lock_funds_sends_value(self, wallet, session):
        session.invoke("lockFunds", value=5 * 10 ** 17)
        assert wallet.binding.transactions == [("lockFunds", (), BUYER, 5 * 10 ** 17)]

    def test_resolve_dispute(self, config):
        wallet, session = connect_as(ARBITRATOR, 3, config)
        wallet.binding.next_state = 4
        session.invoke("resolveDispute", False)
        assert wallet.binding.transactions == [("resolveDispute", (False,), ARBITRATOR, 0)]
        assert session.mirrored_state == EscrowState.REFUNDED

    def test_terminal_state_never_contacts_network(self, config):
        wallet, session = connect_as(BUYER, 5, config)
        wallet.binding.reads.clear()
        with pytest.raises(TerminalStateError):
            invoke(session, "confirmDelivery")
        assert wallet.binding.transactions == []
        assert wallet.binding.reads == []
        assert session.phase == ActionPhase.IDLE

    def test_wrong_role_fails_locally(self, config):
        wallet, session = connect_as(SELLER, 0, config)
        with pytest.raises(InvalidTransitionError, match="buyer"):
            session.invoke("confirmDelivery")
        assert wallet.binding.transactions == []

    def test_second_action_while_first_unconfirmed(self, wallet, session):
        wallet.binding.gate = threading.Event()
        results = []

        def first():
            results.append(session.invoke("confirmDelivery"))

        worker = threading.Thread(target=first)
        worker.start()
        assert wallet.binding.entered.wait(5)
        assert session.in_flight

        with pytest.raises(ActionInFlightError):
            session.invoke("confirmDelivery")

        wallet.binding.gate.set()
        worker.join(5)

        assert len(results) == 1
        assert len(wallet.binding.transactions) == 1

    def test_rejection_reason_passed_through(self, wallet, session):
        wallet.binding.reject_with = "Only buyer can confirm delivery"
        with pytest.raises(ActionRejectedError) as exc_info:
            session.invoke("confirmDelivery")
        assert exc_info.value.reason == "Only buyer can confirm delivery"
        assert session.phase == ActionPhase.IDLE
        assert session.pending is None

    def test_reverted_receipt(self, wallet, session):
        wallet.binding.receipt_status = 0
        with pytest.raises(ActionRejectedError, match="Transaction reverted") as exc_info:
            session.invoke("confirmDelivery")
        assert exc_info.value.tx_hash is not None
        assert session.pending is None
        assert session.phase == ActionPhase.IDLE

    def test_submit_failure_is_unreachable(self, wallet, session):
        wallet.binding.transact_error = ConnectionError("connection refused")
        with pytest.raises(ContractUnreachableError, match="connection refused"):
            session.invoke("confirmDelivery")
        assert session.phase == ActionPhase.IDLE

    def test_timeout_keeps_transaction_pending(self, wallet, session):
        wallet.binding.timeout = True
        with pytest.raises(ConfirmationTimeoutError):
            session.invoke("confirmDelivery")

        assert session.phase == ActionPhase.SUBMITTED
        assert session.pending.action == EscrowAction.CONFIRM_DELIVERY
        assert session.available_actions() == []

        with pytest.raises(ActionInFlightError, match="still unconfirmed"):
            session.invoke("refundBuyer")
        assert len(wallet.binding.transactions) == 1

        wallet.binding.timeout = False
        wallet.binding.next_state = 5
        receipt = session.wait_for_pending()
        assert receipt.action == "confirmDelivery"
        assert session.pending is None
        assert session.mirrored_state == EscrowState.RELEASED

    def test_forget_pending(self, wallet, session):
        wallet.binding.timeout = True
        with pytest.raises(ConfirmationTimeoutError):
            session.invoke("lockFunds", value=1)

        forgotten = session.forget_pending()
        assert forgotten.action == EscrowAction.LOCK_FUNDS
        assert session.pending is None
        assert session.phase == ActionPhase.IDLE

        wallet.binding.timeout = False
        session.invoke("lockFunds", value=1)
        assert len(wallet.binding.transactions) == 2

    def test_wait_without_pending(self, session):
        with pytest.raises(InvalidTransitionError, match="No pending"):
            session.wait_for_pending()

    def test_failed_reconcile_leaves_state_unknown(self, wallet, session):
        wallet.binding.fail_reads_on_confirm = True
        receipt = session.invoke("confirmDelivery")
        assert receipt.succeeded
        assert session.snapshot is None
        assert session.mirrored_state is None

    def test_unknown_state_defers_to_remote(self, config):
        wallet, session = connect_as(BUYER, 9, config)
        session.invoke("confirmDelivery")
        assert len(wallet.binding.transactions) == 1

    def test_lost_contact_while_confirming(self, wallet, session):
        wallet.binding.receipt_error = ConnectionError("node went away")
        with pytest.raises(ContractUnreachableError, match="node went away"):
            session.invoke("confirmDelivery")

        # The transaction was sent, so it stays tracked
        assert session.phase == ActionPhase.SUBMITTED
        assert session.pending.action == EscrowAction.CONFIRM_DELIVERY

        wallet.binding.receipt_error = None
        wallet.binding.next_state = 5
        receipt = session.wait_for_pending()
        assert receipt.succeeded
        assert session.mirrored_state == EscrowState.RELEASED

    def test_terminal_checked_before_pending(self, wallet, session):
        wallet.binding.timeout = True
        with pytest.raises(ConfirmationTimeoutError):
            session.invoke("confirmDelivery")

        # The unconfirmed transaction landed after all
        wallet.binding.views["state"] = 5
        session.refresh()
        assert session.pending is not None

        with pytest.raises(TerminalStateError):
            session.invoke("refundBuyer")
        assert len(wallet.binding.transactions) == 1

    def test_bad_arguments(self, wallet, session):
        with pytest.raises(InvalidTransitionError, match="does not accept a value"):
            session.invoke("confirmDelivery", value=10)
        assert wallet.binding.transactions == []

    def test_closed_session(self, wallet, session):
        session.close()
        with pytest.raises(SessionNotConnectedError):
            session.invoke("confirmDelivery")
        assert wallet.binding.transactions == []


# ============================================================
# WALLET NOTIFICATIONS
# ============================================================

class TestSubscriptions:

    def test_account_change_tracked(self, wallet, session):
        wallet.registry.emit(WalletEvent.ACCOUNTS_CHANGED, [SELLER])
        assert session.connected_account == SELLER
        assert session.roles == {EscrowRole.SELLER}
        assert session.connection_state == ConnectionState.CONNECTED

    def test_all_accounts_removed_closes(self, wallet, session):
        wallet.registry.emit(WalletEvent.ACCOUNTS_CHANGED, [])
        assert session.connection_state == ConnectionState.DISCONNECTED
        assert session.connected_account is None
        assert wallet.registry.count() == 0

    def test_network_change_is_error(self, wallet, session):
        wallet.registry.emit(WalletEvent.CHAIN_CHANGED, "0x1")
        assert session.connection_state == ConnectionState.ERROR
        assert "network 1" in session.last_error
        with pytest.raises(SessionNotConnectedError):
            session.invoke("confirmDelivery")

    def test_same_network_ignored(self, wallet, session):
        wallet.registry.emit(WalletEvent.CHAIN_CHANGED, "0x7a69")
        assert session.connection_state == ConnectionState.CONNECTED

    def test_close_unsubscribes(self, wallet, session):
        assert wallet.registry.count() == 2
        session.close()
        assert wallet.registry.count() == 0
        assert wallet.registry.emit(WalletEvent.ACCOUNTS_CHANGED, [SELLER]) == 0
        assert session.connected_account is None

    def test_reconnect_replaces_subscriptions(self, wallet, session):
        wallet.registry.emit(WalletEvent.CHAIN_CHANGED, "0x1")
        assert session.connection_state == ConnectionState.ERROR

        session.open()
        assert session.connection_state == ConnectionState.CONNECTED
        assert wallet.registry.count() == 2

        session.close()
        assert wallet.registry.count() == 0
        wallet.registry.emit(WalletEvent.ACCOUNTS_CHANGED, [SELLER])
        assert session.connected_account is None
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_unsubscribe_is_idempotent(self):
        registry = SubscriptionRegistry()
        received = []
        subscription = registry.subscribe(WalletEvent.CHAIN_CHANGED, received.append)
        assert registry.emit(WalletEvent.CHAIN_CHANGED, 1) == 1
        subscription.unsubscribe()
        subscription.unsubscribe()
        assert not subscription.active
        assert registry.emit(WalletEvent.CHAIN_CHANGED, 2) == 0
        assert received == [1]


# ============================================================
# WEB3 WALLET
# ============================================================

class TestWeb3Wallet:

    @staticmethod
    def fake_web3(response=None):
        eth = SimpleNamespace(accounts=[BUYER], chain_id=LOCAL_CHAIN)
        provider = SimpleNamespace(make_request=lambda method, params: response or {"result": None})
        return SimpleNamespace(eth=eth, provider=provider, is_connected=lambda: True)

    def test_revert_reason_strips_prefix(self):
        assert revert_reason(Exception("execution reverted: Not the buyer")) == "Not the buyer"

    def test_revert_reason_keeps_other_messages(self):
        assert revert_reason(Exception("insufficient funds")) == "insufficient funds"

    def test_unknown_chain_error_code(self):
        w3 = self.fake_web3({"error": {"code": 4902, "message": "Unrecognized chain ID"}})
        wallet = Web3Wallet(w3)
        with pytest.raises(WalletRequestError) as exc_info:
            wallet.switch_chain(LOCAL_CHAIN)
        assert exc_info.value.code == 4902

    def test_node_accounts(self):
        wallet = Web3Wallet(self.fake_web3())
        assert wallet.is_available()
        assert wallet.request_accounts() == [BUYER]
        assert wallet.get_chain_id() == LOCAL_CHAIN

    def test_poll_emits_changes(self):
        w3 = self.fake_web3()
        wallet = Web3Wallet(w3)
        seen = []
        wallet.subscribe(WalletEvent.CHAIN_CHANGED, seen.append)

        assert wallet.poll() == []
        w3.eth.chain_id = 1
        assert wallet.poll() == [WalletEvent.CHAIN_CHANGED]
        assert seen == [1]

    def test_local_key_account(self):
        # Hardhat's first development account
        key = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
        wallet = Web3Wallet(self.fake_web3(), private_key=key)
        assert wallet.request_accounts() == ["0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"]


class FakeContractFunction:
    """One bound contract function as web3.py exposes it."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.args = None
        self.params = None

    def __call__(self, *args):
        self.args = args
        return self

    def call(self):
        if self.error is not None:
            raise self.error
        return self.result

    def transact(self, params):
        self.params = params
        if self.error is not None:
            raise self.error
        return b"\x12" * 32

    def build_transaction(self, params):
        self.params = params
        if self.error is not None:
            raise self.error
        return {**params, "to": CONTRACT, "data": "0x"}


class TestWeb3EscrowBinding:

    @pytest.fixture
    def functions(self):
        return SimpleNamespace(
            buyer=FakeContractFunction(result=BUYER),
            confirmDelivery=FakeContractFunction(),
            lockFunds=FakeContractFunction(),
            resolveDispute=FakeContractFunction(),
        )

    @pytest.fixture
    def eth(self, functions):
        eth = SimpleNamespace(
            chain_id=LOCAL_CHAIN,
            sent=[],
            receipt={
                "transactionHash": b"\xab" * 32,
                "blockNumber": 12,
                "status": 1,
                "gasUsed": 21000,
            },
            receipt_error=None,
        )
        eth.contract = lambda address, abi: SimpleNamespace(address=address, functions=functions)
        eth.get_transaction_count = lambda account, block: 7

        def send_raw_transaction(raw):
            eth.sent.append(raw)
            return b"\x34" * 32

        def wait_for_transaction_receipt(tx_hash, timeout, poll_latency):
            if eth.receipt_error is not None:
                raise eth.receipt_error
            return eth.receipt

        eth.send_raw_transaction = send_raw_transaction
        eth.wait_for_transaction_receipt = wait_for_transaction_receipt
        return eth

    @pytest.fixture
    def binding(self, eth):
        return Web3EscrowBinding(SimpleNamespace(eth=eth), CONTRACT, ESCROW_ABI)

    def test_read_call(self, binding):
        assert binding.address == CONTRACT
        assert binding.call("buyer") == BUYER

    def test_node_signed_transact(self, binding, functions):
        tx_hash = binding.transact("lockFunds", sender=BUYER, value=500)
        assert tx_hash == "0x" + "12" * 32
        assert functions.lockFunds.params["value"] == 500
        assert functions.lockFunds.params["from"].lower() == BUYER

    def test_arguments_forwarded(self, binding, functions):
        binding.transact("resolveDispute", True, sender=ARBITRATOR)
        assert functions.resolveDispute.args == (True,)

    def test_revert_reason_verbatim(self, binding, functions):
        functions.confirmDelivery.error = ContractLogicError(
            "execution reverted: Only buyer can confirm delivery"
        )
        with pytest.raises(ActionRejectedError) as exc_info:
            binding.transact("confirmDelivery", sender=SELLER)
        assert exc_info.value.reason == "Only buyer can confirm delivery"

    def test_local_key_signs_and_sends_raw(self, eth, functions):
        signed = []

        def sign_transaction(tx):
            signed.append(tx)
            return SimpleNamespace(raw_transaction=b"signed-bytes")

        account = SimpleNamespace(address=BUYER, sign_transaction=sign_transaction)
        binding = Web3EscrowBinding(SimpleNamespace(eth=eth), CONTRACT, ESCROW_ABI, account)

        tx_hash = binding.transact("confirmDelivery", sender=BUYER)

        assert tx_hash == "0x" + "34" * 32
        assert eth.sent == [b"signed-bytes"]
        assert signed[0]["nonce"] == 7
        assert signed[0]["chainId"] == LOCAL_CHAIN
        assert signed[0]["value"] == 0

    def test_local_key_revert_during_build(self, eth, functions):
        functions.confirmDelivery.error = ContractLogicError("execution reverted: Deadline passed")
        account = SimpleNamespace(address=BUYER, sign_transaction=None)
        binding = Web3EscrowBinding(SimpleNamespace(eth=eth), CONTRACT, ESCROW_ABI, account)
        with pytest.raises(ActionRejectedError) as exc_info:
            binding.transact("confirmDelivery", sender=BUYER)
        assert exc_info.value.reason == "Deadline passed"
        assert eth.sent == []

    def test_receipt_parsed(self, binding):
        receipt = binding.wait_for_receipt("0x" + "ab" * 32, timeout=5)
        assert receipt.tx_hash == "0x" + "ab" * 32
        assert receipt.block_number == 12
        assert receipt.gas_used == 21000
        assert receipt.succeeded

    def test_reverted_receipt_status(self, binding, eth):
        eth.receipt = {**eth.receipt, "status": 0}
        receipt = binding.wait_for_receipt("0x" + "ab" * 32, timeout=5)
        assert receipt.status == 0
        assert not receipt.succeeded

    def test_receipt_timeout(self, binding, eth):
        eth.receipt_error = TimeExhausted("not in chain after 5 seconds")
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            binding.wait_for_receipt("0x" + "ab" * 32, timeout=5)
        assert exc_info.value.tx_hash == "0x" + "ab" * 32
        assert exc_info.value.timeout == 5
