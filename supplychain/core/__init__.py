# Core ledger and escrow services
from .hasher import Hasher, LinkSerializationError
from .store import (
    ProductChainStore,
    EventLogStore,
    StoreError,
    ChainIntegrityError,
)
from .ledger import (
    LedgerService,
    LedgerError,
    ValidationError,
    DuplicateProductError,
    NotFoundError,
    find_broken_link,
    seed_demo_data,
)
from .escrow_errors import (
    EscrowError,
    WalletUnavailableError,
    NoAccountError,
    NetworkMismatchError,
    ContractUnreachableError,
    ActionRejectedError,
    ConfirmationTimeoutError,
    ActionInFlightError,
    TerminalStateError,
    InvalidTransitionError,
    SessionNotConnectedError,
)
from .escrow_machine import EscrowStateMachine, TRANSITIONS
from .escrow_session import (
    EscrowSession,
    EscrowSnapshot,
    PendingTransaction,
    connect,
    invoke,
)
from .wallet import (
    ContractBinding,
    Subscription,
    SubscriptionRegistry,
    TransactionReceipt,
    WalletEvent,
    WalletProvider,
    WalletRequestError,
)
from .web3_wallet import Web3Wallet, Web3EscrowBinding

__all__ = [
    "Hasher",
    "LinkSerializationError",
    "ProductChainStore",
    "EventLogStore",
    "StoreError",
    "ChainIntegrityError",
    "LedgerService",
    "LedgerError",
    "ValidationError",
    "DuplicateProductError",
    "NotFoundError",
    "find_broken_link",
    "seed_demo_data",
    "EscrowError",
    "WalletUnavailableError",
    "NoAccountError",
    "NetworkMismatchError",
    "ContractUnreachableError",
    "ActionRejectedError",
    "ConfirmationTimeoutError",
    "ActionInFlightError",
    "TerminalStateError",
    "InvalidTransitionError",
    "SessionNotConnectedError",
    "EscrowStateMachine",
    "TRANSITIONS",
    "EscrowSession",
    "EscrowSnapshot",
    "PendingTransaction",
    "connect",
    "invoke",
    "ContractBinding",
    "Subscription",
    "SubscriptionRegistry",
    "TransactionReceipt",
    "WalletEvent",
    "WalletProvider",
    "WalletRequestError",
    "Web3Wallet",
    "Web3EscrowBinding",
]
