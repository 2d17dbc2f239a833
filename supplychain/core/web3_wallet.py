"""
web3.py Wallet Provider

Implements WalletProvider and ContractBinding over a JSON-RPC node.

Signing modes:
- Node-managed accounts (default): the node signs, as a development node
  such as Hardhat does for its unlocked accounts
- Local key (ESCROW_PRIVATE_KEY): transactions are built, signed locally
  with eth-account and sent raw

JSON-RPC has no push channel for account or network changes, so poll()
compares the current values with the last seen ones and notifies
subscribers when they differ.
"""

from typing import Any, Callable, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.types import RPCEndpoint

from ..config import EscrowConfig
from ..observability import get_logger
from .escrow_errors import ActionRejectedError, ConfirmationTimeoutError
from .wallet import (
    ContractBinding,
    Subscription,
    SubscriptionRegistry,
    TransactionReceipt,
    WalletEvent,
    WalletProvider,
    WalletRequestError,
)

logger = get_logger(__name__)

_REVERT_PREFIXES = ("execution reverted: ", "execution reverted")


def revert_reason(error: Exception) -> str:
    """
    Extract the contract-supplied reason from a web3 error.

    Only the node's "execution reverted" prefix is removed; the reason
    itself is returned unchanged.
    """
    message = getattr(error, "message", None) or str(error)
    for prefix in _REVERT_PREFIXES:
        if message.startswith(prefix) and len(message) > len(prefix):
            return message[len(prefix):]
    return message


class Web3EscrowBinding(ContractBinding):
    """A deployed escrow contract reached through web3.py."""

    def __init__(self, w3: Web3, address: str, abi: list[dict], local_account=None):
        self._w3 = w3
        self._address = Web3.to_checksum_address(address)
        self._contract = w3.eth.contract(address=self._address, abi=abi)
        self._local_account = local_account

    @property
    def address(self) -> str:
        return self._address

    def call(self, function_name: str, *args: Any) -> Any:
        return getattr(self._contract.functions, function_name)(*args).call()

    def transact(self, function_name: str, *args: Any, sender: str, value: int = 0) -> str:
        fn = getattr(self._contract.functions, function_name)(*args)
        params = {"from": Web3.to_checksum_address(sender), "value": value}
        try:
            if self._local_account is None:
                tx_hash = fn.transact(params)
            else:
                tx = fn.build_transaction({
                    **params,
                    "nonce": self._w3.eth.get_transaction_count(params["from"], "pending"),
                    "chainId": self._w3.eth.chain_id,
                })
                signed = self._local_account.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3Exception as e:
            # Reverts arrive as ContractLogicError, a Web3Exception
            raise ActionRejectedError(revert_reason(e)) from e
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float,
        poll_latency: float = 0.5,
    ) -> TransactionReceipt:
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_latency
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(tx_hash, timeout) from e
        return TransactionReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt.get("blockNumber"),
            status=int(receipt.get("status", 0)),
            gas_used=receipt.get("gasUsed"),
        )


class Web3Wallet(WalletProvider):
    """
    WalletProvider backed by a web3.py connection.
    """

    def __init__(self, w3: Web3, private_key: Optional[str] = None):
        self._w3 = w3
        self._local_account = Account.from_key(private_key) if private_key else None
        self._registry = SubscriptionRegistry()
        self._last_accounts: Optional[list[str]] = None
        self._last_chain_id: Optional[int] = None

    @classmethod
    def from_config(cls, config: EscrowConfig) -> "Web3Wallet":
        w3 = Web3(Web3.HTTPProvider(config.rpc_url))
        return cls(w3, private_key=config.private_key)

    @property
    def web3(self) -> Web3:
        return self._w3

    def is_available(self) -> bool:
        return self._w3.is_connected()

    def request_accounts(self) -> list[str]:
        if self._local_account is not None:
            accounts = [self._local_account.address]
        else:
            accounts = list(self._w3.eth.accounts)
        self._last_accounts = accounts
        return accounts

    def get_chain_id(self) -> int:
        chain_id = self._w3.eth.chain_id
        self._last_chain_id = chain_id
        return chain_id

    def _request(self, method: str, params: list) -> Any:
        response = self._w3.provider.make_request(RPCEndpoint(method), params)
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise WalletRequestError(error.get("code"), error.get("message", ""))
            raise WalletRequestError(None, str(error))
        return response.get("result")

    def switch_chain(self, chain_id: int) -> None:
        self._request("wallet_switchEthereumChain", [{"chainId": hex(chain_id)}])

    def add_chain(self, chain_id: int, chain_name: str, rpc_url: str) -> None:
        self._request("wallet_addEthereumChain", [{
            "chainId": hex(chain_id),
            "chainName": chain_name,
            "nativeCurrency": {"name": "Ether", "symbol": "ETH", "decimals": 18},
            "rpcUrls": [rpc_url],
        }])

    def bind_contract(self, address: str, abi: list[dict]) -> ContractBinding:
        return Web3EscrowBinding(self._w3, address, abi, self._local_account)

    def subscribe(self, event: WalletEvent, callback: Callable[[Any], None]) -> Subscription:
        return self._registry.subscribe(event, callback)

    def poll(self) -> list[WalletEvent]:
        """
        Check for account or network changes and notify subscribers.

        Returns:
            The events that fired
        """
        fired = []
        previous_accounts = self._last_accounts
        previous_chain = self._last_chain_id

        accounts = self.request_accounts()
        if previous_accounts is not None and [a.lower() for a in accounts] != [
            a.lower() for a in previous_accounts
        ]:
            self._registry.emit(WalletEvent.ACCOUNTS_CHANGED, accounts)
            fired.append(WalletEvent.ACCOUNTS_CHANGED)

        chain_id = self.get_chain_id()
        if previous_chain is not None and chain_id != previous_chain:
            self._registry.emit(WalletEvent.CHAIN_CHANGED, chain_id)
            fired.append(WalletEvent.CHAIN_CHANGED)

        if fired:
            logger.info("Wallet change detected", events=[e.value for e in fired])
        return fired
