"""
Escrow Contract Interface

The fixed, versioned interface descriptor for the SupplyChainEscrow
contract. Bump ESCROW_INTERFACE_VERSION whenever an entry changes.
"""

ESCROW_INTERFACE_VERSION = "1.0.0"


def _view(name: str, output_type: str, internal_type: str = "") -> dict:
    return {
        "inputs": [],
        "name": name,
        "outputs": [{"internalType": internal_type or output_type, "name": "", "type": output_type}],
        "stateMutability": "view",
        "type": "function",
    }


def _action(name: str, payable: bool = False, inputs: tuple = ()) -> dict:
    return {
        "inputs": list(inputs),
        "name": name,
        "outputs": [],
        "stateMutability": "payable" if payable else "nonpayable",
        "type": "function",
    }


ESCROW_ABI: list[dict] = [
    {
        "inputs": [
            {"internalType": "address", "name": "_seller", "type": "address"},
            {"internalType": "address", "name": "_arbitrator", "type": "address"},
            {"internalType": "uint256", "name": "_deliveryDeadline", "type": "uint256"},
        ],
        "stateMutability": "payable",
        "type": "constructor",
    },
    # Views
    _view("amount", "uint256"),
    _view("arbitrator", "address"),
    _view("buyer", "address"),
    _view("buyerConfirmedDelivery", "bool"),
    _view("deliveryDeadline", "uint256"),
    _view("seller", "address"),
    _view("sellerRequestedPayout", "bool"),
    _view("state", "uint8", "enum SupplyChainEscrow.State"),
    # State-changing
    _action("confirmDelivery"),
    _action("lockFunds", payable=True),
    _action("refundBuyer"),
    _action("requestPayout"),
    _action(
        "resolveDispute",
        inputs=({"internalType": "bool", "name": "releaseToSeller", "type": "bool"},),
    ),
]

VIEW_FUNCTIONS = frozenset(
    entry["name"] for entry in ESCROW_ABI
    if entry.get("type") == "function" and entry["stateMutability"] == "view"
)

ACTION_FUNCTIONS = frozenset(
    entry["name"] for entry in ESCROW_ABI
    if entry.get("type") == "function" and entry["stateMutability"] != "view"
)
