"""
Configuration

Environment-based settings for the ledger server and the escrow session.

Environment Variables:
    HOST: Bind address for the ledger server (default 0.0.0.0)
    PORT: Port for the ledger server (default 5000)
    SUPPLYCHAIN_CORS_ORIGINS: Comma-separated dashboard origins
        (default http://localhost:5173)
    SUPPLYCHAIN_LINK_SCHEME: How block link values are derived
        - "concat" (default): index-timestamp-data-previous string
        - "sha256": hex SHA-256 of the same string
    SUPPLYCHAIN_ENABLE_AUTO_SEED: Seed demo products on startup (default off)

    ESCROW_CONTRACT_ADDRESS: Deployed escrow contract address
    ESCROW_RPC_URL: JSON-RPC endpoint (default http://127.0.0.1:8545)
    ESCROW_CHAIN_ID: Expected network id (default 31337, Hardhat local)
    ESCROW_CHAIN_NAME: Display name used when asking a wallet to add the network
    ESCROW_CONFIRMATION_TIMEOUT: Seconds to wait for a receipt (default 120)
    ESCROW_POLL_INTERVAL: Seconds between receipt polls (default 0.5)
    ESCROW_PRIVATE_KEY: Optional key for signing locally instead of via the node
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


DEFAULT_CORS_ORIGINS = ("http://localhost:5173",)
DEFAULT_LOCAL_CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class LinkScheme(str, Enum):
    """Supported link value derivations."""
    CONCAT = "concat"
    SHA256 = "sha256"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def get_link_scheme() -> LinkScheme:
    """
    Get the link scheme from SUPPLYCHAIN_LINK_SCHEME.

    Raises:
        ValueError: if the variable names an unknown scheme
    """
    explicit = os.environ.get("SUPPLYCHAIN_LINK_SCHEME", "").lower()
    if not explicit:
        return LinkScheme.CONCAT
    try:
        return LinkScheme(explicit)
    except ValueError:
        raise ValueError(
            f"Unknown SUPPLYCHAIN_LINK_SCHEME: {explicit}. "
            f"Valid values: concat, sha256"
        )


@dataclass
class LedgerConfig:
    """Ledger server configuration."""
    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins: tuple = DEFAULT_CORS_ORIGINS
    link_scheme: LinkScheme = LinkScheme.CONCAT
    auto_seed: bool = False

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        origins = os.environ.get("SUPPLYCHAIN_CORS_ORIGINS", "")
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "5000")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip())
            or DEFAULT_CORS_ORIGINS,
            link_scheme=get_link_scheme(),
            auto_seed=_env_flag("SUPPLYCHAIN_ENABLE_AUTO_SEED"),
        )


@dataclass
class EscrowConfig:
    """Escrow session configuration."""
    contract_address: str = DEFAULT_LOCAL_CONTRACT_ADDRESS
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337
    chain_name: str = "Hardhat Local Network"
    confirmation_timeout: float = 120.0  # seconds
    poll_interval: float = 0.5  # seconds
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "EscrowConfig":
        """Load configuration from environment variables."""
        return cls(
            contract_address=os.environ.get(
                "ESCROW_CONTRACT_ADDRESS", DEFAULT_LOCAL_CONTRACT_ADDRESS
            ),
            rpc_url=os.environ.get("ESCROW_RPC_URL", "http://127.0.0.1:8545"),
            chain_id=int(os.environ.get("ESCROW_CHAIN_ID", "31337")),
            chain_name=os.environ.get("ESCROW_CHAIN_NAME", "Hardhat Local Network"),
            confirmation_timeout=float(os.environ.get("ESCROW_CONFIRMATION_TIMEOUT", "120")),
            poll_interval=float(os.environ.get("ESCROW_POLL_INTERVAL", "0.5")),
            private_key=os.environ.get("ESCROW_PRIVATE_KEY") or None,
        )

    @property
    def chain_id_hex(self) -> str:
        """Chain id in the 0x-prefixed form wallets expect."""
        return hex(self.chain_id)
