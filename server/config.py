"""Environment-driven configuration for the sealcash server.

All settings come from SEAL_* environment variables. Secrets are never
given defaults.
"""

import os
from dataclasses import dataclass, field

from protocol import Chain, DEFAULT_BITCOIN_NETWORK, DEFAULT_PROVER_API


def _required(key: str) -> str:
    val = os.environ.get(key, "")
    if not val:
        raise ValueError(f"Missing required env: {key}")
    return val


def _optional(key: str, fallback: str = "") -> str:
    return os.environ.get(key) or fallback


@dataclass
class Settings:
    auth_secret: str
    app_vk: str
    db_path: str = ":memory:"
    port: int = 8000
    public_url: str = "http://localhost:8000"
    attestation_key_path: str = ""
    prover_api: str = DEFAULT_PROVER_API
    app_binary_path: str = ""
    bitcoin_rpc_url: str = ""
    bitcoin_rpc_user: str = ""
    bitcoin_rpc_password: str = ""
    bitcoin_network: str = DEFAULT_BITCOIN_NETWORK
    chain_rpc_urls: dict[str, str] = field(default_factory=dict)
    expiry_sweep_interval: float = 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment. Raises ValueError naming the
        first missing required variable."""
        chain_urls = {}
        for chain in Chain:
            url = _optional(f"SEAL_{chain.name}_RPC_URL")
            if url:
                chain_urls[chain.value] = url
        network = _optional("SEAL_BITCOIN_NETWORK", DEFAULT_BITCOIN_NETWORK)
        if network not in ("mainnet", "testnet", "testnet4"):
            raise ValueError(f"SEAL_BITCOIN_NETWORK must be mainnet, testnet or testnet4, got {network!r}")
        return cls(
            auth_secret=_required("SEAL_AUTH_SECRET"),
            app_vk=_required("SEAL_CHARMS_APP_VK"),
            db_path=_optional("SEAL_DB", ":memory:"),
            port=int(_optional("SEAL_PORT", "8000")),
            public_url=_optional("SEAL_PUBLIC_URL", "http://localhost:8000").rstrip("/"),
            attestation_key_path=_optional("SEAL_ATTESTATION_KEY"),
            prover_api=_optional("SEAL_CHARMS_PROVER_API", DEFAULT_PROVER_API),
            app_binary_path=_optional("SEAL_CHARMS_APP_BINARY"),
            bitcoin_rpc_url=_optional("SEAL_BITCOIN_RPC_URL"),
            bitcoin_rpc_user=_optional("SEAL_BITCOIN_RPC_USER"),
            bitcoin_rpc_password=_optional("SEAL_BITCOIN_RPC_PASSWORD"),
            bitcoin_network=network,
            chain_rpc_urls=chain_urls,
            expiry_sweep_interval=float(_optional("SEAL_EXPIRY_SWEEP_INTERVAL", "60")),
        )
