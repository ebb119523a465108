"""ContractUtility: AsyncWeb3 initialization and contract ABI loading."""

import json
import logging
import os
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.middleware import SignAndSendRawMiddlewareBuilder

from .errors import ChainCallFailed

logger = logging.getLogger(__name__)

NETWORKS: dict[str, str] = {
    "base": "https://mainnet.base.org",
    "base-sepolia": "https://sepolia.base.org",
    "localnet": "http://localhost:8545",
}

# Predeployed PriceFetchOracle contract addresses based on the network.
DEFAULT_ORACLE_ADDRESS: dict[str, str | None] = {
    "base": None,
    "base-sepolia": "0x02688C437601349b24741C24e3381763296452a7",
    "localnet": None,
}


class ContractUtility:
    """Utility for the Web3 connection, signer setup and contract ABI loading.

    :ivar network: Network RPC URL.
    :ivar w3: Configured AsyncWeb3 instance.
    :ivar account: Local signing account, or None in read-only mode.
    """

    def __init__(self, network_name: str, private_key: str | None = None) -> None:
        """Initialize the contract utility.

        :param network_name: Name of the network to connect to, or an RPC URL.
        :param private_key: Optional hex private key enabling write operations.
        """
        # RPC_URL env var overrides the default for the network
        self.network = os.environ.get("RPC_URL") or NETWORKS.get(network_name, network_name)

        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.network))
        self.account: LocalAccount | None = None
        if private_key:
            self.account = Account.from_key(private_key)
            self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(self.account))
            self.w3.eth.default_account = self.account.address

    @property
    def signer_address(self) -> str | None:
        """Checksummed address of the signer, or None in read-only mode."""
        return self.account.address if self.account else None

    async def connect(self) -> int:
        """Check connectivity by querying the chain id.

        :returns: Chain id reported by the RPC endpoint.
        :raises ChainCallFailed: If the endpoint cannot be reached.
        """
        try:
            chain_id = await self.w3.eth.chain_id
        except Exception as e:
            raise ChainCallFailed(f"Cannot connect to {self.network}: {e}") from e
        logger.info(f"Connected to {self.network} (chain id {chain_id})")
        return chain_id

    async def is_deployed(self, address: str) -> bool:
        """Check whether contract code exists at ``address``.

        :param address: Contract address.
        :returns: True if the address holds code.
        :raises ChainCallFailed: If the code cannot be fetched.
        """
        try:
            code = await self.w3.eth.get_code(AsyncWeb3.to_checksum_address(address))
        except Exception as e:
            raise ChainCallFailed(f"Failed to fetch code at {address}: {e}") from e
        return len(code) > 0

    async def get_balance(self, address: str) -> int:
        """Return the balance of ``address`` in wei.

        :raises ChainCallFailed: If the balance cannot be fetched.
        """
        try:
            return await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address))
        except Exception as e:
            raise ChainCallFailed(f"Failed to fetch balance of {address}: {e}") from e

    def get_oracle_contract(self, address: str) -> AsyncContract:
        """Bind the PriceFetchOracle ABI to ``address``.

        :param address: Deployed oracle address.
        :returns: Async contract instance.
        """
        return self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=self.get_abi("PriceFetchOracle"),
        )

    async def close(self) -> None:
        """Close the provider's HTTP session."""
        await self.w3.provider.disconnect()

    @staticmethod
    def get_abi(contract_name: str) -> list:
        """Load a contract ABI from the package's abi folder.

        :param contract_name: Name of the contract (e.g., "PriceFetchOracle").
        :returns: ABI as a list of entries.
        """
        output_path = (Path(__file__).parent.parent / "abi" / f"{contract_name}.json").resolve()

        with open(output_path, "r") as file:
            contract_data = json.load(file)

        return contract_data["abi"]
