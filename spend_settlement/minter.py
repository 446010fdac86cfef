from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import aiohttp
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from .chain_tx import GasSettings, TransactionSender
from .chains import ChainRegistry, ChainSettings
from .retry import RetryPolicy
from .treasury_abi import MINTER_ABI
from .utils import hex_to_bytes, to_hex

log = logging.getLogger(__name__)


def http_web3(url: str, timeout_seconds: float = 15.0) -> AsyncWeb3:
    timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))


class DestinationMinter:
    """Completes a rail transfer by calling ``gatewayMint`` on the destination chain."""

    def __init__(
        self,
        registry: ChainRegistry,
        signer: LocalAccount,
        *,
        gas: Optional[GasSettings] = None,
        policy: Optional[RetryPolicy] = None,
        web3_factory: Callable[[str], AsyncWeb3] = http_web3,
    ) -> None:
        self.registry = registry
        self.signer = signer
        self.gas = gas or GasSettings()
        self.policy = policy or RetryPolicy()
        self.web3_factory = web3_factory
        self._senders: Dict[int, TransactionSender] = {}
        self._contracts: Dict[int, Any] = {}

    def _connect(self, chain: ChainSettings) -> tuple[TransactionSender, Any]:
        sender = self._senders.get(chain.chain_id)
        if sender is None:
            w3 = self.web3_factory(str(chain.rpc_url))
            sender = TransactionSender(w3, chain_id=chain.chain_id, gas=self.gas, policy=self.policy)
            self._senders[chain.chain_id] = sender
            self._contracts[chain.chain_id] = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(str(chain.minter_contract)), abi=MINTER_ABI
            )
            log.info("destination provider ready: %s (%d)", chain.name, chain.chain_id)
        return sender, self._contracts[chain.chain_id]

    async def mint_on_destination(self, chain_id: int, attestation: str, signature: str) -> str:
        # Raises UnsupportedChainError before any network traffic.
        chain = self.registry.minter_for(chain_id)
        sender, contract = self._connect(chain)
        log.info("minting on %s (%d)", chain.name, chain.chain_id)
        call = contract.functions.gatewayMint(hex_to_bytes(attestation), hex_to_bytes(signature))
        receipt = await sender.send(call, self.signer, f"gatewayMint({chain.chain_id})")
        return to_hex(receipt.get("transactionHash"))
