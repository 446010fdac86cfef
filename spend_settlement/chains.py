"""Static per-chain settlement settings, resolved once at startup."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import UnsupportedChainError


ARC_TESTNET = 5042002
BASE_SEPOLIA = 84532
ETH_SEPOLIA = 11155111
AVALANCHE_FUJI = 43113

RAIL_WALLET_CONTRACT = "0x0077777d7EBA4688BDeF3E311b846F25870A19B9"
RAIL_MINTER_CONTRACT = "0x0022222ABE238Cc2C7Bb1f21003F0a260052475B"


@dataclass(slots=True, frozen=True)
class ChainSettings:
    chain_id: int
    name: str
    domain: int
    usdc: str
    wallet_contract: str
    minter_contract: Optional[str] = None
    rpc_url: Optional[str] = None


DEFAULT_CHAINS = (
    ChainSettings(
        chain_id=ARC_TESTNET,
        name="arc-testnet",
        domain=26,
        usdc="0x3600000000000000000000000000000000000000",
        wallet_contract=RAIL_WALLET_CONTRACT,
    ),
    ChainSettings(
        chain_id=BASE_SEPOLIA,
        name="base-sepolia",
        domain=6,
        usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        wallet_contract=RAIL_WALLET_CONTRACT,
        minter_contract=RAIL_MINTER_CONTRACT,
        rpc_url="https://sepolia.base.org",
    ),
    ChainSettings(
        chain_id=ETH_SEPOLIA,
        name="ethereum-sepolia",
        domain=0,
        usdc="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        wallet_contract=RAIL_WALLET_CONTRACT,
        minter_contract=RAIL_MINTER_CONTRACT,
        rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
    ),
    ChainSettings(
        chain_id=AVALANCHE_FUJI,
        name="avalanche-fuji",
        domain=1,
        usdc="0x5425890298aed601595a70AB815c96711a31Bc65",
        wallet_contract=RAIL_WALLET_CONTRACT,
        minter_contract=RAIL_MINTER_CONTRACT,
        rpc_url="https://api.avax-test.network/ext/bc/C/rpc",
    ),
)


class ChainRegistry:
    """Chain id -> settings. Unknown chains raise UnsupportedChainError."""

    def __init__(self, chains: Iterable[ChainSettings], source_chain_id: int = ARC_TESTNET) -> None:
        self._chains: Dict[int, ChainSettings] = {c.chain_id: c for c in chains}
        self.source_chain_id = int(source_chain_id)
        self.get(self.source_chain_id)

    @classmethod
    def default(cls, rpc_overrides: Optional[Mapping[int, str]] = None) -> "ChainRegistry":
        overrides = dict(rpc_overrides or {})
        chains = []
        for chain in DEFAULT_CHAINS:
            url = overrides.get(chain.chain_id)
            if url and chain.minter_contract:
                chain = ChainSettings(
                    chain_id=chain.chain_id,
                    name=chain.name,
                    domain=chain.domain,
                    usdc=chain.usdc,
                    wallet_contract=chain.wallet_contract,
                    minter_contract=chain.minter_contract,
                    rpc_url=url,
                )
            chains.append(chain)
        return cls(chains)

    def get(self, chain_id: int) -> ChainSettings:
        chain = self._chains.get(int(chain_id))
        if chain is None:
            raise UnsupportedChainError(chain_id, f"unsupported chain {chain_id}")
        return chain

    @property
    def source(self) -> ChainSettings:
        return self._chains[self.source_chain_id]

    def domain(self, chain_id: int) -> int:
        return self.get(chain_id).domain

    def minter_for(self, chain_id: int) -> ChainSettings:
        """Destination settings; the chain must carry a minter and an RPC URL."""
        chain = self._chains.get(int(chain_id))
        if chain is None or not chain.minter_contract or not chain.rpc_url:
            raise UnsupportedChainError(chain_id, f"no minter configured for chain {chain_id}")
        return chain

    def destinations(self) -> List[ChainSettings]:
        return [c for c in self._chains.values() if c.minter_contract and c.rpc_url]

    def __contains__(self, chain_id: object) -> bool:
        return chain_id in self._chains
