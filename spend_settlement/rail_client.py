"""Cross-chain USDC rail: build, sign and submit burn intents."""
from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from .chains import ChainRegistry
from .errors import RailResponseError
from .http_json import JsonHttpClient
from .models import Attestation, BurnIntent, SignedBurnIntent, TransferSpec
from .retry import RetryPolicy, call_with_retry
from .utils import ZERO_ADDRESS, address_to_bytes32, amount_str, hex_to_bytes, to_hex

log = logging.getLogger(__name__)

TRANSFER_SPEC_VERSION = 1
MAX_BLOCK_HEIGHT = 2 ** 256 - 1
# Fixed minimum fee accepted by the rail (USDC base units).
MIN_FEE = 2_010_000

EIP712_DOMAIN = {"name": "GatewayWallet", "version": "1"}

EIP712_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
    ],
    "TransferSpec": [
        {"name": "version", "type": "uint32"},
        {"name": "sourceDomain", "type": "uint32"},
        {"name": "destinationDomain", "type": "uint32"},
        {"name": "sourceContract", "type": "bytes32"},
        {"name": "destinationContract", "type": "bytes32"},
        {"name": "sourceToken", "type": "bytes32"},
        {"name": "destinationToken", "type": "bytes32"},
        {"name": "sourceDepositor", "type": "bytes32"},
        {"name": "destinationRecipient", "type": "bytes32"},
        {"name": "sourceSigner", "type": "bytes32"},
        {"name": "destinationCaller", "type": "bytes32"},
        {"name": "value", "type": "uint256"},
        {"name": "salt", "type": "bytes32"},
        {"name": "hookData", "type": "bytes"},
    ],
    "BurnIntent": [
        {"name": "maxBlockHeight", "type": "uint256"},
        {"name": "maxFee", "type": "uint256"},
        {"name": "spec", "type": "TransferSpec"},
    ],
}

_BYTES_FIELDS = (
    "sourceContract", "destinationContract", "sourceToken", "destinationToken",
    "sourceDepositor", "destinationRecipient", "sourceSigner", "destinationCaller",
    "salt", "hookData",
)


def burn_intent_typed_data(intent: BurnIntent) -> Dict[str, Any]:
    message = intent.to_message()
    spec = dict(message["spec"])
    for name in _BYTES_FIELDS:
        spec[name] = hex_to_bytes(spec[name])
    message["spec"] = spec
    return {
        "types": EIP712_TYPES,
        "primaryType": "BurnIntent",
        "domain": dict(EIP712_DOMAIN),
        "message": message,
    }


def recover_burn_intent_signer(signed: SignedBurnIntent) -> str:
    signable = encode_typed_data(full_message=burn_intent_typed_data(signed.burn_intent))
    return Account.recover_message(signable, signature=signed.signature)


def _first(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, list):
        raw = raw[0] if raw else {}
    return raw if isinstance(raw, dict) else {}


class RailClient:
    def __init__(
        self,
        registry: ChainRegistry,
        signer: LocalAccount,
        http: JsonHttpClient,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.registry = registry
        self.signer = signer
        self.http = http
        self.policy = policy or RetryPolicy()

    def build_burn_intent(self, amount: str, destination_chain_id: int, destination_address: str) -> BurnIntent:
        source = self.registry.source
        destination = self.registry.minter_for(destination_chain_id)
        wallet = address_to_bytes32(self.signer.address)
        spec = TransferSpec(
            version=TRANSFER_SPEC_VERSION,
            source_domain=source.domain,
            destination_domain=destination.domain,
            source_contract=address_to_bytes32(source.wallet_contract),
            destination_contract=address_to_bytes32(destination.minter_contract or ZERO_ADDRESS),
            source_token=address_to_bytes32(source.usdc),
            destination_token=address_to_bytes32(destination.usdc),
            source_depositor=wallet,
            destination_recipient=address_to_bytes32(destination_address),
            source_signer=wallet,
            destination_caller=address_to_bytes32(ZERO_ADDRESS),
            value=int(amount_str(amount)),
            salt="0x" + secrets.token_hex(32),
            hook_data="0x",
        )
        log.debug("burn intent: %s -> chain %d value=%d", source.name, destination_chain_id, spec.value)
        return BurnIntent(max_block_height=MAX_BLOCK_HEIGHT, max_fee=MIN_FEE, spec=spec)

    def sign_burn_intent(self, intent: BurnIntent) -> SignedBurnIntent:
        signable = encode_typed_data(full_message=burn_intent_typed_data(intent))
        signed = self.signer.sign_message(signable)
        return SignedBurnIntent(burn_intent=intent, signature=to_hex(signed.signature))

    async def submit_burn_intent(self, signed: SignedBurnIntent) -> Attestation:
        body = [signed.to_wire()]
        response = await call_with_retry(
            lambda: self.http.post_json("/transfer", body), policy=self.policy, label="rail:transfer"
        )
        data = _first(response)
        attestation = str(data.get("attestation") or "").strip()
        signature = str(data.get("signature") or "").strip()
        if not attestation or not signature:
            raise RailResponseError(f"rail_transfer_missing_attestation:{str(response)[:400]}")
        transfer_id = str(data.get("transferId") or data.get("id") or "").strip()
        log.info("rail accepted burn intent transfer_id=%s", transfer_id or "-")
        return Attestation(attestation=attestation, signature=signature, transfer_id=transfer_id)

    async def close(self) -> None:
        await self.http.close()
