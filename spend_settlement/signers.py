from __future__ import annotations

import logging
from dataclasses import dataclass

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .config import SettlementConfig

log = logging.getLogger(__name__)


@dataclass(slots=True)
class Signers:
    """Operator marks settlement results, admin administers, rail signs intents and mints."""
    operator: LocalAccount
    admin: LocalAccount
    rail: LocalAccount


def load_signers(cfg: SettlementConfig) -> Signers:
    if not cfg.operator_private_key:
        raise RuntimeError("operator_key_missing")
    operator = Account.from_key(cfg.operator_private_key)
    admin = Account.from_key(cfg.effective_admin_key)
    rail = Account.from_key(cfg.effective_rail_key)
    log.info("signers: operator=%s admin=%s rail=%s", operator.address, admin.address, rail.address)
    if admin.address == operator.address:
        log.warning("admin identity not configured separately; admin writes use the operator key")
    return Signers(operator=operator, admin=admin, rail=rail)
