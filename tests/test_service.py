"""Wiring tests for the service entry point (no network: providers connect lazily)."""
from __future__ import annotations

import pytest

from spend_settlement import models as m
from spend_settlement.config import SettlementConfig
from spend_settlement.lifecycle import EXECUTE_SPEND_JOB
from spend_settlement.service import SettlementService, gas_settings, main

OPERATOR_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TREASURY = "0x" + "3" * 40


def _cfg(tmp_path, **kw) -> SettlementConfig:
    return SettlementConfig(
        treasury_address=TREASURY,
        operator_private_key=OPERATOR_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/svc.db",
        **kw,
    )


class TestWiring:
    def test_gas_settings_follow_config(self) -> None:
        gas = gas_settings(SettlementConfig(gas_multiplier=1.5, gas_cap=3_000_000, receipt_timeout_seconds=30.0))
        assert gas.gas_multiplier == 1.5
        assert gas.gas_cap == 3_000_000
        assert gas.receipt_timeout_seconds == 30.0

    def test_components_subscribed(self, tmp_path) -> None:
        svc = SettlementService(_cfg(tmp_path, job_max_attempts=4))

        assert svc.queue.snapshot()["handlers"] == [EXECUTE_SPEND_JOB]
        assert svc.bus.handlers(m.SPEND_APPROVED) == [svc.lifecycle.on_approved]
        assert svc.bus.handlers(m.ACCOUNT_FROZEN) == [svc.accounts.on_account_event]
        assert svc.bus.handlers(m.CONTRACT_PAUSED) == [svc.treasury.on_pause_changed]
        assert svc.lifecycle.job_max_attempts == 4
        assert svc.ingestion.contract is svc.contract
        assert svc.contract.address == TREASURY

    def test_rail_and_minter_share_the_rail_signer(self, tmp_path) -> None:
        svc = SettlementService(_cfg(tmp_path))
        assert svc.rail.signer.address == svc.signers.rail.address
        assert svc.signers.rail.address == svc.signers.operator.address


class TestMain:
    def test_missing_settings_exit(self, tmp_path, monkeypatch) -> None:
        for name in ("TREASURY_CONTRACT_ADDRESS", "BACKEND_PRIVATE_KEY"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(SystemExit):
            main(["--env-file", str(tmp_path / "absent.env")])
