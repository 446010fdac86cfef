"""Tests for CLI/env configuration and signer loading."""
from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from spend_settlement.config import (
    ARC_RPC_URL,
    DEFAULT_DATABASE_URL,
    SettlementConfig,
    parse_args,
    require_service_settings,
)
from spend_settlement.env import env_bool, parse_env_file
from spend_settlement.signers import load_signers

OPERATOR_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
ADMIN_KEY = "0x" + "11" * 32


def _argv(tmp_path, *extra: str) -> list[str]:
    return ["--env-file", str(tmp_path / "absent.env"), *extra]


class TestParseArgs:
    def test_defaults(self, tmp_path) -> None:
        with patch.dict(os.environ, {}, clear=True):
            cfg = parse_args(_argv(tmp_path))
        assert cfg.rpc_url == ARC_RPC_URL
        assert cfg.database_url == DEFAULT_DATABASE_URL
        assert cfg.account_sync_enabled is False
        assert cfg.operator_private_key == ""
        assert cfg.destination_rpc_urls == {}
        assert cfg.job_max_attempts == 3
        assert cfg.job_backoff_seconds == 5.0

    def test_env_overrides(self, tmp_path) -> None:
        env = {
            "BACKEND_PRIVATE_KEY": OPERATOR_KEY,
            "TREASURY_CONTRACT_ADDRESS": " 0xTreasury ",
            "DATABASE_URL": "sqlite+aiosqlite:///other.db",
            "ENABLE_ACCOUNT_SYNC": "true",
            "BASE_SEPOLIA_RPC_URL": "https://base.example",
            "RPC_MAX_RETRIES": "5",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = parse_args(_argv(tmp_path))
        assert cfg.operator_private_key == OPERATOR_KEY
        assert cfg.treasury_address == "0xTreasury"
        assert cfg.database_url == "sqlite+aiosqlite:///other.db"
        assert cfg.account_sync_enabled is True
        assert cfg.destination_rpc_urls == {84532: "https://base.example"}
        assert cfg.retry_policy.max_retries == 5
        assert cfg.log_level == "DEBUG"

    def test_cli_beats_env(self, tmp_path) -> None:
        with patch.dict(os.environ, {"ENABLE_ACCOUNT_SYNC": "1"}, clear=True):
            cfg = parse_args(_argv(tmp_path, "--no-account-sync", "--queue-workers", "4"))
        assert cfg.account_sync_enabled is False
        assert cfg.queue_workers == 4

    def test_env_file_loaded_before_defaults(self, tmp_path) -> None:
        env_file = tmp_path / "settlement.env"
        env_file.write_text(
            "# local settings\n"
            "export TREASURY_CONTRACT_ADDRESS=0xabc\n"
            "GATEWAY_API_BASE_URL='https://rail.example/v1'\n"
            "BACKEND_PRIVATE_KEY=\"%s\"\n" % OPERATOR_KEY,
            encoding="utf-8",
        )
        with patch.dict(os.environ, {}, clear=True):
            cfg = parse_args(["--env-file", str(env_file)])
        assert cfg.env_file == str(env_file)
        assert cfg.treasury_address == "0xabc"
        assert cfg.rail_api_base == "https://rail.example/v1"
        assert cfg.operator_private_key == OPERATOR_KEY

    def test_process_env_wins_over_env_file(self, tmp_path) -> None:
        env_file = tmp_path / "settlement.env"
        env_file.write_text("DATABASE_URL=sqlite+aiosqlite:///file.db\n", encoding="utf-8")
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite+aiosqlite:///proc.db"}, clear=True):
            cfg = parse_args(["--env-file", str(env_file)])
        assert cfg.database_url == "sqlite+aiosqlite:///proc.db"


class TestClamps:
    def test_bounds(self) -> None:
        cfg = SettlementConfig(
            rpc_max_retries=-2, rpc_base_delay_seconds=4.0, rpc_max_delay_seconds=1.0,
            gas_floor=10, gas_cap=5, queue_workers=0, job_max_attempts=0,
            sweep_interval_seconds=0.0,
        )
        assert cfg.rpc_max_retries == 0
        assert cfg.rpc_max_delay_seconds == 4.0
        assert cfg.gas_floor == 21_000
        assert cfg.gas_cap == 21_000
        assert cfg.queue_workers == 1
        assert cfg.job_max_attempts == 1
        assert cfg.sweep_interval_seconds == 1.0

    def test_approval_poll_window_capped(self) -> None:
        cfg = SettlementConfig(approval_poll_attempts=20, approval_poll_interval_seconds=1.0)
        assert cfg.approval_poll_attempts * cfg.approval_poll_interval_seconds == pytest.approx(5.0)

    def test_keys_fall_back_to_operator(self) -> None:
        cfg = SettlementConfig(operator_private_key=OPERATOR_KEY)
        assert cfg.effective_admin_key == OPERATOR_KEY
        assert cfg.effective_rail_key == OPERATOR_KEY


class TestRequiredSettings:
    def test_missing_treasury(self) -> None:
        with pytest.raises(SystemExit, match="TREASURY_CONTRACT_ADDRESS"):
            require_service_settings(SettlementConfig(operator_private_key=OPERATOR_KEY))

    def test_missing_operator_key(self) -> None:
        with pytest.raises(SystemExit, match="BACKEND_PRIVATE_KEY"):
            require_service_settings(SettlementConfig(treasury_address="0xabc"))

    def test_complete(self) -> None:
        require_service_settings(SettlementConfig(treasury_address="0xabc", operator_private_key=OPERATOR_KEY))


class TestEnvHelpers:
    def test_parse_env_file_skips_noise(self, tmp_path) -> None:
        path = tmp_path / "x.env"
        path.write_text("\n# c\nNOEQUALS\nA = 1 \nB=\"two\"\n", encoding="utf-8")
        assert parse_env_file(str(path)) == {"A": "1", "B": "two"}

    def test_missing_file(self, tmp_path) -> None:
        assert parse_env_file(str(tmp_path / "nope")) == {}

    def test_env_bool_unknown_uses_default(self) -> None:
        with patch.dict(os.environ, {"FLAG": "maybe"}, clear=True):
            assert env_bool("FLAG", True) is True
            assert env_bool("MISSING", False) is False


class TestSigners:
    def test_separate_admin(self) -> None:
        signers = load_signers(SettlementConfig(operator_private_key=OPERATOR_KEY, admin_private_key=ADMIN_KEY))
        assert signers.admin.address != signers.operator.address
        assert signers.rail.address == signers.operator.address

    def test_operator_required(self) -> None:
        with pytest.raises(RuntimeError, match="operator_key_missing"):
            load_signers(SettlementConfig())
