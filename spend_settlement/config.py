"""Configuration for the spend settlement service."""
from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .env import bootstrap_env_file, env_bool, env_float, env_int, env_str, load_env_file
from .retry import RetryPolicy


# ──────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────

ARC_RPC_URL = "https://rpc.testnet.arc.network"
ARC_WS_URL = "wss://rpc.testnet.arc.network"
RAIL_API_BASE = "https://gateway-api-testnet.circle.com/v1"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///settlement.db"

# Destination RPC overrides, keyed by chain id.
DESTINATION_RPC_ENV = {
    84532: "BASE_SEPOLIA_RPC_URL",
    11155111: "ETH_SEPOLIA_RPC_URL",
    43113: "AVALANCHE_FUJI_RPC_URL",
}


_Argv = Optional[List[str]]


@dataclass(slots=True)
class SettlementConfig:
    """Runtime configuration, populated from CLI + env."""

    env_file: str = ""

    # ── Source chain ──
    rpc_url: str = ARC_RPC_URL
    ws_url: str = ARC_WS_URL
    treasury_address: str = ""
    operator_private_key: str = ""
    admin_private_key: str = ""
    # Rail wallet signs burn intents and pays destination mints.
    rail_private_key: str = ""
    destination_rpc_urls: Dict[int, str] = field(default_factory=dict)

    # ── Settlement rail ──
    rail_api_base: str = RAIL_API_BASE
    http_timeout_seconds: float = 15.0

    # ── Storage ──
    database_url: str = DEFAULT_DATABASE_URL

    # ── RPC retry ──
    rpc_max_retries: int = 3
    rpc_base_delay_seconds: float = 1.0
    rpc_max_delay_seconds: float = 10.0

    # ── Transactions ──
    receipt_timeout_seconds: float = 120.0
    gas_multiplier: float = 1.2
    gas_floor: int = 100_000
    gas_cap: int = 2_000_000
    priority_fee_gwei: float = 1.0
    max_fee_base_multiplier: float = 2.0
    legacy_gas_price_multiplier: float = 1.2

    # ── Job queue ──
    queue_workers: int = 2
    queue_poll_interval_seconds: float = 1.0
    job_max_attempts: int = 3
    job_backoff_seconds: float = 5.0

    # ── Lifecycle ──
    approval_poll_attempts: int = 10
    approval_poll_interval_seconds: float = 0.1

    # ── Sweeper ──
    sweep_interval_seconds: float = 300.0
    stuck_threshold_seconds: float = 600.0
    hard_timeout_seconds: float = 86_400.0
    escalation_seconds: float = 3_600.0

    # ── Ingestion ──
    subscribe_delay_seconds: float = 0.2
    reconnect_delay_seconds: float = 5.0

    # ── Account sync ──
    account_sync_enabled: bool = False
    account_sync_interval_seconds: float = 300.0

    # ── Logging ──
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.rpc_max_retries = max(0, int(self.rpc_max_retries))
        self.rpc_base_delay_seconds = max(0.0, float(self.rpc_base_delay_seconds))
        self.rpc_max_delay_seconds = max(self.rpc_base_delay_seconds, float(self.rpc_max_delay_seconds))
        self.gas_floor = max(21_000, int(self.gas_floor))
        self.gas_cap = max(self.gas_floor, int(self.gas_cap))
        self.queue_workers = max(1, int(self.queue_workers))
        self.job_max_attempts = max(1, int(self.job_max_attempts))
        self.approval_poll_attempts = max(1, int(self.approval_poll_attempts))
        # The approval poll must stay short; it runs inside event dispatch.
        if self.approval_poll_attempts * self.approval_poll_interval_seconds > 5.0:
            self.approval_poll_interval_seconds = 5.0 / self.approval_poll_attempts
        self.sweep_interval_seconds = max(1.0, float(self.sweep_interval_seconds))
        self.treasury_address = self.treasury_address.strip()
        self.log_level = self.log_level.upper()

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.rpc_max_retries,
            base_delay=self.rpc_base_delay_seconds,
            max_delay=self.rpc_max_delay_seconds,
        )

    @property
    def effective_rail_key(self) -> str:
        return self.rail_private_key or self.operator_private_key

    @property
    def effective_admin_key(self) -> str:
        return self.admin_private_key or self.operator_private_key


def parse_args(argv: _Argv = None) -> SettlementConfig:
    """Build SettlementConfig from CLI args; env variables supply the defaults."""
    env_file = bootstrap_env_file(argv)
    defaults = SettlementConfig()

    p = argparse.ArgumentParser(description="spend settlement service: mirror treasury events and settle approved spends")
    p.add_argument("--env-file", default=env_file, help="path to env file (default: .env.settlement.local)")
    p.add_argument("--rpc-url", default=env_str("ARC_RPC_URL", ARC_RPC_URL))
    p.add_argument("--ws-url", default=env_str("ARC_WS_URL", ARC_WS_URL))
    p.add_argument("--treasury-address", default=env_str("TREASURY_CONTRACT_ADDRESS"))
    p.add_argument("--rail-api-base", default=env_str("GATEWAY_API_BASE_URL", RAIL_API_BASE))
    p.add_argument("--database-url", default=env_str("DATABASE_URL", DEFAULT_DATABASE_URL))
    p.add_argument("--http-timeout-seconds", type=float,
                   default=env_float("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds))

    p.add_argument("--rpc-max-retries", type=int, default=env_int("RPC_MAX_RETRIES", defaults.rpc_max_retries))
    p.add_argument("--rpc-base-delay", type=float,
                   default=env_float("RPC_BASE_DELAY_SECONDS", defaults.rpc_base_delay_seconds))
    p.add_argument("--rpc-max-delay", type=float,
                   default=env_float("RPC_MAX_DELAY_SECONDS", defaults.rpc_max_delay_seconds))

    p.add_argument("--receipt-timeout", type=float, default=defaults.receipt_timeout_seconds)
    p.add_argument("--gas-multiplier", type=float, default=defaults.gas_multiplier)
    p.add_argument("--gas-floor", type=int, default=defaults.gas_floor)
    p.add_argument("--gas-cap", type=int, default=defaults.gas_cap)
    p.add_argument("--priority-fee-gwei", type=float, default=defaults.priority_fee_gwei)
    p.add_argument("--max-fee-base-multiplier", type=float, default=defaults.max_fee_base_multiplier)
    p.add_argument("--legacy-gas-price-multiplier", type=float, default=defaults.legacy_gas_price_multiplier)

    p.add_argument("--queue-workers", type=int, default=env_int("QUEUE_WORKERS", defaults.queue_workers))
    p.add_argument("--job-max-attempts", type=int, default=defaults.job_max_attempts)
    p.add_argument("--job-backoff", type=float, default=defaults.job_backoff_seconds)

    p.add_argument("--sweep-interval", type=float,
                   default=env_float("SWEEP_INTERVAL_SECONDS", defaults.sweep_interval_seconds))
    p.add_argument("--stuck-threshold", type=float, default=defaults.stuck_threshold_seconds)
    p.add_argument("--hard-timeout", type=float, default=defaults.hard_timeout_seconds)
    p.add_argument("--escalation", type=float, default=defaults.escalation_seconds)

    p.add_argument("--reconnect-delay", type=float, default=defaults.reconnect_delay_seconds)
    p.add_argument("--account-sync", action=argparse.BooleanOptionalAction,
                   default=env_bool("ENABLE_ACCOUNT_SYNC", False))
    p.add_argument("--account-sync-interval", type=float, default=defaults.account_sync_interval_seconds)
    p.add_argument("--log-level", default=env_str("LOG_LEVEL", "INFO"))
    args = p.parse_args(argv)

    resolved = str(args.env_file).strip() or env_file
    if resolved != env_file:
        load_env_file(resolved)

    # Keys only come from env; never from argv (shell history).
    operator_key = env_str("BACKEND_PRIVATE_KEY")
    destination_rpc_urls = {
        chain_id: url
        for chain_id, name in DESTINATION_RPC_ENV.items()
        if (url := env_str(name))
    }

    return SettlementConfig(
        env_file=resolved,
        rpc_url=str(args.rpc_url).strip(),
        ws_url=str(args.ws_url).strip(),
        treasury_address=str(args.treasury_address),
        operator_private_key=operator_key,
        admin_private_key=env_str("ADMIN_PRIVATE_KEY"),
        rail_private_key=env_str("RAIL_PRIVATE_KEY"),
        destination_rpc_urls=destination_rpc_urls,
        rail_api_base=str(args.rail_api_base).strip(),
        http_timeout_seconds=args.http_timeout_seconds,
        database_url=str(args.database_url).strip(),
        rpc_max_retries=args.rpc_max_retries,
        rpc_base_delay_seconds=args.rpc_base_delay,
        rpc_max_delay_seconds=args.rpc_max_delay,
        receipt_timeout_seconds=args.receipt_timeout,
        gas_multiplier=args.gas_multiplier,
        gas_floor=args.gas_floor,
        gas_cap=args.gas_cap,
        priority_fee_gwei=args.priority_fee_gwei,
        max_fee_base_multiplier=args.max_fee_base_multiplier,
        legacy_gas_price_multiplier=args.legacy_gas_price_multiplier,
        queue_workers=args.queue_workers,
        job_max_attempts=args.job_max_attempts,
        job_backoff_seconds=args.job_backoff,
        sweep_interval_seconds=args.sweep_interval,
        stuck_threshold_seconds=args.stuck_threshold,
        hard_timeout_seconds=args.hard_timeout,
        escalation_seconds=args.escalation,
        reconnect_delay_seconds=args.reconnect_delay,
        account_sync_enabled=bool(args.account_sync),
        account_sync_interval_seconds=args.account_sync_interval,
        log_level=str(args.log_level),
    )


def require_service_settings(cfg: SettlementConfig) -> None:
    """Exit early when the settings every component needs are missing."""
    if not cfg.treasury_address:
        raise SystemExit("missing treasury contract: provide --treasury-address or set TREASURY_CONTRACT_ADDRESS")
    if not cfg.operator_private_key:
        raise SystemExit("missing operator key: set BACKEND_PRIVATE_KEY")
