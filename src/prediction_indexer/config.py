"""Configuration loading for the indexer.

Merge order: dataclass defaults → config.yaml ``indexer:`` section → environment.
Endpoints and the datastore URL normally come from the environment (.env).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml


@dataclass(frozen=True)
class IndexerConfig:
    # Datastore
    database_url: str = "sqlite:///data/indexer.db"
    db_pool_size: int = 10
    db_max_overflow: int = 5
    db_pool_timeout_sec: float = 20.0
    db_retry_delay_sec: float = 1.0

    # Chain endpoints
    rpc_http_url: str = ""
    rpc_backup_urls: tuple[str, ...] = ()
    rpc_ws_url: str = ""
    rpc_ws_backup_urls: tuple[str, ...] = ()
    contract_address: str = ""
    abi_path: str = ""

    # HTTP RPC
    rpc_timeout_sec: float = 60.0
    rpc_attempts_per_url: int = 3
    rpc_retry_delay_sec: float = 3.0

    # Streaming
    ws_open_timeout_sec: float = 15.0
    ws_reconnect_delay_sec: float = 5.0
    ws_reconnect_max_delay_sec: float = 30.0
    max_reconnect_attempts: int = 10
    health_check_interval_sec: float = 60.0
    ws_activity_check_interval_sec: float = 30.0
    ws_activity_timeout_sec: float = 120.0

    # Crawler
    treasury_fee_rate: Decimal = Decimal("0.03")
    max_requests_per_sec: int = 100
    retry_attempts: int = 3
    retry_base_delay_sec: float = 2.0
    main_restart_interval_sec: float = 1800.0
    main_epoch_delay_sec: float = 2.0
    restart_poll_interval_sec: float = 5.0
    restart_delay_sec: float = 2.0
    branch_start_delay_sec: float = 300.0
    branch_interval_sec: float = 300.0
    branch_recent_epochs: int = 5
    branch_epoch_delay_sec: float = 1.0
    settling_epochs: int = 2
    max_epoch_failures: int = 3

    # Listener
    bet_cache_ttl_sec: float = 3600.0
    bet_cache_sweep_interval_sec: float = 3600.0
    suspicious_window_sec: float = 60.0
    suspicious_max_bets: int = 10
    reattach_retry_sec: float = 5.0

    # Process
    timezone: str = "Asia/Taipei"
    host: str = "0.0.0.0"
    port: int = 3000
    stats_log_interval_sec: float = 30.0
    log_level: str = "INFO"


def _split_urls(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(u.strip() for u in value if u and u.strip())


def validate_config(cfg: IndexerConfig) -> None:
    """Validate config values. Raises ValueError with all issues found."""
    errors: list[str] = []

    if not cfg.database_url:
        errors.append("database_url (DATABASE_URL) is required")
    if not cfg.rpc_http_url:
        errors.append("rpc_http_url (RPC_HTTP_URL) is required")
    if not cfg.rpc_ws_url:
        errors.append("rpc_ws_url (RPC_WS_URL) is required")
    if not cfg.contract_address:
        errors.append("contract_address (CONTRACT_ADDRESS) is required")
    if cfg.rpc_attempts_per_url < 1:
        errors.append(f"rpc_attempts_per_url must be >= 1, got {cfg.rpc_attempts_per_url}")
    if cfg.max_requests_per_sec <= 0:
        errors.append(f"max_requests_per_sec must be > 0, got {cfg.max_requests_per_sec}")
    if cfg.retry_attempts < 1:
        errors.append(f"retry_attempts must be >= 1, got {cfg.retry_attempts}")
    if not (0 <= cfg.treasury_fee_rate < 1):
        errors.append(f"treasury_fee_rate must be in [0, 1), got {cfg.treasury_fee_rate}")
    if cfg.settling_epochs < 0:
        errors.append(f"settling_epochs must be >= 0, got {cfg.settling_epochs}")
    if cfg.branch_recent_epochs < 1:
        errors.append(f"branch_recent_epochs must be >= 1, got {cfg.branch_recent_epochs}")
    if cfg.max_epoch_failures < 1:
        errors.append(f"max_epoch_failures must be >= 1, got {cfg.max_epoch_failures}")
    if cfg.max_reconnect_attempts < 1:
        errors.append(f"max_reconnect_attempts must be >= 1, got {cfg.max_reconnect_attempts}")
    if cfg.ws_reconnect_max_delay_sec < cfg.ws_reconnect_delay_sec:
        errors.append(
            f"ws_reconnect_max_delay_sec ({cfg.ws_reconnect_max_delay_sec}) must be >= "
            f"ws_reconnect_delay_sec ({cfg.ws_reconnect_delay_sec})"
        )
    if cfg.ws_activity_timeout_sec <= cfg.ws_activity_check_interval_sec:
        errors.append(
            f"ws_activity_timeout_sec ({cfg.ws_activity_timeout_sec}) must be > "
            f"ws_activity_check_interval_sec ({cfg.ws_activity_check_interval_sec})"
        )
    if cfg.suspicious_max_bets < 1:
        errors.append(f"suspicious_max_bets must be >= 1, got {cfg.suspicious_max_bets}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))


def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file; a missing file means all defaults."""
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def load_indexer_config(
    raw: dict[str, Any],
    env: Mapping[str, str] | None = None,
    validate: bool = True,
) -> IndexerConfig:
    """Load IndexerConfig from config.yaml's indexer section, then apply env overrides."""
    env = os.environ if env is None else env
    idx = raw.get("indexer", {}) or {}
    d = IndexerConfig()

    cfg = IndexerConfig(
        database_url=env.get("DATABASE_URL") or idx.get("database_url", d.database_url),
        db_pool_size=int(idx.get("db_pool_size", d.db_pool_size)),
        db_max_overflow=int(idx.get("db_max_overflow", d.db_max_overflow)),
        db_pool_timeout_sec=float(idx.get("db_pool_timeout_sec", d.db_pool_timeout_sec)),
        db_retry_delay_sec=float(idx.get("db_retry_delay_sec", d.db_retry_delay_sec)),
        rpc_http_url=env.get("RPC_HTTP_URL") or idx.get("rpc_http_url", d.rpc_http_url),
        rpc_backup_urls=_split_urls(env.get("RPC_BACKUP_URLS") or idx.get("rpc_backup_urls")),
        rpc_ws_url=env.get("RPC_WS_URL") or idx.get("rpc_ws_url", d.rpc_ws_url),
        rpc_ws_backup_urls=_split_urls(env.get("RPC_WS_BACKUP_URLS") or idx.get("rpc_ws_backup_urls")),
        contract_address=env.get("CONTRACT_ADDRESS") or idx.get("contract_address", d.contract_address),
        abi_path=env.get("ABI_PATH") or idx.get("abi_path", d.abi_path),
        rpc_timeout_sec=float(idx.get("rpc_timeout_sec", d.rpc_timeout_sec)),
        rpc_attempts_per_url=int(idx.get("rpc_attempts_per_url", d.rpc_attempts_per_url)),
        rpc_retry_delay_sec=float(idx.get("rpc_retry_delay_sec", d.rpc_retry_delay_sec)),
        ws_open_timeout_sec=float(idx.get("ws_open_timeout_sec", d.ws_open_timeout_sec)),
        ws_reconnect_delay_sec=float(idx.get("ws_reconnect_delay_sec", d.ws_reconnect_delay_sec)),
        ws_reconnect_max_delay_sec=float(
            idx.get("ws_reconnect_max_delay_sec", d.ws_reconnect_max_delay_sec)
        ),
        max_reconnect_attempts=int(idx.get("max_reconnect_attempts", d.max_reconnect_attempts)),
        health_check_interval_sec=float(
            idx.get("health_check_interval_sec", d.health_check_interval_sec)
        ),
        ws_activity_check_interval_sec=float(
            idx.get("ws_activity_check_interval_sec", d.ws_activity_check_interval_sec)
        ),
        ws_activity_timeout_sec=float(idx.get("ws_activity_timeout_sec", d.ws_activity_timeout_sec)),
        treasury_fee_rate=Decimal(str(idx.get("treasury_fee_rate", d.treasury_fee_rate))),
        max_requests_per_sec=int(idx.get("max_requests_per_sec", d.max_requests_per_sec)),
        retry_attempts=int(idx.get("retry_attempts", d.retry_attempts)),
        retry_base_delay_sec=float(idx.get("retry_base_delay_sec", d.retry_base_delay_sec)),
        main_restart_interval_sec=float(
            idx.get("main_restart_interval_sec", d.main_restart_interval_sec)
        ),
        main_epoch_delay_sec=float(idx.get("main_epoch_delay_sec", d.main_epoch_delay_sec)),
        restart_poll_interval_sec=float(
            idx.get("restart_poll_interval_sec", d.restart_poll_interval_sec)
        ),
        restart_delay_sec=float(idx.get("restart_delay_sec", d.restart_delay_sec)),
        branch_start_delay_sec=float(idx.get("branch_start_delay_sec", d.branch_start_delay_sec)),
        branch_interval_sec=float(idx.get("branch_interval_sec", d.branch_interval_sec)),
        branch_recent_epochs=int(idx.get("branch_recent_epochs", d.branch_recent_epochs)),
        branch_epoch_delay_sec=float(idx.get("branch_epoch_delay_sec", d.branch_epoch_delay_sec)),
        settling_epochs=int(idx.get("settling_epochs", d.settling_epochs)),
        max_epoch_failures=int(idx.get("max_epoch_failures", d.max_epoch_failures)),
        bet_cache_ttl_sec=float(idx.get("bet_cache_ttl_sec", d.bet_cache_ttl_sec)),
        bet_cache_sweep_interval_sec=float(
            idx.get("bet_cache_sweep_interval_sec", d.bet_cache_sweep_interval_sec)
        ),
        suspicious_window_sec=float(idx.get("suspicious_window_sec", d.suspicious_window_sec)),
        suspicious_max_bets=int(idx.get("suspicious_max_bets", d.suspicious_max_bets)),
        reattach_retry_sec=float(idx.get("reattach_retry_sec", d.reattach_retry_sec)),
        timezone=idx.get("timezone", d.timezone),
        host=idx.get("host", d.host),
        port=int(env.get("PORT") or idx.get("port", d.port)),
        stats_log_interval_sec=float(idx.get("stats_log_interval_sec", d.stats_log_interval_sec)),
        log_level=idx.get("log_level", d.log_level),
    )
    if validate:
        validate_config(cfg)
    return cfg
