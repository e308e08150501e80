from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os


TRUE_VALUES = {"1", "true", "yes"}
UNKNOWN_ROUTER_TYPES = {"", "unknown", "none"}


class ConfigError(Exception):
    pass


@dataclass
class Config:
    state_path: Path
    backup_every_saves: int
    loop_minutes: int
    tick_stale_minutes: int
    dry_run: bool
    trading_enabled: bool
    kill_switch: bool
    daily_trade_cap: int
    min_interval_minutes: int
    max_spend_eth_per_trade: str
    eth_gas_reserve: str
    sell_fraction_bps: int
    router_type: str
    router_address: Optional[str]
    pool_address: Optional[str]
    token_address: Optional[str]
    wallet_address: Optional[str]
    rpc_url: Optional[str]
    breaker_failure_threshold: int
    breaker_cooldown_minutes: int
    rate_limit_cooldown_minutes: int
    log_level: str
    log_path: Optional[Path]


def _env_bool(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in TRUE_VALUES


def _env_optional(env_key: str) -> Optional[str]:
    value = os.getenv(env_key, "").strip()
    return value or None


def _env_int(
    env_key: str,
    default: Optional[int],
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    raw = os.getenv(env_key, "").strip()
    if not raw:
        if default is None:
            raise ConfigError(f"{env_key} is required")
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{env_key} must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigError(f"{env_key} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{env_key} must be <= {maximum}, got {value}")
    return value


def load_config() -> Config:
    state_path = Path(os.getenv("STATE_PATH", "data/state.json").strip() or "data/state.json")
    backup_every_saves = _env_int("STATE_BACKUP_EVERY", 10, minimum=1)
    loop_minutes = _env_int("LOOP_MINUTES", 30, minimum=1)
    # No fallback: overlap detection depends on how long a tick may legitimately run.
    tick_stale_minutes = _env_int("TICK_STALE_MINUTES", None, minimum=1)

    dry_run = _env_bool("DRY_RUN", "true")
    trading_enabled = _env_bool("TRADING_ENABLED", "false")
    kill_switch = _env_bool("KILL_SWITCH", "true")

    daily_trade_cap = _env_int("DAILY_TRADE_CAP", 2, minimum=0)
    min_interval_minutes = _env_int("MIN_INTERVAL_MINUTES", 60, minimum=0)
    max_spend_eth_per_trade = os.getenv("MAX_SPEND_ETH_PER_TRADE", "0.0005").strip()
    eth_gas_reserve = os.getenv("ETH_GAS_RESERVE", "0.0005").strip()
    sell_fraction_bps = _env_int("SELL_FRACTION_BPS", 500, minimum=0, maximum=10_000)

    router_type = os.getenv("ROUTER_TYPE", "unknown").strip().lower()
    router_address = _env_optional("ROUTER_ADDRESS")
    pool_address = _env_optional("POOL_ADDRESS")
    token_address = _env_optional("TOKEN_ADDRESS")
    wallet_address = _env_optional("WALLET_ADDRESS")
    rpc_url = _env_optional("RPC_URL")

    breaker_failure_threshold = _env_int("BREAKER_FAILURE_THRESHOLD", 3, minimum=1)
    breaker_cooldown_minutes = _env_int("BREAKER_COOLDOWN_MINUTES", 30, minimum=1)
    rate_limit_cooldown_minutes = _env_int("RATE_LIMIT_COOLDOWN_MINUTES", 15, minimum=1)

    log_level = os.getenv("INTERN_LOG_LEVEL", "INFO").strip().upper()
    log_path_str = os.getenv("INTERN_LOG_PATH", "").strip()
    log_path = Path(log_path_str) if log_path_str else None

    return Config(
        state_path=state_path,
        backup_every_saves=backup_every_saves,
        loop_minutes=loop_minutes,
        tick_stale_minutes=tick_stale_minutes,
        dry_run=dry_run,
        trading_enabled=trading_enabled,
        kill_switch=kill_switch,
        daily_trade_cap=daily_trade_cap,
        min_interval_minutes=min_interval_minutes,
        max_spend_eth_per_trade=max_spend_eth_per_trade,
        eth_gas_reserve=eth_gas_reserve,
        sell_fraction_bps=sell_fraction_bps,
        router_type=router_type,
        router_address=router_address,
        pool_address=pool_address,
        token_address=token_address,
        wallet_address=wallet_address,
        rpc_url=rpc_url,
        breaker_failure_threshold=breaker_failure_threshold,
        breaker_cooldown_minutes=breaker_cooldown_minutes,
        rate_limit_cooldown_minutes=rate_limit_cooldown_minutes,
        log_level=log_level,
        log_path=log_path,
    )


def venue_configured(cfg: Config) -> bool:
    return bool(cfg.router_address) and cfg.router_type not in UNKNOWN_ROUTER_TYPES


def loop_interval_ms(cfg: Config) -> int:
    return cfg.loop_minutes * 60_000


def tick_stale_ms(cfg: Config) -> int:
    return cfg.tick_stale_minutes * 60_000
