from dataclasses import dataclass, field, fields, asdict
from typing import Dict, Any, List, Optional, Mapping
import csv
import os
import yaml
from dotenv import load_dotenv

from utils.safe_number import safe_number, clamp_slippage, DEFAULT_SLIPPAGE

TRUTHY = {"1", "true", "yes", "y", "on", "paper"}


class ConfigurationError(Exception):
    """Raised when required settings are missing or invalid at startup"""
    pass


def env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUTHY


@dataclass
class TradingConfig:
    """Mode and sizing"""
    dry_run: bool = False                  # Simulation mode, synthetic fills
    auto_trading: bool = False             # Master switch for admitting buys
    position_size_sol: float = 0.1         # Base currency committed per entry
    slippage: float = DEFAULT_SLIPPAGE     # Fraction, clamped by clamp_slippage
    simulated_slippage_bps: int = 0        # Applied by the dry-run executor
    network_fee_sol: float = 0.000005      # Subtracted from live closes
    strategy_tag: str = "copy"


@dataclass
class ExitParameters:
    """Exit ladder thresholds. Percentages are expressed as 30 for 30%."""
    take_profit_pct: float = 30.0
    take_profit_enabled: bool = True
    take_profit_grace_seconds: float = 60.0
    mega_pump_multiplier: float = 2.0
    trailing_stop_pct: float = 15.0
    trailing_stop_enabled: bool = True
    stop_loss_pct: float = 13.0
    stop_loss_enabled: bool = True
    max_hold_seconds: float = 240.0
    max_hold_enabled: bool = False
    min_wallets_to_sell: int = 1
    sellers_exit_enabled: bool = True
    wallet_mirror_enabled: bool = True
    mirror_phase1_seconds: float = 180.0   # Copy any sell before this age
    mirror_phase2_seconds: float = 600.0   # Copy only losing sells before this age
    partial_take_profit_enabled: bool = False


@dataclass
class PartialTakeProfitLevel:
    pnl_pct: float      # Trigger PnL%, e.g. 100 for +100%
    sell_pct: float     # Percent of the remaining quantity to sell


@dataclass
class VolumeDecayParameters:
    enabled: bool = False
    min_hold_seconds: float = 30.0
    drop_pct: float = 70.0                 # Exit when velocity falls this far below its peak
    window_seconds: float = 20.0           # Minimum time since the peak


@dataclass
class AdmissionParameters:
    max_positions: int = 2
    min_wallets_to_buy: int = 1
    cooldown_seconds: int = 60
    block_rebuys: bool = True
    rebuy_window_seconds: int = 300
    rebuy_lookback_days: int = 7
    signal_ttl_seconds: int = 600          # TTL of per-mint buyer/seller sets


@dataclass
class GraduationParameters:
    enabled: bool = True
    check_interval_seconds: float = 10.0
    auto_sell: bool = False
    min_profit_pct: float = 0.0
    forced_exit_ttl_seconds: int = 120


@dataclass
class MonitorParameters:
    interval_seconds: float = 2.0
    max_concurrency: int = 4
    price_cache_seconds: float = 15.0
    price_timeout_seconds: float = 10.0
    execution_timeout_seconds: float = 60.0
    stale_position_hours: float = 24.0
    tp_stage_ttl_seconds: int = 86_400
    feed_stale_seconds: float = 90.0


@dataclass
class ConnectionConfig:
    store_backend: str = "memory"          # "memory" or "redis"
    redis_url: Optional[str] = None
    rpc_url: Optional[str] = None
    ws_url: Optional[str] = None
    private_key: Optional[str] = None
    price_api_url: str = "https://price.jup.ag/v6/price"
    quote_api_url: str = "https://lite-api.jup.ag/swap/v1/quote"
    swap_api_url: str = "https://lite-api.jup.ag/swap/v1/swap"
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    tracked_wallets_file: Optional[str] = None
    log_dir: str = "data/logs"


# env var -> (section, field)
ENV_OVERRIDES = {
    "DRY_RUN": ("trading", "dry_run"),
    "ENABLE_AUTO_TRADING": ("trading", "auto_trading"),
    "POSITION_SIZE_SOL": ("trading", "position_size_sol"),
    "SLIPPAGE": ("trading", "slippage"),
    "COPY_PROFIT_TARGET_PERCENT": ("exit", "take_profit_pct"),
    "COPY_PROFIT_TARGET_ENABLED": ("exit", "take_profit_enabled"),
    "TRAILING_STOP_PERCENT": ("exit", "trailing_stop_pct"),
    "TRAILING_STOP_ENABLED": ("exit", "trailing_stop_enabled"),
    "COPY_STOP_LOSS_PERCENT": ("exit", "stop_loss_pct"),
    "COPY_STOP_LOSS_ENABLED": ("exit", "stop_loss_enabled"),
    "COPY_MAX_HOLD": ("exit", "max_hold_seconds"),
    "COPY_MAX_HOLD_ENABLED": ("exit", "max_hold_enabled"),
    "COPY_MIN_WALLETS_TO_SELL": ("exit", "min_wallets_to_sell"),
    "PARTIAL_TP_ENABLED": ("exit", "partial_take_profit_enabled"),
    "VOLUME_EXIT_ENABLED": ("volume", "enabled"),
    "VOLUME_EXIT_DROP_PERCENT": ("volume", "drop_pct"),
    "VOLUME_EXIT_WINDOW": ("volume", "window_seconds"),
    "VOLUME_EXIT_MIN_HOLD": ("volume", "min_hold_seconds"),
    "MAX_POSITIONS": ("admission", "max_positions"),
    "COPY_MIN_WALLETS_TO_BUY": ("admission", "min_wallets_to_buy"),
    "COPY_COOLDOWN": ("admission", "cooldown_seconds"),
    "BLOCK_REBUYS": ("admission", "block_rebuys"),
    "REBUY_WINDOW": ("admission", "rebuy_window_seconds"),
    "AUTO_SELL_ON_GRADUATION": ("graduation", "auto_sell"),
    "GRADUATION_MIN_PROFIT_PERCENT": ("graduation", "min_profit_pct"),
    "MONITOR_INTERVAL": ("monitor", "interval_seconds"),
    "STORE_BACKEND": ("connection", "store_backend"),
    "REDIS_URL": ("connection", "redis_url"),
    "RPC_URL": ("connection", "rpc_url"),
    "WS_URL": ("connection", "ws_url"),
    "PRIVATE_KEY": ("connection", "private_key"),
    "TELEGRAM_BOT_TOKEN": ("connection", "telegram_bot_token"),
    "TELEGRAM_CHAT_ID": ("connection", "telegram_chat_id"),
    "TRACKED_WALLETS_FILE": ("connection", "tracked_wallets_file"),
    "LOG_DIR": ("connection", "log_dir"),
}


def _coerce(current: Any, raw: Any, annotation: Any) -> Any:
    """Coerce a YAML or env value to the type of the field it overrides"""
    if isinstance(current, bool) or annotation is bool or annotation == "bool":
        if isinstance(raw, bool):
            return raw
        return env_flag(str(raw), bool(current))
    if isinstance(current, int) or annotation in (int, "int"):
        value = safe_number(raw, None)
        return int(value) if value is not None else current
    if isinstance(current, float) or annotation in (float, "float"):
        value = safe_number(raw, None)
        return value if value is not None else current
    if raw is None:
        return None
    return str(raw).strip() or current


class Config:
    def __init__(self, config_path: str = "config.yaml", env: Optional[Mapping[str, str]] = None,
                 load_env_file: bool = True):
        self.trading = TradingConfig()
        self.exit = ExitParameters()
        self.partial_levels: List[PartialTakeProfitLevel] = [
            PartialTakeProfitLevel(pnl_pct=100.0, sell_pct=25.0),
            PartialTakeProfitLevel(pnl_pct=200.0, sell_pct=25.0),
            PartialTakeProfitLevel(pnl_pct=400.0, sell_pct=25.0),
        ]
        self.volume = VolumeDecayParameters()
        self.admission = AdmissionParameters()
        self.graduation = GraduationParameters()
        self.monitor = MonitorParameters()
        self.connection = ConnectionConfig()
        self.tracked_wallets: List[str] = []

        if config_path and os.path.exists(config_path):
            self.load_config(config_path)

        if env is None:
            if load_env_file:
                load_dotenv()
            env = os.environ
        self.apply_env(env)

        self.trading.slippage = clamp_slippage(self.trading.slippage)

    def _sections(self) -> Dict[str, Any]:
        return {
            'trading': self.trading,
            'exit': self.exit,
            'volume': self.volume,
            'admission': self.admission,
            'graduation': self.graduation,
            'monitor': self.monitor,
            'connection': self.connection,
        }

    def load_config(self, config_path: str):
        """Load configuration from YAML file"""
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        for name, section in self._sections().items():
            if name in config_data:
                self._update_section(section, config_data[name] or {})

        if 'partial_take_profit' in config_data:
            self.partial_levels = [
                PartialTakeProfitLevel(
                    pnl_pct=safe_number(level.get('pnl_pct'), 0.0),
                    sell_pct=safe_number(level.get('sell_pct'), 0.0),
                )
                for level in (config_data['partial_take_profit'] or [])
            ]

        if 'tracked_wallets' in config_data:
            self.tracked_wallets = [str(w).strip() for w in config_data['tracked_wallets'] or [] if str(w).strip()]

    def _update_section(self, section: Any, values: Dict[str, Any]):
        known = {f.name: f for f in fields(section)}
        for key, raw in values.items():
            if key not in known:
                raise ConfigurationError(f"Unknown setting '{key}' in section {type(section).__name__}")
            current = getattr(section, key)
            setattr(section, key, _coerce(current, raw, known[key].type))

    def apply_env(self, env: Mapping[str, str]):
        """Apply environment overrides on top of file values"""
        sections = self._sections()
        for var, (section_name, attr) in ENV_OVERRIDES.items():
            raw = env.get(var)
            if raw is None or str(raw).strip() == "":
                continue
            section = sections[section_name]
            annotation = next(f.type for f in fields(section) if f.name == attr)
            setattr(section, attr, _coerce(getattr(section, attr), raw, annotation))

        if env.get('TRACKED_WALLETS'):
            self.tracked_wallets = [w.strip() for w in env['TRACKED_WALLETS'].split(',') if w.strip()]

    def validate(self) -> None:
        """Raise ConfigurationError for settings that make startup impossible"""
        conn = self.connection

        if not self.trading.dry_run:
            missing = [name for name, value in (('RPC_URL', conn.rpc_url), ('PRIVATE_KEY', conn.private_key)) if not value]
            if missing:
                raise ConfigurationError(f"Live mode requires {', '.join(missing)}")

        if conn.store_backend not in ('memory', 'redis'):
            raise ConfigurationError(f"Unknown store backend: {conn.store_backend}")
        if conn.store_backend == 'redis' and not conn.redis_url:
            raise ConfigurationError("STORE_BACKEND=redis requires REDIS_URL")

        if self.trading.position_size_sol <= 0:
            raise ConfigurationError("Position size must be positive")
        if self.exit.take_profit_pct <= 0 or self.exit.stop_loss_pct <= 0:
            raise ConfigurationError("Take profit and stop loss must be positive percentages")
        if not 0 < self.exit.trailing_stop_pct < 100:
            raise ConfigurationError("Trailing stop must be between 0 and 100 percent")
        if self.exit.mirror_phase1_seconds > self.exit.mirror_phase2_seconds:
            raise ConfigurationError("Wallet mirror phase 1 must end before phase 2")
        if self.admission.max_positions < 1:
            raise ConfigurationError("MAX_POSITIONS must be at least 1")
        if self.monitor.interval_seconds <= 0 or self.monitor.max_concurrency < 1:
            raise ConfigurationError("Monitor interval and concurrency must be positive")

    def load_tracked_wallets(self) -> List[str]:
        """Wallets from config plus the optional CSV file (wallet_address column)"""
        wallets = list(self.tracked_wallets)
        path = self.connection.tracked_wallets_file
        if path:
            if not os.path.exists(path):
                raise ConfigurationError(f"Tracked wallets file not found: {path}")
            with open(path, 'r') as f:
                reader = csv.DictReader(f)
                for row in reader:
                    address = (row.get('wallet_address') or '').strip()
                    if address and address not in wallets:
                        wallets.append(address)
        return wallets

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the configuration without secrets"""
        data = {name: asdict(section) for name, section in self._sections().items()}
        data['connection']['private_key'] = '***' if self.connection.private_key else None
        data['connection']['telegram_bot_token'] = '***' if self.connection.telegram_bot_token else None
        data['partial_take_profit'] = [asdict(level) for level in self.partial_levels]
        return data
