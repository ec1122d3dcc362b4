import pytest

from utils.config import Config, ConfigurationError, env_flag


def test_defaults():
    config = Config(config_path=None, env={}, load_env_file=False)
    assert config.exit.take_profit_pct == 30
    assert config.exit.stop_loss_pct == 13
    assert config.exit.trailing_stop_pct == 15
    assert config.admission.max_positions == 2
    assert config.trading.slippage == 0.15
    assert [lvl.pnl_pct for lvl in config.partial_levels] == [100, 200, 400]


@pytest.mark.parametrize("value,default,expected", [
    ("true", False, True),
    ("YES", False, True),
    ("0", True, False),
    ("", True, True),
    (None, False, False),
])
def test_env_flag(value, default, expected):
    assert env_flag(value, default) is expected


def test_environment_overrides():
    config = Config(config_path=None, load_env_file=False, env={
        'DRY_RUN': 'true',
        'MAX_POSITIONS': '5',
        'COPY_PROFIT_TARGET_PERCENT': '45.5',
        'COPY_STOP_LOSS_ENABLED': 'false',
        'SLIPPAGE': '3',
        'POSITION_SIZE_SOL': 'garbage',
        'TRACKED_WALLETS': 'a, b ,,c',
        'REDIS_URL': 'redis://localhost:6379/1',
    })
    assert config.trading.dry_run is True
    assert config.admission.max_positions == 5
    assert config.exit.take_profit_pct == 45.5
    assert config.exit.stop_loss_enabled is False
    assert config.trading.slippage == 0.5
    assert config.trading.position_size_sol == 0.1
    assert config.tracked_wallets == ['a', 'b', 'c']
    assert config.connection.redis_url == 'redis://localhost:6379/1'


def test_yaml_then_env(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "exit:\n  take_profit_pct: 50\n  stop_loss_pct: 20\n"
        "admission:\n  max_positions: 3\n"
        "partial_take_profit:\n  - {pnl_pct: 150, sell_pct: 50}\n"
        "tracked_wallets: [w1, w2]\n"
    )
    config = Config(str(path), env={'COPY_STOP_LOSS_PERCENT': '10'}, load_env_file=False)
    assert config.exit.take_profit_pct == 50
    assert config.exit.stop_loss_pct == 10
    assert config.admission.max_positions == 3
    assert len(config.partial_levels) == 1
    assert config.partial_levels[0].sell_pct == 50
    assert config.tracked_wallets == ['w1', 'w2']


def test_unknown_yaml_key_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("exit:\n  take_profit: 50\n")
    with pytest.raises(ConfigurationError):
        Config(str(path), env={}, load_env_file=False)


def test_validate():
    config = Config(config_path=None, env={'DRY_RUN': 'true'}, load_env_file=False)
    config.validate()

    live = Config(config_path=None, env={'DRY_RUN': 'false'}, load_env_file=False)
    with pytest.raises(ConfigurationError, match="RPC_URL"):
        live.validate()

    redis_without_url = Config(config_path=None, env={'DRY_RUN': 'true', 'STORE_BACKEND': 'redis'},
                               load_env_file=False)
    with pytest.raises(ConfigurationError):
        redis_without_url.validate()

    config.exit.trailing_stop_pct = 100
    with pytest.raises(ConfigurationError):
        config.validate()


def test_tracked_wallet_csv(tmp_path):
    csv_path = tmp_path / "wallets.csv"
    csv_path.write_text("wallet_address,label\nw1,alpha\nw2,beta\n,empty\nw1,dup\n")
    config = Config(config_path=None, env={'TRACKED_WALLETS': 'w0', 'TRACKED_WALLETS_FILE': str(csv_path)},
                    load_env_file=False)
    assert config.load_tracked_wallets() == ['w0', 'w1', 'w2']

    config.connection.tracked_wallets_file = str(tmp_path / "missing.csv")
    with pytest.raises(ConfigurationError):
        config.load_tracked_wallets()


def test_summary_masks_secrets():
    config = Config(config_path=None, env={'PRIVATE_KEY': 'secret', 'TELEGRAM_BOT_TOKEN': 'tok'},
                    load_env_file=False)
    summary = config.summary()
    assert summary['connection']['private_key'] == '***'
    assert summary['connection']['telegram_bot_token'] == '***'
