import pytest

from ema_trader.config import (
    DEFAULT_USER,
    SettingsRegistry,
    TradingSettings,
    get_config_value,
    load_config,
    normalize_timeframe,
    resolve_env_vars,
    validate_config,
)


def base_config(**trading):
    return {
        'alpaca': {'key_id': 'k', 'secret_key': 's', 'base_url': 'https://paper-api.alpaca.markets'},
        'trading': trading,
    }


def test_load_config_resolves_env(tmp_path, monkeypatch):
    monkeypatch.setenv("ALPACA_API_KEY_ID", "abc")
    monkeypatch.delenv("MISSING_VAR", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "alpaca:\n"
        "  key_id: ${ALPACA_API_KEY_ID}\n"
        "  base_url: ${MISSING_VAR:https://paper-api.alpaca.markets}\n"
        "trading:\n"
        "  symbols: [aapl, ' msft ']\n"
    )

    config = load_config(str(path))

    assert config['alpaca']['key_id'] == "abc"
    assert config['alpaca']['base_url'] == "https://paper-api.alpaca.markets"


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_resolve_env_vars_nested(monkeypatch):
    monkeypatch.setenv("X", "1")
    assert resolve_env_vars({'a': ['${X}', {'b': 'v${X}'}], 'c': 3}) == {'a': ['1', {'b': 'v1'}], 'c': 3}


def test_validate_requires_alpaca_fields():
    config = base_config()
    config['alpaca']['secret_key'] = ""
    with pytest.raises(ValueError, match="alpaca.secret_key"):
        validate_config(config)

    with pytest.raises(ValueError, match="alpaca.key_id"):
        validate_config({'trading': {}})


@pytest.mark.parametrize("field, value", [
    ('profit_percentage', 0),
    ('loss_percentage', 150),
    ('confirmation_bars', 11),
    ('trade_amount', -5),
    ('timeframe', '2h'),
])
def test_validate_rejects_bad_trading_settings(field, value):
    with pytest.raises(ValueError, match=field):
        validate_config(base_config(**{field: value}))


def test_validate_rejects_negative_retries():
    config = base_config()
    config['retry'] = {'max_retries': -1}
    with pytest.raises(ValueError, match="max_retries"):
        validate_config(config)


def test_valid_config_passes():
    validate_config(base_config(timeframe='15m', confirmation_bars=0))


def test_defaults():
    settings = TradingSettings()
    assert settings.timeframe == "5Min"
    assert settings.profit_percentage == 2.0
    assert settings.loss_percentage == 1.0
    assert settings.confirmation_bars == 3
    assert settings.symbols == ["AAPL"]


@pytest.mark.parametrize("raw, expected", [("1m", "1Min"), ("1h", "1Hour"), ("30Min", "30Min")])
def test_normalize_timeframe(raw, expected):
    assert normalize_timeframe(raw) == expected


def test_settings_registry_overrides():
    registry = SettingsRegistry({
        'trading': {'profit_percentage': 3.0, 'symbols': ['aapl']},
        'users': {
            'alice': {'loss_percentage': 0.5, 'symbols': ['msft', 'nvda']},
            'bob': None,
        },
    })

    alice = registry.settings_for('alice')
    assert alice.profit_percentage == 3.0
    assert alice.loss_percentage == 0.5
    assert registry.settings_for('carol') == registry.default_settings
    assert registry.tracked_pairs() == [('alice', 'MSFT'), ('alice', 'NVDA'), ('bob', 'AAPL')]


def test_tracked_pairs_without_users():
    registry = SettingsRegistry({'trading': {'symbols': ['AAPL', 'MSFT']}})
    assert registry.tracked_pairs() == [(DEFAULT_USER, 'AAPL'), (DEFAULT_USER, 'MSFT')]


def test_get_config_value():
    config = {'a': {'b': {'c': 5}}}
    assert get_config_value(config, 'a.b.c') == 5
    assert get_config_value(config, 'a.x', 'dflt') == 'dflt'
