from decimal import Decimal

import pytest

from mercator.core.config import ENV_OVERRIDES, AppConfig, load_config
from mercator.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (*ENV_OVERRIDES, "MERCATOR_ENV"):
        monkeypatch.delenv(var, raising=False)


def test_bundled_defaults():
    config = load_config()

    assert config.economy.platform_fee_bps == 1000
    assert config.economy.living_cost_per_round == Decimal("0.005")
    assert config.rounds.max_advisor_calls_per_round == 3
    assert config.rounds.generate_tasks is True
    assert not config.advisor.enabled
    assert config.nats.url is None


def test_missing_files_fall_back_to_model_defaults(tmp_path):
    config = load_config(tmp_path)
    assert config == AppConfig()


def test_environment_overlay(tmp_path):
    (tmp_path / "default.yaml").write_text("economy:\n  platform_fee_bps: 1000\n  escrow_wallet: escrow\n")
    (tmp_path / "staging.yaml").write_text("economy:\n  platform_fee_bps: 500\n")

    config = load_config(tmp_path, env="staging")

    assert config.economy.platform_fee_bps == 500
    assert config.economy.escrow_wallet == "escrow"


def test_env_vars_override_and_enable_clients(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")
    monkeypatch.setenv("MERCATOR_ADVISOR_URL", "http://advisor:9000")

    config = load_config(tmp_path)

    assert config.database.url == "sqlite:///./other.db"
    assert config.advisor.enabled
    assert config.advisor.base_url == "http://advisor:9000"
    assert not config.payments.enabled


def test_unparseable_yaml(tmp_path):
    (tmp_path / "default.yaml").write_text("economy: [unclosed\n")
    with pytest.raises(ConfigError, match="Could not parse"):
        load_config(tmp_path)


def test_invalid_values(tmp_path):
    (tmp_path / "default.yaml").write_text("economy:\n  platform_fee_bps: 20000\n")
    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_config(tmp_path)
