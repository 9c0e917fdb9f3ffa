import pytest

from taxscan.config import DEFAULT_RPC_URL, load_settings
from taxscan.domain.decoding import DEFAULT_TAX_WALLET
from taxscan.domain.errors import ConfigError


def test_defaults():
    s = load_settings(environ={})
    assert s.rpc_url == DEFAULT_RPC_URL
    assert (s.window, s.step, s.failure_threshold, s.block_time_s) == (2_940, 5, 10, 2.0)
    assert s.tax_wallet == DEFAULT_TAX_WALLET
    assert s.redis_url is None
    assert s.attribution == "receipt"


def test_overrides_and_infura_key():
    s = load_settings(environ={
        "TAXSCAN_RPC_URL": "https://other.rpc",
        "INFURA_API_KEY": "abc",
        "TAXSCAN_WINDOW": "100",
        "TAXSCAN_ATTRIBUTION": "Intersection",
        "TAXSCAN_TAX_WALLET": "0xAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA",
        "TAXSCAN_REDIS_URL": "redis://localhost:6379/0",
    })
    assert s.rpc_url == "https://base-mainnet.infura.io/v3/abc"
    assert s.window == 100
    assert s.attribution == "intersection"
    assert s.tax_wallet == "0x" + "a" * 40
    assert s.redis_url == "redis://localhost:6379/0"


@pytest.mark.parametrize("env", [
    {"TAXSCAN_STEP": "five"},
    {"TAXSCAN_WINDOW": "0"},
    {"TAXSCAN_BLOCK_TIME": "-1"},
    {"TAXSCAN_ON_CHUNK_FAILURE": "ignore"},
    {"TAXSCAN_TAX_TOKEN": "0x1234"},
])
def test_invalid_values_raise(env):
    with pytest.raises(ConfigError):
        load_settings(environ=env)


def test_dotenv_file_is_loaded(tmp_path, monkeypatch):
    # registered with monkeypatch so the value load_dotenv exports is undone
    monkeypatch.setenv("TAXSCAN_STEP", "1")
    monkeypatch.delenv("TAXSCAN_STEP")
    env_file = tmp_path / ".env"
    env_file.write_text("TAXSCAN_STEP=7\n")
    assert load_settings(env_file).step == 7
