"""Runtime settings, read from the environment (and an optional `.env` file)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .domain.decoding import DEFAULT_TAX_WALLET, VIRTUAL_ADDRESS, normalize_address
from .domain.errors import ConfigError, InvalidAddressError

DEFAULT_RPC_URL = "https://mainnet.base.org"
INFURA_BASE_URL = "https://base-mainnet.infura.io/v3/{key}"


@dataclass(slots=True, frozen=True)
class Settings:
    rpc_url: str = DEFAULT_RPC_URL
    rpc_timeout_s: float = 20.0
    redis_url: str | None = None
    tax_token: str = VIRTUAL_ADDRESS
    tax_wallet: str = DEFAULT_TAX_WALLET
    network: str = "base"
    gecko_url: str = "https://api.geckoterminal.com/api/v2"
    window: int = 2_940
    step: int = 5
    failure_threshold: int = 10
    block_time_s: float = 2.0
    attribution: str = "receipt"
    on_chunk_failure: str = "skip"
    time_budget_s: float = 50.0


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        v = int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e
    if v < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {v}")
    return v


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        v = float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e
    if v <= 0:
        raise ConfigError(f"{key} must be positive, got {v}")
    return v


def _choice(env: Mapping[str, str], key: str, default: str, allowed: tuple[str, ...]) -> str:
    v = (env.get(key) or default).strip().lower()
    if v not in allowed:
        raise ConfigError(f"{key} must be one of {', '.join(allowed)}, got {v!r}")
    return v


def _address(env: Mapping[str, str], key: str, default: str) -> str:
    try:
        return normalize_address(env.get(key) or default)
    except InvalidAddressError as e:
        raise ConfigError(f"{key}: {e}") from e


def load_settings(env_path: Optional[Path | str] = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load `.env` (when present) and build Settings from the environment."""
    if environ is None:
        load_dotenv(env_path)
        environ = os.environ
    env = environ

    rpc_url = env.get("TAXSCAN_RPC_URL") or DEFAULT_RPC_URL
    infura = env.get("INFURA_API_KEY")
    if infura:
        rpc_url = INFURA_BASE_URL.format(key=infura)

    return Settings(
        rpc_url=rpc_url,
        rpc_timeout_s=_float(env, "TAXSCAN_RPC_TIMEOUT", 20.0),
        redis_url=env.get("TAXSCAN_REDIS_URL") or None,
        tax_token=_address(env, "TAXSCAN_TAX_TOKEN", VIRTUAL_ADDRESS),
        tax_wallet=_address(env, "TAXSCAN_TAX_WALLET", DEFAULT_TAX_WALLET),
        network=env.get("TAXSCAN_NETWORK") or "base",
        gecko_url=env.get("TAXSCAN_GECKO_URL") or "https://api.geckoterminal.com/api/v2",
        window=_int(env, "TAXSCAN_WINDOW", 2_940),
        step=_int(env, "TAXSCAN_STEP", 5),
        failure_threshold=_int(env, "TAXSCAN_FAILURE_THRESHOLD", 10),
        block_time_s=_float(env, "TAXSCAN_BLOCK_TIME", 2.0),
        attribution=_choice(env, "TAXSCAN_ATTRIBUTION", "receipt", ("receipt", "intersection")),
        on_chunk_failure=_choice(env, "TAXSCAN_ON_CHUNK_FAILURE", "skip", ("skip", "abort")),
        time_budget_s=_float(env, "TAXSCAN_TIME_BUDGET", 50.0),
    )
