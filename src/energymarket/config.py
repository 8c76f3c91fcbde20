from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
from stellar_sdk import Network, StrKey

DEFAULT_CONTRACT_ID = "CC2FBN334MR4R6KQ45WOUDCYB7Q74ERAFT3RAYUIIY7Z33IOIYOVMHDB"


@dataclass(frozen=True)
class LedgerConfig:
    rpc_url: str = "https://soroban-testnet.stellar.org"
    network_passphrase: str = Network.TESTNET_NETWORK_PASSPHRASE
    contract_id: str = DEFAULT_CONTRACT_ID
    base_fee: int = 100
    tx_timeout_s: int = 30


@dataclass(frozen=True)
class MarketConfig:
    refresh_interval_s: float = 30.0
    confirm_timeout_s: float = 30.0
    confirm_poll_interval_s: float = 1.0
    default_valid_for_s: int = 86400


@dataclass(frozen=True)
class WalletConfig:
    provider: str = "keypair"
    secret_key: str = ""
    bridge_url: str = ""
    request_timeout_s: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    ledger: LedgerConfig
    market: MarketConfig
    wallet: WalletConfig


def load_config() -> AppConfig:
    load_dotenv()
    cfg = AppConfig(
        ledger=LedgerConfig(
            rpc_url=os.getenv("SOROBAN_RPC_URL", LedgerConfig.rpc_url),
            network_passphrase=os.getenv(
                "SOROBAN_NETWORK_PASSPHRASE",
                LedgerConfig.network_passphrase,
            ),
            contract_id=os.getenv("ENERGY_CONTRACT_ID", LedgerConfig.contract_id),
            base_fee=int(os.getenv("SOROBAN_BASE_FEE", LedgerConfig.base_fee)),
            tx_timeout_s=int(os.getenv("SOROBAN_TX_TIMEOUT_S", LedgerConfig.tx_timeout_s)),
        ),
        market=MarketConfig(
            refresh_interval_s=float(
                os.getenv("MARKET_REFRESH_INTERVAL_S", MarketConfig.refresh_interval_s)
            ),
            confirm_timeout_s=float(
                os.getenv("MARKET_CONFIRM_TIMEOUT_S", MarketConfig.confirm_timeout_s)
            ),
            confirm_poll_interval_s=float(
                os.getenv(
                    "MARKET_CONFIRM_POLL_INTERVAL_S",
                    MarketConfig.confirm_poll_interval_s,
                )
            ),
            default_valid_for_s=int(
                os.getenv("MARKET_DEFAULT_VALID_FOR_S", MarketConfig.default_valid_for_s)
            ),
        ),
        wallet=WalletConfig(
            provider=os.getenv("WALLET_PROVIDER", WalletConfig.provider),
            secret_key=os.getenv("WALLET_SECRET_KEY", ""),
            bridge_url=os.getenv("WALLET_BRIDGE_URL", ""),
            request_timeout_s=float(
                os.getenv("WALLET_REQUEST_TIMEOUT_S", WalletConfig.request_timeout_s)
            ),
        ),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> None:
    if not cfg.ledger.rpc_url.startswith(("http://", "https://")):
        raise ValueError("SOROBAN_RPC_URL must be an http(s) URL")
    if not cfg.ledger.network_passphrase:
        raise ValueError("SOROBAN_NETWORK_PASSPHRASE must not be empty")
    if not StrKey.is_valid_contract(cfg.ledger.contract_id):
        raise ValueError("ENERGY_CONTRACT_ID must be a C... contract strkey")
    if cfg.ledger.base_fee <= 0:
        raise ValueError("SOROBAN_BASE_FEE must be > 0")
    if cfg.ledger.tx_timeout_s <= 0:
        raise ValueError("SOROBAN_TX_TIMEOUT_S must be > 0")
    if cfg.market.refresh_interval_s <= 0:
        raise ValueError("MARKET_REFRESH_INTERVAL_S must be > 0")
    if cfg.market.confirm_timeout_s <= 0:
        raise ValueError("MARKET_CONFIRM_TIMEOUT_S must be > 0")
    if cfg.market.confirm_poll_interval_s <= 0:
        raise ValueError("MARKET_CONFIRM_POLL_INTERVAL_S must be > 0")
    if cfg.market.default_valid_for_s <= 0:
        raise ValueError("MARKET_DEFAULT_VALID_FOR_S must be > 0")
    if cfg.wallet.provider not in {"keypair", "bridge"}:
        raise ValueError("WALLET_PROVIDER must be one of: keypair, bridge")
    if cfg.wallet.request_timeout_s <= 0:
        raise ValueError("WALLET_REQUEST_TIMEOUT_S must be > 0")
    if cfg.wallet.provider == "keypair" and cfg.wallet.secret_key:
        if not StrKey.is_valid_ed25519_secret_seed(cfg.wallet.secret_key):
            raise ValueError("WALLET_SECRET_KEY must be an S... secret seed")
    if cfg.wallet.provider == "bridge" and not cfg.wallet.bridge_url.startswith(("ws://", "wss://")):
        raise ValueError("WALLET_BRIDGE_URL must be a ws(s) URL in bridge mode")
