from __future__ import annotations

import asyncio
import os
import unittest
from dataclasses import replace
from unittest import mock

from stellar_sdk import Keypair

from energymarket.config import (
    DEFAULT_CONTRACT_ID,
    AppConfig,
    LedgerConfig,
    MarketConfig,
    WalletConfig,
    load_config,
    validate_config,
)
from energymarket.errors import WalletUnavailable
from energymarket.main import build_wallet_provider
from energymarket.schemas import ConnectionState
from energymarket.telemetry.redaction import redact_secret, short_address
from energymarket.wallet.session import WalletSession


def _cfg(**wallet: str) -> AppConfig:
    return AppConfig(ledger=LedgerConfig(), market=MarketConfig(), wallet=WalletConfig(**wallet))


class ValidateConfigTests(unittest.TestCase):
    def test_defaults_are_valid(self) -> None:
        validate_config(_cfg())

    def test_rejects_bad_values_naming_the_variable(self) -> None:
        base = _cfg()
        cases = [
            ("ENERGY_CONTRACT_ID", replace(base, ledger=replace(base.ledger, contract_id="GABC"))),
            ("SOROBAN_RPC_URL", replace(base, ledger=replace(base.ledger, rpc_url="ftp://rpc"))),
            ("SOROBAN_BASE_FEE", replace(base, ledger=replace(base.ledger, base_fee=0))),
            (
                "MARKET_CONFIRM_TIMEOUT_S",
                replace(base, market=replace(base.market, confirm_timeout_s=0)),
            ),
            ("WALLET_PROVIDER", _cfg(provider="freighter")),
            ("WALLET_SECRET_KEY", _cfg(secret_key="SNOTASEED")),
            ("WALLET_BRIDGE_URL", _cfg(provider="bridge", bridge_url="http://localhost")),
        ]
        for variable, cfg in cases:
            with self.subTest(variable=variable):
                with self.assertRaisesRegex(ValueError, variable):
                    validate_config(cfg)

    def test_keypair_provider_without_seed_loads_but_cannot_connect(self) -> None:
        cfg = _cfg(provider="keypair", secret_key="")
        validate_config(cfg)
        session = WalletSession(build_wallet_provider(cfg.wallet))
        with self.assertRaises(WalletUnavailable):
            asyncio.run(session.connect())
        self.assertEqual(session.identity().connection_state, ConnectionState.DISCONNECTED)


class LoadConfigTests(unittest.TestCase):
    def test_reads_environment(self) -> None:
        seed = Keypair.random().secret
        env = {
            "SOROBAN_RPC_URL": "http://localhost:8000/soroban/rpc",
            "SOROBAN_BASE_FEE": "250",
            "MARKET_REFRESH_INTERVAL_S": "5",
            "MARKET_DEFAULT_VALID_FOR_S": "3600",
            "WALLET_SECRET_KEY": seed,
        }
        with mock.patch("energymarket.config.load_dotenv"), mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config()
        self.assertEqual(cfg.ledger.rpc_url, "http://localhost:8000/soroban/rpc")
        self.assertEqual(cfg.ledger.base_fee, 250)
        self.assertEqual(cfg.ledger.contract_id, DEFAULT_CONTRACT_ID)
        self.assertEqual(cfg.market.refresh_interval_s, 5.0)
        self.assertEqual(cfg.market.default_valid_for_s, 3600)
        self.assertEqual(cfg.wallet.provider, "keypair")
        self.assertEqual(cfg.wallet.secret_key, seed)

    def test_invalid_environment_raises(self) -> None:
        env = {"WALLET_PROVIDER": "bridge"}
        with mock.patch("energymarket.config.load_dotenv"), mock.patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ValueError):
                load_config()


class RedactionTests(unittest.TestCase):
    def test_secret_keeps_only_edges(self) -> None:
        seed = Keypair.random().secret
        redacted = redact_secret(seed)
        self.assertTrue(redacted.startswith(seed[:4]))
        self.assertTrue(redacted.endswith(seed[-4:]))
        self.assertNotIn(seed[4:-4], redacted)
        self.assertEqual(redact_secret(""), "")

    def test_short_address(self) -> None:
        address = Keypair.random().public_key
        self.assertIn(address[:4], short_address(address))
        self.assertLess(len(short_address(address)), len(address))


if __name__ == "__main__":
    unittest.main()
