from __future__ import annotations

import asyncio
import json
import unittest

import websockets
from stellar_sdk import Keypair, TransactionEnvelope

from energymarket.config import LedgerConfig
from energymarket.errors import ConnectionRejected, NetworkError, NotConnected, SigningRejected, WalletUnavailable
from energymarket.ledger.contract_client import ContractClient
from energymarket.schemas import ConnectionState
from energymarket.wallet.providers import BridgeWalletProvider, KeypairWalletProvider
from energymarket.wallet.session import WalletSession

from fakes import FakeWalletProvider


class WalletSessionTests(unittest.TestCase):
    def test_absent_wallet_fails_without_calling_it(self) -> None:
        provider = FakeWalletProvider(available=False)
        session = WalletSession(provider)
        with self.assertRaises(WalletUnavailable):
            asyncio.run(session.connect())
        identity = session.identity()
        self.assertEqual(identity.connection_state, ConnectionState.DISCONNECTED)
        self.assertIsNone(identity.public_key)
        self.assertEqual(provider.calls["get_public_key"], 0)

    def test_connect_caches_public_key(self) -> None:
        provider = FakeWalletProvider()
        session = WalletSession(provider)
        public_key = asyncio.run(session.connect())
        self.assertEqual(public_key, provider.public_key)
        self.assertEqual(session.identity().connection_state, ConnectionState.CONNECTED)
        self.assertTrue(session.connected)

    def test_rejected_connection_moves_to_failed(self) -> None:
        session = WalletSession(FakeWalletProvider(reject_connect=True))
        with self.assertRaises(ConnectionRejected):
            asyncio.run(session.connect())
        self.assertEqual(session.identity().connection_state, ConnectionState.FAILED)
        self.assertIsNone(session.identity().public_key)

    def test_unclassified_provider_fault_moves_to_failed(self) -> None:
        class CrashingProvider(FakeWalletProvider):
            async def get_public_key(self) -> str:
                raise RuntimeError("extension crashed")

        session = WalletSession(CrashingProvider())
        with self.assertRaises(RuntimeError):
            asyncio.run(session.connect())
        self.assertEqual(session.identity().connection_state, ConnectionState.FAILED)

    def test_retry_after_failure_can_connect(self) -> None:
        provider = FakeWalletProvider(reject_connect=True)
        session = WalletSession(provider)

        async def _run() -> str:
            with self.assertRaises(ConnectionRejected):
                await session.connect()
            provider.reject_connect = False
            return await session.connect()

        self.assertEqual(asyncio.run(_run()), provider.public_key)
        self.assertEqual(session.identity().connection_state, ConnectionState.CONNECTED)

    def test_sign_out_of_state_never_reaches_wallet(self) -> None:
        provider = FakeWalletProvider()
        session = WalletSession(provider)
        with self.assertRaises(NotConnected):
            asyncio.run(session.sign("AAAA", "Test SDF Network ; September 2015"))
        self.assertEqual(provider.calls["sign_transaction"], 0)

    def test_disconnect_drops_identity(self) -> None:
        session = WalletSession(FakeWalletProvider())
        asyncio.run(session.connect())
        session.disconnect()
        self.assertEqual(session.identity().connection_state, ConnectionState.DISCONNECTED)
        self.assertIsNone(session.identity().public_key)

    def test_signing_rejection_propagates(self) -> None:
        session = WalletSession(FakeWalletProvider(reject_sign=True))

        async def _run() -> None:
            await session.connect()
            await session.sign("AAAA", "Test SDF Network ; September 2015")

        with self.assertRaises(SigningRejected):
            asyncio.run(_run())
        self.assertTrue(session.connected)


class KeypairWalletProviderTests(unittest.TestCase):
    def test_empty_seed_is_unavailable(self) -> None:
        self.assertFalse(KeypairWalletProvider("").is_available())

    def test_signs_envelope_for_its_public_key(self) -> None:
        keypair = Keypair.random()
        cfg = LedgerConfig()
        client = ContractClient(cfg)
        intent = client.build_read_query("get_market_status")
        envelope = client.build_envelope(intent)
        provider = KeypairWalletProvider(keypair.secret)

        public_key = asyncio.run(provider.get_public_key())
        signed = asyncio.run(provider.sign_transaction(envelope.to_xdr(), network_passphrase=cfg.network_passphrase))

        self.assertEqual(public_key, keypair.public_key)
        parsed = TransactionEnvelope.from_xdr(signed, cfg.network_passphrase)
        self.assertEqual(len(parsed.signatures), 1)
        keypair.verify(parsed.hash(), parsed.signatures[0].signature)

    def test_invalid_seed_is_rejected(self) -> None:
        provider = KeypairWalletProvider("SNOTAVALIDSEED")
        with self.assertRaises(ConnectionRejected):
            asyncio.run(provider.get_public_key())


async def _with_bridge(answer, action):
    """Run ``action(provider)`` against a local signer that replies via ``answer(request)``."""

    async def handler(ws) -> None:
        async for raw in ws:
            request = json.loads(raw)
            await ws.send(json.dumps({"id": "someone-else", "result": {}}))
            await ws.send(json.dumps({"id": request["id"], **answer(request)}))

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        provider = BridgeWalletProvider(f"ws://127.0.0.1:{port}", request_timeout_s=5)
        return await action(provider)


class BridgeWalletProviderTests(unittest.TestCase):
    def test_availability_follows_url_scheme(self) -> None:
        self.assertTrue(BridgeWalletProvider("ws://127.0.0.1:8765").is_available())
        self.assertFalse(BridgeWalletProvider("").is_available())

    def test_public_key_and_signature_round_trip(self) -> None:
        public_key = Keypair.random().public_key

        def answer(request):
            if request["method"] == "getPublicKey":
                return {"result": {"publicKey": public_key}}
            return {"result": {"signedXdr": "signed:" + request["params"]["xdr"]}}

        async def action(provider):
            return (
                await provider.get_public_key(),
                await provider.sign_transaction("AAAA", network_passphrase="Test SDF Network ; September 2015"),
            )

        key, signed = asyncio.run(_with_bridge(answer, action))
        self.assertEqual(key, public_key)
        self.assertEqual(signed, "signed:AAAA")

    def test_user_rejection_is_classified(self) -> None:
        def answer(request):
            return {"error": {"code": "user_rejected", "message": "declined"}}

        with self.assertRaises(ConnectionRejected):
            asyncio.run(_with_bridge(answer, lambda provider: provider.get_public_key()))
        with self.assertRaises(SigningRejected):
            asyncio.run(
                _with_bridge(
                    answer,
                    lambda provider: provider.sign_transaction("AAAA", network_passphrase="x"),
                )
            )

    def test_undecodable_frame_fails_the_session(self) -> None:
        async def handler(ws) -> None:
            async for _ in ws:
                await ws.send(b"\xff\xfe")

        async def _run() -> WalletSession:
            async with websockets.serve(handler, "127.0.0.1", 0) as server:
                port = server.sockets[0].getsockname()[1]
                session = WalletSession(BridgeWalletProvider(f"ws://127.0.0.1:{port}", request_timeout_s=5))
                with self.assertRaises(NetworkError):
                    await session.connect()
                return session

        session = asyncio.run(_run())
        self.assertEqual(session.identity().connection_state, ConnectionState.FAILED)
        self.assertIsNone(session.identity().public_key)

    def test_unreachable_bridge_is_a_network_error(self) -> None:
        provider = BridgeWalletProvider("ws://127.0.0.1:9", request_timeout_s=1)
        with self.assertRaises(NetworkError):
            asyncio.run(provider.get_public_key())


if __name__ == "__main__":
    unittest.main()
