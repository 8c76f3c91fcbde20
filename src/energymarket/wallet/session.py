from __future__ import annotations

import asyncio
import logging

from energymarket.errors import MarketError, NotConnected, WalletUnavailable
from energymarket.schemas import ConnectionState, WalletIdentity
from energymarket.telemetry.redaction import short_address
from energymarket.wallet.providers import WalletProvider


class WalletSession:
    """Owns the connection to a signing identity. Nothing here is persisted."""

    def __init__(self, provider: WalletProvider) -> None:
        self._provider = provider
        self._state = ConnectionState.DISCONNECTED
        self._public_key: str | None = None
        self._connect_lock = asyncio.Lock()
        self._log = logging.getLogger(self.__class__.__name__)

    async def connect(self) -> str:
        # Absence is a property of the environment; no call is attempted.
        if not self._provider.is_available():
            self._log.warning("wallet_unavailable state=%s", self._state.value)
            raise WalletUnavailable("no wallet provider is available in this environment")

        async with self._connect_lock:
            self._state = ConnectionState.CONNECTING
            try:
                public_key = await self._provider.get_public_key()
            except MarketError as exc:
                self._state = ConnectionState.FAILED
                self._public_key = None
                self._log.warning("wallet_connect_failed error=%s", exc)
                raise
            except Exception:
                # Unclassified provider fault; never leave the session CONNECTING.
                self._state = ConnectionState.FAILED
                self._public_key = None
                self._log.exception("wallet_connect_crashed")
                raise
            self._public_key = public_key
            self._state = ConnectionState.CONNECTED
            self._log.info("wallet_connected public_key=%s", short_address(public_key))
            return public_key

    def disconnect(self) -> None:
        if self._state != ConnectionState.DISCONNECTED:
            self._log.info("wallet_disconnected public_key=%s", short_address(self._public_key))
        self._state = ConnectionState.DISCONNECTED
        self._public_key = None

    def identity(self) -> WalletIdentity:
        return WalletIdentity(public_key=self._public_key, connection_state=self._state)

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._public_key is not None

    async def sign(self, envelope_xdr: str, network_passphrase: str) -> str:
        if not self.connected:
            raise NotConnected(f"cannot sign while {self._state.value}", stage="signing")
        return await self._provider.sign_transaction(
            envelope_xdr,
            network_passphrase=network_passphrase,
        )
