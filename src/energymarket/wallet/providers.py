from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol
from uuid import uuid4

import websockets
from stellar_sdk import Keypair, TransactionEnvelope
from stellar_sdk.exceptions import Ed25519SecretSeedInvalidError
from websockets.exceptions import WebSocketException

from energymarket.errors import (
    ConnectionRejected,
    NetworkError,
    SigningRejected,
    WalletUnavailable,
)
from energymarket.telemetry.redaction import short_address

_REJECTION_CODES = {"user_rejected", "rejected", "denied"}


class WalletProvider(Protocol):
    """Signing capability held outside this process; the key never crosses it."""

    def is_available(self) -> bool: ...

    async def get_public_key(self) -> str: ...

    async def sign_transaction(self, envelope_xdr: str, *, network_passphrase: str) -> str: ...


class KeypairWalletProvider:
    """Signs with a local secret seed. Intended for headless and scripted use."""

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key
        self._log = logging.getLogger(self.__class__.__name__)

    def is_available(self) -> bool:
        return bool(self._secret_key)

    async def get_public_key(self) -> str:
        return self._keypair().public_key

    async def sign_transaction(self, envelope_xdr: str, *, network_passphrase: str) -> str:
        keypair = self._keypair()
        envelope = TransactionEnvelope.from_xdr(envelope_xdr, network_passphrase)
        envelope.sign(keypair)
        self._log.info("keypair_signed signer=%s", short_address(keypair.public_key))
        return envelope.to_xdr()

    def _keypair(self) -> Keypair:
        if not self._secret_key:
            raise WalletUnavailable("no secret key configured")
        try:
            return Keypair.from_secret(self._secret_key)
        except Ed25519SecretSeedInvalidError as exc:
            raise ConnectionRejected(f"invalid secret seed: {exc}") from exc


class BridgeWalletProvider:
    """Talks to an external signer over a websocket using JSON request/response frames.

    Request:  {"id": "...", "method": "getPublicKey" | "signTransaction", "params": {...}}
    Response: {"id": "...", "result": {...}} or {"id": "...", "error": {"code": "...", "message": "..."}}
    """

    def __init__(self, url: str, *, request_timeout_s: float = 60.0) -> None:
        self._url = url
        self._request_timeout_s = request_timeout_s
        self._log = logging.getLogger(self.__class__.__name__)

    def is_available(self) -> bool:
        return self._url.startswith(("ws://", "wss://"))

    async def get_public_key(self) -> str:
        try:
            result = await self._call("getPublicKey", {})
        except _BridgeRejection as exc:
            raise ConnectionRejected(exc.message) from exc
        public_key = result.get("publicKey")
        if not isinstance(public_key, str) or not public_key:
            raise ConnectionRejected("bridge returned no public key")
        return public_key

    async def sign_transaction(self, envelope_xdr: str, *, network_passphrase: str) -> str:
        try:
            result = await self._call(
                "signTransaction",
                {"xdr": envelope_xdr, "networkPassphrase": network_passphrase},
            )
        except _BridgeRejection as exc:
            raise SigningRejected(exc.message) from exc
        signed = result.get("signedXdr")
        if not isinstance(signed, str) or not signed:
            raise SigningRejected("bridge returned no signed envelope")
        return signed

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id = str(uuid4())
        request = {"id": request_id, "method": method, "params": params}
        try:
            async with websockets.connect(self._url, open_timeout=self._request_timeout_s) as ws:
                await ws.send(json.dumps(request))
                self._log.info("bridge_request method=%s id=%s", method, request_id)
                while True:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self._request_timeout_s)
                    message = _parse(raw)
                    if message.get("id") == request_id:
                        break
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._log.warning("bridge_transport_error method=%s error=%s", method, exc)
            raise NetworkError(f"wallet bridge unreachable: {exc}", stage="wallet") from exc

        error = message.get("error")
        if isinstance(error, dict):
            code = str(error.get("code", ""))
            text = str(error.get("message") or code or "rejected")
            if code in _REJECTION_CODES:
                raise _BridgeRejection(text)
            raise NetworkError(f"wallet bridge error {code}: {text}", stage="wallet")
        result = message.get("result")
        if not isinstance(result, dict):
            raise NetworkError("wallet bridge returned a malformed response", stage="wallet")
        return result


class _BridgeRejection(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _parse(raw: str | bytes) -> dict[str, Any]:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        parsed = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise NetworkError(f"wallet bridge sent invalid json: {exc}", stage="wallet") from exc
    if not isinstance(parsed, dict):
        raise NetworkError("wallet bridge sent a non-object frame", stage="wallet")
    return parsed
