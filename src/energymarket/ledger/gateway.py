from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from stellar_sdk import Account, SorobanServerAsync, TransactionEnvelope, xdr
from stellar_sdk.exceptions import (
    AccountNotFoundException,
    BaseRequestError,
    PrepareTransactionException,
)

from energymarket.config import LedgerConfig
from energymarket.errors import NetworkError, SimulateFailed, SubmitFailed


@dataclass(frozen=True)
class SimulationResult:
    error: str | None
    result_xdr: str | None
    min_resource_fee: int = 0
    raw: Any = None


@dataclass(frozen=True)
class SubmissionResult:
    status: str
    tx_hash: str
    error: str = ""


@dataclass(frozen=True)
class TransactionLookup:
    status: str
    return_value_xdr: str | None = None


class LedgerGateway(Protocol):
    async def load_account(self, public_key: str) -> Account: ...

    async def simulate(self, envelope: TransactionEnvelope) -> SimulationResult: ...

    async def assemble(
        self,
        envelope: TransactionEnvelope,
        simulation: SimulationResult,
    ) -> TransactionEnvelope: ...

    async def send(self, signed_xdr: str) -> SubmissionResult: ...

    async def get_transaction(self, tx_hash: str) -> TransactionLookup: ...


class SorobanLedgerGateway:
    """Soroban RPC access. Translates SDK faults into ``NetworkError``."""

    def __init__(self, ledger: LedgerConfig) -> None:
        self._ledger = ledger
        self._server = SorobanServerAsync(ledger.rpc_url)
        self._log = logging.getLogger(self.__class__.__name__)

    async def __aenter__(self) -> SorobanLedgerGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._server.close()

    async def load_account(self, public_key: str) -> Account:
        try:
            return await self._server.load_account(public_key)
        except AccountNotFoundException as exc:
            raise NetworkError(f"source account {public_key} not found on ledger", stage="built") from exc
        except (BaseRequestError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"get_account failed: {exc}", stage="built") from exc

    async def simulate(self, envelope: TransactionEnvelope) -> SimulationResult:
        try:
            response = await self._server.simulate_transaction(envelope)
        except (BaseRequestError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"simulate_transaction failed: {exc}", stage="simulating") from exc
        if response.error:
            return SimulationResult(error=str(response.error), result_xdr=None, raw=response)
        if getattr(response, "restore_preamble", None):
            return SimulationResult(
                error="contract state archived; restore required before invoking",
                result_xdr=None,
                raw=response,
            )
        results = response.results or []
        result_xdr = results[0].xdr if results else None
        return SimulationResult(
            error=None,
            result_xdr=result_xdr,
            min_resource_fee=int(response.min_resource_fee or 0),
            raw=response,
        )

    async def assemble(
        self,
        envelope: TransactionEnvelope,
        simulation: SimulationResult,
    ) -> TransactionEnvelope:
        try:
            return await self._server.prepare_transaction(envelope, simulation.raw)
        except PrepareTransactionException as exc:
            raise SimulateFailed(f"could not assemble transaction: {exc}") from exc
        except (BaseRequestError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"prepare_transaction failed: {exc}", stage="simulating") from exc

    async def send(self, signed_xdr: str) -> SubmissionResult:
        try:
            envelope = TransactionEnvelope.from_xdr(signed_xdr, self._ledger.network_passphrase)
        except Exception as exc:  # the xdr unpacker raises several unrelated types
            raise SubmitFailed(f"signed envelope is not valid xdr: {exc}") from exc
        try:
            response = await self._server.send_transaction(envelope)
        except (BaseRequestError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"send_transaction failed: {exc}", stage="submitting") from exc
        status = getattr(response.status, "value", response.status)
        return SubmissionResult(
            status=str(status),
            tx_hash=response.hash,
            error=response.error_result_xdr or "",
        )

    async def get_transaction(self, tx_hash: str) -> TransactionLookup:
        try:
            response = await self._server.get_transaction(tx_hash)
        except (BaseRequestError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"get_transaction failed: {exc}", stage="confirming") from exc
        status = str(getattr(response.status, "value", response.status))
        return_value = None
        if status == "SUCCESS" and response.result_meta_xdr:
            return_value = _return_value_xdr(response.result_meta_xdr)
        return TransactionLookup(status=status, return_value_xdr=return_value)


def _return_value_xdr(result_meta_xdr: str) -> str | None:
    meta = xdr.TransactionMeta.from_xdr(result_meta_xdr)
    # v3 before protocol 23, v4 after.
    for version in (getattr(meta, "v3", None), getattr(meta, "v4", None)):
        soroban_meta = getattr(version, "soroban_meta", None) if version is not None else None
        if soroban_meta is not None and soroban_meta.return_value is not None:
            return soroban_meta.return_value.to_xdr()
    return None
