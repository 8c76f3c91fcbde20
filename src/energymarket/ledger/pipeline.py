from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from stellar_sdk import Account, TransactionEnvelope

from energymarket.errors import (
    DecodeError,
    MarketError,
    NetworkError,
    NotConnected,
    SimulateFailed,
    SubmitFailed,
)
from energymarket.ledger.contract_client import ContractClient
from energymarket.ledger.gateway import LedgerGateway, SimulationResult
from energymarket.schemas import TransactionIntent
from energymarket.telemetry.metrics import PipelineMetrics
from energymarket.wallet.session import WalletSession


class PipelineState(str, Enum):
    BUILT = "built"
    SIMULATING = "simulating"
    SIMULATE_FAILED = "simulate_failed"
    SIMULATE_OK = "simulate_ok"
    SIGNING = "signing"
    SIGN_FAILED = "sign_failed"
    SIGNED = "signed"
    SUBMITTING = "submitting"
    SUBMIT_FAILED = "submit_failed"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    CONFIRM_TIMEOUT = "confirm_timeout"


TERMINAL_STATES = frozenset(
    {
        PipelineState.SIMULATE_FAILED,
        PipelineState.SIGN_FAILED,
        PipelineState.SUBMIT_FAILED,
        PipelineState.CONFIRMED,
        PipelineState.CONFIRM_TIMEOUT,
    }
)


@dataclass(frozen=True)
class Simulated:
    effect: Any
    min_resource_fee: int = 0


@dataclass(frozen=True)
class Signed:
    envelope_xdr: str


@dataclass(frozen=True)
class Submitted:
    tx_hash: str
    expected_effect: Any = None


@dataclass(frozen=True)
class Confirmed:
    tx_hash: str
    effect: Any = None


@dataclass(frozen=True)
class ConfirmTimedOut:
    """Not a failure: the transaction may still land."""

    tx_hash: str
    waited_s: float


@dataclass(frozen=True)
class Failed:
    stage: PipelineState
    error: MarketError


TransactionOutcome = Union[Simulated, Signed, Submitted, Confirmed, ConfirmTimedOut, Failed]

_SUBMIT_ACCEPTED = {"PENDING", "DUPLICATE"}


class TransactionPipeline:
    """Drives one intent through simulate, sign and submit.

    One instance per intent and one ``run()`` per instance. Stage failures are
    classified into a ``Failed`` outcome, never raised. Submission is never
    retried here; resubmitting a signed envelope risks double application, so
    callers rebuild a fresh intent instead.
    """

    def __init__(
        self,
        intent: TransactionIntent,
        *,
        contract: ContractClient,
        ledger: LedgerGateway,
        wallet: WalletSession | None = None,
        metrics: PipelineMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.intent = intent
        self._contract = contract
        self._ledger = ledger
        self._wallet = wallet
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._log = logging.getLogger(self.__class__.__name__)
        self.state = PipelineState.BUILT
        self.transitions: list[tuple[PipelineState, PipelineState]] = []
        self.outcomes: list[TransactionOutcome] = []
        self._started = False
        self._submitted: Submitted | None = None
        self._recorded_terminal: str | None = None

    async def run(self) -> TransactionOutcome:
        if self._started:
            raise RuntimeError("pipeline already ran; build a fresh intent to retry")
        self._started = True

        try:
            account = await self._source_account()
            envelope = self._contract.build_envelope(self.intent, account)
        except MarketError as exc:
            self._transition(PipelineState.SIMULATE_FAILED)
            return self._fail(PipelineState.BUILT, exc)

        self._transition(PipelineState.SIMULATING)
        started = self._clock()
        try:
            simulation = await self._ledger.simulate(envelope)
        except MarketError as exc:
            return self._stop(PipelineState.SIMULATE_FAILED, PipelineState.SIMULATING, exc)
        if simulation.error:
            return self._stop(
                PipelineState.SIMULATE_FAILED,
                PipelineState.SIMULATING,
                SimulateFailed(simulation.error),
            )
        try:
            effect = self._contract.decode(self.intent.operation_name, simulation.result_xdr)
        except DecodeError as exc:
            return self._stop(PipelineState.SIMULATE_FAILED, PipelineState.SIMULATING, exc)
        self._record("simulating", started)
        self._transition(PipelineState.SIMULATE_OK)
        simulated = Simulated(effect=effect, min_resource_fee=simulation.min_resource_fee)
        self.outcomes.append(simulated)

        if self.intent.read_only:
            self._finish(failed=False)
            return simulated

        signed = await self._sign(envelope, simulation)
        if isinstance(signed, Failed):
            return signed
        return await self._submit(signed, expected_effect=effect)

    async def confirm(
        self,
        *,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
    ) -> Confirmed | ConfirmTimedOut | Failed:
        if self.state != PipelineState.SUBMITTED or self._submitted is None:
            raise RuntimeError(f"cannot confirm from state {self.state.value}")
        submitted = self._submitted
        self._transition(PipelineState.CONFIRMING)
        started = self._clock()
        deadline = started + timeout_s
        while True:
            try:
                lookup = await self._ledger.get_transaction(submitted.tx_hash)
            except NetworkError as exc:
                # Unknown, not failed; keep polling until the deadline.
                self._log.warning("confirm_poll_error tx_hash=%s error=%s", submitted.tx_hash, exc)
            else:
                if lookup.status == "SUCCESS":
                    try:
                        effect = (
                            self._contract.decode(self.intent.operation_name, lookup.return_value_xdr)
                            if lookup.return_value_xdr is not None
                            else submitted.expected_effect
                        )
                    except DecodeError as exc:
                        self._log.warning("confirm_decode_error tx_hash=%s error=%s", submitted.tx_hash, exc)
                        effect = submitted.expected_effect
                    self._record("confirming", started)
                    self._transition(PipelineState.CONFIRMED)
                    self._finish(failed=False)
                    confirmed = Confirmed(tx_hash=submitted.tx_hash, effect=effect)
                    self.outcomes.append(confirmed)
                    return confirmed
                if lookup.status == "FAILED":
                    return self._stop(
                        PipelineState.SUBMIT_FAILED,
                        PipelineState.CONFIRMING,
                        SubmitFailed(f"transaction {submitted.tx_hash} failed on ledger", stage="confirming"),
                    )
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(poll_interval_s, remaining))

        waited = self._clock() - started
        self._transition(PipelineState.CONFIRM_TIMEOUT)
        self._finish(failed=False)
        self._log.warning("confirm_timeout tx_hash=%s waited_s=%.1f", submitted.tx_hash, waited)
        timed_out = ConfirmTimedOut(tx_hash=submitted.tx_hash, waited_s=waited)
        self.outcomes.append(timed_out)
        return timed_out

    async def _source_account(self) -> Account | None:
        if self.intent.read_only:
            return None
        return await self._ledger.load_account(self.intent.source_account)

    async def _sign(self, envelope: TransactionEnvelope, simulation: SimulationResult) -> Signed | Failed:
        try:
            assembled = await self._ledger.assemble(envelope, simulation)
        except MarketError as exc:
            return self._stop(PipelineState.SIMULATE_FAILED, PipelineState.SIMULATING, exc)

        self._transition(PipelineState.SIGNING)
        identity = self._wallet.identity() if self._wallet is not None else None
        if (
            self._wallet is None
            or not self._wallet.connected
            or identity is None
            or identity.public_key != self.intent.source_account
        ):
            return self._stop(
                PipelineState.SIGN_FAILED,
                PipelineState.SIGNING,
                NotConnected("wallet disconnected or changed since the intent was built", stage="signing"),
            )
        started = self._clock()
        try:
            signed_xdr = await self._wallet.sign(assembled.to_xdr(), self.intent.network_passphrase)
        except MarketError as exc:
            return self._stop(PipelineState.SIGN_FAILED, PipelineState.SIGNING, exc)
        self._record("signing", started)
        self._transition(PipelineState.SIGNED)
        signed = Signed(envelope_xdr=signed_xdr)
        self.outcomes.append(signed)
        return signed

    async def _submit(self, signed: Signed, *, expected_effect: Any) -> Submitted | Failed:
        self._transition(PipelineState.SUBMITTING)
        started = self._clock()
        try:
            result = await self._ledger.send(signed.envelope_xdr)
        except MarketError as exc:
            return self._stop(PipelineState.SUBMIT_FAILED, PipelineState.SUBMITTING, exc)
        if result.status not in _SUBMIT_ACCEPTED:
            reason = f"ledger answered {result.status}"
            if result.error:
                reason = f"{reason}: {result.error}"
            return self._stop(PipelineState.SUBMIT_FAILED, PipelineState.SUBMITTING, SubmitFailed(reason))
        self._record("submitting", started)
        self._transition(PipelineState.SUBMITTED)
        submitted = Submitted(tx_hash=result.tx_hash, expected_effect=expected_effect)
        self._submitted = submitted
        self.outcomes.append(submitted)
        # Counted now; a later confirm() replaces this entry rather than adding a run.
        self._finish(failed=False)
        self._log.info(
            "pipeline_submitted",
            extra={
                "extra_fields": {
                    "operation": self.intent.operation_name,
                    "tx_hash": result.tx_hash,
                    "status": result.status,
                }
            },
        )
        return submitted

    def _stop(self, terminal: PipelineState, stage: PipelineState, error: MarketError) -> Failed:
        self._transition(terminal)
        return self._fail(stage, error)

    def _fail(self, stage: PipelineState, error: MarketError) -> Failed:
        self._finish(failed=True)
        self._log.warning(
            "pipeline_failed",
            extra={
                "extra_fields": {
                    "operation": self.intent.operation_name,
                    "stage": stage.value,
                    "error_type": error.__class__.__name__,
                    "error": error.reason,
                }
            },
        )
        failed = Failed(stage=stage, error=error)
        self.outcomes.append(failed)
        return failed

    def _transition(self, new_state: PipelineState) -> None:
        previous = self.state
        self.state = new_state
        self.transitions.append((previous, new_state))
        self._log.info(
            "pipeline_transition",
            extra={
                "extra_fields": {
                    "operation": self.intent.operation_name,
                    "from": previous.value,
                    "to": new_state.value,
                }
            },
        )

    def _record(self, stage: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_stage(stage, (self._clock() - started) * 1000)

    def _finish(self, *, failed: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_terminal(
                self.state.value,
                failed=failed,
                supersedes=self._recorded_terminal,
            )
        self._recorded_terminal = self.state.value


async def run_read(
    contract: ContractClient,
    ledger: LedgerGateway,
    query_name: str,
    *args: Any,
    metrics: PipelineMetrics | None = None,
) -> Any:
    """Simulate a read-only query and return its decoded effect, raising on failure."""
    intent = contract.build_read_query(query_name, *contract.encode_query_args(query_name, *args))
    outcome = await TransactionPipeline(intent, contract=contract, ledger=ledger, metrics=metrics).run()
    if isinstance(outcome, Failed):
        raise outcome.error
    if not isinstance(outcome, Simulated):
        raise RuntimeError(f"read query {query_name} ended with {type(outcome).__name__}")
    return outcome.effect
