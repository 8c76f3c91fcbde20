from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from stellar_sdk import xdr

from energymarket.config import MarketConfig
from energymarket.errors import ConfirmTimeout, NotConnected, WriteInProgress
from energymarket.ledger.contract_client import ContractClient, validate_quantity
from energymarket.ledger.gateway import LedgerGateway
from energymarket.ledger.pipeline import (
    Confirmed,
    ConfirmTimedOut,
    Failed,
    PipelineState,
    Submitted,
    TransactionPipeline,
    run_read,
)
from energymarket.market.view import MarketView
from energymarket.schemas import EnergySource, EnergyTrade, Offer, UserProfile, WalletIdentity
from energymarket.telemetry.metrics import PipelineMetrics
from energymarket.wallet.session import WalletSession


@dataclass(frozen=True)
class WriteReceipt:
    operation: str
    tx_hash: str
    state: PipelineState
    effect: Any = None


class MarketService:
    """Plain-data surface over the wallet, the pipeline and the market cache."""

    def __init__(
        self,
        *,
        contract: ContractClient,
        ledger: LedgerGateway,
        wallet: WalletSession,
        market: MarketConfig = MarketConfig(),
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._contract = contract
        self._ledger = ledger
        self._wallet = wallet
        self._market = market
        self._metrics = metrics or PipelineMetrics()
        self._write_lock = asyncio.Lock()
        self._log = logging.getLogger(self.__class__.__name__)
        self.view = MarketView(self.query, refresh_interval_s=market.refresh_interval_s)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def query(self, query_name: str, *args: Any) -> Any:
        return await run_read(self._contract, self._ledger, query_name, *args, metrics=self._metrics)

    async def connect_wallet(self) -> str:
        return await self._wallet.connect()

    def disconnect_wallet(self) -> None:
        self._wallet.disconnect()

    def wallet_identity(self) -> WalletIdentity:
        return self._wallet.identity()

    async def get_offer(self, offer_id: int) -> Offer:
        return await self.query("get_offer", offer_id)

    async def offers_by_type(self, source: str | EnergySource) -> tuple[int, ...] | tuple[Offer, ...]:
        return await self.query("get_offers_by_type", source)

    async def get_trade(self, trade_id: int) -> EnergyTrade:
        return await self.query("get_trade", trade_id)

    async def user_profile(self, address: str | None = None) -> UserProfile:
        target = address or self._wallet.identity().public_key
        if not target:
            raise NotConnected("pass an address or connect a wallet to look up a profile")
        return await self.query("get_user_profile", target)

    async def create_offer(
        self,
        *,
        energy_amount: Any,
        price_per_unit: Any,
        source: str | EnergySource,
        valid_for_s: Any = None,
        wait: bool = False,
    ) -> WriteReceipt:
        amount = validate_quantity("energy_amount", energy_amount)
        price = validate_quantity("price_per_unit", price_per_unit)
        valid_for = validate_quantity(
            "valid_for",
            self._market.default_valid_for_s if valid_for_s is None else valid_for_s,
        )
        parsed_source = source if isinstance(source, EnergySource) else EnergySource.parse(source)
        identity = self._signer()
        args = self._contract.encode_create_offer(
            seller=identity.public_key,
            energy_amount=amount,
            price_per_unit=price,
            source=parsed_source,
            valid_for_s=valid_for,
        )
        return await self._write("create_offer", args, identity, wait=wait)

    async def purchase_offer(self, *, offer_id: Any, energy_amount: Any, wait: bool = False) -> WriteReceipt:
        parsed_id = validate_quantity("offer_id", offer_id)
        amount = validate_quantity("energy_amount", energy_amount)
        identity = self._signer()
        args = self._contract.encode_execute_trade(
            buyer=identity.public_key,
            offer_id=parsed_id,
            energy_amount=amount,
        )
        return await self._write("execute_trade", args, identity, wait=wait)

    async def cancel_offer(self, *, offer_id: Any, wait: bool = False) -> WriteReceipt:
        parsed_id = validate_quantity("offer_id", offer_id)
        identity = self._signer()
        args = self._contract.encode_cancel_offer(
            seller=identity.public_key,
            offer_id=parsed_id,
        )
        return await self._write("cancel_offer", args, identity, wait=wait)

    def _signer(self) -> WalletIdentity:
        identity = self._wallet.identity()
        if not identity.public_key:
            raise NotConnected("connect a wallet before submitting a transaction", stage="built")
        return identity

    async def _write(
        self,
        operation: str,
        args: tuple[xdr.SCVal, ...],
        identity: WalletIdentity,
        *,
        wait: bool,
    ) -> WriteReceipt:
        # One signing prompt at a time; reads and refreshes are not held up.
        if self._write_lock.locked():
            raise WriteInProgress(f"another write is still in flight; {operation} not started")
        async with self._write_lock:
            intent = self._contract.build_write_intent(operation, args, identity)
            pipeline = TransactionPipeline(
                intent,
                contract=self._contract,
                ledger=self._ledger,
                wallet=self._wallet,
                metrics=self._metrics,
            )
            outcome = await pipeline.run()
            if isinstance(outcome, Failed):
                raise outcome.error
            if not isinstance(outcome, Submitted):
                raise RuntimeError(f"{operation} ended with {type(outcome).__name__}")

            receipt = WriteReceipt(
                operation=operation,
                tx_hash=outcome.tx_hash,
                state=pipeline.state,
                effect=outcome.expected_effect,
            )
            if wait:
                confirmed = await pipeline.confirm(
                    timeout_s=self._market.confirm_timeout_s,
                    poll_interval_s=self._market.confirm_poll_interval_s,
                )
                if isinstance(confirmed, Failed):
                    raise confirmed.error
                if isinstance(confirmed, ConfirmTimedOut):
                    # The write may still land; refresh anyway and report the unknown outcome.
                    await self.view.on_offer_created()
                    raise ConfirmTimeout(
                        f"{operation} {confirmed.tx_hash} not confirmed after {confirmed.waited_s:.0f}s; "
                        "re-query before resubmitting"
                    )
                if isinstance(confirmed, Confirmed):
                    receipt = WriteReceipt(
                        operation=operation,
                        tx_hash=confirmed.tx_hash,
                        state=pipeline.state,
                        effect=confirmed.effect,
                    )

        self._log.info(
            "market_write_complete",
            extra={
                "extra_fields": {
                    "operation": operation,
                    "tx_hash": receipt.tx_hash,
                    "state": receipt.state.value,
                }
            },
        )
        await self.view.on_offer_created()
        return receipt
