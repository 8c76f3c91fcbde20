from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from energymarket.config import AppConfig, WalletConfig, load_config
from energymarket.errors import MarketError, UnsupportedSortKey
from energymarket.ledger.contract_client import ContractClient, validate_address, validate_quantity
from energymarket.ledger.gateway import SorobanLedgerGateway
from energymarket.market.service import MarketService
from energymarket.market.view import MarketSnapshot, SortDirection, SortKey, sort_offers
from energymarket.schemas import EnergySource
from energymarket.telemetry.logging import setup_logging
from energymarket.telemetry.redaction import redact_secret
from energymarket.wallet.providers import BridgeWalletProvider, KeypairWalletProvider, WalletProvider
from energymarket.wallet.session import WalletSession


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        cfg = load_config()
    except ValueError as exc:
        parser.error(str(exc))
    log = logging.getLogger("energymarket.main")
    log.info(
        "energymarket_boot",
        extra={
            "extra_fields": {
                "correlation_id": str(uuid4()),
                "command": args.command,
                "rpc_url": cfg.ledger.rpc_url,
                "contract_id": cfg.ledger.contract_id,
                "wallet_provider": cfg.wallet.provider,
                "secret_key": redact_secret(cfg.wallet.secret_key),
            }
        },
    )
    try:
        return asyncio.run(_dispatch(cfg, args))
    except MarketError as exc:
        log.warning("command_failed command=%s error=%s", args.command, exc)
        print(str(exc), file=sys.stderr)
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="energymarket", description="Energy marketplace client")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Print the market status snapshot")

    offers = sub.add_parser("offers", help="List active offers")
    offers.add_argument("--sort", type=_sort_key, default=SortKey.PRICE)
    offers.add_argument("--desc", action="store_true")
    offers.add_argument("--source", type=_energy_source, default=None)

    create = sub.add_parser("create-offer", help="Create an energy offer")
    create.add_argument("--amount", required=True, help="Energy amount in kWh")
    create.add_argument("--price", required=True, help="Price per kWh in the smallest token unit")
    create.add_argument("--source", required=True, type=_energy_source)
    create.add_argument("--valid-for", default=None, help="Validity window in seconds")
    create.add_argument("--wait", action="store_true", help="Poll until the ledger confirms")

    buy = sub.add_parser("buy", help="Purchase energy from an offer")
    buy.add_argument("--offer-id", required=True)
    buy.add_argument("--amount", required=True)
    buy.add_argument("--wait", action="store_true")

    cancel = sub.add_parser("cancel", help="Cancel one of your offers")
    cancel.add_argument("--offer-id", required=True)
    cancel.add_argument("--wait", action="store_true")

    profile = sub.add_parser("profile", help="Show a user profile")
    profile.add_argument("--address", type=_address, default=None)

    trade = sub.add_parser("trade", help="Show a completed trade")
    trade.add_argument("--trade-id", required=True)

    sub.add_parser("watch", help="Poll the market and log each refresh")
    return parser


def build_wallet_provider(wallet: WalletConfig) -> WalletProvider:
    if wallet.provider == "bridge":
        return BridgeWalletProvider(wallet.bridge_url, request_timeout_s=wallet.request_timeout_s)
    return KeypairWalletProvider(wallet.secret_key)


async def _dispatch(cfg: AppConfig, args: argparse.Namespace) -> int:
    async with SorobanLedgerGateway(cfg.ledger) as ledger:
        service = MarketService(
            contract=ContractClient(cfg.ledger),
            ledger=ledger,
            wallet=WalletSession(build_wallet_provider(cfg.wallet)),
            market=cfg.market,
        )
        if args.command == "status":
            snapshot = await service.view.refresh()
            _print(snapshot.status)
        elif args.command == "offers":
            if args.source is not None:
                _print(await service.offers_by_type(args.source))
            else:
                await service.view.refresh()
                direction = SortDirection.DESC if args.desc else SortDirection.ASC
                _print(sort_offers(service.view.offers(), args.sort, direction))
        elif args.command == "create-offer":
            await service.connect_wallet()
            _print(
                await service.create_offer(
                    energy_amount=args.amount,
                    price_per_unit=args.price,
                    source=args.source,
                    valid_for_s=args.valid_for,
                    wait=args.wait,
                )
            )
        elif args.command == "buy":
            await service.connect_wallet()
            _print(await service.purchase_offer(offer_id=args.offer_id, energy_amount=args.amount, wait=args.wait))
        elif args.command == "cancel":
            await service.connect_wallet()
            _print(await service.cancel_offer(offer_id=args.offer_id, wait=args.wait))
        elif args.command == "profile":
            if args.address is None:
                await service.connect_wallet()
            _print(await service.user_profile(args.address))
        elif args.command == "trade":
            _print(await service.get_trade(validate_quantity("trade_id", args.trade_id)))
        elif args.command == "watch":
            await _watch(service)
        _log_metrics(service)
    return 0


async def _watch(service: MarketService) -> None:
    log = logging.getLogger("energymarket.main")
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    def _on_snapshot(snapshot: MarketSnapshot) -> None:
        log.info(
            "market_snapshot",
            extra={"extra_fields": {"snapshot": _jsonable(snapshot)}},
        )

    service.view.add_listener(_on_snapshot)
    service.view.start()
    try:
        await stop_event.wait()
    finally:
        await service.view.stop()
        log.info("energymarket_shutdown_complete")


def _log_metrics(service: MarketService) -> None:
    snapshot = service.metrics.snapshot()
    logging.getLogger("energymarket.main").info(
        "pipeline_metrics",
        extra={"extra_fields": _jsonable(snapshot)},
    )


def _sort_key(raw: str) -> SortKey:
    try:
        return SortKey.parse(raw)
    except UnsupportedSortKey as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _address(raw: str) -> str:
    try:
        return validate_address("address", raw)
    except MarketError as exc:
        raise argparse.ArgumentTypeError(exc.reason) from exc


def _energy_source(raw: str) -> EnergySource:
    try:
        return EnergySource.parse(raw)
    except MarketError as exc:
        raise argparse.ArgumentTypeError(exc.reason) from exc


def _print(value: Any) -> None:
    print(json.dumps(_jsonable(value), indent=2, sort_keys=True))


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


if __name__ == "__main__":
    sys.exit(main())
