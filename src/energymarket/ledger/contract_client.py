from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from stellar_sdk import Account, Keypair, StrKey, TransactionBuilder, TransactionEnvelope, scval, xdr

from energymarket.config import LedgerConfig
from energymarket.errors import DecodeError, InvalidAddress, InvalidQuantity, NotConnected
from energymarket.schemas import (
    EnergySource,
    EnergyTrade,
    MarketStatus,
    Offer,
    OfferStatus,
    TransactionIntent,
    UserProfile,
    WalletIdentity,
)

U64_MAX = 2**64 - 1

READ_OPERATIONS = frozenset(
    {
        "get_market_status",
        "get_active_offers",
        "get_offer",
        "get_trade",
        "get_user_profile",
        "get_offers_by_type",
    }
)
WRITE_OPERATIONS = frozenset({"create_offer", "execute_trade", "cancel_offer"})


def validate_quantity(name: str, value: Any) -> int:
    """Coerce a user-supplied quantity to a positive u64, or raise ``InvalidQuantity``."""
    if isinstance(value, bool):
        raise InvalidQuantity(f"{name} must be a positive integer, got {value!r}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise InvalidQuantity(f"{name} must be a positive integer, got {value!r}")
    if parsed <= 0:
        raise InvalidQuantity(f"{name} must be > 0, got {parsed}")
    if parsed > U64_MAX:
        raise InvalidQuantity(f"{name} exceeds u64 range")
    return parsed


def validate_address(name: str, value: Any) -> str:
    """Accept an account (G...) or contract (C...) strkey, or raise ``InvalidAddress``."""
    if isinstance(value, str):
        candidate = value.strip()
        if StrKey.is_valid_ed25519_public_key(candidate) or StrKey.is_valid_contract(candidate):
            return candidate
    raise InvalidAddress(f"{name} must be a G... account or C... contract address, got {value!r}")


class ContractClient:
    """Encodes domain values into contract arguments and decodes results back."""

    def __init__(self, ledger: LedgerConfig) -> None:
        self._ledger = ledger

    @property
    def contract_id(self) -> str:
        return self._ledger.contract_id

    def encode_energy_source(self, raw: str | EnergySource) -> xdr.SCVal:
        source = raw if isinstance(raw, EnergySource) else EnergySource.parse(raw)
        # Unit enum variants travel as a one-element vec holding the variant symbol.
        return scval.to_vec([scval.to_symbol(_SOURCE_SYMBOLS[source])])

    def encode_create_offer(
        self,
        *,
        seller: str,
        energy_amount: int,
        price_per_unit: int,
        source: EnergySource,
        valid_for_s: int,
    ) -> tuple[xdr.SCVal, ...]:
        return (
            scval.to_address(seller),
            scval.to_uint64(energy_amount),
            scval.to_uint64(price_per_unit),
            self.encode_energy_source(source),
            scval.to_uint64(valid_for_s),
        )

    def encode_execute_trade(self, *, buyer: str, offer_id: int, energy_amount: int) -> tuple[xdr.SCVal, ...]:
        return (scval.to_address(buyer), scval.to_uint64(offer_id), scval.to_uint64(energy_amount))

    def encode_cancel_offer(self, *, seller: str, offer_id: int) -> tuple[xdr.SCVal, ...]:
        return (scval.to_address(seller), scval.to_uint64(offer_id))

    def encode_query_args(self, query_name: str, *args: Any) -> tuple[xdr.SCVal, ...]:
        if query_name in {"get_market_status", "get_active_offers"}:
            if args:
                raise ValueError(f"{query_name} takes no arguments")
            return ()
        if len(args) != 1:
            raise ValueError(f"{query_name} takes exactly one argument")
        (arg,) = args
        if isinstance(arg, xdr.SCVal):
            return (arg,)
        if query_name in {"get_offer", "get_trade"}:
            return (scval.to_uint64(validate_quantity("id", arg)),)
        if query_name == "get_user_profile":
            return (scval.to_address(validate_address("address", arg)),)
        if query_name == "get_offers_by_type":
            return (self.encode_energy_source(arg),)
        raise ValueError(f"{query_name} is not a read-only contract query")

    def build_read_query(self, query_name: str, *args: xdr.SCVal) -> TransactionIntent:
        if query_name not in READ_OPERATIONS:
            raise ValueError(f"{query_name} is not a read-only contract query")
        # Simulation needs a source account, never a funded or signing one.
        disposable = Keypair.random().public_key
        return TransactionIntent(
            operation_name=query_name,
            arguments=tuple(args),
            source_account=disposable,
            fee=self._ledger.base_fee,
            timeout_s=self._ledger.tx_timeout_s,
            network_passphrase=self._ledger.network_passphrase,
            read_only=True,
        )

    def build_write_intent(
        self,
        operation_name: str,
        encoded_args: tuple[xdr.SCVal, ...],
        identity: WalletIdentity,
        *,
        fee: int | None = None,
        timeout_s: int | None = None,
    ) -> TransactionIntent:
        if operation_name not in WRITE_OPERATIONS:
            raise ValueError(f"{operation_name} is not a state-changing contract call")
        if not identity.public_key:
            raise NotConnected("a connected wallet is required to build a write", stage="built")
        return TransactionIntent(
            operation_name=operation_name,
            arguments=tuple(encoded_args),
            source_account=identity.public_key,
            fee=fee if fee is not None else self._ledger.base_fee,
            timeout_s=timeout_s if timeout_s is not None else self._ledger.tx_timeout_s,
            network_passphrase=self._ledger.network_passphrase,
            read_only=False,
        )

    def build_envelope(self, intent: TransactionIntent, account: Account | None = None) -> TransactionEnvelope:
        source = account if account is not None else Account(intent.source_account, 0)
        return (
            TransactionBuilder(
                source_account=source,
                network_passphrase=intent.network_passphrase,
                base_fee=intent.fee,
            )
            .append_invoke_contract_function_op(
                contract_id=self._ledger.contract_id,
                function_name=intent.operation_name,
                parameters=list(intent.arguments),
            )
            .set_timeout(intent.timeout_s)
            .build()
        )

    def decode(self, operation_name: str, result_xdr: str | None) -> Any:
        if result_xdr is None:
            if operation_name == "cancel_offer":
                return None
            raise DecodeError(f"{operation_name} returned no value")
        try:
            value = xdr.SCVal.from_xdr(result_xdr)
        except Exception as exc:  # the xdr unpacker raises several unrelated types
            raise DecodeError(f"{operation_name} returned unreadable xdr: {exc}") from exc
        try:
            return self._decode_value(operation_name, value)
        except DecodeError:
            raise
        except (ValueError, TypeError, KeyError, AttributeError, OverflowError, OSError) as exc:
            raise DecodeError(f"{operation_name} returned an unexpected shape: {exc}") from exc

    def _decode_value(self, operation_name: str, value: xdr.SCVal) -> Any:
        if operation_name == "get_market_status":
            return decode_market_status(value)
        if operation_name in {"get_active_offers", "get_offers_by_type"}:
            return decode_offer_list(value)
        if operation_name == "get_offer":
            return decode_offer(value)
        if operation_name == "get_user_profile":
            return decode_user_profile(value)
        if operation_name in {"create_offer", "execute_trade"}:
            return scval.from_uint64(value)
        if operation_name == "cancel_offer":
            if value.type != xdr.SCValType.SCV_VOID:
                raise DecodeError("cancel_offer should return void")
            return None
        if operation_name == "get_trade":
            return decode_trade(value)
        raise DecodeError(f"no decoder for {operation_name}")


_SOURCE_SYMBOLS: dict[EnergySource, str] = {
    EnergySource.SOLAR: "Solar",
    EnergySource.WIND: "Wind",
    EnergySource.HYDRO: "Hydro",
    EnergySource.BIOMASS: "Biomass",
    EnergySource.OTHER: "Other",
}
_SYMBOL_SOURCES = {symbol: source for source, symbol in _SOURCE_SYMBOLS.items()}


def decode_market_status(value: xdr.SCVal) -> MarketStatus:
    fields = _struct(value)
    return MarketStatus(
        active_offer_count=scval.from_uint64(_field(fields, "active_offers")),
        completed_trade_count=scval.from_uint64(_field(fields, "completed_trades")),
        total_energy_traded=scval.from_uint64(_field(fields, "total_energy_traded")),
        total_offers_created=scval.from_uint64(_field(fields, "total_offers_created")),
    )


def decode_offer(value: xdr.SCVal) -> Offer:
    fields = _struct(value)
    return Offer(
        offer_id=scval.from_uint64(_field(fields, "offer_id")),
        seller=scval.from_address(_field(fields, "seller")).address,
        energy_amount=scval.from_uint64(_field(fields, "energy_amount")),
        price_per_unit=scval.from_uint64(_field(fields, "price_per_unit")),
        source=decode_energy_source(_field(fields, "energy_type")),
        created_ts=_timestamp(scval.from_uint64(_field(fields, "creation_time"))),
        expiry_ts=_timestamp(scval.from_uint64(_field(fields, "expiration_time"))),
        status=OfferStatus.ACTIVE if scval.from_bool(_field(fields, "is_active")) else OfferStatus.INACTIVE,
    )


def decode_offer_list(value: xdr.SCVal) -> tuple[Offer, ...] | tuple[int, ...]:
    """A list of full offers, or of offer ids when the contract only returns ids."""
    items = _vec(value)
    if not items:
        return ()
    if all(item.type == xdr.SCValType.SCV_U64 for item in items):
        return tuple(scval.from_uint64(item) for item in items)
    if all(item.type == xdr.SCValType.SCV_MAP for item in items):
        return tuple(decode_offer(item) for item in items)
    raise DecodeError("offer list mixes ids and records")


def decode_trade(value: xdr.SCVal) -> EnergyTrade:
    fields = _struct(value)
    return EnergyTrade(
        trade_id=scval.from_uint64(_field(fields, "trade_id")),
        offer_id=scval.from_uint64(_field(fields, "offer_id")),
        seller=scval.from_address(_field(fields, "seller")).address,
        buyer=scval.from_address(_field(fields, "buyer")).address,
        energy_amount=scval.from_uint64(_field(fields, "energy_amount")),
        total_price=scval.from_uint64(_field(fields, "total_price")),
        source=decode_energy_source(_field(fields, "energy_type")),
        trade_ts=_timestamp(scval.from_uint64(_field(fields, "trade_time"))),
    )


def decode_user_profile(value: xdr.SCVal) -> UserProfile:
    fields = _struct(value)
    return UserProfile(
        address=scval.from_address(_field(fields, "user_address")).address,
        total_energy_sold=scval.from_uint64(_field(fields, "total_energy_sold")),
        total_energy_bought=scval.from_uint64(_field(fields, "total_energy_bought")),
        reputation_score=scval.from_uint64(_field(fields, "reputation_score")),
        active_offer_ids=tuple(scval.from_uint64(v) for v in _vec(_field(fields, "active_offers"))),
        trade_history_ids=tuple(scval.from_uint64(v) for v in _vec(_field(fields, "trade_history"))),
    )


def decode_energy_source(value: xdr.SCVal) -> EnergySource:
    items = _vec(value)
    if len(items) != 1 or items[0].type != xdr.SCValType.SCV_SYMBOL:
        raise DecodeError("energy type must be a unit enum variant")
    symbol = scval.from_symbol(items[0])
    source = _SYMBOL_SOURCES.get(symbol)
    if source is None:
        raise DecodeError(f"unknown energy type variant {symbol!r}")
    return source


def _struct(value: xdr.SCVal) -> dict[str, xdr.SCVal]:
    if value.type != xdr.SCValType.SCV_MAP or value.map is None:
        raise DecodeError(f"expected a struct, got {value.type.name}")
    fields: dict[str, xdr.SCVal] = {}
    for entry in value.map.sc_map:
        if entry.key.type != xdr.SCValType.SCV_SYMBOL:
            raise DecodeError("struct keys must be symbols")
        fields[scval.from_symbol(entry.key)] = entry.val
    return fields


def _field(fields: dict[str, xdr.SCVal], name: str) -> xdr.SCVal:
    if name not in fields:
        raise DecodeError(f"missing field {name!r}")
    return fields[name]


def _vec(value: xdr.SCVal) -> list[xdr.SCVal]:
    if value.type != xdr.SCValType.SCV_VEC or value.vec is None:
        raise DecodeError(f"expected a vec, got {value.type.name}")
    return list(value.vec.sc_vec)


def _timestamp(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
