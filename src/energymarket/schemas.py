from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from energymarket.errors import UnknownEnergySource


class EnergySource(str, Enum):
    SOLAR = "Solar"
    WIND = "Wind"
    HYDRO = "Hydro"
    BIOMASS = "Biomass"
    OTHER = "Other"

    @classmethod
    def parse(cls, raw: str) -> EnergySource:
        if not isinstance(raw, str):
            raise UnknownEnergySource(f"energy source must be a string, got {type(raw).__name__}")
        needle = raw.strip().lower()
        for source in cls:
            if source.value.lower() == needle:
                return source
        raise UnknownEnergySource(f"unknown energy source: {raw!r}")


class OfferStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class Offer:
    offer_id: int
    seller: str
    energy_amount: int
    price_per_unit: int
    source: EnergySource
    created_ts: datetime
    expiry_ts: datetime
    status: OfferStatus = OfferStatus.ACTIVE

    def status_at(self, now: datetime | None = None) -> OfferStatus:
        if self.status != OfferStatus.ACTIVE:
            return self.status
        now = now or datetime.now(timezone.utc)
        return OfferStatus.ACTIVE if self.expiry_ts > now else OfferStatus.EXPIRED

    def is_live(self, now: datetime | None = None) -> bool:
        return self.status_at(now) == OfferStatus.ACTIVE


@dataclass(frozen=True)
class MarketStatus:
    active_offer_count: int
    completed_trade_count: int
    total_energy_traded: int
    total_offers_created: int


@dataclass(frozen=True)
class EnergyTrade:
    trade_id: int
    offer_id: int
    seller: str
    buyer: str
    energy_amount: int
    total_price: int
    source: EnergySource
    trade_ts: datetime


@dataclass(frozen=True)
class UserProfile:
    address: str
    total_energy_sold: int
    total_energy_bought: int
    reputation_score: int
    active_offer_ids: tuple[int, ...]
    trade_history_ids: tuple[int, ...]


@dataclass(frozen=True)
class WalletIdentity:
    public_key: str | None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED


@dataclass(frozen=True)
class TransactionIntent:
    operation_name: str
    arguments: tuple[Any, ...]
    source_account: str
    fee: int
    timeout_s: int
    network_passphrase: str
    read_only: bool
    created_ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
