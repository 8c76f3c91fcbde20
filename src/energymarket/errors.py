from __future__ import annotations


class MarketError(Exception):
    """Base for every classified failure surfaced to callers.

    ``stage`` names where the failure was classified: a pipeline state such as
    ``"simulating"``, or one of ``"validation"``, ``"wallet"``, ``"decode"``.
    """

    default_stage = "unknown"

    def __init__(self, reason: str, *, stage: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.stage = stage or self.default_stage

    def __str__(self) -> str:
        return f"{self.__class__.__name__}[{self.stage}]: {self.reason}"


class WalletUnavailable(MarketError):
    default_stage = "wallet"


class ConnectionRejected(MarketError):
    default_stage = "wallet"


class NotConnected(MarketError):
    default_stage = "wallet"


class SigningRejected(MarketError):
    default_stage = "signing"


class UnknownEnergySource(MarketError):
    default_stage = "validation"


class InvalidQuantity(MarketError):
    default_stage = "validation"


class InvalidAddress(MarketError):
    default_stage = "validation"


class SimulateFailed(MarketError):
    default_stage = "simulating"


class SubmitFailed(MarketError):
    default_stage = "submitting"


class ConfirmTimeout(MarketError):
    """Outcome unknown: the transaction may still land. Re-query, never resubmit."""

    default_stage = "confirming"


class DecodeError(MarketError):
    default_stage = "decode"


class NetworkError(MarketError):
    default_stage = "network"


class WriteInProgress(MarketError):
    default_stage = "validation"


class UnsupportedSortKey(ValueError):
    pass
