from __future__ import annotations


class RaffleError(RuntimeError):
    """Base class for every error raised by the settlement engine."""


class ConfigError(RaffleError):
    pass


class ValidationError(RaffleError):
    """Malformed completion or dispersal input."""


class StoreError(RaffleError):
    pass


class StaleRaffleError(StoreError):
    """The stored raffle changed status under us (lost compare-and-set)."""


class AuditError(RaffleError):
    pass


class SettlementError(RaffleError):
    """A prize payment did not go through. Recoverable on the next pass."""


class SettlementSubmissionError(SettlementError):
    """The node rejected the transaction or it could not be broadcast."""


class InsufficientFundsError(SettlementSubmissionError):
    def __init__(self, needed: int, available: int) -> None:
        super().__init__(
            f"Treasury balance too low: need {needed} sompi, have {available} sompi"
        )
        self.needed = needed
        self.available = available


class SettlementTimeoutError(SettlementError):
    """A maturity wait exceeded its deadline."""

    phase = "settlement"

    def __init__(self, txid: str, timeout_s: float) -> None:
        super().__init__(
            f"{self.phase} transaction {txid} not observed within {timeout_s:.0f}s"
        )
        self.txid = txid
        self.timeout_s = timeout_s


class CommitTimeoutError(SettlementTimeoutError):
    phase = "commit"


class RevealTimeoutError(SettlementTimeoutError):
    phase = "reveal"


class IndexerError(RaffleError):
    """The external ledger indexer could not be queried."""
