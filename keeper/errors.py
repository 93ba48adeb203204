"""
Exception taxonomy for the keeper.

Every failure that crosses a component boundary is one of these. The
orchestrator classifies them by ``kind`` when a cycle step fails, so the
kind strings are stable and appear in logs, metrics and alerts.
"""

from __future__ import annotations

from typing import Any, Optional


class KeeperError(Exception):
    """Base class for all keeper errors."""

    kind: str = "unexpected"
    retryable: bool = True

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.details = details


class ConfigValidationError(KeeperError):
    """Missing or malformed configuration. Fatal at startup."""

    kind = "config"
    retryable = False


class CredentialError(KeeperError):
    """Signing credential missing, unreadable or not the configured keeper."""

    kind = "credential"
    retryable = False


class KeypairExistsError(KeeperError):
    """Refusing to overwrite an existing keypair file."""

    kind = "credential"
    retryable = False


class ConnectivityError(KeeperError):
    """RPC or aggregator transport failure."""

    kind = "connectivity"


class InsufficientLiquidity(KeeperError):
    """The aggregator cannot route the requested swap."""

    kind = "insufficient_liquidity"


class SlippageExceeded(KeeperError):
    """Realised output would fall below the quote's minimum out amount."""

    kind = "slippage_exceeded"


class PriceImpactExceeded(KeeperError):
    """Quoted price impact is above the configured ceiling."""

    kind = "price_impact"


class StaleQuote(KeeperError):
    """Quote was already consumed or its validity window has passed."""

    kind = "stale_quote"


class Indeterminate(KeeperError):
    """A submission was made but its outcome could not be observed in time.

    The caller must re-query the ledger before retrying anything.
    """

    kind = "indeterminate"

    def __init__(self, message: str = "", signature: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.signature = signature


class LedgerTransactionFailed(KeeperError):
    """The ledger executed the transaction and reported an error."""

    kind = "transaction_failed"

    def __init__(self, message: str = "", signature: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.signature = signature


class NothingToHarvest(KeeperError):
    """Harvestable balance is below the configured threshold. Not a failure."""

    kind = "nothing_to_harvest"

    def __init__(self, available: int = 0, threshold: int = 0) -> None:
        super().__init__(f"harvestable {available} below threshold {threshold}")
        self.available = available
        self.threshold = threshold


class LowOperatingBalance(KeeperError):
    """Keeper SOL balance fell below the minimum needed to pay for transactions."""

    kind = "low_balance"

    def __init__(self, balance: int = 0, minimum: int = 0) -> None:
        super().__init__(f"keeper balance {balance} lamports below minimum {minimum}")
        self.balance = balance
        self.minimum = minimum


class StaleExclusionSet(KeeperError):
    """Distribution refused because the cached exclusion set is too old."""

    kind = "stale_exclusions"


class PreflightFailure(KeeperError):
    """Preflight artifact reported an overall failure."""

    kind = "preflight"
    retryable = False

    def __init__(self, message: str = "", artifact: Any = None) -> None:
        super().__init__(message)
        self.artifact = artifact


def failure_kind(exc: BaseException) -> str:
    """Classify any exception into a failure kind string."""
    if isinstance(exc, KeeperError):
        return exc.kind
    return "unexpected"
