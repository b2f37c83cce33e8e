# file: papertrader/errors.py

"""Error kinds raised by the trading engine.

Expected "nothing to do" outcomes (hold signals, positions already closed,
same-direction signals) are not errors: the engine returns ``None`` or an
empty list for those.
"""


class EngineError(Exception):
    """Base class for every failure surfaced by the engine."""


class NoPredictionAvailable(EngineError):
    """No forecast has been recorded for the symbol yet."""

    def __init__(self, symbol: str):
        super().__init__(f"No prediction available for {symbol}")
        self.symbol = symbol


class PriceUnavailable(EngineError):
    """The current market price could not be obtained; the cycle must abort."""

    def __init__(self, symbol: str, reason: str = ""):
        msg = f"Price unavailable for {symbol}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.symbol = symbol


class PersistenceFailure(EngineError):
    """A write to the store failed and was rolled back."""


class InvalidPayload(EngineError):
    """An upstream record (prediction, market price) failed validation."""


class InvalidTransition(EngineError):
    """An operation was attempted on a position in the wrong state.

    PositionManager absorbs these as no-ops; the type exists for callers
    that drive the store directly.
    """
