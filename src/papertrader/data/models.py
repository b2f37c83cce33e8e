# file: papertrader/data/models.py

"""
Records received from the upstream collaborators (price feed and
forecasting service). Payloads are validated here, at the boundary, so the
engine only ever sees finite, well-formed numbers.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from papertrader.errors import InvalidPayload


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _BoundaryRecord(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False, extra="ignore")

    @field_validator("symbol", check_fields=False)
    @classmethod
    def _normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol must not be empty")
        return v

    @field_validator("timestamp", check_fields=False)
    @classmethod
    def _normalize_timestamp(cls, v: datetime) -> datetime:
        return _utc(v)

    @classmethod
    def parse(cls, payload: Union[dict, str, bytes]):
        """Validates a dict or JSON document, raising InvalidPayload on rejection."""
        try:
            if isinstance(payload, (str, bytes)):
                return cls.model_validate_json(payload)
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayload(f"Malformed {cls.__name__}: {e}") from e


class MarketPrice(_BoundaryRecord):
    """Latest traded price for a symbol."""

    symbol: str
    price: float = Field(gt=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Prediction(_BoundaryRecord):
    """Forecast snapshot. Consumed, never mutated, by the engine."""

    symbol: str
    predicted_price: float = Field(gt=0)
    predicted_return: float
    confidence_score: float = Field(ge=0.0, le=1.0)
    horizon_hours: int = Field(default=24, gt=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    id: Optional[int] = None
    quantile_10: Optional[float] = None
    quantile_90: Optional[float] = None
    model_version: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Prediction":
        return cls.model_validate(dict(row))
