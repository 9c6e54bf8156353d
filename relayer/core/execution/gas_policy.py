"""
Gas escalation policy for retried and nonce-burning transactions.

Pure functions over wei integers; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from .models import GasParams


def _decimal(value: float) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class GasEscalationPolicy:
    """
    Maps (base fee, attempt number) to a capped fee bid.

    ``attempt`` is 0-indexed and equals the record's ``retry_count`` at the
    time the new attempt is decided, so the first retry already bids
    ``escalation_factor ** 1`` over the base fee.
    """

    escalation_factor: float = 1.2
    max_multiplier: float = 3.0
    priority_fee_wei: int = 2_000_000_000

    def __post_init__(self) -> None:
        if self.escalation_factor < 1.0:
            raise ValueError("escalation_factor must be >= 1.0")
        if self.max_multiplier < 1.0:
            raise ValueError("max_multiplier must be >= 1.0")
        if self.priority_fee_wei < 0:
            raise ValueError("priority_fee_wei must be >= 0")

    @classmethod
    def from_settings(cls, settings) -> "GasEscalationPolicy":
        return cls(
            escalation_factor=settings.worker_gas_escalation,
            max_multiplier=settings.worker_max_gas_multiplier,
            priority_fee_wei=settings.worker_priority_fee_wei,
        )

    def _multiplier(self, attempt: int) -> Decimal:
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        cap = _decimal(self.max_multiplier)
        factor = _decimal(self.escalation_factor)
        # Once the cap is reached it stays reached; skip huge powers.
        value = Decimal(1)
        for _ in range(attempt + 1):
            value *= factor
            if value >= cap:
                return cap
        return value

    def multiplier(self, attempt: int) -> float:
        return float(self._multiplier(attempt))

    def escalate(self, base_fee: int, attempt: int) -> GasParams:
        if base_fee < 0:
            raise ValueError(f"base_fee must be >= 0, got {base_fee}")
        max_fee = (Decimal(base_fee) * self._multiplier(attempt)).to_integral_value(rounding=ROUND_FLOOR)
        return GasParams(
            max_fee_per_gas=int(max_fee),
            max_priority_fee_per_gas=self.priority_fee_wei,
        )

    def burn_fees(
        self,
        base_fee: int,
        last_attempted: GasParams,
        safety_margin: float = 1.5,
    ) -> GasParams:
        """
        Fees for a replacement at the same nonce.

        Both fee components must exceed the stuck transaction's by the margin,
        otherwise nodes reject the replacement as underpriced.
        """
        if base_fee < 0:
            raise ValueError(f"base_fee must be >= 0, got {base_fee}")
        if safety_margin <= 1.0:
            raise ValueError("safety_margin must be > 1.0")
        margin = _decimal(safety_margin)

        reference = max(last_attempted.max_fee_per_gas or 0, base_fee)
        max_fee = int((Decimal(reference) * margin).to_integral_value(rounding=ROUND_CEILING))

        priority_reference = max(last_attempted.max_priority_fee_per_gas or 0, self.priority_fee_wei)
        priority = int((Decimal(priority_reference) * margin).to_integral_value(rounding=ROUND_CEILING))

        return GasParams(
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=min(priority, max_fee),
        )
