from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from channelprov.core.config import get_settings


class StepBudget:
    """Upper bound on strategy attempts plus poll iterations for one invocation."""

    def __init__(self, limit: int) -> None:
        self._limit = max(0, int(limit))
        self._used = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> int:
        return max(0, self._limit - self._used)

    @property
    def exhausted(self) -> bool:
        return self._used >= self._limit

    def consume(self, steps: int = 1) -> bool:
        if self._used + steps > self._limit:
            return False
        self._used += steps
        return True


@dataclass
class ProvisioningContext:
    # In-flight calls finish and are logged; no new attempt starts once cancelled.
    budget: StepBudget = field(
        default_factory=lambda: StepBudget(get_settings().provisioning_step_budget)
    )
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def stop_reason(self) -> str | None:
        # Checked before every strategy attempt and poll iteration.
        if self.cancelled:
            return "cancelled"
        if self.budget.exhausted:
            return "step_budget_exhausted"
        return None
