"""Single owner of the simulated inventory position."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from analysis.models import InventoryState, SimulatedExecution

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Holds the current InventoryState; writes are serialized through a lock.

    Readers get the immutable state by value via ``snapshot()``.
    """

    def __init__(self, max_position: Decimal, position: Decimal = Decimal('0')) -> None:
        self._state = InventoryState(position=position, max_position=max_position)
        self._lock = asyncio.Lock()
        self.fills = 0

    def snapshot(self) -> InventoryState:
        return self._state

    async def apply(self, execution: SimulatedExecution) -> InventoryState:
        """Apply a successful simulated fill and return the new state."""
        if not execution.succeeded or execution.position_delta == 0:
            return self._state
        async with self._lock:
            self._state = self._state.with_fill(execution.position_delta)
            self.fills += 1
            logger.info(
                "Inventory %+s -> position %s / %s",
                execution.position_delta,
                self._state.position,
                self._state.max_position,
            )
            return self._state
