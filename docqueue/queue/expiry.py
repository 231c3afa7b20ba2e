"""
Expiry strategies for completed messages.

The store removes completed messages some time after completion. Which
field drives that removal depends on the store: either the application's
``completed`` timestamp, or a store-managed ``ts`` write timestamp paired
with a per-document ``ttl`` hint (CosmosDB-style). Each variant is a
strategy with the same small interface, selected once at construction.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import ColumnElement, and_

from docqueue.constants import TTL_NEVER
from docqueue.db.models import messages_table


class ExpiryStrategy(Protocol):
    """Interface shared by all expiry variants."""

    expire_after: timedelta | None

    @property
    def expiry_index_field(self) -> str | None:
        """Column the expiry index is built over, or None for no index."""
        ...

    def arm_expiry(self) -> dict[str, Any]:
        """Column values that start the expiry clock on completion."""
        ...

    def disarm_expiry(self) -> dict[str, Any]:
        """Column values that cancel a pending expiry."""
        ...

    def expired_clause(self, now: datetime) -> ColumnElement[bool] | None:
        """Filter matching documents due for removal, or None if nothing expires."""
        ...


@dataclass(frozen=True)
class NoExpiry:
    """Completed messages live until deleted explicitly."""

    expire_after: timedelta | None = None

    @property
    def expiry_index_field(self) -> str | None:
        return None

    def arm_expiry(self) -> dict[str, Any]:
        return {}

    def disarm_expiry(self) -> dict[str, Any]:
        return {}

    def expired_clause(self, now: datetime) -> ColumnElement[bool] | None:
        return None


@dataclass(frozen=True)
class CompletedFieldExpiry:
    """Expiry pivots on the ``completed`` column; stamping it is the arming."""

    expire_after: timedelta

    @property
    def expiry_index_field(self) -> str | None:
        return "completed"

    def arm_expiry(self) -> dict[str, Any]:
        return {}

    def disarm_expiry(self) -> dict[str, Any]:
        return {}

    def expired_clause(self, now: datetime) -> ColumnElement[bool] | None:
        return and_(
            messages_table.c.completed.is_not(None),
            messages_table.c.completed <= now - self.expire_after,
        )


@dataclass(frozen=True)
class StoreTimestampExpiry:
    """
    Expiry pivots on the store-managed ``ts`` column.

    Every write refreshes ``ts``, so completion arms the clock by setting a
    positive ``ttl`` and failure disarms it with ``ttl = -1``.
    """

    expire_after: timedelta

    @property
    def ttl_seconds(self) -> int:
        return int(self.expire_after.total_seconds())

    @property
    def expiry_index_field(self) -> str | None:
        return "ts"

    def arm_expiry(self) -> dict[str, Any]:
        return {"ttl": self.ttl_seconds}

    def disarm_expiry(self) -> dict[str, Any]:
        return {"ttl": TTL_NEVER}

    def expired_clause(self, now: datetime) -> ColumnElement[bool] | None:
        # Armed ttl is always expire_after, so the cutoff is a constant
        return and_(
            messages_table.c.ttl > 0,
            messages_table.c.ts <= now - self.expire_after,
        )


def build_expiry_strategy(
    expire_after: timedelta | None,
    cosmos_db_compatibility: bool = False,
) -> ExpiryStrategy:
    """
    Select the expiry strategy for a queue.

    Args:
        expire_after: Time after completion before removal; None or zero disables expiry.
        cosmos_db_compatibility: Pivot on the store timestamp and ttl hint.

    Returns:
        The strategy instance.
    """
    if expire_after is None or expire_after <= timedelta(0):
        return NoExpiry()
    if cosmos_db_compatibility:
        return StoreTimestampExpiry(expire_after)
    return CompletedFieldExpiry(expire_after)
