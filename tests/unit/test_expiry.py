"""
Unit tests for expiry strategies.
"""

from datetime import timedelta

from sqlalchemy.dialects import sqlite

from docqueue.constants import TTL_NEVER
from docqueue.queue.expiry import (
    CompletedFieldExpiry,
    NoExpiry,
    StoreTimestampExpiry,
    build_expiry_strategy,
)
from docqueue.types.message import utcnow


def _compile(clause) -> str:
    return str(clause.compile(dialect=sqlite.dialect()))


class TestBuildExpiryStrategy:
    """Tests for strategy selection."""

    def test_no_expire_after_disables_expiry(self):
        assert isinstance(build_expiry_strategy(None), NoExpiry)
        assert isinstance(build_expiry_strategy(timedelta(0)), NoExpiry)
        assert isinstance(build_expiry_strategy(None, cosmos_db_compatibility=True), NoExpiry)

    def test_completed_field_by_default(self):
        strategy = build_expiry_strategy(timedelta(minutes=5))

        assert isinstance(strategy, CompletedFieldExpiry)
        assert strategy.expire_after == timedelta(minutes=5)

    def test_store_timestamp_with_cosmos_compatibility(self):
        strategy = build_expiry_strategy(timedelta(minutes=5), cosmos_db_compatibility=True)
        assert isinstance(strategy, StoreTimestampExpiry)


class TestStrategies:
    """Tests for the shared strategy interface."""

    def test_no_expiry(self):
        strategy = NoExpiry()

        assert strategy.expiry_index_field is None
        assert strategy.arm_expiry() == {}
        assert strategy.disarm_expiry() == {}
        assert strategy.expired_clause(utcnow()) is None

    def test_completed_field_expiry(self):
        """Completion stamp is the pivot; no extra columns are written."""
        strategy = CompletedFieldExpiry(timedelta(seconds=10))

        assert strategy.expiry_index_field == "completed"
        assert strategy.arm_expiry() == {}
        assert strategy.disarm_expiry() == {}
        assert "messages.completed" in _compile(strategy.expired_clause(utcnow()))

    def test_store_timestamp_expiry(self):
        """The ttl hint is armed with the expiry in seconds and disarmed to -1."""
        strategy = StoreTimestampExpiry(timedelta(minutes=2))

        assert strategy.expiry_index_field == "ts"
        assert strategy.arm_expiry() == {"ttl": 120}
        assert strategy.disarm_expiry() == {"ttl": TTL_NEVER}

        compiled = _compile(strategy.expired_clause(utcnow()))
        assert "messages.ttl" in compiled
        assert "messages.ts" in compiled
