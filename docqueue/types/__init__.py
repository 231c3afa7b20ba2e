"""
Type definitions for docqueue.
"""

from docqueue.types.message import (
    Message,
    to_naive_utc,
    utcnow,
)

__all__ = [
    "Message",
    "to_naive_utc",
    "utcnow",
]
