"""
Reaper module.
Contains the expiry sweep for completed messages.
"""

from docqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
