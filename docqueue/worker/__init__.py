"""
Worker module.
Contains the consumer loop and handler lookup.
"""

from docqueue.worker.handlers import MessageHandler, log_message, resolve_handler
from docqueue.worker.main import Worker, run

__all__ = ["Worker", "MessageHandler", "log_message", "resolve_handler", "run"]
