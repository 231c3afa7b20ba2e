"""
Application constants.
Centralized location for all constant values used across the application.
"""

from datetime import datetime

# Sentinel for "never locked" / "deliver immediately"
UNLOCKED = datetime.min

# Store hint meaning "never expire"
TTL_NEVER = -1

# Lock registry key for messages without a partition key
DEFAULT_PARTITION = ""

# Table and index names
MESSAGES_TABLE = "messages"
INDEX_COMPLETED_EXPIRY = "completed_expiry"
INDEX_DEQUEUE = "dequeue"

# Columns of the composite dequeue index, in order
DEQUEUE_INDEX_COLUMNS = (
    "delivery_count",
    "locked_until",
    "scheduled_enqueue_time",
    "completed",
    "created",
    "partition_key",
)

# Default values
DEFAULT_STREAM_PAGE_SIZE = 100

# Metrics names
METRIC_MESSAGES_ENQUEUED = "messages_enqueued_total"
METRIC_MESSAGES_DUPLICATE = "messages_duplicate_total"
METRIC_MESSAGES_DEQUEUED = "messages_dequeued_total"
METRIC_MESSAGES_COMPLETED = "messages_completed_total"
METRIC_MESSAGES_FAILED = "messages_failed_total"
METRIC_MESSAGES_DELETED = "messages_deleted_total"
METRIC_MESSAGES_POISONED = "messages_poisoned_total"
METRIC_MESSAGES_EXPIRED = "messages_expired_total"
METRIC_HANDLER_DURATION = "message_handler_duration_seconds"

# Trace span names
SPAN_ENQUEUE = "queue.enqueue"
SPAN_DEQUEUE = "queue.dequeue"
SPAN_DEQUEUE_BATCH = "queue.dequeue_batch"
SPAN_DEQUEUE_PAGE = "queue.dequeue_page"
SPAN_PEEK = "queue.peek"
SPAN_COMPLETE = "queue.complete"
SPAN_FAIL = "queue.fail"
SPAN_DELETE = "queue.delete"
SPAN_HANDLE_MESSAGE = "worker.handle_message"
SPAN_SWEEP_EXPIRED = "reaper.sweep_expired"
