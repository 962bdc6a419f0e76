"""
Prometheus metrics for the reservation engine
"""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "boxoffice_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

REQUEST_DURATION = Histogram(
    "boxoffice_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"]
)

LOCK_ACQUISITIONS = Counter(
    "boxoffice_lock_acquisitions_total",
    "Distributed lock acquisition attempts by outcome",
    ["outcome"]
)

BOOKING_TRANSITIONS = Counter(
    "boxoffice_booking_transitions_total",
    "Booking state transitions",
    ["to_status"]
)

TICKETS_RESERVED = Counter(
    "boxoffice_tickets_reserved_total",
    "Tickets moved to RESERVED"
)

TICKETS_RELEASED = Counter(
    "boxoffice_tickets_released_total",
    "Tickets returned to inventory",
    ["reason"]
)

TASK_OUTCOMES = Counter(
    "boxoffice_tasks_total",
    "Queue task executions by outcome",
    ["task", "outcome"]
)

TASK_DURATION = Histogram(
    "boxoffice_task_duration_seconds",
    "Queue task execution time",
    ["task"]
)

DEAD_LETTERS = Counter(
    "boxoffice_dead_letters_total",
    "Tasks moved to the dead-letter table",
    ["task"]
)
