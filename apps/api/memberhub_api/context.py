"""Request context management for observability.

Context variables for tracking a webhook delivery or entitlement query
across async boundaries. JSONFormatter attaches them to every log line.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Provider event currently being reconciled
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Member whose state is being mutated or queried
member_id_var: ContextVar[str] = ContextVar("member_id", default="")
