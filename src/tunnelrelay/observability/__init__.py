from tunnelrelay.observability.metrics import (
    ACTIVE_SUBSCRIBERS,
    ACTIVE_TUNNELS,
    DELIVERIES_DROPPED,
    HTTP_REQUESTS,
    MESSAGES_PUBLISHED,
    RATE_LIMITED,
    TUNNELS_CREATED,
    TUNNELS_REMOVED,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "TUNNELS_CREATED",
    "TUNNELS_REMOVED",
    "ACTIVE_TUNNELS",
    "ACTIVE_SUBSCRIBERS",
    "MESSAGES_PUBLISHED",
    "DELIVERIES_DROPPED",
    "RATE_LIMITED",
    "HTTP_REQUESTS",
    "generate_metrics",
    "get_content_type",
]
