from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

TUNNELS_CREATED = Counter(
    "tunnelrelay_tunnels_created_total",
    "Total tunnels created",
    ["origin"],  # origin: requested/generated
)

TUNNELS_REMOVED = Counter(
    "tunnelrelay_tunnels_removed_total",
    "Total tunnels removed",
    ["reason"],  # reason: deleted/expired
)

ACTIVE_TUNNELS = Gauge(
    "tunnelrelay_active_tunnels",
    "Current tunnels held in memory",
)

ACTIVE_SUBSCRIBERS = Gauge(
    "tunnelrelay_active_subscribers",
    "Current live stream subscribers",
)

MESSAGES_PUBLISHED = Counter(
    "tunnelrelay_messages_published_total",
    "Total content updates written to tunnels",
)

DELIVERIES_DROPPED = Counter(
    "tunnelrelay_deliveries_dropped_total",
    "Pending updates dropped because a subscriber fell behind",
)

RATE_LIMITED = Counter(
    "tunnelrelay_rate_limited_total",
    "Requests rejected by admission control",
    ["scope"],  # scope: caller/tunnel
)

HTTP_REQUESTS = Counter(
    "tunnelrelay_http_requests_total",
    "Total HTTP requests",
    ["route", "status"],
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
