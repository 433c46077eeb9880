from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

ACTIVE_SESSIONS = Gauge(
    "vlessgate_active_sessions",
    "Current relay sessions in handshaking or relaying state",
)

SESSIONS_TOTAL = Counter(
    "vlessgate_sessions_total",
    "Relay sessions closed, by close reason",
    ["reason"],
)

BYTES_RELAYED = Counter(
    "vlessgate_bytes_relayed_total",
    "Bytes relayed",
    ["direction"],  # direction: upstream (client→destination) / downstream
)

UPGRADE_REJECTIONS = Counter(
    "vlessgate_upgrade_rejections_total",
    "Upgrade requests refused before a session was created",
    ["reason"],
)

HTTP_REQUESTS = Counter(
    "vlessgate_http_requests_total",
    "Plain HTTP requests served",
    ["route", "status"],  # route: health/stats/metrics/config/root/other
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
