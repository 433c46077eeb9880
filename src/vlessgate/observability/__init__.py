from vlessgate.observability.metrics import (
    ACTIVE_SESSIONS,
    BYTES_RELAYED,
    HTTP_REQUESTS,
    SESSIONS_TOTAL,
    UPGRADE_REJECTIONS,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "ACTIVE_SESSIONS",
    "BYTES_RELAYED",
    "HTTP_REQUESTS",
    "SESSIONS_TOTAL",
    "UPGRADE_REJECTIONS",
    "generate_metrics",
    "get_content_type",
]
