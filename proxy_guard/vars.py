import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "proxy-guard")

# Public-facing base URL used in rewritten links; derived from the inbound
# request when empty.
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")
PROXY_ROUTE = "/api/proxy"

PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
PROXY_VERIFY_TLS = os.environ.get("PROXY_VERIFY_TLS", "false").lower() == "true"
PROXY_FOLLOW_REDIRECTS = (
    os.environ.get("PROXY_FOLLOW_REDIRECTS", "true").lower() == "true"
)
PROXY_MAX_REDIRECTS = int(os.environ.get("PROXY_MAX_REDIRECTS", "10"))
PROXY_MAX_REWRITE_BYTES = int(
    os.environ.get("PROXY_MAX_REWRITE_BYTES", str(10 * 1024 * 1024))
)
# One of: proxy, passthrough, block
PROXY_FOREIGN_REDIRECTS = os.environ.get("PROXY_FOREIGN_REDIRECTS", "proxy").lower()

VISITOR_GATE = os.getenv("VISITOR_GATE", "InMemoryVisitorGate")
ACTIVITY_LOG = os.getenv("ACTIVITY_LOG", "InMemoryActivityLog")
ACTIVITY_LOG_MAX_ENTRIES = int(os.getenv("ACTIVITY_LOG_MAX_ENTRIES", "10000"))

FINGERPRINT_HEADER = os.getenv("FINGERPRINT_HEADER", "x-fingerprint")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")


def _parse_key_value_list(raw: str) -> dict:
    mapping: dict = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            val = val.strip()
            if key and val:
                mapping[key] = val
    return mapping


# "key=value,key2=value2"
OTLP_HEADERS = _parse_key_value_list(os.getenv("OTLP_HEADERS", ""))
