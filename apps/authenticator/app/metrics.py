from prometheus_client import Counter, Histogram

# Module level so repeated create_app() calls reuse the registered collectors.
REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
OTP_EVENTS = Counter("otp_events_total", "WhatsApp OTP sign-in events", ["stage", "outcome"])
