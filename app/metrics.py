from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

GATEWAY_REQUESTS = Counter(
    "billing_gateway_requests_total",
    "Mobile-money gateway calls by operation and outcome",
    ["operation", "outcome"],
)
GATEWAY_LATENCY = Histogram(
    "billing_gateway_request_duration_seconds",
    "Mobile-money gateway call latency",
    ["operation"],
)
PAYMENTS_SETTLED = Counter(
    "billing_payments_settled_total",
    "Payments moved out of pending",
    ["channel", "status"],
)
GATEWAY_CALLBACKS = Counter(
    "billing_gateway_callbacks_total",
    "Inbound gateway callbacks by handling result",
    ["result"],
)
DISCOUNTS_APPLIED = Counter(
    "billing_discounts_applied_total",
    "Discount code applications by context",
    ["context"],
)
SUBSCRIPTION_TRANSITIONS = Counter(
    "billing_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)
SWEEP_ITEMS = Counter(
    "billing_sweep_items_total",
    "Items processed by scheduler sweeps",
    ["sweep", "outcome"],
)
