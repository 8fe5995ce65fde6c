"""Prometheus metrics for the carbon estimation pipeline."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("greener", "Greener carbon dashboard application info")
app_info.info({"version": "0.1.0", "name": "greener-carbon"})

# Orchestration metrics
estimation_passes_total = Counter(
    "estimation_passes_total",
    "Total number of estimation passes",
    ["status"],  # completed, failed, cancelled, skipped
)

estimation_pass_duration_seconds = Histogram(
    "estimation_pass_duration_seconds",
    "Time spent in one estimation pass",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

estimation_pass_running = Gauge(
    "estimation_pass_running",
    "Whether an estimation pass is currently running",
)

uncovered_products = Gauge(
    "uncovered_products",
    "Products without any estimate at the start of the last pass",
)

# Estimate metrics
estimates_created_total = Counter(
    "estimates_created_total",
    "Total number of estimate records persisted",
    ["method"],
)

estimate_errors_total = Counter(
    "estimate_errors_total",
    "Products that could not be estimated or persisted",
    ["reason"],
)

# LLM metrics
llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM estimation requests",
    ["status"],  # success, cache_hit, failure
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Time spent waiting on the LLM",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Store metrics
store_errors_total = Counter(
    "store_errors_total",
    "Estimate store errors",
    ["kind"],  # unavailable, invalid
)
