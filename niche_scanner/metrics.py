"""Prometheus metrics for the Niche Scanner."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("niche_scanner", "Niche Scanner application info")
app_info.info({"version": "0.1.0", "name": "niche-scanner"})

# Scan metrics
scans_total = Counter(
    "scans_total",
    "Total number of scans by terminal status",
    ["status"],
)

scan_duration_seconds = Histogram(
    "scan_duration_seconds",
    "Wall time of a full scan",
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
)

scan_listings_found = Gauge(
    "scan_listings_found",
    "Qualifying listings found by the last completed scan",
)

phrase_failures_total = Counter(
    "phrase_failures_total",
    "Search phrases that failed and were treated as empty",
    ["error_type"],
)

# Marketplace API metrics
marketplace_calls_total = Counter(
    "marketplace_calls_total",
    "Total number of marketplace API calls",
    ["host", "outcome"],
)

marketplace_calls_today = Gauge(
    "marketplace_calls_today",
    "Marketplace API calls made since UTC midnight (advisory quota tracking)",
)

# Seller qualification metrics
seller_assessments_total = Counter(
    "seller_assessments_total",
    "Seller assessments by decision",
    ["decision"],
)

sellers_skipped_feedback_total = Counter(
    "sellers_skipped_feedback_total",
    "Sellers skipped because their feedback score met the threshold",
)

# Ledger metrics
items_upserted_total = Counter(
    "items_upserted_total",
    "Discovered items written to the ledger",
)

items_marked_stale_total = Counter(
    "items_marked_stale_total",
    "Discovered items marked inactive by staleness cleanup",
)
