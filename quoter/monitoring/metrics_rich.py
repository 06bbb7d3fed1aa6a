"""
Prometheus metrics for the quoter.

Organized into: execution, market data, strategy, risk, operational.
"""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server


class QuoterMetrics:
    """All quoter metrics on one registry, labelled by symbol."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'quoter_orders_submitted_total',
            'Orders accepted by the exchange',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'quoter_orders_rejected_total',
            'Order submissions that failed',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'quoter_orders_cancelled_total',
            'Orders cancelled by the quoter',
            labelnames=['symbol', 'order_class'],
            registry=reg
        )
        self.open_orders = Gauge(
            'quoter_open_orders',
            'Locally tracked open orders',
            labelnames=['symbol'],
            registry=reg
        )
        self.placement_latency_ms = Histogram(
            'quoter_placement_latency_ms',
            'Wall time to place a full ladder (milliseconds)',
            labelnames=['symbol'],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )
        self.reconcile_removed = Counter(
            'quoter_reconcile_removed_total',
            'Tracked orders dropped because the exchange no longer lists them',
            labelnames=['symbol'],
            registry=reg
        )

        # === Market Data Metrics ===
        self.price_fetches = Counter(
            'quoter_price_fetches_total',
            'Price lookups by provider and outcome',
            labelnames=['provider', 'outcome'],
            registry=reg
        )

        # === Strategy Metrics ===
        self.quote_mode = Gauge(
            'quoter_quote_mode',
            'Quote mode (0=normal, 1=oracle override)',
            labelnames=['symbol'],
            registry=reg
        )
        self.oracle_diff_pct = Gauge(
            'quoter_oracle_diff_pct',
            'Last local vs oracle divergence (percent)',
            labelnames=['symbol'],
            registry=reg
        )
        self.oracle_evaluations = Counter(
            'quoter_oracle_evaluations_total',
            'Oracle divergence evaluations by status',
            labelnames=['symbol', 'status'],
            registry=reg
        )
        self.reference_price = Gauge(
            'quoter_reference_price',
            'Price the last ladder was quoted around',
            labelnames=['symbol'],
            registry=reg
        )

        # === Risk Metrics ===
        self.risk_denials = Counter(
            'quoter_risk_denials_total',
            'Refresh cycles skipped by the risk gate',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.position = Gauge(
            'quoter_position',
            'Absolute position size',
            labelnames=['symbol'],
            registry=reg
        )

        # === Operational Metrics ===
        self.ticks = Counter(
            'quoter_ticks_total',
            'Control loop ticks',
            labelnames=['symbol', 'outcome'],
            registry=reg
        )
        self.tick_errors = Counter(
            'quoter_tick_errors_total',
            'Exceptions caught at the tick boundary',
            labelnames=['symbol', 'kind'],
            registry=reg
        )
        self.bot_state = Gauge(
            'quoter_bot_state',
            'Bot state (0=stopped, 1=starting, 2=running, 3=paused, 4=error)',
            labelnames=['symbol'],
            registry=reg
        )


def serve_metrics(metrics: QuoterMetrics, port: int) -> None:
    """Expose the registry over HTTP on port (no-op for port <= 0)."""
    if port > 0:
        start_http_server(port, registry=metrics.registry)
