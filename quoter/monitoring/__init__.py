from quoter.monitoring.metrics_rich import QuoterMetrics, serve_metrics

__all__ = ["QuoterMetrics", "serve_metrics"]
