"""Metrics and tracing for the operator."""

from .metrics import OperatorMetrics, get_operator_metrics, start_metrics_server

__all__ = ["OperatorMetrics", "get_operator_metrics", "start_metrics_server"]
