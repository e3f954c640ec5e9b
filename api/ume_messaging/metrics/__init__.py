"""Centralized metrics module for Prometheus instrumentation.

Usage:
    from ume_messaging.metrics.messaging_metrics import messages_total
"""

from ume_messaging.metrics import messaging_metrics

__all__ = ["messaging_metrics"]
