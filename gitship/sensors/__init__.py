"""gitship operator sensor framework.

This module provides a monitoring and observability framework for the gitship
operator, inspired by Faust's sensor architecture. It enables non-invasive
instrumentation of operator lifecycle events through a hook-based pattern.

Key components:
- OperatorSensor: Base class defining lifecycle hooks for operator events
- SensorDelegate: Fan-out pattern for routing events to multiple sensor backends
- PrometheusMonitor: Prometheus metrics exporter

Usage:
    from gitship.sensors import SensorDelegate, PrometheusMonitor

    delegate = SensorDelegate()
    delegate.add(PrometheusMonitor())
"""

from gitship.sensors.base import OperatorSensor
from gitship.sensors.delegate import SensorDelegate
from gitship.sensors.prometheus import PrometheusMonitor
from gitship.sensors.server import init_metrics_server

__all__ = [
    "OperatorSensor",
    "SensorDelegate",
    "PrometheusMonitor",
    "init_metrics_server",
]
