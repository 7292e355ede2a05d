"""Prometheus monitoring backend for the gitship operator.

This module provides PrometheusMonitor, which collects operator lifecycle events
and exposes them as Prometheus metrics:

1. Control loop health - duration, throughput, errors
2. Kubernetes resource sync - operation counts, latency, drift detection
3. Delivery pipeline - revision resolutions, builds, phase transitions, webhooks

All metrics include labels for multi-dimensional analysis (app_name, namespace, etc.).
"""

from typing import Dict, List, Optional, Any
import time
import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from gitship.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class PrometheusMonitor(OperatorSensor):
    """Prometheus metrics monitor for the gitship operator.

    Exposes metrics via prometheus_client that can be scraped by Prometheus.
    All metric names carry the ``gitshipop_`` prefix.

    Example:
        monitor = PrometheusMonitor()

        state = monitor.on_reconcile_start("my-app", "default", 5, "timer")
        monitor.on_reconcile_complete("my-app", "default", state, True)
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize Prometheus metrics."""
        super().__init__()

        # =============================================================================
        # Control Loop Metrics
        # =============================================================================

        self.reconcile_duration = Histogram(
            "gitshipop_reconcile_duration_seconds",
            "Time spent in one control-loop step",
            labelnames=["app_name", "namespace", "trigger_source", "result"],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=registry,
        )

        self.reconcile_total = Counter(
            "gitshipop_reconcile_total",
            "Total number of control-loop steps",
            labelnames=["app_name", "namespace", "trigger_source", "result"],
            registry=registry,
        )

        self.reconcile_errors = Counter(
            "gitshipop_reconcile_errors_total",
            "Total number of control-loop step errors",
            labelnames=["app_name", "namespace", "error_type"],
            registry=registry,
        )

        # =============================================================================
        # Kubernetes Resource Sync Metrics
        # =============================================================================

        self.resource_sync_duration = Histogram(
            "gitshipop_resource_sync_duration_seconds",
            "Time spent syncing a child resource",
            labelnames=["app_name", "namespace", "resource_type", "operation", "result"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry,
        )

        self.resource_sync_total = Counter(
            "gitshipop_resource_sync_total",
            "Total number of child resource operations",
            labelnames=["app_name", "namespace", "resource_type", "operation", "result"],
            registry=registry,
        )

        self.resource_sync_errors = Counter(
            "gitshipop_resource_sync_errors_total",
            "Total number of child resource operation errors",
            labelnames=["app_name", "namespace", "resource_type", "error_type"],
            registry=registry,
        )

        self.resource_drift_detected = Counter(
            "gitshipop_resource_drift_detected_total",
            "Total number of drift detections on governed fields",
            labelnames=["app_name", "namespace", "resource_type", "drift_field"],
            registry=registry,
        )

        # =============================================================================
        # Delivery Pipeline Metrics
        # =============================================================================

        self.revision_resolutions = Counter(
            "gitshipop_revision_resolutions_total",
            "Total number of revision resolutions",
            labelnames=["app_name", "namespace", "result", "error_kind"],
            registry=registry,
        )

        self.builds_submitted = Counter(
            "gitshipop_builds_submitted_total",
            "Total number of build job submissions",
            labelnames=["app_name", "namespace", "created"],
            registry=registry,
        )

        self.builds_completed = Counter(
            "gitshipop_builds_completed_total",
            "Total number of finished build jobs",
            labelnames=["app_name", "namespace", "outcome"],
            registry=registry,
        )

        self.phase_transitions = Counter(
            "gitshipop_phase_transitions_total",
            "Total number of status phase transitions",
            labelnames=["app_name", "namespace", "from_phase", "to_phase"],
            registry=registry,
        )

        self.status_updates = Counter(
            "gitshipop_status_updates_total",
            "Total number of status field updates",
            labelnames=["app_name", "namespace", "update_field"],
            registry=registry,
        )

        self.webhook_deliveries = Counter(
            "gitshipop_webhook_deliveries_total",
            "Total number of webhook deliveries",
            labelnames=["result"],
            registry=registry,
        )

        self.webhook_triggers = Counter(
            "gitshipop_webhook_triggers_total",
            "Total number of apps triggered by webhooks",
            registry=registry,
        )

        logger.info("PrometheusMonitor initialized with all metrics")

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(
        self,
        app_name: str,
        namespace: str,
        generation: int,
        trigger_source: str,
    ) -> Optional[Dict[str, Any]]:
        """Record step start time."""
        return {
            "start_time": time.time(),
            "trigger_source": trigger_source,
        }

    def on_reconcile_complete(
        self,
        app_name: str,
        namespace: str,
        state: Optional[Dict[str, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Record step duration and result."""
        if state:
            duration = time.time() - state["start_time"]
            trigger_source = state["trigger_source"]
            result = "success" if success else "failure"

            self.reconcile_duration.labels(
                app_name=app_name,
                namespace=namespace,
                trigger_source=trigger_source,
                result=result,
            ).observe(duration)

            self.reconcile_total.labels(
                app_name=app_name,
                namespace=namespace,
                trigger_source=trigger_source,
                result=result,
            ).inc()

        if error:
            self.reconcile_errors.labels(
                app_name=app_name,
                namespace=namespace,
                error_type=error.__class__.__name__,
            ).inc()

    # =============================================================================
    # Resource Operation Hooks
    # =============================================================================

    def on_resource_sync_start(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
    ) -> Optional[Dict[str, Any]]:
        """Record resource sync start time."""
        return {"start_time": time.time()}

    def on_resource_sync_complete(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        state: Optional[Dict[str, Any]],
        operation: str,
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Record resource sync duration and result."""
        result = "success" if success else "failure"
        if state:
            self.resource_sync_duration.labels(
                app_name=app_name,
                namespace=namespace,
                resource_type=resource_type,
                operation=operation,
                result=result,
            ).observe(time.time() - state["start_time"])

        self.resource_sync_total.labels(
            app_name=app_name,
            namespace=namespace,
            resource_type=resource_type,
            operation=operation,
            result=result,
        ).inc()

        if error:
            self.resource_sync_errors.labels(
                app_name=app_name,
                namespace=namespace,
                resource_type=resource_type,
                error_type=error.__class__.__name__,
            ).inc()

    def on_resource_drift_detected(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_fields: List[str],
    ) -> None:
        """Record resource drift detection."""
        for field in drift_fields:
            self.resource_drift_detected.labels(
                app_name=app_name,
                namespace=namespace,
                resource_type=resource_type,
                drift_field=field,
            ).inc()

    # =============================================================================
    # Revision, Build and Phase Hooks
    # =============================================================================

    def on_revision_resolved(
        self,
        app_name: str,
        namespace: str,
        success: bool,
        error_kind: Optional[str] = None,
    ) -> None:
        self.revision_resolutions.labels(
            app_name=app_name,
            namespace=namespace,
            result="success" if success else "failure",
            error_kind=error_kind or "",
        ).inc()

    def on_build_submitted(
        self, app_name: str, namespace: str, commit: str, created: bool
    ) -> None:
        self.builds_submitted.labels(
            app_name=app_name, namespace=namespace, created=str(created).lower()
        ).inc()

    def on_build_complete(
        self, app_name: str, namespace: str, commit: str, outcome: str
    ) -> None:
        self.builds_completed.labels(
            app_name=app_name, namespace=namespace, outcome=outcome
        ).inc()

    def on_phase_transition(
        self,
        app_name: str,
        namespace: str,
        from_phase: Optional[str],
        to_phase: Optional[str],
    ) -> None:
        self.phase_transitions.labels(
            app_name=app_name,
            namespace=namespace,
            from_phase=from_phase or "",
            to_phase=to_phase or "",
        ).inc()

    def on_status_update(
        self,
        app_name: str,
        namespace: str,
        update_fields: List[str],
    ) -> None:
        """Record status update."""
        for field in update_fields:
            self.status_updates.labels(
                app_name=app_name,
                namespace=namespace,
                update_field=field,
            ).inc()

    # =============================================================================
    # Webhook Hooks
    # =============================================================================

    def on_webhook_received(self, result: str, matched: int) -> None:
        self.webhook_deliveries.labels(result=result).inc()
        if matched:
            self.webhook_triggers.inc(matched)
