"""Sensor delegation for fan-out pattern.

This module provides SensorDelegate, which implements the delegation pattern
for routing sensor events to multiple monitoring backends simultaneously.
Each backend receives the same events and can maintain independent state.

This follows Faust's SensorDelegate design, enabling scenarios like
Prometheus metrics and structured logging side by side.
"""

from typing import Set, Dict, List, Optional, Any
import logging

from gitship.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class SensorDelegate(OperatorSensor):
    """Delegate sensor that fans out events to multiple backends.

    This class maintains a set of child sensors and forwards all lifecycle
    events to each one. State tracking is handled per-sensor, so each backend
    receives its own state dict from start/complete hook pairs. A failing
    sensor is logged and never interrupts the operator.

    Example:
        delegate = SensorDelegate()
        delegate.add(PrometheusMonitor())

        state = delegate.on_reconcile_start("my-app", "default", 5, "timer")
        delegate.on_reconcile_complete("my-app", "default", state, True)
    """

    def __init__(self) -> None:
        """Initialize empty sensor delegate."""
        self._sensors: Set[OperatorSensor] = set()

    def add(self, sensor: OperatorSensor) -> None:
        """Add a sensor to the delegate.

        Args:
            sensor: Sensor instance to add
        """
        logger.info(f"Adding sensor: {sensor.__class__.__name__}")
        self._sensors.add(sensor)

    def remove(self, sensor: OperatorSensor) -> None:
        """Remove a sensor from the delegate.

        Args:
            sensor: Sensor instance to remove
        """
        logger.info(f"Removing sensor: {sensor.__class__.__name__}")
        self._sensors.discard(sensor)

    def clear(self) -> None:
        """Remove all sensors from the delegate."""
        logger.info(f"Clearing {len(self._sensors)} sensors")
        self._sensors.clear()

    def _start(self, hook: str, *args) -> Optional[Dict[OperatorSensor, Any]]:
        if not self._sensors:
            return None
        states = {}
        for sensor in self._sensors:
            try:
                state = getattr(sensor, hook)(*args)
                if state is not None:
                    states[sensor] = state
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.{hook}: {e}",
                    exc_info=True,
                )
        return states if states else None

    def _forward(self, hook: str, *args) -> None:
        for sensor in self._sensors:
            try:
                getattr(sensor, hook)(*args)
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.{hook}: {e}",
                    exc_info=True,
                )

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(
        self,
        app_name: str,
        namespace: str,
        generation: int,
        trigger_source: str,
    ) -> Optional[Dict[OperatorSensor, Any]]:
        """Delegate reconcile_start to all sensors.

        Returns:
            Dict mapping each sensor to its returned state, or None if no sensors
        """
        return self._start(
            "on_reconcile_start", app_name, namespace, generation, trigger_source
        )

    def on_reconcile_complete(
        self,
        app_name: str,
        namespace: str,
        state: Optional[Dict[OperatorSensor, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Delegate reconcile_complete to all sensors with their specific state."""
        for sensor in self._sensors:
            try:
                sensor_state = state.get(sensor) if state else None
                sensor.on_reconcile_complete(
                    app_name, namespace, sensor_state, success, error
                )
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.on_reconcile_complete: {e}",
                    exc_info=True,
                )

    # =============================================================================
    # Resource Operation Hooks
    # =============================================================================

    def on_resource_sync_start(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
    ) -> Optional[Dict[OperatorSensor, Any]]:
        return self._start(
            "on_resource_sync_start", app_name, resource_name, namespace, resource_type
        )

    def on_resource_sync_complete(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        state: Optional[Dict[OperatorSensor, Any]],
        operation: str,
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        for sensor in self._sensors:
            try:
                sensor_state = state.get(sensor) if state else None
                sensor.on_resource_sync_complete(
                    app_name,
                    resource_name,
                    namespace,
                    resource_type,
                    sensor_state,
                    operation,
                    success,
                    error,
                )
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.on_resource_sync_complete: {e}",
                    exc_info=True,
                )

    def on_resource_drift_detected(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_fields: List[str],
    ) -> None:
        self._forward(
            "on_resource_drift_detected",
            app_name,
            resource_name,
            namespace,
            resource_type,
            drift_fields,
        )

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
        self._forward("on_revision_resolved", app_name, namespace, success, error_kind)

    def on_build_submitted(
        self, app_name: str, namespace: str, commit: str, created: bool
    ) -> None:
        self._forward("on_build_submitted", app_name, namespace, commit, created)

    def on_build_complete(
        self, app_name: str, namespace: str, commit: str, outcome: str
    ) -> None:
        self._forward("on_build_complete", app_name, namespace, commit, outcome)

    def on_phase_transition(
        self,
        app_name: str,
        namespace: str,
        from_phase: Optional[str],
        to_phase: Optional[str],
    ) -> None:
        self._forward("on_phase_transition", app_name, namespace, from_phase, to_phase)

    def on_status_update(
        self, app_name: str, namespace: str, update_fields: List[str]
    ) -> None:
        self._forward("on_status_update", app_name, namespace, update_fields)

    # =============================================================================
    # Webhook Hooks
    # =============================================================================

    def on_webhook_received(self, result: str, matched: int) -> None:
        self._forward("on_webhook_received", result, matched)
