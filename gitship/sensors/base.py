"""Base sensor classes for operator monitoring.

This module defines the base OperatorSensor class that provides lifecycle hooks
for monitoring operator events. All hooks are no-ops by default, allowing
subclasses to override only the events they care about.

The hook pattern follows Faust's sensor design:
- Paired hooks come as on_X_start() and on_X_complete()
- Start hooks return an optional state dict for tracking multi-phase operations
- Complete hooks receive the state dict from their corresponding start hook
- All hooks are optional - sensors only implement what they need
"""

from typing import Dict, List, Optional, Any
import logging

logger = logging.getLogger(__name__)


class OperatorSensor:
    """Base sensor class for gitship operator monitoring.

    Hooks cover the control loop of an app, the synchronization of its child
    resources, revision resolution, build jobs, phase transitions and
    inbound webhook deliveries.

    Example:
        class LoggingSensor(OperatorSensor):
            def on_reconcile_start(self, app_name, namespace, generation, trigger_source):
                return {'start_time': time.time()}

            def on_reconcile_complete(self, app_name, namespace, state, success, error=None):
                duration = time.time() - state['start_time']
                logger.info(f"Reconciled {app_name} in {duration}s")
    """

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
        """Called when a control-loop step begins.

        Args:
            app_name: GitshipApp resource name
            namespace: Kubernetes namespace
            generation: Resource generation number
            trigger_source: What woke the loop up (timer, spec, webhook, requeue)

        Returns:
            Optional state dict passed to on_reconcile_complete
        """
        pass

    def on_reconcile_complete(
        self,
        app_name: str,
        namespace: str,
        state: Optional[Dict[str, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Called when a control-loop step completes.

        Args:
            app_name: GitshipApp resource name
            namespace: Kubernetes namespace
            state: State dict returned from on_reconcile_start
            success: Whether the step succeeded
            error: Exception if the step failed
        """
        pass

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
        """Called before a child resource is created, patched or deleted.

        Returns:
            Optional state dict passed to on_resource_sync_complete
        """
        pass

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
        """Called after a child resource operation.

        Args:
            operation: One of create, patch or delete
        """
        pass

    def on_resource_drift_detected(
        self,
        app_name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_fields: List[str],
    ) -> None:
        """Called when observed governed fields differ from the desired ones."""
        pass

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
        """Called after each revision resolution.

        Args:
            error_kind: Classification of the failure (auth, not_found, network)
        """
        pass

    def on_build_submitted(
        self,
        app_name: str,
        namespace: str,
        commit: str,
        created: bool,
    ) -> None:
        """Called after a build job submission.

        Args:
            created: False when the job already existed
        """
        pass

    def on_build_complete(
        self,
        app_name: str,
        namespace: str,
        commit: str,
        outcome: str,
    ) -> None:
        """Called once a build job reaches a terminal outcome."""
        pass

    def on_phase_transition(
        self,
        app_name: str,
        namespace: str,
        from_phase: Optional[str],
        to_phase: Optional[str],
    ) -> None:
        """Called when the status phase of an app changes."""
        pass

    def on_status_update(
        self,
        app_name: str,
        namespace: str,
        update_fields: List[str],
    ) -> None:
        """Called after the status subresource is written."""
        pass

    # =============================================================================
    # Webhook Hooks
    # =============================================================================

    def on_webhook_received(
        self,
        result: str,
        matched: int,
    ) -> None:
        """Called for each webhook delivery.

        Args:
            result: accepted, unauthorized or bad_request
            matched: Number of apps that were triggered
        """
        pass
