import asyncio
import kopf
from logging import Logger
from collections import defaultdict
from typing import Dict, Optional, Tuple
from marshmallow import ValidationError
from gitship.reconciler import Reconciler, StepResult
from gitship.resources import GitshipApp
from gitship.revision import GitRefLister, RevisionResolver
from gitship.types.models import GitshipAppSpec
from gitship.types.schemas import GitshipAppSpecSchema
from gitship.utils.context import StepContext
from gitship.webhook.receiver import TRIGGER_ANNOTATION

APP_KIND = "GitshipApp"

REBUILD_ANNOTATION = "gitship.io/rebuild"

# Wake-up events of the per-app control loops, keyed by (namespace, name)
wakeups: Dict[Tuple[str, str], asyncio.Event] = defaultdict(asyncio.Event)

# Revision resolver shared by all apps
_resolver: Optional[RevisionResolver] = None


def get_resolver() -> RevisionResolver:
    global _resolver
    if _resolver is None:
        timeout = GitshipApp.conf.git_timeout_seconds if GitshipApp.conf else None
        _resolver = RevisionResolver(GitRefLister(timeout))
    return _resolver


def wake(name: str, namespace: str):
    """Cut short the wait of an app's control loop."""
    wakeups[(namespace, name)].set()


def load_spec(spec) -> GitshipAppSpec:
    return GitshipAppSpecSchema().load(dict(spec))


async def wait_for_next_step(
    stopped: kopf.DaemonStopped, wakeup: asyncio.Event, delay: float
):
    """Wait for the delay, a wake-up or the daemon stopping, whichever first.

    A delay of 0 waits for a wake-up only.
    """
    waiters = [
        asyncio.ensure_future(stopped.wait()),
        asyncio.ensure_future(wakeup.wait()),
    ]
    try:
        await asyncio.wait(
            waiters, timeout=delay or None, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            waiter.cancel()


async def reconcile(
    name,
    namespace,
    uid,
    body,
    spec,
    meta,
    status,
    annotations,
    logger: Logger,
    trigger_source: str = "timer",
    **kwargs,
) -> StepResult:
    """Run one control-loop step of a GitshipApp."""
    ctx = StepContext(name, namespace, logger)
    try:
        spec_model = load_spec(spec)
    except ValidationError as e:
        ctx.logger.error(f"Invalid spec: {e.messages}")
        return StepResult(requeue_after=0)

    app = GitshipApp.from_spec(
        name, namespace, uid, spec_model, dict(annotations or {}), logger=logger, ctx=ctx
    )
    if app.reconciliation_paused:
        ctx.logger.info("Reconciliation is paused.")
        return StepResult(requeue_after=0)

    reconciler = Reconciler(
        app, dict(status or {}), meta.get("generation", 0), resolver=get_resolver()
    )
    try:
        await reconciler.refresh()
        return await reconciler.step(trigger_source)
    except Exception as e:
        ctx.logger.error(f"Unexpected error during reconciliation: {e}")
        ctx.logger.exception(e)
        kopf.event(
            body,
            type="Warning",
            reason="ReconcileFailed",
            message=f"Reconciliation of '{name}' in '{namespace}' failed: {e}",
        )
        try:
            await reconciler.record_error(e)
        except Exception as status_error:
            ctx.logger.error(f"Failed to record error in status: {status_error}")
        return StepResult(requeue_after=app.conf.error_retry_delay_seconds)


@kopf.daemon(kind=APP_KIND, initial_delay=1.0, cancellation_timeout=10.0)
async def control_loop(
    stopped,
    name,
    namespace,
    uid,
    body,
    spec,
    meta,
    status,
    annotations,
    logger: Logger,
    **kwargs,
):
    """Drive one GitshipApp toward its desired state.

    kopf runs a single daemon per object, so steps of an app never overlap.
    Between steps the loop sleeps for the delay the step asked for, or until
    a spec change, webhook trigger or annotation wakes it.
    """
    wakeup = wakeups[(namespace, name)]
    trigger_source = "startup"
    while not stopped:
        wakeup.clear()
        try:
            result = await reconcile(
                name,
                namespace,
                uid,
                body,
                spec,
                meta,
                status,
                annotations,
                logger,
                trigger_source=trigger_source,
            )
        except asyncio.CancelledError:
            logger.info("Stopping control loop...")
            break
        if result.requeue:
            trigger_source = "requeue"
            continue
        await wait_for_next_step(stopped, wakeup, result.requeue_after)
        trigger_source = "wakeup" if wakeup.is_set() else "timer"


@kopf.on.create(kind=APP_KIND)
@kopf.on.update(kind=APP_KIND, field="spec")
async def on_spec_changed(name, namespace, body, spec, logger: Logger, **kwargs):
    """Validate the spec and wake the control loop."""
    try:
        load_spec(spec)
    except ValidationError as e:
        kopf.event(
            body,
            type="Warning",
            reason="InvalidSpec",
            message=f"Invalid spec for '{name}' in '{namespace}': {e.messages}",
        )
        raise kopf.PermanentError(f"Invalid spec: {e.messages}")
    wake(name, namespace)


@kopf.on.field(kind=APP_KIND, field=("metadata", "annotations", TRIGGER_ANNOTATION))
async def on_webhook_trigger(name, namespace, new, logger: Logger, **kwargs):
    """Handle a webhook trigger annotation."""
    if new:
        logger.info(f"Webhook trigger at {new}")
        wake(name, namespace)


@kopf.on.field(
    kind=APP_KIND,
    field=("metadata", "annotations", GitshipApp.PAUSE_ANNOTATION),
)
async def on_reconciliation_paused_changed(name, namespace, new, logger: Logger, **kwargs):
    """Handle reconciliation paused/resumed event."""
    logger.info(f"Reconciliation pause set to {new!r}")
    wake(name, namespace)


@kopf.on.field(
    kind=APP_KIND,
    field="metadata.annotations",
    annotations={REBUILD_ANNOTATION: kopf.PRESENT},
)
async def on_rebuild_requested(
    name,
    namespace,
    uid,
    body,
    spec,
    meta,
    status,
    annotations,
    patch,
    logger: Logger,
    **kwargs,
):
    """Handle user-initiated rebuild request via annotation.

    When the gitship.io/rebuild annotation is added, this handler:
    1. Deletes the build job of the current commit
    2. Clears latestBuildId so the next step submits the build again
    3. Removes the annotation regardless of success/failure
    4. Posts an event indicating the result
    """
    try:
        app = GitshipApp.from_spec(
            name, namespace, uid, load_spec(spec), dict(annotations or {}), logger=logger
        )
        reconciler = Reconciler(app, dict(status or {}), meta.get("generation", 0))
        await reconciler.refresh()
        commit = reconciler.status.get("latestBuildId")
        await reconciler.rebuild()
        kopf.event(
            body,
            type="Normal",
            reason="RebuildRequested",
            message=f"Rebuild of {commit or 'current revision'} requested for '{name}'",
        )
        wake(name, namespace)
    except Exception as e:
        kopf.event(
            body,
            type="Warning",
            reason="RebuildRequestFailed",
            message=f"Rebuild request failed for '{name}' in '{namespace}' namespace: {e}",
        )
    finally:
        # Always remove the annotation to prevent repeated attempts
        if REBUILD_ANNOTATION in (annotations or {}):
            patch.metadata.annotations[REBUILD_ANNOTATION] = None
            logger.info(f"Removed {REBUILD_ANNOTATION} annotation from {name}")


@kopf.on.delete(kind=APP_KIND)
async def on_delete(name, namespace, logger: Logger, **kwargs):
    """Handle deletion of GitshipApp resources.

    Child resources are removed by garbage collection through their owner
    references.
    """
    wakeups.pop((namespace, name), None)
    logger.info(f"Released control loop state of {namespace}/{name}")
