import base64
import copy
from typing import Dict, NamedTuple, Optional, Tuple

from gitship.resources.build import (
    SSH_KEY_FILE,
    TOKEN_KEY,
    BuildOrchestrator,
    BuildOutcome,
    job_failure_message,
)
from gitship.resources.gitshipapp import GitshipApp
from gitship.revision import RevisionResolutionError, RevisionResolver
from gitship.state import (
    BuildStatus,
    Event,
    Phase,
    as_phase,
    build_record,
    find_build,
    polling_delay,
    record_build,
    transition,
)
from gitship.utils.helpers import now, upsert_condition

READY_CONDITION = "Ready"
REVISION_CONDITION = "RevisionResolved"


class StepResult(NamedTuple):
    """When the control loop of an app runs next.

    ``requeue`` runs the next step immediately. Otherwise the loop waits
    ``requeue_after`` seconds, where 0 means wait for an external trigger.
    """

    requeue: bool = False
    requeue_after: float = 0.0


def status_changes(observed: Dict, desired: Dict) -> Dict:
    """Top level status fields that differ, as a merge patch.

    Fields dropped from the desired status map to None so the merge patch
    removes them.
    """
    changes = {}
    for key in set(observed or {}) | set(desired or {}):
        value = (desired or {}).get(key)
        if (observed or {}).get(key) != value:
            changes[key] = value
    return changes


def decode_secret_value(secret, key: str) -> Optional[str]:
    data = (secret.data if secret is not None else None) or {}
    if key not in data or not data[key]:
        return None
    return base64.b64decode(data[key]).decode("utf-8")


class Reconciler:
    """One control-loop step of a GitshipApp.

    Resolves the revision, decides between building and converging, feeds
    the outcome through the phase state machine and writes status once at
    the end of the step, only when something changed.
    """

    app: GitshipApp
    builds: BuildOrchestrator
    resolver: RevisionResolver
    observed: Dict
    status: Dict
    generation: int

    def __init__(
        self,
        app: GitshipApp,
        status: Dict = None,
        generation: int = 0,
        resolver: RevisionResolver = None,
        builds: BuildOrchestrator = None,
    ):
        self.app = app
        self.observed = copy.deepcopy(dict(status or {}))
        self.status = copy.deepcopy(self.observed)
        self.generation = generation
        self.resolver = resolver or RevisionResolver()
        self.builds = builds or app.build_orchestrator()

    @property
    def ctx(self):
        return self.app.ctx

    @property
    def logger(self):
        return self.app.ctx.logger

    @property
    def conf(self):
        return self.app.conf

    @property
    def sensor(self):
        return self.app.sensor

    @property
    def phase(self) -> Optional[Phase]:
        return as_phase(self.status.get("phase"))

    @property
    def polling_delay(self) -> float:
        return polling_delay(
            self.app.spec.update_strategy, self.conf.default_poll_interval_seconds
        )

    async def refresh(self):
        """Reload status from the API server.

        The status handed to a handler comes from the watch cache and can
        trail the patch written by the previous step.
        """
        body = await self.app.get_custom_object(
            self.app.custom_objects_api,
            self.app.namespace,
            self.app.GROUP_NAME,
            self.app.GROUP_VERSION,
            self.app.PLURAL_NAME,
            self.app.name,
        )
        if body is None:
            return
        self.observed = copy.deepcopy(dict(body.get("status") or {}))
        self.status = copy.deepcopy(self.observed)

    async def step(self, trigger_source: str = "timer") -> StepResult:
        """Run one step and persist the resulting status."""
        sensor_state = None
        if self.sensor:
            sensor_state = self.sensor.on_reconcile_start(
                self.app.name, self.app.namespace, self.generation, trigger_source
            )
        success, error = True, None
        try:
            self.status["observedGeneration"] = self.generation
            result = await self.run()
            await self.flush_status()
            return result
        except Exception as ex:
            success, error = False, ex
            raise
        finally:
            if self.sensor:
                self.sensor.on_reconcile_complete(
                    self.app.name, self.app.namespace, sensor_state, success, error
                )

    async def run(self) -> StepResult:
        ssh_key, token = await self.read_credentials()
        try:
            commit = await self.resolver.resolve(
                self.app.spec.repo_url,
                self.app.spec.source,
                ssh_key=ssh_key,
                token=token,
                ctx=self.ctx,
            )
        except RevisionResolutionError as ex:
            return self.on_resolution_failed(ex)

        self.logger.debug(f"Resolved {self.app.spec.repo_url} to {commit}")
        self.status["lastResolvedCommit"] = commit
        self.set_condition(REVISION_CONDITION, True, "Resolved", f"Resolved {commit}")
        if self.sensor:
            self.sensor.on_revision_resolved(self.app.name, self.app.namespace, True)
        self.apply(Event.RESOLVED)

        if commit != self.status.get("latestBuildId"):
            return await self.start_build(commit, bool(ssh_key), bool(token))

        history = self.status.get("buildHistory") or []
        record = find_build(history, commit, self.status.get("latestBuildStartTime"))
        if record is None:
            return await self.observe_build(commit, bool(ssh_key), bool(token))

        if record.get("status") == BuildStatus.FAILED.value:
            self.logger.debug(f"Build of {commit} failed, waiting for a new revision")
            self.apply(Event.BUILD_FAILED)
            return StepResult(requeue_after=self.polling_delay)

        return await self.converge(commit)

    async def read_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        """SSH key and token of the app, a missing Secret means no credential."""
        ssh_secret = await self.app.fetch_secret(
            self.app.core_v1_api, self.builds.ssh_key_secret_name, self.app.namespace
        )
        token_secret = await self.app.fetch_secret(
            self.app.core_v1_api, self.builds.token_secret_name, self.app.namespace
        )
        return (
            decode_secret_value(ssh_secret, SSH_KEY_FILE),
            decode_secret_value(token_secret, TOKEN_KEY),
        )

    def on_resolution_failed(self, error: RevisionResolutionError) -> StepResult:
        kind = error.kind.value
        self.set_condition(REVISION_CONDITION, False, kind, str(error))
        if self.sensor:
            self.sensor.on_revision_resolved(
                self.app.name, self.app.namespace, False, kind
            )
        if error.is_auth_error:
            self.logger.warning(f"Authentication failed for {self.app.spec.repo_url}: {error}")
            self.apply(Event.AUTH_FAILED)
            return StepResult(requeue_after=self.conf.auth_error_retry_delay_seconds)
        self.logger.warning(f"Failed to resolve revision: {error}")
        self.apply(Event.RESOLVE_FAILED)
        return StepResult(requeue_after=self.conf.resolve_error_retry_delay_seconds)

    async def start_build(
        self, commit: str, has_ssh_key: bool, has_token: bool
    ) -> StepResult:
        self.logger.info(
            f"New revision {commit} (was {self.status.get('latestBuildId')}), building"
        )
        await self.builds.submit(commit, has_ssh_key, has_token, ctx=self.ctx)
        self.status["latestBuildId"] = commit
        self.status["latestBuildStartTime"] = now()
        self.apply(Event.NEW_COMMIT)
        return StepResult(requeue_after=self.conf.build_poll_interval_seconds)

    async def observe_build(
        self, commit: str, has_ssh_key: bool, has_token: bool
    ) -> StepResult:
        outcome, job = await self.builds.observe(commit)
        if outcome == BuildOutcome.PENDING:
            self.apply(Event.BUILD_PENDING)
            return StepResult(requeue_after=self.conf.build_poll_interval_seconds)

        if outcome == BuildOutcome.ABSENT:
            self.logger.info(f"Build job of {commit} is gone, resubmitting")
            await self.builds.submit(commit, has_ssh_key, has_token, ctx=self.ctx)
            self.apply(Event.BUILD_PENDING)
            return StepResult(requeue_after=self.conf.build_poll_interval_seconds)

        if self.sensor:
            self.sensor.on_build_complete(
                self.app.name, self.app.namespace, commit, outcome.value
            )
        start_time = self.status.get("latestBuildStartTime")
        if outcome == BuildOutcome.SUCCEEDED:
            self.logger.info(f"Build of {commit} succeeded")
            self.add_history(
                build_record(commit, BuildStatus.SUCCEEDED, "Build succeeded", start_time)
            )
            self.apply(Event.BUILD_SUCCEEDED)
            return StepResult(requeue=True)

        message = job_failure_message(job)
        self.logger.warning(f"Build of {commit} failed: {message}")
        self.add_history(build_record(commit, BuildStatus.FAILED, message, start_time))
        self.apply(Event.BUILD_FAILED)
        return StepResult(requeue_after=self.polling_delay)

    async def converge(self, commit: str) -> StepResult:
        await self.app.with_commit(commit).synchronize()
        workload = await self.app.fetch_workload_status()
        self.status.update(workload)
        self.status.update(self.app.prepare_network_status())

        ready, desired = workload["readyReplicas"], workload["desiredReplicas"]
        previous = self.phase
        if ready > 0 and ready >= desired:
            self.apply(Event.WORKLOAD_READY)
        else:
            self.apply(Event.WORKLOAD_DEGRADED)
        if previous != Phase.RUNNING and self.phase == Phase.RUNNING:
            self.status["lastDeployedAt"] = now()

        if self.phase == Phase.RUNNING:
            self.set_condition(
                READY_CONDITION, True, "Running", f"{ready}/{desired} replicas ready"
            )
        else:
            self.set_condition(
                READY_CONDITION,
                False,
                "Progressing",
                f"{ready}/{desired} replicas ready",
            )
        return StepResult(requeue_after=self.polling_delay)

    def apply(self, event: Event) -> Optional[Phase]:
        """Feed an event through the state machine."""
        previous = self.phase
        phase = transition(previous, event)
        if phase is None:
            return None
        if phase != previous:
            self.logger.info(
                f"Phase {previous.value if previous else None} -> {phase.value} on {event.value}"
            )
            if self.sensor:
                self.sensor.on_phase_transition(
                    self.app.name,
                    self.app.namespace,
                    previous.value if previous else None,
                    phase.value,
                )
            if phase != Phase.RUNNING:
                self.set_condition(READY_CONDITION, False, phase.value, event.value)
        self.status["phase"] = phase.value
        return phase

    def add_history(self, record: Dict):
        self.status["buildHistory"] = record_build(
            self.status.get("buildHistory") or [], record
        )

    def set_condition(self, condition_type: str, ok: bool, reason: str, message: str):
        self.status["conditions"] = upsert_condition(
            self.status.get("conditions") or [],
            {
                "type": condition_type,
                "status": "True" if ok else "False",
                "reason": reason,
                "message": message,
                "observedGeneration": self.generation,
            },
        )

    async def record_error(self, error: Exception):
        """Flag a failed step on the Ready condition, the phase is left alone."""
        self.status = copy.deepcopy(self.observed)
        self.set_condition(READY_CONDITION, False, "Error", str(error) or type(error).__name__)
        await self.flush_status()

    async def rebuild(self):
        """Drop the current build so the next step submits it again."""
        commit = self.status.get("latestBuildId")
        if commit:
            await self.builds.cancel(commit, ctx=self.ctx)
        self.status.pop("latestBuildId", None)
        self.status.pop("latestBuildStartTime", None)
        await self.flush_status()

    async def flush_status(self) -> Dict:
        """Write changed status fields with a single merge patch."""
        changes = status_changes(self.observed, self.status)
        if not changes:
            return changes
        await self.app.patch_custom_object_status(
            self.app.custom_objects_api, self.app.namespace, self.app.name, changes
        )
        self.observed = copy.deepcopy(self.status)
        if self.sensor:
            self.sensor.on_status_update(
                self.app.name, self.app.namespace, sorted(changes)
            )
        return changes
