from enum import Enum
from typing import Dict, List, Optional, Tuple

from gitship.types.models.enums import UpdateStrategyType
from gitship.types.models.gitshipapp_spec import UpdateStrategy
from gitship.types.settings import Settings
from gitship.utils.helpers import now, parse_duration

MAX_BUILD_HISTORY = 10


class Phase(str, Enum):
    BUILDING = "Building"
    RUNNING = "Running"
    FAILED = "Failed"
    AUTH_ERROR = "AuthError"


class Event(str, Enum):
    """Observations made during one control-loop step."""

    AUTH_FAILED = "AuthFailed"
    RESOLVE_FAILED = "ResolveFailed"
    RESOLVED = "Resolved"
    NEW_COMMIT = "NewCommit"
    BUILD_PENDING = "BuildPending"
    BUILD_SUCCEEDED = "BuildSucceeded"
    BUILD_FAILED = "BuildFailed"
    WORKLOAD_READY = "WorkloadReady"
    WORKLOAD_DEGRADED = "WorkloadDegraded"


class BuildStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


_B, _R, _F, _A = Phase.BUILDING, Phase.RUNNING, Phase.FAILED, Phase.AUTH_ERROR

# (current phase, event) -> next phase. ``None`` is the phase of an app that
# has never been reconciled.
TRANSITIONS: Dict[Tuple[Optional[Phase], Event], Optional[Phase]] = {
    (None, Event.AUTH_FAILED): _A,
    (_B, Event.AUTH_FAILED): _A,
    (_R, Event.AUTH_FAILED): _A,
    (_F, Event.AUTH_FAILED): _A,
    (_A, Event.AUTH_FAILED): _A,
    (None, Event.RESOLVE_FAILED): None,
    (_B, Event.RESOLVE_FAILED): _F,
    (_R, Event.RESOLVE_FAILED): _R,
    (_F, Event.RESOLVE_FAILED): _F,
    (_A, Event.RESOLVE_FAILED): _A,
    (None, Event.RESOLVED): None,
    (_B, Event.RESOLVED): _B,
    (_R, Event.RESOLVED): _R,
    (_F, Event.RESOLVED): _F,
    (_A, Event.RESOLVED): _A,
    (None, Event.NEW_COMMIT): _B,
    (_B, Event.NEW_COMMIT): _B,
    (_R, Event.NEW_COMMIT): _B,
    (_F, Event.NEW_COMMIT): _B,
    (_A, Event.NEW_COMMIT): _B,
    (None, Event.BUILD_PENDING): _B,
    (_B, Event.BUILD_PENDING): _B,
    (_R, Event.BUILD_PENDING): _B,
    (_F, Event.BUILD_PENDING): _B,
    (_A, Event.BUILD_PENDING): _B,
    (None, Event.BUILD_SUCCEEDED): _B,
    (_B, Event.BUILD_SUCCEEDED): _B,
    (_R, Event.BUILD_SUCCEEDED): _R,
    (_F, Event.BUILD_SUCCEEDED): _B,
    (_A, Event.BUILD_SUCCEEDED): _B,
    (None, Event.BUILD_FAILED): _F,
    (_B, Event.BUILD_FAILED): _F,
    (_R, Event.BUILD_FAILED): _F,
    (_F, Event.BUILD_FAILED): _F,
    (_A, Event.BUILD_FAILED): _F,
    (None, Event.WORKLOAD_READY): _R,
    (_B, Event.WORKLOAD_READY): _R,
    (_R, Event.WORKLOAD_READY): _R,
    (_F, Event.WORKLOAD_READY): _R,
    (_A, Event.WORKLOAD_READY): _R,
    # Running is latched: a degraded workload never leaves it.
    (None, Event.WORKLOAD_DEGRADED): None,
    (_B, Event.WORKLOAD_DEGRADED): _B,
    (_R, Event.WORKLOAD_DEGRADED): _R,
    (_F, Event.WORKLOAD_DEGRADED): _F,
    (_A, Event.WORKLOAD_DEGRADED): _B,
}


def as_phase(value) -> Optional[Phase]:
    """Parse a phase read back from status; unknown values count as unset."""
    if value is None or isinstance(value, Phase):
        return value
    try:
        return Phase(value)
    except ValueError:
        return None


def transition(phase: Optional[Phase], event: Event) -> Optional[Phase]:
    return TRANSITIONS[(as_phase(phase), Event(event))]


def polling_delay(strategy: UpdateStrategy, default: float = None) -> float:
    """Seconds until the next scheduled step of a converged app.

    Webhook driven apps without an interval return 0, meaning they wait for
    a trigger only. Intervals that fail to parse fall back to the default.
    """
    default = default if default is not None else Settings.default_poll_interval_seconds
    strategy_type = getattr(strategy, "type", None) or UpdateStrategyType.POLLING.value
    interval = getattr(strategy, "interval", None)
    if strategy_type == UpdateStrategyType.WEBHOOK.value and not interval:
        return 0.0
    seconds = parse_duration(interval)
    if seconds is None or seconds <= 0:
        return default
    return seconds


def build_record(
    commit: str,
    status: BuildStatus,
    message: str,
    start_time: str = None,
    completion_time: str = None,
) -> Dict[str, str]:
    return {
        "commitId": commit,
        "status": BuildStatus(status).value,
        "startTime": start_time or now(),
        "completionTime": completion_time or now(),
        "message": message,
    }


def record_build(history: List[Dict], record: Dict) -> List[Dict]:
    """Prepend a record and drop the oldest beyond the cap."""
    return ([record] + list(history or []))[:MAX_BUILD_HISTORY]


def find_build(
    history: List[Dict], commit: str, start_time: str = None
) -> Optional[Dict]:
    """Most recent record of a commit, optionally of the build started at ``start_time``."""
    for record in history or []:
        if record.get("commitId") != commit:
            continue
        if start_time and record.get("startTime") != start_time:
            continue
        return record
    return None


def head_build(history: List[Dict]) -> Optional[Dict]:
    return history[0] if history else None
