import logging
import uuid
from typing import Any, MutableMapping, Optional, Tuple


class StepLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the request id of the current step."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['request_id']}] {msg}", kwargs


class StepContext:
    """Request scoped context of one control-loop step.

    Carries the identity of the app being reconciled and a logger that tags
    every line with a request id, so all log output of a step can be
    correlated across the resolver, the build orchestrator and the resource
    synchronizers.
    """

    request_id: str
    name: str
    namespace: str
    logger: logging.LoggerAdapter

    def __init__(
        self,
        name: str,
        namespace: str,
        logger: Optional[logging.Logger] = None,
        request_id: str = None,
    ) -> None:
        self.name = name
        self.namespace = namespace
        self.request_id = request_id or uuid.uuid4().hex[:8]
        base = logger or logging.getLogger("gitship")
        self.logger = StepLoggerAdapter(base, {"request_id": self.request_id})

    @classmethod
    def detached(cls, logger: Optional[logging.Logger] = None) -> "StepContext":
        """Context for work not bound to a single app."""
        return cls(name="", namespace="", logger=logger)

    def __repr__(self) -> str:
        return f"StepContext<{self.namespace}/{self.name} {self.request_id}>"
