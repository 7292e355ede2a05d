import asyncio
import contextlib
import os
import stat
import tempfile
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterator, List, Optional

import git
from yarl import URL

from gitship.types.models.enums import SourceType
from gitship.types.models.gitshipapp_spec import SourceConfig
from gitship.types.settings import Settings
from gitship.utils.context import StepContext

HEADS_PREFIX = "refs/heads/"
TAGS_PREFIX = "refs/tags/"
PEELED_SUFFIX = "^{}"
DEFAULT_BRANCH_CANDIDATES = ("main", "master")
SYMBOLIC_DEFAULT_VALUES = ("", "HEAD")
KNOWN_SSH_HOSTS = ("github.com", "gitlab.com", "bitbucket.org")
TOKEN_USERNAME = "oauth2"

#: Maps a remote ref name to the commit it points at.
Refs = Dict[str, str]

#: Lists the refs of ``url`` with extra environment variables for git.
RefLister = Callable[[str, Dict[str, str]], Awaitable[Refs]]


class RevisionErrorKind(str, Enum):
    """Stage at which a revision lookup failed."""

    AUTH = "auth"
    NOT_FOUND = "not_found"
    NETWORK = "network"


class CredentialStrategy(str, Enum):
    SSH = "ssh"
    TOKEN = "token"
    ANONYMOUS = "anonymous"


class RemoteError(Exception):
    """Raised by a ref lister when the remote could not be listed."""

    kind: RevisionErrorKind

    def __init__(self, message: str, kind: RevisionErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


class RevisionAttemptError(Exception):
    """One failed credential attempt."""

    strategy: CredentialStrategy
    kind: RevisionErrorKind
    reached_remote: bool

    def __init__(
        self,
        strategy: CredentialStrategy,
        kind: RevisionErrorKind,
        message: str,
        reached_remote: bool = False,
    ) -> None:
        super().__init__(f"{strategy.value}: {message}")
        self.strategy = strategy
        self.kind = kind
        self.reached_remote = reached_remote


class RevisionResolutionError(Exception):
    """All credential attempts failed."""

    attempts: List[RevisionAttemptError]

    def __init__(self, repo_url: str, attempts: List[RevisionAttemptError]) -> None:
        details = "; ".join(str(attempt) for attempt in attempts)
        super().__init__(f"Failed to resolve revision of {repo_url}: {details}")
        self.attempts = attempts

    @property
    def kind(self) -> RevisionErrorKind:
        if any(attempt.reached_remote for attempt in self.attempts):
            return RevisionErrorKind.NOT_FOUND
        if not self.attempts:
            return RevisionErrorKind.NETWORK
        return self.attempts[-1].kind

    @property
    def is_auth_error(self) -> bool:
        return self.kind == RevisionErrorKind.AUTH


_AUTH_SIGNATURES = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "load key",
    "invalid format",
    "error: 401",
    "error: 403",
    "returned error: 401",
    "returned error: 403",
)
_NOT_FOUND_SIGNATURES = (
    "repository not found",
    "does not appear to be a git repository",
    "not found",
    "error: 404",
)
_NETWORK_SIGNATURES = (
    "could not resolve host",
    "connection refused",
    "connection timed out",
    "timed out",
    "timeout",
    "network is unreachable",
    "unable to access",
)


def classify_git_error(stderr: str) -> RevisionErrorKind:
    """Map the stderr of a failed git invocation to the stage that failed."""
    text = (stderr or "").lower()
    for signature in _AUTH_SIGNATURES:
        if signature in text:
            return RevisionErrorKind.AUTH
    for signature in _NETWORK_SIGNATURES:
        if signature in text:
            return RevisionErrorKind.NETWORK
    for signature in _NOT_FOUND_SIGNATURES:
        if signature in text:
            return RevisionErrorKind.NOT_FOUND
    # Unrecognized failures are treated as transient
    return RevisionErrorKind.NETWORK


def parse_ls_remote(output: str) -> Refs:
    refs = {}
    for line in (output or "").splitlines():
        parts = line.strip().split("\t")
        if len(parts) == 2:
            sha, ref = parts
            refs[ref] = sha
    return refs


def to_ssh_url(repo_url: str) -> str:
    """Rewrite ``https://<known host>/owner/repo`` to ``git@<host>:owner/repo``."""
    if not repo_url.startswith(("https://", "http://")):
        return repo_url
    url = URL(repo_url)
    if url.host not in KNOWN_SSH_HOSTS:
        return repo_url
    return f"git@{url.host}:{url.path.lstrip('/')}"


def with_token(repo_url: str, token: str) -> str:
    """Inject ``token`` as HTTP basic auth credentials."""
    if not repo_url.startswith(("https://", "http://")):
        return repo_url
    return str(URL(repo_url).with_user(TOKEN_USERNAME).with_password(token))


def select_ref(refs: Refs, selector: SourceConfig) -> Optional[str]:
    """Pick the commit the selector points at, or None when the ref is absent."""
    value = selector.value or ""
    if selector.type == SourceType.TAG.value:
        name = TAGS_PREFIX + value
        return refs.get(name + PEELED_SUFFIX) or refs.get(name)
    if value in SYMBOLIC_DEFAULT_VALUES:
        for branch in DEFAULT_BRANCH_CANDIDATES:
            if HEADS_PREFIX + branch in refs:
                return refs[HEADS_PREFIX + branch]
        return None
    return refs.get(HEADS_PREFIX + value)


def describe_selector(selector: SourceConfig) -> str:
    value = selector.value or ""
    if selector.type == SourceType.TAG.value:
        return TAGS_PREFIX + value
    if value in SYMBOLIC_DEFAULT_VALUES:
        return " or ".join(HEADS_PREFIX + b for b in DEFAULT_BRANCH_CANDIDATES)
    return HEADS_PREFIX + value


@contextlib.contextmanager
def ssh_environment(ssh_key: str) -> Iterator[Dict[str, str]]:
    """Write the private key to a temp file and yield git env using it."""
    fd, path = tempfile.mkstemp(prefix="gitship-key-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(ssh_key if ssh_key.endswith("\n") else ssh_key + "\n")
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        yield {
            "GIT_SSH_COMMAND": (
                f"ssh -i {path} -o IdentitiesOnly=yes -o BatchMode=yes"
                " -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
            ),
            "GIT_TERMINAL_PROMPT": "0",
        }
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


class GitRefLister:
    """Lists remote refs with ``git ls-remote`` in a worker thread."""

    timeout: float

    def __init__(self, timeout: float = None) -> None:
        self.timeout = timeout if timeout is not None else Settings.git_timeout_seconds

    def _ls_remote(self, url: str, env: Dict[str, str]) -> str:
        return git.cmd.Git().ls_remote(
            url, env=env, kill_after_timeout=self.timeout
        )

    async def __call__(self, url: str, env: Dict[str, str]) -> Refs:
        try:
            output = await asyncio.to_thread(self._ls_remote, url, env)
        except git.exc.GitCommandError as ex:
            stderr = ex.stderr if isinstance(ex.stderr, str) else str(ex)
            raise RemoteError(stderr.strip(), classify_git_error(stderr)) from ex
        except git.exc.GitCommandNotFound as ex:
            raise RemoteError(str(ex), RevisionErrorKind.NETWORK) from ex
        return parse_ls_remote(output)


class RevisionResolver:
    """Resolves a revision selector to a commit id.

    Credential strategies are tried in a fixed order: SSH key, token, then
    anonymous. The first strategy that lists the remote and finds the target
    ref wins. When all fail, a single ``RevisionResolutionError`` carries every
    attempt and chains the last underlying failure as its cause.
    """

    lister: RefLister

    def __init__(self, lister: RefLister = None) -> None:
        self.lister = lister or GitRefLister()

    async def resolve(
        self,
        repo_url: str,
        selector: SourceConfig,
        ssh_key: str = None,
        token: str = None,
        ctx: StepContext = None,
    ) -> str:
        ctx = ctx or StepContext.detached()
        if selector.type == SourceType.COMMIT.value:
            return selector.value

        attempts: List[RevisionAttemptError] = []
        cause: Optional[BaseException] = None
        for strategy in self._strategies(ssh_key, token):
            try:
                commit = await self._attempt(strategy, repo_url, selector, ssh_key, token)
            except RevisionAttemptError as ex:
                ctx.logger.debug(f"Revision lookup via {strategy.value} failed: {ex}")
                attempts.append(ex)
                cause = ex.__cause__ or ex
                continue
            ctx.logger.debug(
                f"Resolved {describe_selector(selector)} to {commit} via {strategy.value}"
            )
            return commit
        raise RevisionResolutionError(repo_url, attempts) from cause

    def _strategies(self, ssh_key: str = None, token: str = None):
        if ssh_key:
            yield CredentialStrategy.SSH
        if token:
            yield CredentialStrategy.TOKEN
        yield CredentialStrategy.ANONYMOUS

    async def _attempt(
        self,
        strategy: CredentialStrategy,
        repo_url: str,
        selector: SourceConfig,
        ssh_key: str = None,
        token: str = None,
    ) -> str:
        try:
            if strategy == CredentialStrategy.SSH:
                with ssh_environment(ssh_key) as env:
                    refs = await self.lister(to_ssh_url(repo_url), env)
            elif strategy == CredentialStrategy.TOKEN:
                refs = await self.lister(
                    with_token(repo_url, token), {"GIT_TERMINAL_PROMPT": "0"}
                )
            else:
                refs = await self.lister(repo_url, {"GIT_TERMINAL_PROMPT": "0"})
        except RemoteError as ex:
            raise RevisionAttemptError(strategy, ex.kind, str(ex)) from ex
        except OSError as ex:
            raise RevisionAttemptError(
                strategy, RevisionErrorKind.NETWORK, str(ex)
            ) from ex

        commit = select_ref(refs, selector)
        if not commit:
            raise RevisionAttemptError(
                strategy,
                RevisionErrorKind.NOT_FOUND,
                f"{describe_selector(selector)} not found",
                reached_remote=True,
            )
        return commit
