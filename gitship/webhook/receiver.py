"""Inbound push webhook.

A push delivery names a repository and a ref. Every GitshipApp tracking that
repository and ref is annotated with the trigger time, which wakes its
control loop. Deliveries are acknowledged with 200 whether or not anything
matched, so the git host never retries or disables the hook.
"""

import hashlib
import hmac
import json
import logging
from typing import Dict, List, Optional, Tuple

from aiohttp import web
from kubernetes_asyncio.client import ApiException, CustomObjectsApi

from gitship.resources.base import MERGE_PATCH, BaseResource
from gitship.revision import (
    DEFAULT_BRANCH_CANDIDATES,
    HEADS_PREFIX,
    SYMBOLIC_DEFAULT_VALUES,
    TAGS_PREFIX,
)
from gitship.sensors import SensorDelegate
from gitship.types.models.enums import SourceType
from gitship.utils.helpers import now

TRIGGER_ANNOTATION = "gitship.io/last-webhook-trigger"
SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="
WEBHOOK_PATH = "/webhook"

_URL_SCHEMES = ("https://", "http://", "git://")

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Repository identity used for matching: no scheme, no .git, lower case."""
    url = (url or "").strip()
    if url.endswith(".git"):
        url = url[: -len(".git")]
    for scheme in _URL_SCHEMES:
        if url.startswith(scheme):
            url = url[len(scheme) :]
            break
    return url.lower()


def compute_signature(secret: str, payload: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def selector_matches_ref(source: Dict, ref: str) -> bool:
    """Whether a pushed ref is the one an app's source selector tracks.

    Commit selectors are pinned and never match.
    """
    source = source or {}
    source_type = source.get("type") or SourceType.BRANCH.value
    value = source.get("value")
    if source_type == SourceType.BRANCH.value:
        if value is None or value in SYMBOLIC_DEFAULT_VALUES:
            return ref in [HEADS_PREFIX + b for b in DEFAULT_BRANCH_CANDIDATES]
        return ref == HEADS_PREFIX + value
    if source_type == SourceType.TAG.value:
        return bool(value) and ref == TAGS_PREFIX + value
    return False


class WebhookReceiver:
    """Matches push deliveries to GitshipApps and triggers them."""

    custom_objects_api: CustomObjectsApi
    secret: str
    sensor: Optional[SensorDelegate]

    def __init__(
        self,
        custom_objects_api: CustomObjectsApi,
        secret: str = "",
        sensor: SensorDelegate = None,
    ):
        self.custom_objects_api = custom_objects_api
        self.secret = secret or ""
        self.sensor = sensor
        self._runner: Optional[web.AppRunner] = None

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self.secret:
            return True
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            return False
        return hmac.compare_digest(signature, compute_signature(self.secret, payload))

    def matching_apps(self, apps: List[Dict], event: Dict) -> List[Dict]:
        ref = event.get("ref") or ""
        repository = event.get("repository") or {}
        urls = {
            normalize_url(repository.get(key))
            for key in ("clone_url", "html_url")
            if repository.get(key)
        }
        matched = []
        for app in apps:
            spec = app.get("spec") or {}
            if not selector_matches_ref(spec.get("source"), ref):
                continue
            if normalize_url(spec.get("repoUrl")) not in urls:
                continue
            matched.append(app)
        return matched

    async def list_apps(self) -> List[Dict]:
        result = await self.custom_objects_api.list_cluster_custom_object(
            group=BaseResource.GROUP_NAME,
            version=BaseResource.GROUP_VERSION,
            plural=BaseResource.PLURAL_NAME,
        )
        return result.get("items", [])

    async def trigger(self, app: Dict) -> bool:
        metadata = app.get("metadata") or {}
        name, namespace = metadata.get("name"), metadata.get("namespace")
        try:
            await self.custom_objects_api.patch_namespaced_custom_object(
                group=BaseResource.GROUP_NAME,
                version=BaseResource.GROUP_VERSION,
                namespace=namespace,
                plural=BaseResource.PLURAL_NAME,
                name=name,
                body={"metadata": {"annotations": {TRIGGER_ANNOTATION: now()}}},
                _content_type=MERGE_PATCH,
            )
        except ApiException as ex:
            logger.error(f"Failed to trigger {namespace}/{name}: {ex.reason}")
            return False
        logger.info(f"Triggered {namespace}/{name} via webhook")
        return True

    async def process(
        self, payload: bytes, signature: Optional[str] = None
    ) -> Tuple[int, str]:
        """Handle one delivery, returns the HTTP status and body."""
        if self.secret and not signature:
            return self._respond("unauthorized", 401, "Missing signature")
        if not self.verify_signature(payload, signature):
            return self._respond("unauthorized", 401, "Invalid signature")
        try:
            event = json.loads(payload)
        except ValueError:
            return self._respond("bad_request", 400, "Failed to parse JSON")
        if not isinstance(event, dict):
            return self._respond("bad_request", 400, "Failed to parse JSON")

        try:
            apps = await self.list_apps()
        except ApiException as ex:
            logger.error(f"Failed to list GitshipApps: {ex.reason}")
            return self._respond("error", 500, "Internal Server Error")

        triggered = 0
        for app in self.matching_apps(apps, event):
            if await self.trigger(app):
                triggered += 1
        if not triggered:
            return self._respond("no_match", 200, "No matching GitshipApps found")
        return self._respond(
            "triggered", 200, f"Triggered {triggered} GitshipApps", triggered
        )

    def _respond(
        self, result: str, status: int, text: str, matched: int = 0
    ) -> Tuple[int, str]:
        if self.sensor:
            self.sensor.on_webhook_received(result, matched)
        return status, text

    async def handle(self, request: web.Request) -> web.Response:
        payload = await request.read()
        status, text = await self.process(payload, request.headers.get(SIGNATURE_HEADER))
        return web.Response(status=status, text=text)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(WEBHOOK_PATH, self.handle)
        return app

    async def start(self, port: int) -> None:
        """Serve the receiver on all interfaces."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()
        logger.info(f"Webhook receiver listening on port {port} at {WEBHOOK_PATH}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
