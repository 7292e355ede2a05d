"""Unit tests for the push webhook receiver."""

import json
import pytest
from unittest.mock import AsyncMock, Mock
from aiohttp.test_utils import TestClient, TestServer
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    Configuration,
    CustomObjectsApi,
)
from gitship.webhook import (
    WebhookReceiver,
    compute_signature,
    normalize_url,
    selector_matches_ref,
)
from gitship.webhook.receiver import SIGNATURE_HEADER, TRIGGER_ANNOTATION

SECRET = "hook-secret"


def app_object(name, repo_url, source=None, namespace="apps"):
    spec = {"repoUrl": repo_url, "imageName": "acme/web"}
    if source is not None:
        spec["source"] = source
    return {"metadata": {"name": name, "namespace": namespace}, "spec": spec}


def push(ref="refs/heads/main", url="https://github.com/acme/web"):
    return json.dumps(
        {
            "ref": ref,
            "repository": {"clone_url": url + ".git", "html_url": url},
        }
    ).encode()


@pytest.fixture
def api():
    api = AsyncMock()
    api.list_cluster_custom_object.return_value = {"items": []}
    return api


@pytest.fixture
def receiver(api):
    return WebhookReceiver(api, secret=SECRET, sensor=Mock())


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/acme/web",
            "https://github.com/acme/web.git",
            "http://GitHub.com/Acme/Web",
            "git://github.com/acme/web.git",
        ],
    )
    def test_equivalent_urls(self, url):
        assert normalize_url(url) == "github.com/acme/web"

    def test_empty(self):
        assert normalize_url(None) == ""


class TestSelectorMatching:
    def test_branch(self):
        assert selector_matches_ref({"type": "branch", "value": "dev"}, "refs/heads/dev")
        assert not selector_matches_ref({"type": "branch", "value": "dev"}, "refs/heads/main")

    @pytest.mark.parametrize("value", [None, "", "HEAD"])
    def test_default_branch(self, value):
        source = {"type": "branch", "value": value}
        assert selector_matches_ref(source, "refs/heads/main")
        assert selector_matches_ref(source, "refs/heads/master")
        assert not selector_matches_ref(source, "refs/heads/dev")

    def test_missing_source_tracks_default_branch(self):
        assert selector_matches_ref(None, "refs/heads/main")

    def test_tag(self):
        source = {"type": "tag", "value": "v1.0.0"}
        assert selector_matches_ref(source, "refs/tags/v1.0.0")
        assert not selector_matches_ref(source, "refs/heads/v1.0.0")

    def test_commit_never_matches(self):
        source = {"type": "commit", "value": "abc1234"}
        assert not selector_matches_ref(source, "refs/heads/main")
        assert not selector_matches_ref(source, "abc1234")


class TestSignature:
    @pytest.mark.asyncio
    async def test_missing_signature(self, receiver, api):
        assert await receiver.process(push(), None) == (401, "Missing signature")
        api.list_cluster_custom_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_signature(self, receiver, api):
        status, text = await receiver.process(push(), compute_signature("other", push()))
        assert (status, text) == (401, "Invalid signature")
        api.list_cluster_custom_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_signature_without_prefix(self, receiver):
        digest = compute_signature(SECRET, push())[len("sha256="):]
        status, _ = await receiver.process(push(), digest)
        assert status == 401

    @pytest.mark.asyncio
    async def test_no_secret_skips_verification(self, api):
        receiver = WebhookReceiver(api)
        status, _ = await receiver.process(push(), None)
        assert status == 200


class TestProcess:
    @pytest.mark.asyncio
    async def test_bad_json(self, receiver):
        payload = b"{not json"
        status, text = await receiver.process(payload, compute_signature(SECRET, payload))
        assert (status, text) == (400, "Failed to parse JSON")

    @pytest.mark.asyncio
    async def test_non_object_json(self, receiver):
        payload = b"[1, 2]"
        status, _ = await receiver.process(payload, compute_signature(SECRET, payload))
        assert status == 400

    @pytest.mark.asyncio
    async def test_triggers_matching_app(self, receiver, api):
        api.list_cluster_custom_object.return_value = {
            "items": [
                app_object("web", "https://github.com/acme/web.git"),
                app_object("api", "https://github.com/acme/api"),
                app_object(
                    "pinned",
                    "https://github.com/acme/web",
                    {"type": "commit", "value": "abc1234"},
                ),
            ]
        }
        payload = push()
        status, text = await receiver.process(payload, compute_signature(SECRET, payload))
        assert (status, text) == (200, "Triggered 1 GitshipApps")
        api.patch_namespaced_custom_object.assert_awaited_once()
        kwargs = api.patch_namespaced_custom_object.call_args.kwargs
        assert kwargs["name"] == "web"
        assert kwargs["namespace"] == "apps"
        assert kwargs["plural"] == "gitshipapps"
        assert TRIGGER_ANNOTATION in kwargs["body"]["metadata"]["annotations"]
        receiver.sensor.on_webhook_received.assert_called_once_with("triggered", 1)

    @pytest.mark.asyncio
    async def test_no_match_is_still_ok(self, receiver, api):
        api.list_cluster_custom_object.return_value = {
            "items": [app_object("api", "https://github.com/acme/api")]
        }
        payload = push()
        status, text = await receiver.process(payload, compute_signature(SECRET, payload))
        assert (status, text) == (200, "No matching GitshipApps found")
        api.patch_namespaced_custom_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_trigger_is_not_counted(self, receiver, api):
        api.list_cluster_custom_object.return_value = {
            "items": [app_object("web", "https://github.com/acme/web")]
        }
        api.patch_namespaced_custom_object.side_effect = ApiException(status=403)
        payload = push()
        status, text = await receiver.process(payload, compute_signature(SECRET, payload))
        assert (status, text) == (200, "No matching GitshipApps found")

    @pytest.mark.asyncio
    async def test_list_failure(self, receiver, api):
        api.list_cluster_custom_object.side_effect = ApiException(status=500)
        payload = push()
        status, _ = await receiver.process(payload, compute_signature(SECRET, payload))
        assert status == 500


class TestHttp:
    @pytest.mark.asyncio
    async def test_post_webhook(self, receiver, api):
        api.list_cluster_custom_object.return_value = {
            "items": [app_object("web", "https://github.com/acme/web")]
        }
        payload = push()
        async with TestClient(TestServer(receiver.make_app())) as client:
            response = await client.post(
                "/webhook",
                data=payload,
                headers={SIGNATURE_HEADER: compute_signature(SECRET, payload)},
            )
            assert response.status == 200
            assert await response.text() == "Triggered 1 GitshipApps"

    @pytest.mark.asyncio
    async def test_unsigned_request_rejected(self, receiver):
        async with TestClient(TestServer(receiver.make_app())) as client:
            response = await client.post("/webhook", data=push())
            assert response.status == 401


class RequestSent(Exception):
    """Raised in place of sending a request."""


class TestTriggerPatch:
    @pytest.mark.asyncio
    async def test_trigger_sent_as_merge_patch(self):
        api_client = ApiClient(Configuration(host="http://localhost"))
        api_client.rest_client.request = AsyncMock(side_effect=RequestSent)
        receiver = WebhookReceiver(CustomObjectsApi(api_client), secret=SECRET)
        try:
            with pytest.raises(RequestSent):
                await receiver.trigger(app_object("web", "https://github.com/acme/web"))
        finally:
            await api_client.close()
        kwargs = api_client.rest_client.request.call_args.kwargs
        assert kwargs["headers"]["Content-Type"] == "application/merge-patch+json"

    @pytest.mark.asyncio
    async def test_trigger_passes_content_type(self, receiver, api):
        await receiver.trigger(app_object("web", "https://github.com/acme/web"))
        kwargs = api.patch_namespaced_custom_object.call_args.kwargs
        assert kwargs["_content_type"] == "application/merge-patch+json"
