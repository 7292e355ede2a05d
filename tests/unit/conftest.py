"""Shared fixtures for gitship unit tests."""

import copy
import pytest
from typing import Dict, List, Tuple
from kubernetes_asyncio.client import ApiException, V1PodList
from gitship.resources.gitshipapp import GitshipApp
from gitship.types.schemas import GitshipAppSpecSchema
from gitship.types.settings import Settings

COMMIT = "abc1234def5678abc1234def5678abc1234def5"


def load_spec(**overrides):
    raw = {
        "repoUrl": "https://github.com/acme/web.git",
        "imageName": "acme/web",
    }
    raw.update(overrides)
    return GitshipAppSpecSchema().load(raw)


class FakeLister:
    """Serves a fixed set of refs, or raises a configured error."""

    def __init__(self, commit=COMMIT):
        self.commit = commit
        self.error = None
        self.urls = []

    async def __call__(self, url, env):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return {"HEAD": self.commit, "refs/heads/main": self.commit}


def not_found():
    return ApiException(status=404, reason="Not Found")


class FakeKube:
    """In-memory stand-in for the typed API clients.

    Objects are stored per kind and name; every mutating call is recorded in
    ``writes`` so tests can assert on the exact set of writes a step made.
    Patches are recorded but not applied.
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, object]] = {
            "deployment": {},
            "service": {},
            "ingress": {},
            "pvc": {},
            "secret": {},
            "job": {},
        }
        self.pods: List = []
        self.issuers: Dict[str, Dict] = {}
        self.status: Dict = {}
        self.status_content_types: List[str] = []
        self.writes: List[Tuple[str, str, str]] = []
        self.patches: Dict[Tuple[str, str], object] = {}
        self.app_exists = True

    def _read(self, kind, name):
        if name not in self.objects[kind]:
            raise not_found()
        return copy.deepcopy(self.objects[kind][name])

    def _create(self, kind, body):
        name = body.metadata.name
        if name in self.objects[kind]:
            raise ApiException(status=409, reason="Conflict")
        self.objects[kind][name] = copy.deepcopy(body)
        self.writes.append(("create", kind, name))

    def _patch(self, kind, name, body):
        self.writes.append(("patch", kind, name))
        self.patches[(kind, name)] = body

    def _delete(self, kind, name):
        if name not in self.objects[kind]:
            raise not_found()
        del self.objects[kind][name]
        self.writes.append(("delete", kind, name))

    # Deployments
    async def read_namespaced_deployment(self, name, namespace):
        return self._read("deployment", name)

    async def create_namespaced_deployment(self, namespace, body):
        self._create("deployment", body)

    async def patch_namespaced_deployment(self, name, namespace, body):
        self._patch("deployment", name, body)

    # Services
    async def read_namespaced_service(self, name, namespace):
        return self._read("service", name)

    async def create_namespaced_service(self, namespace, body):
        self._create("service", body)

    async def patch_namespaced_service(self, name, namespace, body):
        self._patch("service", name, body)

    # Ingresses
    async def read_namespaced_ingress(self, name, namespace):
        return self._read("ingress", name)

    async def create_namespaced_ingress(self, namespace, body):
        self._create("ingress", body)

    async def patch_namespaced_ingress(self, name, namespace, body):
        self._patch("ingress", name, body)

    async def delete_namespaced_ingress(self, name, namespace):
        self._delete("ingress", name)

    # Claims
    async def read_namespaced_persistent_volume_claim(self, name, namespace):
        return self._read("pvc", name)

    async def create_namespaced_persistent_volume_claim(self, namespace, body):
        self._create("pvc", body)

    async def patch_namespaced_persistent_volume_claim(self, name, namespace, body):
        self._patch("pvc", name, body)

    # Secrets
    async def read_namespaced_secret(self, name, namespace):
        return self._read("secret", name)

    async def create_namespaced_secret(self, namespace, body):
        self._create("secret", body)

    # Jobs
    async def read_namespaced_job(self, name, namespace):
        return self._read("job", name)

    async def create_namespaced_job(self, namespace, body):
        self._create("job", body)

    async def delete_namespaced_job(self, name, namespace, body=None):
        self._delete("job", name)

    # Pods
    async def list_namespaced_pod(self, namespace, label_selector=None):
        return V1PodList(items=list(self.pods))

    # Custom objects
    async def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        if plural == "issuers" and name in self.issuers:
            return self.issuers[name]
        if plural == GitshipApp.PLURAL_NAME and self.app_exists:
            return {"metadata": {"name": name}, "status": copy.deepcopy(self.status)}
        raise not_found()

    async def patch_namespaced_custom_object_status(
        self, group, version, namespace, plural, name, body, _content_type=None
    ):
        self.writes.append(("patch", "status", name))
        self.status_content_types.append(_content_type)
        for key, value in body["status"].items():
            if value is None:
                self.status.pop(key, None)
            else:
                self.status[key] = copy.deepcopy(value)

    def writes_of(self, kind):
        return [write for write in self.writes if write[1] == kind]


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def conf():
    return Settings(
        in_cluster_registry="registry.local:5000",
        node_local_registry="localhost:30005",
    )


@pytest.fixture
def make_app(kube, conf):
    """Build a GitshipApp wired to the fake cluster."""

    def _make(name="web", namespace="apps", spec=None, annotations=None):
        app = GitshipApp.from_spec(
            name,
            namespace,
            "uid-1234",
            spec or load_spec(),
            annotations or {},
            conf=conf,
        )
        app.apps_v1_api = kube
        app.core_v1_api = kube
        app.networking_v1_api = kube
        app.custom_objects_api = kube
        app.batch_v1_api = kube
        return app

    return _make
