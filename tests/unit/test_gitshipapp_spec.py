"""Unit tests for GitshipApp spec loading."""

import pytest
from marshmallow import ValidationError
from gitship.types.models import GitshipAppSpec
from gitship.types.schemas import GitshipAppSpecSchema


def load(**overrides):
    raw = {"repoUrl": "https://github.com/acme/web", "imageName": "acme/web"}
    raw.update(overrides)
    return GitshipAppSpecSchema().load(raw)


class TestDefaults:
    """Fields left out of a spec get their documented defaults."""

    def test_minimal_spec(self):
        spec = load()
        assert isinstance(spec, GitshipAppSpec)
        assert spec.repo_url == "https://github.com/acme/web"
        assert spec.source.type == "branch"
        assert spec.source.value == "main"
        assert spec.auth_method == "token"
        assert spec.replicas == 1
        assert spec.ports == []
        assert spec.env == {}
        assert spec.registry_secret_ref is None

    def test_resources_defaults(self):
        spec = load()
        assert spec.resources.cpu == "500m"
        assert spec.resources.memory == "1Gi"
        assert spec.resources.storage == "1Gi"

    def test_update_strategy_defaults_to_five_minute_polling(self):
        spec = load()
        assert spec.update_strategy.type == "polling"
        assert spec.update_strategy.interval == "5m"

    def test_health_check_defaults(self):
        spec = load(healthCheck={"path": "/healthz"})
        assert spec.health_check.path == "/healthz"
        assert spec.health_check.port == 8080
        assert spec.health_check.initial_delay == 10
        assert spec.health_check.timeout == 5

    def test_nested_camel_case_fields(self):
        spec = load(
            ports=[{"name": "web", "port": 80, "targetPort": 3000}],
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}],
            volumes=[{"name": "data", "mountPath": "/data", "size": "5Gi"}],
            secretMounts=[{"secretName": "certs", "mountPath": "/certs"}],
        )
        assert spec.ports[0].target_port == 3000
        assert spec.ports[0].protocol == "TCP"
        assert spec.ingresses[0].path == "/"
        assert spec.ingresses[0].service_port == 80
        assert spec.volumes[0].mount_path == "/data"
        assert spec.volumes[0].storage_class is None
        assert spec.secret_mounts[0].secret_name == "certs"

    def test_addon_size_defaults_to_small(self):
        spec = load(addons=[{"type": "postgres", "name": "db"}])
        assert spec.addons[0].size == "small"


class TestValidation:
    """Invalid specs are rejected with a ValidationError."""

    def test_missing_repo_url(self):
        with pytest.raises(ValidationError) as exc:
            GitshipAppSpecSchema().load({"imageName": "acme/web"})
        assert "repoUrl" in exc.value.messages

    def test_unknown_source_type(self):
        with pytest.raises(ValidationError):
            load(source={"type": "revision", "value": "x"})

    def test_tag_requires_value(self):
        with pytest.raises(ValidationError):
            load(source={"type": "tag"})

    def test_branch_allows_symbolic_default(self):
        spec = load(source={"type": "branch", "value": ""})
        assert spec.source.value == ""

    def test_unknown_addon_type(self):
        with pytest.raises(ValidationError):
            load(addons=[{"type": "mysql", "name": "db"}])

    def test_duplicate_volume_names(self):
        with pytest.raises(ValidationError):
            load(
                volumes=[
                    {"name": "data", "mountPath": "/a", "size": "1Gi"},
                    {"name": "data", "mountPath": "/b", "size": "1Gi"},
                ]
            )

    def test_negative_replicas(self):
        with pytest.raises(ValidationError):
            load(replicas=-1)
