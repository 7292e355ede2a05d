"""Unit tests for GitshipApp desired state and convergence."""

import pytest
from unittest.mock import Mock
from kubernetes_asyncio.client import (
    V1ContainerStatus,
    V1DeploymentStatus,
    V1Pod,
    V1PodStatus,
)
from gitship.resources.convergence import ISSUER_ANNOTATION
from conftest import COMMIT, load_spec


class TestPrepareDeployment:
    def test_defaults(self, make_app):
        app = make_app().with_commit(COMMIT)
        deployment = app.prepare_deployment()
        pod_spec = deployment.spec.template.spec
        container = pod_spec.containers[0]

        assert deployment.metadata.name == "web"
        assert deployment.spec.replicas == 1
        assert deployment.spec.selector.match_labels == {"app": "web"}
        assert deployment.spec.template.metadata.labels["app"] == "web"
        assert container.name == "app"
        assert container.image == f"localhost:30005/acme/web:{COMMIT}"
        assert [p.container_port for p in container.ports] == [8080]
        assert container.liveness_probe is None
        assert container.readiness_probe is None
        assert container.resources.limits == {"cpu": "500m", "memory": "1Gi"}
        assert container.resources.requests == {"cpu": "125m", "memory": "536870912"}
        assert pod_spec.security_context.run_as_non_root is True
        assert pod_spec.security_context.run_as_user == 1000
        assert pod_spec.security_context.fs_group == 1000
        assert container.security_context.allow_privilege_escalation is False
        assert container.security_context.capabilities.drop == ["ALL"]
        assert pod_spec.image_pull_secrets is None

    def test_owner_reference(self, make_app):
        deployment = make_app().with_commit(COMMIT).prepare_deployment()
        (owner,) = deployment.metadata.owner_references
        assert owner.kind == "GitshipApp"
        assert owner.api_version == "gitship.io/v1alpha1"
        assert owner.name == "web"
        assert owner.uid == "uid-1234"
        assert owner.controller is True
        assert owner.block_owner_deletion is True

    def test_private_registry(self, make_app):
        spec = load_spec(imageName="ghcr.io/Acme/Web:latest", registrySecretRef="regcred")
        deployment = make_app(spec=spec).with_commit(COMMIT).prepare_deployment()
        pod_spec = deployment.spec.template.spec
        assert pod_spec.containers[0].image == f"ghcr.io/acme/web:{COMMIT}"
        assert pod_spec.image_pull_secrets[0].name == "regcred"

    def test_env_sorted_with_addon_connection(self, make_app):
        spec = load_spec(
            env={"ZED": "1", "ALPHA": "2"},
            addons=[{"type": "postgres", "name": "db"}],
            secretRefs=["shared"],
        )
        container = (
            make_app(spec=spec).with_commit(COMMIT).prepare_deployment()
        ).spec.template.spec.containers[0]
        assert [e.name for e in container.env] == ["ALPHA", "ZED", "DATABASE_URL"]
        ref = container.env[2].value_from.secret_key_ref
        assert (ref.name, ref.key) == ("web-db-auth", "url")
        assert container.env_from[0].secret_ref.name == "shared"

    def test_volumes_and_secret_mounts(self, make_app):
        spec = load_spec(
            volumes=[{"name": "data", "mountPath": "/data", "size": "1Gi"}],
            secretMounts=[{"secretName": "certs", "mountPath": "/certs"}],
        )
        pod_spec = (
            make_app(spec=spec).with_commit(COMMIT).prepare_deployment()
        ).spec.template.spec
        volumes = {v.name: v for v in pod_spec.volumes}
        assert volumes["data"].persistent_volume_claim.claim_name == "web-data"
        assert volumes["secret-certs"].secret.secret_name == "certs"
        mounts = {m.mount_path: m for m in pod_spec.containers[0].volume_mounts}
        assert mounts["/certs"].read_only is True

    def test_secret_mounted_twice_shares_volume(self, make_app):
        spec = load_spec(
            secretMounts=[
                {"secretName": "certs", "mountPath": "/certs"},
                {"secretName": "certs", "mountPath": "/etc/ssl/app"},
                {"secretName": "keys", "mountPath": "/keys"},
            ],
        )
        pod_spec = (
            make_app(spec=spec).with_commit(COMMIT).prepare_deployment()
        ).spec.template.spec
        assert [v.name for v in pod_spec.volumes] == ["secret-certs", "secret-keys"]
        mounts = {m.mount_path: m.name for m in pod_spec.containers[0].volume_mounts}
        assert mounts == {
            "/certs": "secret-certs",
            "/etc/ssl/app": "secret-certs",
            "/keys": "secret-keys",
        }

    def test_probes(self, make_app):
        spec = load_spec(healthCheck={"path": "/healthz", "port": 3000})
        container = (
            make_app(spec=spec).with_commit(COMMIT).prepare_deployment()
        ).spec.template.spec.containers[0]
        probe = container.readiness_probe
        assert probe.http_get.path == "/healthz"
        assert probe.http_get.port == 3000
        assert probe.initial_delay_seconds == 10
        assert probe.timeout_seconds == 5
        assert probe.period_seconds == 10
        assert probe.failure_threshold == 3

    def test_zero_replicas_means_one(self, make_app):
        app = make_app(spec=load_spec(replicas=0)).with_commit(COMMIT)
        assert app.prepare_deployment().spec.replicas == 1


class TestPrepareService:
    def test_default_port(self, make_app):
        service = make_app().prepare_service()
        (port,) = service.spec.ports
        assert (port.name, port.port, port.target_port) == ("http", 80, 8080)
        assert service.spec.type == "ClusterIP"
        assert service.spec.selector == {"app": "web"}

    def test_unnamed_port(self, make_app):
        spec = load_spec(ports=[{"port": 9000, "targetPort": 9000, "protocol": "udp"}])
        (port,) = make_app(spec=spec).prepare_service().spec.ports
        assert port.name == "port-9000"
        assert port.protocol == "UDP"


class TestPrepareIngress:
    def test_tls_without_issuer(self, make_app):
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}]
        )
        ingress = make_app(spec=spec).prepare_ingress(None)
        assert ingress.metadata.annotations is None
        (tls,) = ingress.spec.tls
        assert tls.hosts == ["web.example.com"]
        assert tls.secret_name == "web-web-example-com-tls"
        rule = ingress.spec.rules[0]
        assert rule.http.paths[0].path_type == "Prefix"
        assert rule.http.paths[0].backend.service.port.number == 80

    def test_tls_with_issuer(self, make_app):
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}]
        )
        ingress = make_app(spec=spec).prepare_ingress("letsencrypt-prod")
        assert ingress.metadata.annotations == {ISSUER_ANNOTATION: "letsencrypt-prod"}

    def test_no_tls(self, make_app):
        spec = load_spec(ingresses=[{"host": "web.example.com", "servicePort": 80}])
        ingress = make_app(spec=spec).prepare_ingress("letsencrypt-prod")
        assert ingress.spec.tls is None
        assert ingress.metadata.annotations is None


class TestSynchronize:
    """Convergence of the managed resource set against the fake cluster."""

    @pytest.mark.asyncio
    async def test_creates_everything_then_idles(self, kube, make_app):
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80}],
            volumes=[{"name": "data", "mountPath": "/data", "size": "1Gi"}],
            addons=[{"type": "redis", "name": "cache"}],
        )
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        assert kube.writes == [
            ("create", "secret", "web-cache-auth"),
            ("create", "service", "web-cache"),
            ("create", "deployment", "web-cache"),
            ("create", "pvc", "web-data"),
            ("create", "deployment", "web"),
            ("create", "service", "web"),
            ("create", "ingress", "web"),
        ]

        kube.writes.clear()
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        assert kube.writes == []

    @pytest.mark.asyncio
    async def test_new_commit_patches_image_only(self, kube, make_app):
        await make_app().with_commit(COMMIT).synchronize()
        kube.writes.clear()
        await make_app().with_commit("f00dbabe").synchronize()
        assert kube.writes == [("patch", "deployment", "web")]
        (op,) = kube.patches[("deployment", "web")]
        assert op["path"] == "/spec/template/spec/containers/0/image"
        assert op["value"] == "localhost:30005/acme/web:f00dbabe"

    @pytest.mark.asyncio
    async def test_requires_commit(self, make_app):
        with pytest.raises(ValueError):
            await make_app().synchronize()

    @pytest.mark.asyncio
    async def test_tls_issuer_missing(self, kube, make_app):
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}]
        )
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        ingress = kube.objects["ingress"]["web"]
        assert ingress.metadata.annotations is None
        assert ingress.spec.tls[0].hosts == ["web.example.com"]
        assert kube.issuers == {}

    @pytest.mark.asyncio
    async def test_tls_issuer_present(self, kube, make_app, conf):
        kube.issuers[conf.default_tls_issuer] = {"metadata": {"name": conf.default_tls_issuer}}
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}]
        )
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        ingress = kube.objects["ingress"]["web"]
        assert ingress.metadata.annotations == {ISSUER_ANNOTATION: conf.default_tls_issuer}

    @pytest.mark.asyncio
    async def test_named_issuer(self, kube, make_app):
        kube.issuers["staging"] = {"metadata": {"name": "staging"}}
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}],
            tls={"issuer": "staging"},
        )
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        assert kube.objects["ingress"]["web"].metadata.annotations == {
            ISSUER_ANNOTATION: "staging"
        }

    @pytest.mark.asyncio
    async def test_ingress_deleted_when_rules_removed(self, kube, make_app):
        spec = load_spec(ingresses=[{"host": "web.example.com", "servicePort": 80}])
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        kube.writes.clear()
        await make_app().with_commit(COMMIT).synchronize()
        assert kube.writes == [("delete", "ingress", "web")]
        assert "web" not in kube.objects["ingress"]

    @pytest.mark.asyncio
    async def test_storage_shrink_is_not_applied(self, kube, make_app):
        volumes = [{"name": "data", "mountPath": "/data", "size": "2Gi"}]
        await make_app(spec=load_spec(volumes=volumes)).with_commit(COMMIT).synchronize()
        kube.writes.clear()
        volumes[0]["size"] = "1Gi"
        await make_app(spec=load_spec(volumes=volumes)).with_commit(COMMIT).synchronize()
        assert kube.writes == []

    @pytest.mark.asyncio
    async def test_storage_expansion(self, kube, make_app):
        volumes = [{"name": "data", "mountPath": "/data", "size": "1Gi"}]
        await make_app(spec=load_spec(volumes=volumes)).with_commit(COMMIT).synchronize()
        kube.writes.clear()
        volumes[0]["size"] = "5Gi"
        await make_app(spec=load_spec(volumes=volumes)).with_commit(COMMIT).synchronize()
        assert kube.writes == [("patch", "pvc", "web-data")]

    @pytest.mark.asyncio
    async def test_addon_credentials_never_rotated(self, kube, make_app):
        spec = load_spec(addons=[{"type": "postgres", "name": "db"}])
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        password = kube.objects["secret"]["web-db-auth"].string_data["password"]
        await make_app(spec=spec).with_commit(COMMIT).synchronize()
        assert kube.objects["secret"]["web-db-auth"].string_data["password"] == password

    @pytest.mark.asyncio
    async def test_sensor_notified_of_writes_and_drift(self, kube, make_app):
        sensor = Mock()
        app = make_app().with_commit(COMMIT)
        app.sensor = sensor
        await app.synchronize()
        assert sensor.on_resource_sync_complete.call_count == 2

        app = make_app().with_commit("f00dbabe")
        app.sensor = sensor
        await app.synchronize()
        sensor.on_resource_drift_detected.assert_called_once()
        args = sensor.on_resource_drift_detected.call_args[0]
        assert args[3] == "deployment"


class TestWorkloadStatus:
    @pytest.mark.asyncio
    async def test_ready_replicas_and_restarts(self, kube, make_app):
        app = make_app(spec=load_spec(replicas=2)).with_commit(COMMIT)
        await app.synchronize()
        kube.objects["deployment"]["web"].status = V1DeploymentStatus(ready_replicas=1)
        kube.pods = [
            V1Pod(
                status=V1PodStatus(
                    container_statuses=[
                        V1ContainerStatus(
                            name="app",
                            image="x",
                            image_id="x",
                            ready=True,
                            restart_count=restarts,
                        )
                    ]
                )
            )
            for restarts in (2, 3)
        ]
        status = await app.fetch_workload_status()
        assert status == {"readyReplicas": 1, "desiredReplicas": 2, "restartCount": 5}

    @pytest.mark.asyncio
    async def test_missing_deployment(self, make_app):
        status = await make_app().fetch_workload_status()
        assert status == {"readyReplicas": 0, "desiredReplicas": 1, "restartCount": 0}

    def test_app_url(self, make_app):
        assert make_app().prepare_app_url() == "http://web.apps.svc.cluster.local"
        spec = load_spec(
            ingresses=[{"host": "web.example.com", "servicePort": 80, "tls": True}]
        )
        assert make_app(spec=spec).prepare_app_url() == "https://web.example.com"
        spec = load_spec(ingresses=[{"host": "web.example.com", "servicePort": 80}])
        network = make_app(spec=spec).prepare_network_status()
        assert network == {
            "appUrl": "http://web.example.com",
            "serviceType": "ClusterIP",
            "ingressHost": "web.example.com",
        }

    def test_reconciliation_paused(self, make_app):
        app = make_app(annotations={"gitship.io/pause-reconciliation": "true"})
        assert app.reconciliation_paused
        assert not make_app().reconciliation_paused
