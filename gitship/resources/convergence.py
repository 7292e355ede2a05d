"""Field level comparison of desired and observed child resources.

Every ``diff_*`` function takes the desired object built by the operator and
the object read back from the cluster, projects both onto the fields the
operator governs (normalizing defaults the API server fills in, ordering that
carries no meaning and quantity spelling), and returns a JSON patch that
touches only the governed fields that differ, or ``None`` when they agree.
Fields owned by other controllers are never part of a patch.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.utils import parse_quantity
from kubernetes_asyncio.client import (
    V1Container,
    V1Deployment,
    V1Ingress,
    V1PersistentVolumeClaim,
    V1Probe,
    V1Service,
)

from gitship.resources.base import compute_hash
from gitship.utils.helpers import json_pointer_escape

APP_CONTAINER_NAME = "app"
ISSUER_ANNOTATION = "cert-manager.io/issuer"
GOVERNED_INGRESS_ANNOTATIONS = (ISSUER_ANNOTATION,)

Patch = List[Dict[str, Any]]


def normalize_quantity(value) -> Optional[str]:
    """Canonical spelling of a quantity so ``1Gi`` equals ``1024Mi``."""
    if value is None or value == "":
        return None
    try:
        return format(Decimal(parse_quantity(value)).normalize(), "f")
    except ValueError:
        return str(value)


def _quantities(values: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    return {key: normalize_quantity(value) for key, value in (values or {}).items()}


def _changed(desired: Any, observed: Any) -> bool:
    return compute_hash({"v": desired}) != compute_hash({"v": observed})


def _set_or_remove(path: str, value: Any, observed_present: bool) -> List[Dict]:
    if value:
        return [{"op": "add", "path": path, "value": value}]
    if observed_present:
        return [{"op": "remove", "path": path}]
    return []


# ------------------------------------------------------------------
# Deployment
# ------------------------------------------------------------------


def find_container(
    deployment: V1Deployment, name: str = APP_CONTAINER_NAME
) -> Tuple[int, Optional[V1Container]]:
    """Index and container named ``name``, falling back to the first one."""
    spec = deployment.spec.template.spec if deployment.spec.template else None
    containers = (spec.containers if spec else None) or []
    for index, container in enumerate(containers):
        if container.name == name:
            return index, container
    if containers:
        return 0, containers[0]
    return 0, None


def _probe_fields(probe: Optional[V1Probe]) -> Optional[Dict]:
    if probe is None or probe.http_get is None:
        return None
    return {
        "path": probe.http_get.path,
        "port": str(probe.http_get.port),
        "initialDelaySeconds": probe.initial_delay_seconds or 0,
        "timeoutSeconds": probe.timeout_seconds or 1,
    }


def _env_fields(container: V1Container) -> Dict[str, Any]:
    env = {}
    for var in container.env or []:
        if var.value_from is not None and var.value_from.secret_key_ref is not None:
            ref = var.value_from.secret_key_ref
            env[var.name] = {"secret": ref.name, "key": ref.key}
        elif var.value_from is not None:
            env[var.name] = {"valueFrom": str(var.value_from)}
        else:
            env[var.name] = var.value or ""
    return env


def _volume_fields(volume) -> Dict[str, Optional[str]]:
    claim = volume.persistent_volume_claim
    secret = volume.secret
    return {
        "name": volume.name,
        "claim": claim.claim_name if claim else None,
        "secret": secret.secret_name if secret else None,
    }


def deployment_watch_fields(deployment: V1Deployment) -> Dict[str, Any]:
    """
    Prepare fields of interest when comparing actual vs desired state.
    These fields are tracked for changes made outside the operator and are used to
    determine if a patch is needed.
    """
    pod_spec = deployment.spec.template.spec
    _, container = find_container(deployment)
    container = container or V1Container(name=APP_CONTAINER_NAME)
    resources = container.resources
    pod_security = pod_spec.security_context
    security = container.security_context
    capabilities = security.capabilities if security else None
    return {
        "replicas": deployment.spec.replicas,
        "image": container.image,
        "ports": sorted(
            [
                {
                    "name": port.name,
                    "containerPort": port.container_port,
                    "protocol": port.protocol or "TCP",
                }
                for port in container.ports or []
            ],
            key=lambda p: (p["containerPort"], p["protocol"]),
        ),
        "env": _env_fields(container),
        "envFrom": sorted(
            source.secret_ref.name
            for source in container.env_from or []
            if source.secret_ref is not None
        ),
        "volumeMounts": sorted(
            [
                {
                    "name": mount.name,
                    "mountPath": mount.mount_path,
                    "readOnly": bool(mount.read_only),
                }
                for mount in container.volume_mounts or []
            ],
            key=lambda m: m["name"],
        ),
        "volumes": sorted(
            [_volume_fields(volume) for volume in pod_spec.volumes or []],
            key=lambda v: v["name"],
        ),
        "imagePullSecrets": sorted(
            ref.name for ref in pod_spec.image_pull_secrets or []
        ),
        "resources": {
            "limits": _quantities(resources.limits if resources else None),
            "requests": _quantities(resources.requests if resources else None),
        },
        "securityContext": {
            "runAsNonRoot": pod_security.run_as_non_root if pod_security else None,
            "runAsUser": pod_security.run_as_user if pod_security else None,
            "fsGroup": pod_security.fs_group if pod_security else None,
            "allowPrivilegeEscalation": (
                security.allow_privilege_escalation if security else None
            ),
            "drop": sorted((capabilities.drop or []) if capabilities else []),
        },
        "livenessProbe": _probe_fields(container.liveness_probe),
        "readinessProbe": _probe_fields(container.readiness_probe),
    }


def diff_deployment(desired: V1Deployment, observed: V1Deployment) -> Optional[Patch]:
    want = deployment_watch_fields(desired)
    have = deployment_watch_fields(observed)
    if compute_hash(want) == compute_hash(have):
        return None

    _, desired_container = find_container(desired)
    index, observed_container = find_container(observed)
    observed_container = observed_container or V1Container(name=APP_CONTAINER_NAME)
    pod_path = "/spec/template/spec"
    container_path = f"{pod_path}/containers/{index}"
    desired_pod = desired.spec.template.spec
    observed_pod = observed.spec.template.spec

    patch = []
    if _changed(want["replicas"], have["replicas"]):
        patch.append(
            {"op": "add", "path": "/spec/replicas", "value": desired.spec.replicas}
        )
    if _changed(want["image"], have["image"]):
        patch.append(
            {
                "op": "add",
                "path": f"{container_path}/image",
                "value": desired_container.image,
            }
        )
    container_fields = (
        ("ports", "ports", "ports"),
        ("env", "env", "env"),
        ("envFrom", "envFrom", "env_from"),
        ("volumeMounts", "volumeMounts", "volume_mounts"),
        ("resources", "resources", "resources"),
        ("livenessProbe", "livenessProbe", "liveness_probe"),
        ("readinessProbe", "readinessProbe", "readiness_probe"),
    )
    for key, field, attr in container_fields:
        if _changed(want[key], have[key]):
            patch += _set_or_remove(
                f"{container_path}/{field}",
                getattr(desired_container, attr),
                getattr(observed_container, attr) is not None,
            )
    if _changed(want["volumes"], have["volumes"]):
        patch += _set_or_remove(
            f"{pod_path}/volumes",
            desired_pod.volumes,
            observed_pod.volumes is not None,
        )
    if _changed(want["imagePullSecrets"], have["imagePullSecrets"]):
        patch += _set_or_remove(
            f"{pod_path}/imagePullSecrets",
            desired_pod.image_pull_secrets,
            observed_pod.image_pull_secrets is not None,
        )
    if _changed(want["securityContext"], have["securityContext"]):
        patch.append(
            {
                "op": "add",
                "path": f"{pod_path}/securityContext",
                "value": desired_pod.security_context,
            }
        )
        patch.append(
            {
                "op": "add",
                "path": f"{container_path}/securityContext",
                "value": desired_container.security_context,
            }
        )
    return patch or None


# ------------------------------------------------------------------
# Service
# ------------------------------------------------------------------


def service_watch_fields(service: V1Service) -> Dict[str, Any]:
    spec = service.spec
    return {
        "ports": sorted(
            [
                {
                    "name": port.name,
                    "port": port.port,
                    "targetPort": str(port.target_port),
                    "protocol": port.protocol or "TCP",
                }
                for port in spec.ports or []
            ],
            key=lambda p: (p["port"], p["protocol"]),
        ),
        "selector": dict(spec.selector or {}),
        "type": spec.type or "ClusterIP",
    }


def diff_service(desired: V1Service, observed: V1Service) -> Optional[Patch]:
    want = service_watch_fields(desired)
    have = service_watch_fields(observed)
    if compute_hash(want) == compute_hash(have):
        return None
    patch = []
    if _changed(want["ports"], have["ports"]):
        patch.append({"op": "add", "path": "/spec/ports", "value": desired.spec.ports})
    if _changed(want["selector"], have["selector"]):
        patch.append(
            {"op": "add", "path": "/spec/selector", "value": desired.spec.selector}
        )
    if _changed(want["type"], have["type"]):
        patch.append({"op": "add", "path": "/spec/type", "value": desired.spec.type})
    return patch or None


# ------------------------------------------------------------------
# Ingress
# ------------------------------------------------------------------


def _ingress_annotations(ingress: V1Ingress) -> Dict[str, str]:
    annotations = (ingress.metadata.annotations if ingress.metadata else None) or {}
    return {
        key: annotations[key]
        for key in GOVERNED_INGRESS_ANNOTATIONS
        if key in annotations
    }


def ingress_watch_fields(ingress: V1Ingress) -> Dict[str, Any]:
    spec = ingress.spec
    rules = []
    for rule in spec.rules or []:
        paths = []
        for path in (rule.http.paths if rule.http else None) or []:
            service = path.backend.service if path.backend else None
            port = service.port if service else None
            paths.append(
                {
                    "path": path.path,
                    "pathType": path.path_type,
                    "service": service.name if service else None,
                    "port": (port.number or port.name) if port else None,
                }
            )
        rules.append({"host": rule.host, "paths": paths})
    return {
        "rules": rules,
        "tls": sorted(
            [
                {"hosts": sorted(tls.hosts or []), "secretName": tls.secret_name}
                for tls in spec.tls or []
            ],
            key=lambda t: t["secretName"] or "",
        ),
        "ingressClassName": spec.ingress_class_name,
        "annotations": _ingress_annotations(ingress),
    }


def diff_ingress(desired: V1Ingress, observed: V1Ingress) -> Optional[Patch]:
    want = ingress_watch_fields(desired)
    have = ingress_watch_fields(observed)
    if compute_hash(want) == compute_hash(have):
        return None
    patch = []
    if _changed(want["rules"], have["rules"]):
        patch.append({"op": "add", "path": "/spec/rules", "value": desired.spec.rules})
    if _changed(want["tls"], have["tls"]):
        patch += _set_or_remove(
            "/spec/tls", desired.spec.tls, observed.spec.tls is not None
        )
    if _changed(want["ingressClassName"], have["ingressClassName"]):
        patch += _set_or_remove(
            "/spec/ingressClassName",
            desired.spec.ingress_class_name,
            observed.spec.ingress_class_name is not None,
        )
    if _changed(want["annotations"], have["annotations"]):
        observed_annotations = observed.metadata.annotations
        if not observed_annotations:
            if want["annotations"]:
                patch.append(
                    {
                        "op": "add",
                        "path": "/metadata/annotations",
                        "value": want["annotations"],
                    }
                )
        else:
            for key in GOVERNED_INGRESS_ANNOTATIONS:
                path = f"/metadata/annotations/{json_pointer_escape(key)}"
                if key in want["annotations"]:
                    if want["annotations"][key] != observed_annotations.get(key):
                        patch.append(
                            {"op": "add", "path": path, "value": want["annotations"][key]}
                        )
                elif key in observed_annotations:
                    patch.append({"op": "remove", "path": path})
    return patch or None


# ------------------------------------------------------------------
# PersistentVolumeClaim
# ------------------------------------------------------------------


def requested_storage(pvc: V1PersistentVolumeClaim) -> Optional[str]:
    resources = pvc.spec.resources if pvc.spec else None
    requests = (resources.requests if resources else None) or {}
    return requests.get("storage")


def is_storage_shrink(
    desired: V1PersistentVolumeClaim, observed: V1PersistentVolumeClaim
) -> bool:
    want, have = requested_storage(desired), requested_storage(observed)
    if want is None or have is None:
        return False
    return parse_quantity(want) < parse_quantity(have)


def diff_persistent_volume_claim(
    desired: V1PersistentVolumeClaim, observed: V1PersistentVolumeClaim
) -> Optional[Patch]:
    """Only expansion is governed, claims are never shrunk."""
    want, have = requested_storage(desired), requested_storage(observed)
    if want is None:
        return None
    if have is not None and parse_quantity(want) <= parse_quantity(have):
        return None
    return [{"op": "add", "path": "/spec/resources/requests/storage", "value": want}]
