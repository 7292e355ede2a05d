from enum import Enum
from typing import List, Optional, Tuple

from kubernetes_asyncio.client import (
    BatchV1Api,
    V1Container,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1EnvVarSource,
    V1Job,
    V1JobSpec,
    V1KeyToPath,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1SecretKeySelector,
    V1SecretVolumeSource,
    V1Volume,
    V1VolumeMount,
)

from gitship.common.models.labels import Labels
from gitship.resources.base import BaseResource
from gitship.revision import to_ssh_url
from gitship.sensors import SensorDelegate
from gitship.types.models.gitshipapp_resources import GitshipAppResources
from gitship.types.models.gitshipapp_spec import GitshipAppSpec
from gitship.types.settings import Settings
from gitship.utils.context import StepContext

WORKSPACE_VOLUME = "workspace"
WORKSPACE_PATH = "/workspace"
SSH_KEY_VOLUME = "ssh-key"
SSH_KEY_PATH = "/etc/ssh-key"
SSH_KEY_FILE = "ssh-privatekey"
TOKEN_KEY = "token"
DOCKER_CONFIG_VOLUME = "docker-config"
DOCKER_CONFIG_PATH = "/kaniko/.docker"
DOCKER_CONFIG_KEY = ".dockerconfigjson"

# Generates a Dockerfile by file presence when the repository ships none.
DOCKERFILE_SCRIPT = """
if [ ! -f /workspace/Dockerfile ]; then
  echo "No Dockerfile found, generating template..."
  if [ -f /workspace/package.json ]; then
    printf 'FROM node:20-slim\\nWORKDIR /app\\nCOPY . .\\nRUN npm install\\nCMD ["npm", "start"]\\n' > /workspace/Dockerfile
  elif [ -f /workspace/requirements.txt ]; then
    printf 'FROM python:3.11-slim\\nWORKDIR /app\\nCOPY . .\\nRUN pip install -r requirements.txt\\nCMD ["python", "app.py"]\\n' > /workspace/Dockerfile
  elif [ -f /workspace/go.mod ]; then
    printf 'FROM golang:1.21-alpine\\nWORKDIR /app\\nCOPY . .\\nRUN go build -o main .\\nCMD ["./main"]\\n' > /workspace/Dockerfile
  else
    printf 'FROM nginx:alpine\\nCOPY . /usr/share/nginx/html\\n' > /workspace/Dockerfile
  fi
fi
"""

# Tries the same credential order as revision resolution: ssh, token, anonymous.
CLONE_SCRIPT = """
set -e
cloned=""
if [ -f /etc/ssh-key/ssh-privatekey ]; then
  mkdir -p /root/.ssh
  cp /etc/ssh-key/ssh-privatekey /root/.ssh/id_key
  chmod 600 /root/.ssh/id_key
  export GIT_SSH_COMMAND="ssh -i /root/.ssh/id_key -o UserKnownHostsFile=/dev/null -o StrictHostKeyChecking=no"
  if git clone "$SSH_REPO_URL" /workspace; then cloned="ssh"; else rm -rf /workspace/* /workspace/.[!.]* 2>/dev/null || true; fi
fi
if [ -z "$cloned" ] && [ -n "$GITHUB_TOKEN" ]; then
  TOKEN_URL=$(echo "$REPO_URL" | sed "s#https://#https://oauth2:$GITHUB_TOKEN@#")
  if git clone "$TOKEN_URL" /workspace; then cloned="token"; else rm -rf /workspace/* /workspace/.[!.]* 2>/dev/null || true; fi
fi
if [ -z "$cloned" ]; then
  GIT_TERMINAL_PROMPT=0 git clone "$REPO_URL" /workspace
fi
cd /workspace && git checkout "$COMMIT_ID"
""" + DOCKERFILE_SCRIPT


class BuildOutcome(str, Enum):
    ABSENT = "Absent"
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def strip_image_tag(image_name: str) -> str:
    """Lower-case repository with any tag removed, registry ports are kept."""
    base = image_name.lower()
    idx = base.rfind(":")
    if idx != -1 and "/" not in base[idx + 1 :]:
        base = base[:idx]
    return base


def resolve_image_names(
    image_name: str,
    commit: str,
    registry_secret: Optional[str] = None,
    conf: Settings = None,
) -> Tuple[str, str]:
    """Returns the (push, pull) image references of a commit build.

    Without a registry secret images go to the in-cluster registry, which
    kubelets reach through a node local port.
    """
    conf = conf or Settings()
    base = strip_image_tag(image_name)
    if not registry_secret:
        return (
            f"{conf.in_cluster_registry}/{base}:{commit}",
            f"{conf.node_local_registry}/{base}:{commit}",
        )
    image = f"{base}:{commit}"
    return image, image


def job_outcome(job: Optional[V1Job]) -> BuildOutcome:
    if job is None:
        return BuildOutcome.ABSENT
    status = job.status
    if status is not None and (status.succeeded or 0) > 0:
        return BuildOutcome.SUCCEEDED
    if status is not None and (status.failed or 0) > 0:
        return BuildOutcome.FAILED
    return BuildOutcome.PENDING


def job_failure_message(job: Optional[V1Job]) -> str:
    conditions = (job.status.conditions if job and job.status else None) or []
    for condition in conditions:
        if condition.type == "Failed" and condition.status == "True":
            reason = condition.reason or "Failed"
            return f"Build job failed: {reason} {condition.message or ''}".strip()
    return "Build job failed"


class BuildOrchestrator(BaseResource):
    """Submits and observes the one-shot build Job of a commit.

    Job names are derived from the commit, so submitting twice for the same
    commit converges on a single Job no matter how many callers race.
    """

    COMPONENT = "build"
    CLONE_CONTAINER_NAME = "git-clone"
    BUILD_CONTAINER_NAME = "kaniko"

    conf: Settings
    spec: GitshipAppSpec
    batch_v1_api: BatchV1Api
    sensor: Optional[SensorDelegate]

    def __init__(
        self,
        name: str,
        namespace: str,
        uid: str,
        spec: GitshipAppSpec,
        batch_v1_api: BatchV1Api,
        conf: Settings = None,
        sensor: SensorDelegate = None,
    ):
        labels = Labels.generate_default_labels(
            name, self.COMPONENT, self.GITSHIP_OPERATOR_NAME
        )
        super().__init__(name=name, namespace=namespace, uid=uid, labels=labels)
        self.spec = spec
        self.batch_v1_api = batch_v1_api
        self.conf = conf or Settings()
        self.sensor = sensor

    def job_name(self, commit: str) -> str:
        return GitshipAppResources.build_job_name(self.name, commit)

    @property
    def ssh_key_secret_name(self) -> str:
        return self.spec.ssh_key_secret_ref or GitshipAppResources.ssh_key_secret_name(
            self.name
        )

    @property
    def token_secret_name(self) -> str:
        return self.spec.token_secret_ref or self.conf.default_token_secret_name

    async def observe(self, commit: str) -> Tuple[BuildOutcome, Optional[V1Job]]:
        job = await self.fetch_job(self.batch_v1_api, self.job_name(commit), self.namespace)
        return job_outcome(job), job

    async def submit(
        self,
        commit: str,
        has_ssh_key: bool = False,
        has_token: bool = False,
        ctx: StepContext = None,
    ) -> bool:
        """Create the build job of a commit unless it exists.

        Returns True when this call created the Job.
        """
        ctx = ctx or StepContext.detached()
        job = self.prepare_job(commit, has_ssh_key, has_token)
        created = await self.create_job(self.batch_v1_api, self.namespace, job)
        if created:
            ctx.logger.info(f"Submitted build job {job.metadata.name}")
        else:
            ctx.logger.debug(f"Build job {job.metadata.name} already exists")
        if self.sensor:
            self.sensor.on_build_submitted(self.name, self.namespace, commit, created)
        return created

    async def cancel(self, commit: str, ctx: StepContext = None) -> None:
        ctx = ctx or StepContext.detached()
        await self.delete_job(self.batch_v1_api, self.job_name(commit), self.namespace)
        ctx.logger.info(f"Deleted build job {self.job_name(commit)}")

    def prepare_job_labels(self, commit: str) -> Labels:
        return Labels(self.labels.as_dict()).include_gitship_commit(commit)

    def prepare_clone_env(self, commit: str, has_token: bool) -> List[V1EnvVar]:
        env = [
            V1EnvVar(name="REPO_URL", value=self.spec.repo_url),
            V1EnvVar(name="SSH_REPO_URL", value=to_ssh_url(self.spec.repo_url)),
            V1EnvVar(name="COMMIT_ID", value=commit),
        ]
        if has_token:
            env.append(
                V1EnvVar(
                    name="GITHUB_TOKEN",
                    value_from=V1EnvVarSource(
                        secret_key_ref=V1SecretKeySelector(
                            name=self.token_secret_name, key=TOKEN_KEY
                        )
                    ),
                )
            )
        return env

    def prepare_kaniko_args(self, push_image: str) -> List[str]:
        cache_repo = push_image.rsplit(":", 1)[0] + "-cache"
        args = [
            "--dockerfile=Dockerfile",
            f"--context=dir://{WORKSPACE_PATH}",
            f"--destination={push_image}",
            "--cache=true",
            f"--cache-repo={cache_repo}",
        ]
        if not self.spec.registry_secret_ref:
            args += ["--insecure", "--skip-tls-verify"]
        return args

    def prepare_job(
        self, commit: str, has_ssh_key: bool = False, has_token: bool = False
    ) -> V1Job:
        """Build job resource."""
        push_image, _ = resolve_image_names(
            self.spec.image_name, commit, self.spec.registry_secret_ref, self.conf
        )
        resources = self.prepare_resource_requirements(
            self.spec.resources.cpu, self.spec.resources.memory
        )
        workspace_mount = V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=WORKSPACE_PATH)
        clone_mounts = [workspace_mount]
        build_mounts = [workspace_mount]
        volumes = [
            V1Volume(name=WORKSPACE_VOLUME, empty_dir=V1EmptyDirVolumeSource())
        ]
        if has_ssh_key:
            clone_mounts.append(
                V1VolumeMount(name=SSH_KEY_VOLUME, mount_path=SSH_KEY_PATH, read_only=True)
            )
            volumes.append(
                V1Volume(
                    name=SSH_KEY_VOLUME,
                    secret=V1SecretVolumeSource(
                        secret_name=self.ssh_key_secret_name, default_mode=0o400
                    ),
                )
            )
        if self.spec.registry_secret_ref:
            build_mounts.append(
                V1VolumeMount(
                    name=DOCKER_CONFIG_VOLUME,
                    mount_path=DOCKER_CONFIG_PATH,
                    read_only=True,
                )
            )
            volumes.append(
                V1Volume(
                    name=DOCKER_CONFIG_VOLUME,
                    secret=V1SecretVolumeSource(
                        secret_name=self.spec.registry_secret_ref,
                        items=[V1KeyToPath(key=DOCKER_CONFIG_KEY, path="config.json")],
                    ),
                )
            )
        labels = self.prepare_job_labels(commit)
        return V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=V1ObjectMeta(
                name=self.job_name(commit),
                namespace=self.namespace,
                labels=labels.as_dict(),
                owner_references=self.prepare_owner_references(),
            ),
            spec=V1JobSpec(
                backoff_limit=self.conf.build_backoff_limit,
                active_deadline_seconds=self.conf.build_active_deadline_seconds,
                ttl_seconds_after_finished=self.conf.build_ttl_seconds_after_finished,
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=labels.as_dict()),
                    spec=V1PodSpec(
                        restart_policy="Never",
                        init_containers=[
                            V1Container(
                                name=self.CLONE_CONTAINER_NAME,
                                image=self.conf.git_clone_image,
                                command=["/bin/sh", "-c", CLONE_SCRIPT],
                                env=self.prepare_clone_env(commit, has_token),
                                volume_mounts=clone_mounts,
                                resources=resources,
                            )
                        ],
                        containers=[
                            V1Container(
                                name=self.BUILD_CONTAINER_NAME,
                                image=self.conf.kaniko_image,
                                args=self.prepare_kaniko_args(push_image),
                                volume_mounts=build_mounts,
                                resources=resources,
                            )
                        ],
                        volumes=volumes,
                    ),
                ),
            ),
        )
