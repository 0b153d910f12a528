"""
Docker implementation of the container runtime capability, using the docker SDK.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..errors import InfrastructureError, ServiceRuntimeError
from ..MODELS.service_spec import ServiceSpec
from .container_runtime import (
    LABEL_FINGERPRINT,
    LABEL_PROJECT,
    LABEL_SERVICE,
    ContainerInfo,
    ContainerRuntime,
)


def _parse_started(value: Optional[str]) -> Optional[datetime]:
    # Docker reports nanoseconds, e.g. 2024-05-01T10:00:00.123456789Z
    if not value or value.startswith("0001-"):
        return None
    head, _, frac = value.rstrip("Z").partition(".")
    try:
        return datetime.fromisoformat(f"{head}.{frac[:6].ljust(6, '0')}+00:00")
    except ValueError:
        return None


class DockerRuntime(ContainerRuntime):
    """
    Talks to the local Docker daemon.

    :param network: Optional network every container is attached to.
    :param client: Injected client, defaults to ``docker.from_env()`` on first use.
    """

    def __init__(self, network: Optional[str] = None, client: Optional[docker.DockerClient] = None):
        self.network = network
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise InfrastructureError(f"docker is not available: {e}") from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e

    def list_instances(self, project: str) -> List[ContainerInfo]:
        try:
            containers = self.client.containers.list(
                all=True, filters={"label": f"{LABEL_PROJECT}={project}"}
            )
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise InfrastructureError(f"cannot list containers: {e}") from e

        instances = []
        for c in containers:
            labels = c.labels or {}
            state = c.attrs.get("State", {})
            instances.append(
                ContainerInfo(
                    id=c.id,
                    name=c.name,
                    service=labels.get(LABEL_SERVICE, ""),
                    running=c.status == "running",
                    fingerprint=labels.get(LABEL_FINGERPRINT),
                    started_at=_parse_started(state.get("StartedAt")),
                    labels=dict(labels),
                )
            )
        return instances

    def run(self, spec: ServiceSpec, name: str, labels: Dict[str, str]) -> str:
        kwargs = {
            "name": name,
            "detach": True,
            "labels": labels,
            "environment": dict(spec.environment),
            "volumes": {
                m.host_path: {"bind": m.container_path, "mode": "ro" if m.read_only else "rw"}
                for m in spec.mounts
            },
            "ports": {f"{c}/tcp": h for c, h in spec.ports.items()},
            # Restarts are decided by the reconciler, not by the daemon
            "restart_policy": {"Name": "no"},
        }
        if spec.command:
            kwargs["command"] = spec.command
        if spec.resources.memory:
            kwargs["mem_limit"] = spec.resources.memory
        if spec.resources.cpu_shares:
            kwargs["cpu_shares"] = spec.resources.cpu_shares
        if spec.resources.cpus:
            kwargs["nano_cpus"] = int(spec.resources.cpus * 1e9)
        if self.network:
            kwargs["network"] = self.network

        try:
            container = self.client.containers.run(spec.image, **kwargs)
        except ImageNotFound as e:
            raise ServiceRuntimeError(f"image {spec.image} not found: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e
        except DockerException as e:
            raise ServiceRuntimeError(f"cannot start {name}: {e}") from e
        return container.id

    def _get(self, container_id: str):
        try:
            return self.client.containers.get(container_id)
        except NotFound as e:
            raise ServiceRuntimeError(f"container {container_id[:12]} not found") from e
        except requests.exceptions.ConnectionError as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e
        except DockerException as e:
            raise ServiceRuntimeError(f"cannot inspect {container_id[:12]}: {e}") from e

    def start(self, container_id: str) -> None:
        try:
            self._get(container_id).start()
        except APIError as e:
            raise ServiceRuntimeError(f"cannot start {container_id[:12]}: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e

    def stop(self, container_id: str, timeout: int = 30) -> None:
        try:
            self._get(container_id).stop(timeout=timeout)
        except APIError as e:
            raise ServiceRuntimeError(f"cannot stop {container_id[:12]}: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e

    def remove(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            return
        except requests.exceptions.ConnectionError as e:
            raise InfrastructureError(f"docker daemon unreachable: {e}") from e
        except DockerException as e:
            raise ServiceRuntimeError(f"cannot remove {container_id[:12]}: {e}") from e

    def exec(self, container_id: str, command: List[str], timeout: float) -> Tuple[int, str]:
        # exec_run has no deadline of its own; coreutils timeout enforces it inside the container
        wrapped = ["timeout", str(max(1, int(timeout)))] + list(command)
        try:
            result = self._get(container_id).exec_run(wrapped, demux=False)
        except APIError as e:
            return 1, str(e)
        except requests.exceptions.ConnectionError as e:
            return 1, f"docker daemon unreachable: {e}"
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return result.exit_code, output[:500]
