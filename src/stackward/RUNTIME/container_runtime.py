"""
Capability interface for the container runtime. The core never talks to Docker directly.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..MODELS.service_spec import ServiceSpec

LABEL_PROJECT = "stackward.project"
LABEL_SERVICE = "stackward.service"
LABEL_FINGERPRINT = "stackward.fingerprint"


@dataclass(frozen=True)
class ContainerInfo:
    """A container as reported by the runtime."""

    id: str
    name: str
    service: str
    running: bool
    fingerprint: Optional[str] = None
    started_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)


class ContainerRuntime(ABC):
    """
    create/start/stop/inspect/exec against containers belonging to one project.
    Implementations raise ServiceRuntimeError on refused operations and
    InfrastructureError when the runtime cannot be reached at all.
    """

    @abstractmethod
    def ping(self) -> None:
        """Raise InfrastructureError if the runtime is unreachable."""

    @abstractmethod
    def list_instances(self, project: str) -> List[ContainerInfo]:
        """All containers labelled with ``project``, running or not."""

    @abstractmethod
    def run(self, spec: ServiceSpec, name: str, labels: Dict[str, str]) -> str:
        """Create and start a container for ``spec``. Returns its id."""

    @abstractmethod
    def start(self, container_id: str) -> None:
        """Start an existing, stopped container."""

    @abstractmethod
    def stop(self, container_id: str, timeout: int = 30) -> None:
        """Stop a container, leaving it in place."""

    @abstractmethod
    def remove(self, container_id: str) -> None:
        """Remove a container. Unknown ids are ignored."""

    @abstractmethod
    def exec(self, container_id: str, command: List[str], timeout: float) -> Tuple[int, str]:
        """Run ``command`` inside the container. Returns (exit code, output)."""


def instance_name(project: str, service: str, fingerprint: str) -> str:
    return f"{project}-{service}-{fingerprint[:12]}"


def instance_labels(project: str, spec: ServiceSpec) -> Dict[str, str]:
    return {
        LABEL_PROJECT: project,
        LABEL_SERVICE: spec.name,
        LABEL_FINGERPRINT: spec.fingerprint(),
    }
