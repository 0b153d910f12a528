"""
Observed state of the host, rebuilt on every reconciliation pass and never persisted.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class ObservedStatus(str, Enum):
    """What the runtime and a one-shot probe say about a service."""

    RUNNING = "running"
    STARTING = "starting"  # running, still inside its start period
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ServiceObservation:
    """Observed instance of a declared service."""

    name: str
    status: ObservedStatus = ObservedStatus.STOPPED
    container_id: Optional[str] = None
    started_at: Optional[datetime] = None
    fingerprint: Optional[str] = None
    # Other instances of the same service, e.g. a stopped previous version
    stale_ids: Tuple[str, ...] = ()
    # A stopped instance already built from the desired definition
    reusable_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status != ObservedStatus.STOPPED


@dataclass(frozen=True)
class VolumeObservation:
    """Result of stat() on a host directory."""

    path: str
    exists: bool = False
    uid: Optional[int] = None
    gid: Optional[int] = None
    mode: Optional[int] = None

    def matches(self, uid: int, gid: int, mode: int) -> bool:
        return self.exists and (self.uid, self.gid, self.mode) == (uid, gid, mode)


@dataclass(frozen=True)
class RuntimeState:
    """Immutable snapshot consumed by the reconciler."""

    services: Mapping[str, ServiceObservation] = field(default_factory=dict)
    volumes: Mapping[str, VolumeObservation] = field(default_factory=dict)
    orphans: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    proxy_digest: Optional[str] = None
    certificates: Mapping[str, Optional[datetime]] = field(default_factory=dict)
    observed_at: Optional[datetime] = None

    def service(self, name: str) -> ServiceObservation:
        return self.services.get(name) or ServiceObservation(name=name)

    def volume(self, path: str) -> VolumeObservation:
        return self.volumes.get(path) or VolumeObservation(path=path)

    def to_dict(self) -> Dict:
        return {
            "services": {
                name: {
                    "status": obs.status.value,
                    "container_id": obs.container_id,
                    "started_at": obs.started_at.isoformat() if obs.started_at else None,
                    "fingerprint": obs.fingerprint,
                }
                for name, obs in self.services.items()
            },
            "volumes": {
                path: {
                    "exists": obs.exists,
                    "uid": obs.uid,
                    "gid": obs.gid,
                    "mode": oct(obs.mode) if obs.mode is not None else None,
                }
                for path, obs in self.volumes.items()
            },
            "orphans": {name: list(ids) for name, ids in self.orphans.items()},
            "proxy_digest": self.proxy_digest,
            "certificates": {
                host: expiry.isoformat() if expiry else None
                for host, expiry in self.certificates.items()
            },
        }
