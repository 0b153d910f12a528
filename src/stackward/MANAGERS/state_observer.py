"""
Builds a RuntimeState snapshot from the runtime, the filesystem, the proxy and the certificate agent.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from ..MODELS.runtime_state import ObservedStatus, RuntimeState, ServiceObservation, VolumeObservation
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.stack_plan import StackPlan
from ..RUNTIME.container_runtime import ContainerInfo, ContainerRuntime
from .cert_manager import CertManager
from .health_monitor import HealthMonitor, HealthState
from .proxy_manager import ProxyManager
from .volume_manager import VolumeManager


class StateObserver:
    """
    Observes the host. Read-only: nothing here changes containers or files.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        volumes: VolumeManager,
        monitor: HealthMonitor,
        proxy: Optional[ProxyManager] = None,
        certs: Optional[CertManager] = None,
    ):
        self.runtime = runtime
        self.volumes = volumes
        self.monitor = monitor
        self.proxy = proxy
        self.certs = certs
        self.logger = structlog.get_logger().bind(component="state_observer")

    def observe(self, plan: StackPlan) -> RuntimeState:
        """
        Takes a fresh snapshot for ``plan``.

        :raises InfrastructureError: If the container runtime cannot be reached.
        """
        self.runtime.ping()
        by_service: Dict[str, List[ContainerInfo]] = {}
        for info in self.runtime.list_instances(plan.project):
            by_service.setdefault(info.service, []).append(info)

        declared = set(plan.service_names())
        services = {
            svc.name: self._observe_service(svc, by_service.get(svc.name, []))
            for svc in plan.services
        }
        orphans = {
            name: tuple(i.id for i in instances)
            for name, instances in by_service.items()
            if name not in declared
        }

        volumes = {}
        for binding in plan.volumes:
            if binding.host_path not in volumes:
                volumes[binding.host_path] = self.volumes.inspect(binding.host_path)

        certificates = {}
        if self.certs is not None and self.proxy is not None and self.proxy.settings.tls:
            for svc in plan.public_services():
                certificates[svc.hostname] = self.certs.expiry(svc.hostname)

        state = RuntimeState(
            services=services,
            volumes=volumes,
            orphans=orphans,
            proxy_digest=self.proxy.current_digest() if self.proxy else None,
            certificates=certificates,
            observed_at=datetime.now(timezone.utc),
        )
        self.logger.debug(
            "host observed",
            services={n: o.status.value for n, o in services.items()},
            orphans=list(orphans),
        )
        return state

    def _observe_service(self, spec: ServiceSpec, instances: List[ContainerInfo]) -> ServiceObservation:
        fingerprint = spec.fingerprint()
        # Prefer a running instance, then one built from the current definition
        ranked = sorted(instances, key=lambda i: (not i.running, i.fingerprint != fingerprint))
        if not ranked:
            return ServiceObservation(name=spec.name)

        primary = ranked[0]
        others = ranked[1:]
        reusable = next(
            (i.id for i in ranked if not i.running and i.fingerprint == fingerprint), None
        )
        status = self._status(spec, primary) if primary.running else ObservedStatus.STOPPED
        return ServiceObservation(
            name=spec.name,
            status=status,
            container_id=primary.id,
            started_at=primary.started_at,
            fingerprint=primary.fingerprint,
            stale_ids=tuple(i.id for i in others),
            reusable_id=reusable,
        )

    def _status(self, spec: ServiceSpec, instance: ContainerInfo) -> ObservedStatus:
        hc = spec.health_check
        if hc is None:
            return ObservedStatus.RUNNING

        health = self.monitor.get_health(spec.name)
        if health is not None:
            return {
                HealthState.HEALTHY: ObservedStatus.RUNNING,
                HealthState.STARTING: ObservedStatus.STARTING,
            }.get(health.state, ObservedStatus.UNHEALTHY)

        if self.monitor.probe_once(spec, instance.id):
            return ObservedStatus.RUNNING
        if instance.started_at is not None:
            age = (datetime.now(timezone.utc) - instance.started_at).total_seconds()
            if age < hc.start_period:
                return ObservedStatus.STARTING
        return ObservedStatus.UNHEALTHY
