# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Lifecycle of the containers behind each service: start, stop and replace.
"""
import threading
from typing import Dict, Optional

import structlog

from ..errors import ServiceRuntimeError
from ..MODELS.actions import ReconcileAction
from ..MODELS.stack_plan import StackPlan
from .health_monitor import HealthMonitor
from ..RUNTIME.container_runtime import ContainerRuntime, instance_labels, instance_name


class ServiceController:
    """
    Applies StartService, StopService and WaitHealthy actions.

    A StopService followed by a failing StartService brings the stopped instance
    back, so a bad new version never leaves the service silently down.
    """

    def __init__(self, plan: StackPlan, runtime: ContainerRuntime, monitor: HealthMonitor):
        """
        :param plan: Desired state, used to look up service definitions.
        :param runtime: Container runtime capability.
        :param monitor: Health monitor that new instances are registered with.
        """
        self.plan = plan
        self.runtime = runtime
        self.monitor = monitor
        self._lock = threading.Lock()
        self._previous: Dict[str, str] = {}
        self.logger = structlog.get_logger().bind(component="service_controller")

    def stop(self, action: ReconcileAction) -> None:
        """Stops every container listed in the action; orphans are removed as well."""
        name = action.target
        container_ids = list(action.param("container_ids", ()))
        orphan = action.param("orphan", False)

        if not orphan and name in self.plan.service_names():
            self.monitor.unwatch(name)

        for container_id in container_ids:
            self.runtime.stop(container_id, timeout=self.plan.settings.stop_timeout)
            if orphan:
                self.runtime.remove(container_id)
            self.logger.info("container stopped", service=name, container=container_id[:12], removed=orphan)

        if container_ids and not orphan:
            with self._lock:
                self._previous[name] = container_ids[0]

    def start(self, action: ReconcileAction) -> str:
        """
        Starts the service, reusing a stopped container of the same fingerprint if there is one.

        :return: Id of the running container.
        """
        spec = self.plan.service(action.target)
        reuse: Optional[str] = action.param("reuse")
        stale = [cid for cid in action.param("stale_ids", ()) if cid != reuse]

        with self._lock:
            previous = self._previous.pop(spec.name, None)

        try:
            if reuse:
                self.runtime.start(reuse)
                container_id = reuse
            else:
                fingerprint = spec.fingerprint()
                container_id = self.runtime.run(
                    spec,
                    name=instance_name(self.plan.project, spec.name, fingerprint),
                    labels=instance_labels(self.plan.project, spec),
                )
        except ServiceRuntimeError as e:
            if previous is None:
                raise
            outcome = "restarted" if self._restore(spec.name, previous) else "could not be restarted"
            raise ServiceRuntimeError(f"{e.cause}; previous instance {previous[:12]} {outcome}") from e

        self.logger.info("container started", service=spec.name, container=container_id[:12], image=spec.image)
        self.monitor.watch(spec, container_id)

        for old in stale + ([previous] if previous and previous != container_id else []):
            self.runtime.remove(old)
        return container_id

    def _restore(self, name: str, container_id: str) -> bool:
        spec = self.plan.service(name)
        try:
            self.runtime.start(container_id)
        except ServiceRuntimeError as e:
            self.logger.error("previous instance could not be restarted", service=name, error=str(e))
            return False
        self.logger.warning("previous instance restarted", service=name, container=container_id[:12])
        self.monitor.watch(spec, container_id)
        return True

    def wait_healthy(self, action: ReconcileAction) -> None:
        """Waits for the service's health monitor to report healthy."""
        name = action.target
        if self.monitor.get_health(name) is None:
            self.monitor.watch(self.plan.service(name), action.param("container_id"))
        self.monitor.wait_healthy(name, timeout=action.param("timeout"))
