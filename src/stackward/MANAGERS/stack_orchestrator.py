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
Orchestration of a whole stack: observe, reconcile, apply, and keep doing it.
"""
import threading
import time
from typing import Dict, List, Optional

import structlog

from ..MODELS.actions import ActionKind, ApplyReport, ReconcileAction
from ..MODELS.runtime_state import RuntimeState
from ..MODELS.service_spec import VolumeBinding
from ..MODELS.stack_plan import StackPlan
from ..RUNNERS.action_executor import ActionExecutor, ExecutionContext, Handler
from ..RUNTIME.cert_agent import CertAgent
from ..RUNTIME.container_runtime import ContainerRuntime
from .cert_manager import CertManager
from .health_monitor import HealthMonitor, ServiceProber
from .proxy_manager import ProxyManager
from .reconciler import Reconciler
from .service_controller import ServiceController
from .state_observer import StateObserver
from .volume_manager import VolumeManager


class StackOrchestrator:
    """
    Wires the plan to the host. One pass (observe, reconcile, execute) always
    runs to completion before the next one starts.
    """

    def __init__(
        self,
        plan: StackPlan,
        runtime: ContainerRuntime,
        cert_agent: Optional[CertAgent] = None,
        monitor: Optional[HealthMonitor] = None,
        volumes: Optional[VolumeManager] = None,
        workers: Optional[int] = None,
    ):
        """
        Initializes the orchestrator.

        :param plan: Validated desired state.
        :param runtime: Container runtime capability.
        :param cert_agent: Certificate agent; certificates are left alone without one.
        :param monitor: Health monitor, defaults to one probing through ``runtime``.
        :param workers: Overrides ``plan.settings.workers``.
        """
        self.plan = plan
        self.runtime = runtime
        self.workers = workers or plan.settings.workers
        self.monitor = monitor or HealthMonitor(
            ServiceProber(runtime),
            on_unhealthy=self._handle_unhealthy,
            poll_interval=plan.settings.probe_poll_interval,
        )
        self.volumes = volumes or VolumeManager()
        self.proxy = (
            ProxyManager(plan.proxy, project=plan.project, webroot=plan.certificates.webroot)
            if plan.proxy
            else None
        )
        self.certs = CertManager(cert_agent, plan.certificates) if cert_agent else None
        self.observer = StateObserver(runtime, self.volumes, self.monitor, self.proxy, self.certs)
        self.reconciler = Reconciler(plan, self.proxy, self.certs)
        self.controller = ServiceController(plan, runtime, self.monitor)
        self._pass_lock = threading.Lock()
        self._wakeup = threading.Event()
        self.logger = structlog.get_logger().bind(component="orchestrator", project=plan.project)

    def observe(self) -> RuntimeState:
        return self.observer.observe(self.plan)

    def plan_actions(self, state: Optional[RuntimeState] = None) -> List[ReconcileAction]:
        """
        Dry run: the actions ``apply`` would execute right now.
        """
        return self.reconciler.reconcile(state or self.observe())

    def apply(self, cancel_event: Optional[threading.Event] = None) -> ApplyReport:
        """
        Observes, reconciles and executes one pass.

        :param cancel_event: Cooperative cancellation, honoured between actions.
        """
        with self._pass_lock:
            actions = self.plan_actions()
            if not actions:
                self.logger.info("no drift")
                return ApplyReport()
            self.logger.info("applying", actions=[str(a) for a in actions])
            executor = ActionExecutor(
                self._handlers(),
                self.plan.dependencies(),
                workers=self.workers,
                fs_retries=self.plan.settings.fs_retries,
                fs_retry_delay=self.plan.settings.fs_retry_delay,
                cancel_event=cancel_event,
            )
            return executor.execute(actions)

    def run(self, interval: float, cancel_event: threading.Event) -> None:
        """
        Reconciliation loop: a pass every ``interval`` seconds, or sooner when a
        service turns unhealthy, until ``cancel_event`` is set.
        """
        while not cancel_event.is_set():
            report = self.apply(cancel_event)
            if not report.ok:
                self.logger.warning("pass finished with failures", failed=report.failed, skipped=report.skipped)
            self._wakeup.clear()
            deadline = time.monotonic() + interval
            while not cancel_event.is_set() and not self._wakeup.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._wakeup.wait(min(remaining, 1.0))
        self.monitor.stop()

    def shutdown(self) -> None:
        self.monitor.stop()

    def _handle_unhealthy(self, name: str) -> None:
        self.logger.warning("service unhealthy, scheduling restart", service=name)
        self._wakeup.set()

    def _handlers(self) -> Dict[ActionKind, Handler]:
        return {
            ActionKind.CREATE_VOLUME: lambda a, ctx: self.volumes.create(self._binding(a)),
            ActionKind.FIX_OWNERSHIP: lambda a, ctx: self.volumes.fix_ownership(self._binding(a)),
            ActionKind.START_SERVICE: lambda a, ctx: self.controller.start(a),
            ActionKind.STOP_SERVICE: lambda a, ctx: self.controller.stop(a),
            ActionKind.WAIT_HEALTHY: lambda a, ctx: self.controller.wait_healthy(a),
            ActionKind.RELOAD_PROXY: self._reload_proxy,
            ActionKind.ISSUE_OR_RENEW_CERTIFICATE: lambda a, ctx: self.certs.ensure(a.param("hostname")),
        }

    def _binding(self, action: ReconcileAction) -> VolumeBinding:
        path = action.param("path")
        for binding in self.plan.service(action.target).volume_bindings:
            if binding.host_path == path:
                return binding
        raise KeyError(path)

    def _reload_proxy(self, action: ReconcileAction, context: ExecutionContext) -> None:
        available = [name for name in self.plan.service_names() if name not in context.unavailable]
        certified = []
        if self.certs is not None and self.proxy.settings.tls:
            certified = [
                svc.hostname
                for svc in self.plan.public_services()
                if self.certs.expiry(svc.hostname) is not None
            ]
        self.proxy.activate(self.proxy.routes(self.plan, available, certified))
