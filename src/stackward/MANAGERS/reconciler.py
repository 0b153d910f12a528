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
Reconciliation: diff the desired plan against an observed RuntimeState and
compute the ordered list of actions that closes the gap.
"""
from typing import List, Optional, Sequence, Set

from ..MODELS.actions import PROXY_TARGET, ActionKind, ReconcileAction
from ..MODELS.runtime_state import ObservedStatus, RuntimeState
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.stack_plan import StackPlan
from ..RUNNERS.dependency_resolver import DependencyResolver
from .cert_manager import CertManager
from .proxy_manager import ProxyManager


class Reconciler:
    """
    Computes actions; never applies them. Running it twice against an unchanged
    host yields an empty list the second time.
    """

    def __init__(
        self,
        plan: StackPlan,
        proxy: Optional[ProxyManager] = None,
        certs: Optional[CertManager] = None,
    ):
        """
        :param plan: Desired state.
        :param proxy: Renders the desired proxy configuration, None without a proxy.
        :param certs: Renewal policy, None to leave certificates alone.
        """
        self.plan = plan
        self.proxy = proxy
        self.certs = certs
        self.resolver = DependencyResolver(plan.dependencies())

    def reconcile(self, state: RuntimeState) -> List[ReconcileAction]:
        """
        Produces the ordered action list for one pass.

        :param state: Fresh observation of the host.
        :return: Actions in dependency order; ties keep declaration order.
        """
        actions: List[ReconcileAction] = []

        for name, container_ids in state.orphans.items():
            actions.append(
                ReconcileAction.make(
                    ActionKind.STOP_SERVICE, name, container_ids=tuple(container_ids), orphan=True
                )
            )

        for name in self.resolver.resolve_order():
            actions.extend(self._service_actions(self.plan.service(name), state))

        certified = self._certified(state)
        cert_actions = self._certificate_actions(state)
        if self.proxy is not None:
            challenge = self._proxy_digest(certified)
            fresh = [a for a in cert_actions if a.param("expires") is None]
            # webroot challenges for new hostnames need them served over plain HTTP first
            if fresh and challenge != state.proxy_digest:
                actions.append(
                    ReconcileAction.make(ActionKind.RELOAD_PROXY, PROXY_TARGET, digest=challenge, stage="challenge")
                )
        actions.extend(cert_actions)
        certified |= {a.param("hostname") for a in cert_actions}

        if self.proxy is not None:
            desired = self._proxy_digest(certified)
            if actions or desired != state.proxy_digest:
                actions.append(ReconcileAction.make(ActionKind.RELOAD_PROXY, PROXY_TARGET, digest=desired))
        return actions

    def _proxy_digest(self, certified: Set[str]) -> str:
        return self.proxy.digest(
            self.proxy.render(self.proxy.routes(self.plan, self.plan.service_names(), certified))
        )

    def _service_actions(self, spec: ServiceSpec, state: RuntimeState) -> List[ReconcileAction]:
        actions: List[ReconcileAction] = []
        name = spec.name

        for binding in spec.volume_bindings:
            observed = state.volume(binding.host_path)
            params = dict(
                path=binding.host_path, uid=binding.uid, gid=binding.gid, mode=binding.mode
            )
            if not observed.exists:
                actions.append(ReconcileAction.make(ActionKind.CREATE_VOLUME, name, **params))
                actions.append(ReconcileAction.make(ActionKind.FIX_OWNERSHIP, name, **params))
            elif not observed.matches(binding.uid, binding.gid, binding.mode):
                actions.append(ReconcileAction.make(ActionKind.FIX_OWNERSHIP, name, **params))

        observed = state.service(name)
        fingerprint = spec.fingerprint()
        start = None

        if observed.status == ObservedStatus.STOPPED:
            start = self._start(spec, observed.reusable_id, (observed.container_id, *observed.stale_ids))
        elif observed.fingerprint != fingerprint or observed.status == ObservedStatus.UNHEALTHY:
            unchanged = observed.fingerprint == fingerprint
            actions.append(
                ReconcileAction.make(
                    ActionKind.STOP_SERVICE,
                    name,
                    container_ids=(observed.container_id,),
                    reason="unhealthy" if unchanged else "changed",
                )
            )
            reuse = observed.container_id if unchanged else observed.reusable_id
            start = self._start(spec, reuse, observed.stale_ids)

        if start is not None:
            actions.append(start)
            actions.append(self._wait(spec, None))
        elif observed.status == ObservedStatus.STARTING:
            actions.append(self._wait(spec, observed.container_id))
        return actions

    def _start(self, spec: ServiceSpec, reuse: Optional[str], candidates: Sequence[Optional[str]]) -> ReconcileAction:
        return ReconcileAction.make(
            ActionKind.START_SERVICE,
            spec.name,
            fingerprint=spec.fingerprint(),
            reuse=reuse,
            stale_ids=tuple(cid for cid in candidates if cid and cid != reuse),
        )

    def _wait(self, spec: ServiceSpec, container_id: Optional[str]) -> ReconcileAction:
        timeout = self.plan.settings.health_wait_timeout
        if timeout is None:
            timeout = spec.health_check.wait_budget() if spec.health_check else 30.0
        return ReconcileAction.make(
            ActionKind.WAIT_HEALTHY, spec.name, timeout=timeout, container_id=container_id
        )

    def _certified(self, state: RuntimeState) -> Set[str]:
        return {host for host, expiry in state.certificates.items() if expiry is not None}

    def _certificate_actions(self, state: RuntimeState) -> List[ReconcileAction]:
        if self.certs is None or self.proxy is None or not self.proxy.settings.tls:
            return []
        actions = []
        for svc in self.plan.public_services():
            expiry = state.certificates.get(svc.hostname)
            if self.certs.needs_renewal(expiry):
                actions.append(
                    ReconcileAction.make(
                        ActionKind.ISSUE_OR_RENEW_CERTIFICATE,
                        svc.name,
                        hostname=svc.hostname,
                        expires=expiry.isoformat() if expiry else None,
                    )
                )
        return actions
