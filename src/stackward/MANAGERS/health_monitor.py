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
Health monitoring for services: periodic probes on independent timers and the
starting/healthy/unhealthy/failed state machine derived from their results.
"""
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..errors import HealthTimeout, InfrastructureError, ServiceRuntimeError
from ..MODELS.service_spec import HealthCheck, ServiceSpec
from ..RUNTIME.container_runtime import ContainerRuntime

ProbeFn = Callable[[ServiceSpec, Optional[str]], Tuple[bool, str]]


class HealthState(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"  # unhealthy and failed last until restarted


@dataclass(frozen=True)
class ServiceHealth:
    """Health information for a service."""

    state: HealthState = HealthState.STARTING
    failing_streak: int = 0
    started_at: float = 0.0
    last_check: Optional[str] = None
    last_output: str = ""
    cycle: int = 1


def advance(health: ServiceHealth, ok: bool, output: str, hc: HealthCheck, now: float) -> ServiceHealth:
    """
    Applies one probe result to a health record.

    Failures inside ``start_period`` are not counted. Afterwards ``retries``
    consecutive failures turn a starting service into failed and a healthy one
    into unhealthy. Failed and unhealthy are only left through a restart, which
    begins a new starting cycle.
    """
    checked = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    health = replace(health, last_check=checked, last_output=output[:500])

    if health.state in (HealthState.FAILED, HealthState.UNHEALTHY):
        return health
    if ok:
        return replace(health, state=HealthState.HEALTHY, failing_streak=0)

    in_grace = health.state == HealthState.STARTING and now - health.started_at < hc.start_period
    if in_grace:
        return health

    streak = health.failing_streak + 1
    if streak < hc.retries:
        return replace(health, failing_streak=streak)
    if health.state == HealthState.STARTING:
        return replace(health, state=HealthState.FAILED, failing_streak=streak)
    return replace(health, state=HealthState.UNHEALTHY, failing_streak=streak)


class ServiceProber:
    """
    Runs a single health probe: a command inside the container or an HTTP GET.
    """

    def __init__(self, runtime: ContainerRuntime):
        self.runtime = runtime

    def __call__(self, spec: ServiceSpec, container_id: Optional[str]) -> Tuple[bool, str]:
        hc = spec.health_check
        if hc is None:
            return True, ""
        if hc.http is not None:
            return self._http(hc)
        if container_id is None:
            return False, "no container to probe"
        return self._command(hc, container_id)

    def _command(self, hc: HealthCheck, container_id: str) -> Tuple[bool, str]:
        cmd = hc.test
        if cmd[0] == "NONE":
            return True, ""
        if cmd[0] == "CMD":
            real_cmd: List[str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = ["/bin/sh", "-c", " ".join(cmd[1:])]
        else:
            real_cmd = cmd
        try:
            exit_code, output = self.runtime.exec(container_id, real_cmd, timeout=hc.timeout)
        except (ServiceRuntimeError, InfrastructureError) as e:
            return False, str(e)
        if exit_code == 0:
            return True, output
        return False, output or f"Exit code: {exit_code}"

    def _http(self, hc: HealthCheck) -> Tuple[bool, str]:
        request = urllib.request.Request(hc.http.url, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=hc.timeout) as resp:
                status = resp.status
        except urllib.error.HTTPError as e:
            status = e.code
        except (urllib.error.URLError, OSError) as e:
            return False, f"No response: {e}"

        expected = hc.http.expected_status
        ok = status == expected if expected else 200 <= status < 400
        return ok, f"HTTP {status}"


class _ProbeLoop(threading.Thread):
    def __init__(self, monitor: "HealthMonitor", name: str, interval: float):
        super().__init__(name=f"probe-{name}", daemon=True)
        self.monitor = monitor
        self.service = name
        self.interval = interval
        self.stopped = threading.Event()

    def run(self):
        while not self.stopped.is_set():
            if self.monitor.tick(self.service) in (None, HealthState.FAILED, HealthState.UNHEALTHY):
                return
            self.stopped.wait(self.interval)


class HealthMonitor:
    """
    Tracks the health of watched services.

    Probe threads are the only writers of the health records; everybody else reads
    copies through ``get_health`` and ``snapshot``.
    """

    def __init__(
        self,
        probe: ProbeFn,
        on_unhealthy: Optional[Callable[[str], None]] = None,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initializes the health monitor.

        :param probe: Runs one probe for a service and returns (ok, output).
        :param on_unhealthy: Called with the service name when it turns unhealthy.
        :param poll_interval: How often ``wait_healthy`` looks at the current state.
        """
        self.probe = probe
        self.on_unhealthy = on_unhealthy
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._health: Dict[str, ServiceHealth] = {}
        self._targets: Dict[str, Tuple[ServiceSpec, Optional[str]]] = {}
        self._loops: Dict[str, _ProbeLoop] = {}
        self.logger = structlog.get_logger().bind(component="health_monitor")

    def watch(self, spec: ServiceSpec, container_id: Optional[str], start_thread: bool = True) -> None:
        """
        Begins a new starting cycle for a service and probes it on its own timer.

        :param spec: Service definition, its health check drives the probes.
        :param container_id: Container to exec command probes in.
        :param start_thread: False leaves probing to explicit ``tick`` calls.
        """
        self._stop_loop(spec.name)
        with self._lock:
            previous = self._health.get(spec.name)
            cycle = previous.cycle + 1 if previous else 1
            state = HealthState.STARTING if spec.health_check else HealthState.HEALTHY
            self._health[spec.name] = ServiceHealth(state=state, started_at=self._clock(), cycle=cycle)
            self._targets[spec.name] = (spec, container_id)

        if spec.health_check and start_thread:
            loop = _ProbeLoop(self, spec.name, spec.health_check.interval)
            self._loops[spec.name] = loop
            loop.start()

    def restart(self, name: str) -> None:
        """
        Operator restart: leaves failed or unhealthy and begins a new starting cycle.
        """
        spec, container_id = self._targets[name]
        self.logger.info("health cycle restarted", service=name)
        self.watch(spec, container_id)

    def unwatch(self, name: str) -> None:
        self._stop_loop(name)
        with self._lock:
            self._health.pop(name, None)
            self._targets.pop(name, None)

    def tick(self, name: str) -> Optional[HealthState]:
        """
        Runs one probe for ``name`` and applies the result.

        A result that arrives after the service was unwatched or started a new
        cycle is dropped.

        :return: The state after the probe, None if ``name`` is no longer watched.
        """
        with self._lock:
            spec, container_id = self._targets.get(name, (None, None))
            current = self._health.get(name)
        if spec is None or current is None:
            return None
        if current.state in (HealthState.FAILED, HealthState.UNHEALTHY) or spec.health_check is None:
            return current.state

        ok, output = self.probe(spec, container_id)

        with self._lock:
            previous = self._health.get(name)
            if previous is None or (previous.cycle, previous.started_at) != (current.cycle, current.started_at):
                return previous.state if previous else None
            updated = advance(previous, ok, output, spec.health_check, self._clock())
            self._health[name] = updated

        if updated.state != previous.state:
            self.logger.info(
                "health changed",
                service=name,
                previous=previous.state.value,
                state=updated.state.value,
                output=updated.last_output,
            )
            if updated.state == HealthState.UNHEALTHY and self.on_unhealthy:
                self.on_unhealthy(name)
        return updated.state

    def probe_once(self, spec: ServiceSpec, container_id: Optional[str]) -> bool:
        """One-off probe outside any cycle, used when observing the host."""
        ok, _ = self.probe(spec, container_id)
        return ok

    def get_health(self, name: str) -> Optional[ServiceHealth]:
        with self._lock:
            return self._health.get(name)

    def snapshot(self) -> Dict[str, ServiceHealth]:
        """Get health status of all watched services."""
        with self._lock:
            return dict(self._health)

    def wait_healthy(self, name: str, timeout: float) -> None:
        """
        Blocks until ``name`` is healthy.

        :raises HealthTimeout: On failed state or when ``timeout`` seconds pass.
        """
        deadline = self._clock() + timeout
        while True:
            health = self.get_health(name)
            if health is None:
                raise HealthTimeout(f"{name} is not being monitored")
            if health.state == HealthState.HEALTHY:
                return
            if health.state == HealthState.FAILED:
                raise HealthTimeout(
                    f"{name} failed its health check during start: {health.last_output or 'no output'}"
                )
            if self._clock() >= deadline:
                raise HealthTimeout(
                    f"{name} not healthy after {timeout:.0f}s (state {health.state.value})"
                )
            self._sleep(self.poll_interval)

    def _stop_loop(self, name: str) -> None:
        loop = self._loops.pop(name, None)
        if loop:
            loop.stopped.set()
            if loop is not threading.current_thread():
                loop.join(timeout=1)

    def stop(self) -> None:
        """
        Stops every probe thread.
        """
        for name in list(self._loops):
            self._stop_loop(name)
