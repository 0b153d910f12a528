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
Execution of reconcile actions with per-subtree failure isolation.

Actions are grouped by the service they target. A group runs once every group it
depends on has finished; a failed group halts its own remaining actions and skips
every group in its dependency subtree, while unrelated groups carry on. Proxy and
certificate actions run last, knowing which services ended up unavailable.
"""
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import structlog
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ..errors import ActionError, FilesystemError, StackwardError
from ..MODELS.actions import ActionKind, ActionResult, ApplyReport, Outcome, ReconcileAction
from .dependency_resolver import DependencyResolver


@dataclass(frozen=True)
class ExecutionContext:
    """What a handler may need to know about the rest of the pass."""

    unavailable: FrozenSet[str] = frozenset()


Handler = Callable[[ReconcileAction, ExecutionContext], Any]
_Item = Tuple[int, ReconcileAction]


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FilesystemError) and error.retryable


class ActionExecutor:
    """
    Applies an ordered action list.

    :param handlers: Callable per action kind.
    :param dependencies: Service name to the services it depends on.
    :param workers: Upper bound on groups running at the same time.
    :param fs_retries: Extra attempts for retryable filesystem failures.
    :param fs_retry_delay: Linear backoff step between those attempts, in seconds.
    :param cancel_event: Checked between actions; once set, nothing new starts.
    """

    def __init__(
        self,
        handlers: Mapping[ActionKind, Handler],
        dependencies: Mapping[str, Sequence[str]],
        workers: int = 1,
        fs_retries: int = 3,
        fs_retry_delay: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handlers = dict(handlers)
        self.resolver = DependencyResolver(dependencies)
        self.workers = max(1, workers)
        self.fs_retries = fs_retries
        self.fs_retry_delay = fs_retry_delay
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self.logger = structlog.get_logger().bind(component="executor")

    def execute(self, actions: Sequence[ReconcileAction]) -> ApplyReport:
        """
        Runs ``actions`` and reports the outcome of each one.

        :param actions: Output of the reconciler, in order.
        :return: Per-action results in the same order as ``actions``.
        """
        groups: Dict[str, List[_Item]] = {}
        global_items: List[_Item] = []
        for index, action in enumerate(actions):
            if action.kind.is_global:
                global_items.append((index, action))
            else:
                groups.setdefault(action.target, []).append((index, action))

        results: Dict[int, ActionResult] = {}
        status = self._run_groups(groups, results)

        unavailable = frozenset(name for name, outcome in status.items() if outcome != Outcome.SUCCEEDED)
        context = ExecutionContext(unavailable=unavailable)
        for position, (index, action) in enumerate(global_items):
            if self.cancel_event.is_set():
                self._mark(global_items[position:], results, Outcome.CANCELLED, "apply cancelled")
                break
            if action.kind == ActionKind.ISSUE_OR_RENEW_CERTIFICATE and action.target in unavailable:
                self._mark([(index, action)], results, Outcome.SKIPPED, f"{action.target} is not available")
                continue
            results[index] = self._run_action(action, context)

        report = ApplyReport(
            results=[results[i] for i in range(len(actions))],
            cancelled=self.cancel_event.is_set(),
        )
        self.logger.info(
            "apply finished",
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            cancelled=report.cancelled,
        )
        return report

    def _run_groups(self, groups: Dict[str, List[_Item]], results: Dict[int, ActionResult]) -> Dict[str, Outcome]:
        status: Dict[str, Outcome] = {}
        pending = list(groups)
        blockers = {
            name: [dep for dep in self.resolver.ancestors(name) if dep in groups]
            for name in groups
        }
        context = ExecutionContext()

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="apply") as pool:
            running: Dict[Future, str] = {}
            while pending or running:
                for name in list(pending):
                    bad = [d for d in blockers[name] if status.get(d, Outcome.SUCCEEDED) != Outcome.SUCCEEDED]
                    if bad:
                        pending.remove(name)
                        status[name] = Outcome.SKIPPED
                        self._mark(groups[name], results, Outcome.SKIPPED, f"dependency {bad[0]} did not come up")
                    elif all(d in status for d in blockers[name]) and len(running) < self.workers:
                        pending.remove(name)
                        running[pool.submit(self._run_group, groups[name], results, context)] = name

                if not running:
                    continue
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    status[running.pop(future)] = future.result()
        return status

    def _run_group(self, items: List[_Item], results: Dict[int, ActionResult], context: ExecutionContext) -> Outcome:
        for position, (index, action) in enumerate(items):
            if self.cancel_event.is_set():
                self._mark(items[position:], results, Outcome.CANCELLED, "apply cancelled")
                return Outcome.CANCELLED
            result = self._run_action(action, context)
            results[index] = result
            if result.outcome == Outcome.FAILED:
                self._mark(items[position + 1:], results, Outcome.SKIPPED, f"halted after {action} failed")
                return Outcome.FAILED
        return Outcome.SUCCEEDED

    def _run_action(self, action: ReconcileAction, context: ExecutionContext) -> ActionResult:
        handler = self.handlers[action.kind]
        started = time.monotonic()
        error: Optional[ActionError] = None
        try:
            if action.kind.touches_filesystem:
                retrying = Retrying(
                    stop=stop_after_attempt(self.fs_retries + 1),
                    wait=wait_incrementing(start=self.fs_retry_delay, increment=self.fs_retry_delay),
                    retry=retry_if_exception(_is_retryable),
                    sleep=self._sleep,
                    reraise=True,
                    before_sleep=lambda state: self.logger.warning(
                        "retrying action",
                        kind=action.kind.value,
                        target=action.target,
                        attempt=state.attempt_number,
                        error=str(state.outcome.exception()),
                    ),
                )
                retrying(handler, action, context)
            else:
                handler(action, context)
        except ActionError as e:
            error = e.bind(action.kind.value, action.target)
        except StackwardError as e:
            error = ActionError(str(e), kind=action.kind.value, target=action.target)
        except Exception as e:
            # an unexpected error fails only its own action
            error = ActionError(f"{type(e).__name__}: {e}", kind=action.kind.value, target=action.target)

        duration = time.monotonic() - started
        if error is None:
            self.logger.info(
                "action",
                kind=action.kind.value,
                target=action.target,
                outcome=Outcome.SUCCEEDED.value,
                duration_ms=round(duration * 1000, 1),
            )
            return ActionResult(action=action, outcome=Outcome.SUCCEEDED, duration=duration)

        self.logger.error(
            "action",
            kind=action.kind.value,
            target=action.target,
            outcome=Outcome.FAILED.value,
            duration_ms=round(duration * 1000, 1),
            error=error.cause,
        )
        return ActionResult(action=action, outcome=Outcome.FAILED, duration=duration, error=str(error))

    def _mark(self, items: List[_Item], results: Dict[int, ActionResult], outcome: Outcome, reason: str) -> None:
        for index, action in items:
            results[index] = ActionResult(action=action, outcome=outcome, error=reason)
            self.logger.info("action", kind=action.kind.value, target=action.target, outcome=outcome.value, reason=reason)
