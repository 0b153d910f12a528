"""
Reconcile actions and the results of applying them.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

PROXY_TARGET = "proxy"


class ActionKind(str, Enum):
    """Tagged variants of a reconcile action."""

    CREATE_VOLUME = "CreateVolume"
    FIX_OWNERSHIP = "FixOwnership"
    START_SERVICE = "StartService"
    STOP_SERVICE = "StopService"
    WAIT_HEALTHY = "WaitHealthy"
    RELOAD_PROXY = "ReloadProxy"
    ISSUE_OR_RENEW_CERTIFICATE = "IssueOrRenewCertificate"

    @property
    def is_global(self) -> bool:
        """Global actions run once every service group has finished."""
        return self in (ActionKind.RELOAD_PROXY, ActionKind.ISSUE_OR_RENEW_CERTIFICATE)

    @property
    def touches_filesystem(self) -> bool:
        return self in (ActionKind.CREATE_VOLUME, ActionKind.FIX_OWNERSHIP)


@dataclass(frozen=True)
class ReconcileAction:
    """One step towards the desired state. Ephemeral, consumed by the executor."""

    kind: ActionKind
    target: str
    params: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def make(cls, kind: ActionKind, target: str, **params) -> "ReconcileAction":
        return cls(kind=kind, target=target, params=tuple(sorted(params.items())))

    def param(self, key: str, default: Any = None) -> Any:
        return dict(self.params).get(key, default)

    def __str__(self) -> str:
        if self.kind == ActionKind.RELOAD_PROXY:
            return self.kind.value
        return f"{self.kind.value}({self.target})"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "target": self.target, "params": dict(self.params)}


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ActionResult:
    action: ReconcileAction
    outcome: Outcome
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class ApplyReport:
    """Outcome of one apply pass, summarised per service."""

    results: List[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    def _targets(self, outcome: Outcome) -> List[str]:
        seen: List[str] = []
        for result in self.results:
            if result.outcome == outcome and result.action.target not in seen:
                seen.append(result.action.target)
        return seen

    @property
    def failed(self) -> List[str]:
        return self._targets(Outcome.FAILED)

    @property
    def skipped(self) -> List[str]:
        failed = set(self.failed)
        return [
            t for t in self._targets(Outcome.SKIPPED) + self._targets(Outcome.CANCELLED)
            if t not in failed
        ]

    @property
    def succeeded(self) -> List[str]:
        bad = set(self.failed) | set(self.skipped)
        return [t for t in self._targets(Outcome.SUCCEEDED) if t not in bad]

    @property
    def errors(self) -> Mapping[str, str]:
        return {
            str(r.action): r.error
            for r in self.results
            if r.outcome == Outcome.FAILED and r.error
        }

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 2
