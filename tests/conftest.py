"""
Shared fakes for the container runtime and the certificate agent.
"""
import itertools
import logging
import textwrap
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from stackward.errors import CertificateError, InfrastructureError, ServiceRuntimeError
from stackward.PARSERS.plan_parser import PlanLoader
from stackward.RUNTIME.cert_agent import CertAgent
from stackward.RUNTIME.container_runtime import (
    LABEL_FINGERPRINT,
    LABEL_PROJECT,
    LABEL_SERVICE,
    ContainerInfo,
    ContainerRuntime,
)


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime. New instances of services in ``fail_run`` refuse to start."""

    def __init__(self, reachable=True):
        self.reachable = reachable
        self.containers = {}
        self.fail_run = set()
        self.exec_codes = {}
        self.calls = []
        self._ids = itertools.count(1)

    def ping(self):
        if not self.reachable:
            raise InfrastructureError("docker daemon unreachable")

    def list_instances(self, project):
        return [
            ContainerInfo(
                id=cid,
                name=c["name"],
                service=c["labels"][LABEL_SERVICE],
                running=c["running"],
                fingerprint=c["labels"].get(LABEL_FINGERPRINT),
                started_at=c["started_at"],
                labels=dict(c["labels"]),
            )
            for cid, c in self.containers.items()
            if c["labels"].get(LABEL_PROJECT) == project
        ]

    def run(self, spec, name, labels):
        self.calls.append(("run", spec.name))
        if spec.name in self.fail_run:
            raise ServiceRuntimeError(f"cannot start {name}: boom")
        cid = f"{spec.name}-{next(self._ids):04d}"
        self.containers[cid] = {
            "name": name,
            "labels": dict(labels),
            "running": True,
            "started_at": datetime.now(timezone.utc),
        }
        return cid

    def start(self, container_id):
        self.calls.append(("start", container_id))
        c = self.containers[container_id]
        c["running"] = True
        c["started_at"] = datetime.now(timezone.utc)

    def stop(self, container_id, timeout=30):
        self.calls.append(("stop", container_id))
        self.containers[container_id]["running"] = False

    def remove(self, container_id):
        self.calls.append(("remove", container_id))
        self.containers.pop(container_id, None)

    def exec(self, container_id, command, timeout):
        if container_id not in self.containers:
            raise ServiceRuntimeError(f"no such container: {container_id}")
        service = self.containers[container_id]["labels"][LABEL_SERVICE]
        return self.exec_codes.get(service, 0), ""

    def add(self, project, service, fingerprint, running=True):
        """Pretend a container already exists on the host."""
        cid = f"{service}-pre-{next(self._ids):04d}"
        self.containers[cid] = {
            "name": f"{project}-{service}",
            "labels": {
                LABEL_PROJECT: project,
                LABEL_SERVICE: service,
                LABEL_FINGERPRINT: fingerprint,
            },
            "running": running,
            "started_at": datetime.now(timezone.utc) - timedelta(hours=1),
        }
        return cid


class FakeCertAgent(CertAgent):
    """Certificate agent that fails the first ``failures`` attempts."""

    def __init__(self, failures=0, expiries=None):
        self.failures = failures
        self.expiries = dict(expiries or {})
        self.attempts = []

    def expiry(self, hostname):
        return self.expiries.get(hostname)

    def issue_or_renew(self, hostname):
        self.attempts.append(hostname)
        if self.failures > 0:
            self.failures -= 1
            raise CertificateError("acme challenge failed")
        self.expiries[hostname] = datetime.now(timezone.utc) + timedelta(days=90)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def load_plan():
    """Loads a plan from an indented YAML snippet."""

    def _load(text, **context):
        return PlanLoader(context=context).load_from_string(textwrap.dedent(text))

    return _load


@pytest.fixture(autouse=True)
def reset_logging():
    """The CLI configures logging globally; undo it after each test."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
