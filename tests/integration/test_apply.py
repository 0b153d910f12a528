"""
End-to-end passes of the orchestrator against an in-memory runtime and a
temporary directory standing in for the host.
"""
import os
import threading
import time

import pytest

from stackward.errors import CertificateError
from stackward.MANAGERS.stack_orchestrator import StackOrchestrator
from stackward.MODELS.runtime_state import ObservedStatus
from stackward.PARSERS.plan_parser import PlanLoader
from stackward.RUNTIME.container_runtime import LABEL_SERVICE

from conftest import FakeCertAgent

STACK = """
project: demo
settings:
  probe_poll_interval: 0.01
  fs_retry_delay: 0
proxy:
  config_path: {root}/nginx/demo.conf
  validate_command: ["true"]
  reload_command: ["true"]
services:
  - name: db
    image: postgres:15
    mounts:
      - host: {root}/data/db
        container: /var/lib/postgresql/data
        owner: {{uid: {uid}, gid: {gid}, mode: "0750"}}
    healthcheck: {{test: [CMD, pg_isready], interval: 0.01, timeout: 1, retries: 1}}
  - name: app
    image: {app_image}
    depends_on: [db]
    ports: ["9000:9000"]
    hostname: app.example.com
    healthcheck: {{test: [CMD, "true"], interval: 0.01, timeout: 1, retries: 1}}
  - name: worker
    image: worker:1
"""


def load(tmp_path, app_image="sonarqube:lts", tls=False):
    content = STACK.format(root=tmp_path, uid=os.getuid(), gid=os.getgid(), app_image=app_image)
    if tls:
        content = content.replace(
            '  reload_command: ["true"]\n',
            '  reload_command: ["true"]\n  tls: true\ncertificates:\n  max_attempts: 2\n  backoff_seconds: 0\n',
        )
    return PlanLoader(context={}).load_from_string(content)


@pytest.fixture
def orchestrators():
    created = []

    def make(plan, runtime, **kwargs):
        orchestrator = StackOrchestrator(plan, runtime, **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield make
    for orchestrator in created:
        orchestrator.shutdown()


def names(actions):
    return [str(a) for a in actions]


def container_of(runtime, service):
    return next(cid for cid, c in runtime.containers.items() if c["labels"][LABEL_SERVICE] == service)


class WebrootAgent(FakeCertAgent):
    """Passes the HTTP challenge only once the active proxy config serves the hostname."""

    def __init__(self, config_path):
        super().__init__()
        self.config_path = config_path

    def issue_or_renew(self, hostname):
        served = self.config_path.exists() and f"server_name {hostname};" in self.config_path.read_text()
        if not served:
            self.attempts.append(hostname)
            raise CertificateError(f"challenge 404: proxy does not serve {hostname}")
        super().issue_or_renew(hostname)


def test_fresh_host(tmp_path, runtime, orchestrators):
    plan = load(tmp_path)
    orchestrator = orchestrators(plan, runtime)

    assert names(orchestrator.plan_actions()) == [
        "CreateVolume(db)",
        "FixOwnership(db)",
        "StartService(db)",
        "WaitHealthy(db)",
        "StartService(worker)",
        "WaitHealthy(worker)",
        "StartService(app)",
        "WaitHealthy(app)",
        "ReloadProxy",
    ]
    # planning is a dry run
    assert not os.path.exists(tmp_path / "data" / "db")
    assert runtime.containers == {}

    report = orchestrator.apply()
    assert report.ok, report.errors
    assert report.exit_code == 0
    assert os.path.isdir(tmp_path / "data" / "db")
    assert "server_name app.example.com;" in (tmp_path / "nginx" / "demo.conf").read_text()


def test_second_apply_is_a_no_op(tmp_path, runtime, orchestrators):
    orchestrator = orchestrators(load(tmp_path), runtime)
    assert orchestrator.apply().ok
    calls = len(runtime.calls)

    assert orchestrator.plan_actions() == []
    report = orchestrator.apply()
    assert report.results == []
    assert len(runtime.calls) == calls


def test_fresh_orchestrator_sees_settled_host(tmp_path, runtime, orchestrators):
    assert orchestrators(load(tmp_path), runtime).apply().ok
    assert orchestrators(load(tmp_path), runtime).plan_actions() == []


def test_stopped_service_is_restarted(tmp_path, runtime, orchestrators):
    orchestrator = orchestrators(load(tmp_path), runtime)
    assert orchestrator.apply().ok

    app = container_of(runtime, "app")
    runtime.containers[app]["running"] = False

    actions = orchestrator.plan_actions()
    assert names(actions) == ["StartService(app)", "WaitHealthy(app)", "ReloadProxy"]
    assert actions[0].param("reuse") == app
    assert orchestrator.apply().ok
    assert runtime.containers[app]["running"]


def test_changed_definition_replaces_container(tmp_path, runtime, orchestrators):
    assert orchestrators(load(tmp_path), runtime).apply().ok
    old = container_of(runtime, "app")

    orchestrator = orchestrators(load(tmp_path, app_image="sonarqube:10"), runtime)
    assert names(orchestrator.plan_actions()) == [
        "StopService(app)",
        "StartService(app)",
        "WaitHealthy(app)",
        "ReloadProxy",
    ]
    assert orchestrator.apply().ok
    assert old not in runtime.containers
    assert orchestrator.plan_actions() == []


def test_failed_start_isolates_subtree(tmp_path, runtime, orchestrators):
    runtime.fail_run.add("db")
    orchestrator = orchestrators(load(tmp_path), runtime)

    report = orchestrator.apply()
    assert report.failed == ["db"]
    assert report.skipped == ["app"]
    assert "worker" in report.succeeded
    assert "proxy" in report.succeeded
    assert report.exit_code == 2
    assert "StartService(db) failed" in report.errors["StartService(db)"]
    assert [c["labels"][LABEL_SERVICE] for c in runtime.containers.values()] == ["worker"]
    # nothing is routed to a service that never came up
    assert "app.example.com" not in (tmp_path / "nginx" / "demo.conf").read_text()


def test_failing_health_check(tmp_path, runtime, orchestrators):
    runtime.exec_codes["db"] = 1
    orchestrator = orchestrators(load(tmp_path), runtime)

    report = orchestrator.apply()
    assert report.failed == ["db"]
    assert report.skipped == ["app"]
    assert "failed its health check" in report.errors["WaitHealthy(db)"]


def test_orphans_are_removed(tmp_path, runtime, orchestrators):
    orphan = runtime.add("demo", "legacy", "x")
    other_project = runtime.add("elsewhere", "legacy", "x")
    orchestrator = orchestrators(load(tmp_path), runtime)

    actions = orchestrator.plan_actions()
    assert str(actions[0]) == "StopService(legacy)"
    assert orchestrator.apply().ok
    assert orphan not in runtime.containers
    assert other_project in runtime.containers


def test_observe(tmp_path, runtime, orchestrators):
    orchestrator = orchestrators(load(tmp_path), runtime)
    state = orchestrator.observe()
    assert state.service("db").status == ObservedStatus.STOPPED
    assert not state.volume(str(tmp_path / "data" / "db")).exists
    assert state.proxy_digest is None

    orchestrator.apply()
    state = orchestrator.observe()
    assert all(state.service(n).status == ObservedStatus.RUNNING for n in ("db", "app", "worker"))
    assert state.volume(str(tmp_path / "data" / "db")).matches(os.getuid(), os.getgid(), 0o750)
    assert state.to_dict()["services"]["db"]["status"] == "running"


def test_cancelled_apply_keeps_completed_work(tmp_path, runtime, orchestrators):
    cancel = threading.Event()
    cancel.set()
    orchestrator = orchestrators(load(tmp_path), runtime)

    report = orchestrator.apply(cancel)
    assert report.cancelled
    assert report.exit_code == 2
    assert runtime.containers == {}


def test_run_loop_until_cancelled(tmp_path, runtime, orchestrators):
    orchestrator = orchestrators(load(tmp_path), runtime)
    cancel = threading.Event()
    loop = threading.Thread(target=orchestrator.run, args=(0.05, cancel), daemon=True)
    loop.start()

    deadline = time.monotonic() + 10
    while len(runtime.containers) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    cancel.set()
    loop.join(timeout=10)

    assert not loop.is_alive()
    assert len(runtime.containers) == 3


def test_fresh_tls_host_is_certified_in_one_pass(tmp_path, runtime, orchestrators):
    config = tmp_path / "nginx" / "demo.conf"
    agent = WebrootAgent(config)
    orchestrator = orchestrators(load(tmp_path, tls=True), runtime, cert_agent=agent)

    assert names(orchestrator.plan_actions())[-3:] == [
        "ReloadProxy",
        "IssueOrRenewCertificate(app)",
        "ReloadProxy",
    ]
    report = orchestrator.apply()
    assert report.ok, report.errors
    assert agent.attempts == ["app.example.com"]
    assert "listen 443 ssl;" in config.read_text()
    assert orchestrator.plan_actions() == []


def test_unwritable_proxy_config_fails_only_the_proxy(tmp_path, runtime, orchestrators):
    # a directory where the candidate config file should be written
    (tmp_path / "nginx" / "demo.conf.new").mkdir(parents=True)
    orchestrator = orchestrators(load(tmp_path), runtime)

    report = orchestrator.apply()
    assert report.failed == ["proxy"]
    assert set(report.succeeded) == {"db", "app", "worker"}
    assert report.exit_code == 2
    assert "cannot write" in report.errors["ReloadProxy"]
