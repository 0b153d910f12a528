"""
Unit tests for certificate renewal.
"""
import subprocess
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from stackward.errors import CertificateError, InfrastructureError
from stackward.MANAGERS.cert_manager import CertManager
from stackward.MODELS.stack_plan import CertificateSettings
from stackward.RUNTIME.cert_agent import CertbotAgent, parse_enddate

from conftest import FakeCertAgent

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class UnchangedAgent(FakeCertAgent):
    """Reports success without touching the certificate, like certbot when it thinks renewal is not due."""

    def issue_or_renew(self, hostname):
        self.attempts.append(hostname)


def make_manager(agent, sleeps, escalations=None, **settings):
    if escalations is None:
        escalations = []
    return CertManager(
        agent,
        CertificateSettings(**settings),
        on_escalate=lambda host, error: escalations.append((host, error)),
        clock=lambda: NOW,
        sleep=sleeps.append,
    )


class TestCertManager:
    """Tests for CertManager."""

    def test_needs_renewal(self):
        certs = make_manager(FakeCertAgent(), [])
        assert certs.needs_renewal(None)
        assert certs.needs_renewal(NOW + timedelta(days=29))
        assert not certs.needs_renewal(NOW + timedelta(days=31))

    def test_custom_threshold(self):
        certs = make_manager(FakeCertAgent(), [], renew_before_days=7)
        assert not certs.needs_renewal(NOW + timedelta(days=10))

    def test_ensure_first_try(self):
        agent = FakeCertAgent()
        sleeps = []
        make_manager(agent, sleeps).ensure("shop.example.com")
        assert agent.attempts == ["shop.example.com"]
        assert sleeps == []
        assert agent.expiry("shop.example.com") is not None

    def test_exponential_backoff(self):
        agent = FakeCertAgent(failures=3)
        sleeps = []
        make_manager(agent, sleeps, backoff_seconds=2.0).ensure("shop.example.com")
        assert len(agent.attempts) == 4
        assert sleeps == [2.0, 4.0, 8.0]

    def test_escalation(self):
        agent = FakeCertAgent(failures=10)
        sleeps = []
        escalations = []
        certs = make_manager(agent, sleeps, escalations, max_attempts=3, backoff_seconds=1.0)
        with pytest.raises(CertificateError) as exc:
            certs.ensure("shop.example.com")

        assert exc.value.escalated
        assert "gave up after 3 attempts" in str(exc.value)
        assert len(agent.attempts) == 3
        assert escalations == [("shop.example.com", "acme challenge failed")]

    def test_success_without_new_expiry_is_a_failure(self):
        agent = UnchangedAgent(expiries={"shop.example.com": NOW + timedelta(days=40)})
        certs = make_manager(agent, [], renew_before_days=45, max_attempts=2, backoff_seconds=0)
        with pytest.raises(CertificateError) as exc:
            certs.ensure("shop.example.com")
        assert exc.value.escalated
        assert "still expires" in str(exc.value)
        assert len(agent.attempts) == 2

    def test_alert_command(self, tmp_path):
        marker = tmp_path / "alerted"
        certs = make_manager(
            FakeCertAgent(failures=1), [], max_attempts=1, alert_command=["touch", str(marker)]
        )
        with pytest.raises(CertificateError):
            certs.ensure("shop.example.com")
        assert marker.exists()


def test_parse_enddate():
    expiry = parse_enddate("notAfter=Mar  5 12:00:00 2027 GMT\n")
    assert expiry == datetime(2027, 3, 5, 12, 0, tzinfo=timezone.utc)
    assert parse_enddate("garbage") is None


class TestCertbotAgent:
    """Command construction and failure mapping with subprocess mocked out."""

    HOST = "shop.example.com"

    def agent(self, tmp_path, **kwargs):
        return CertbotAgent(webroot="/var/www/acme", live_dir=str(tmp_path), **kwargs)

    def certificate(self, tmp_path):
        (tmp_path / self.HOST).mkdir()
        cert = tmp_path / self.HOST / "cert.pem"
        cert.write_text("")
        return cert

    def test_first_issue(self, tmp_path):
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            self.agent(tmp_path, email="ops@example.com").issue_or_renew(self.HOST)

        command = run.call_args.args[0]
        assert command[:5] == ["certbot", "certonly", "--webroot", "-w", "/var/www/acme"]
        assert command[command.index("-d") + 1] == self.HOST
        assert command[-2:] == ["-m", "ops@example.com"]
        assert "--force-renewal" not in command
        assert "--keep-until-expiring" not in command

    def test_existing_certificate_is_force_renewed(self, tmp_path):
        self.certificate(tmp_path)
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            self.agent(tmp_path).issue_or_renew(self.HOST)

        command = run.call_args.args[0]
        assert "--force-renewal" in command
        assert "--register-unsafely-without-email" in command

    def test_non_zero_exit(self, tmp_path):
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.return_value = MagicMock(
                returncode=1, stdout="", stderr="Challenge failed for domain shop.example.com\n"
            )
            with pytest.raises(CertificateError) as exc:
                self.agent(tmp_path).issue_or_renew(self.HOST)
        assert "certbot exited 1: Challenge failed for domain shop.example.com" in str(exc.value)

    def test_timeout(self, tmp_path):
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.side_effect = subprocess.TimeoutExpired(cmd="certbot", timeout=5)
            with pytest.raises(CertificateError) as exc:
                self.agent(tmp_path, timeout=5).issue_or_renew(self.HOST)
        assert "timed out after 5s" in str(exc.value)

    def test_missing_certbot(self, tmp_path):
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.side_effect = FileNotFoundError("certbot")
            with pytest.raises(InfrastructureError):
                self.agent(tmp_path).issue_or_renew(self.HOST)

    def test_expiry_without_certificate(self, tmp_path):
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            assert self.agent(tmp_path).expiry(self.HOST) is None
        run.assert_not_called()

    def test_expiry_from_openssl(self, tmp_path):
        cert = self.certificate(tmp_path)
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stdout="notAfter=Mar  5 12:00:00 2027 GMT\n", stderr="")
            expiry = self.agent(tmp_path).expiry(self.HOST)

        assert expiry == datetime(2027, 3, 5, 12, 0, tzinfo=timezone.utc)
        command = run.call_args.args[0]
        assert command[:2] == ["openssl", "x509"]
        assert command[-1] == str(cert)

    def test_expiry_unreadable_certificate(self, tmp_path):
        self.certificate(tmp_path)
        with patch("stackward.RUNTIME.cert_agent.subprocess.run") as run:
            run.return_value = MagicMock(returncode=1, stdout="", stderr="unable to load certificate")
            assert self.agent(tmp_path).expiry(self.HOST) is None
