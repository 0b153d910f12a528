"""
Certificate expiry tracking and renewal with exponential backoff and escalation.
"""
import subprocess
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import CertificateError
from ..MODELS.stack_plan import CertificateSettings
from ..RUNTIME.cert_agent import CertAgent


class CertManager:
    """
    Decides when certificates need renewing and drives the external agent.
    """

    def __init__(
        self,
        agent: CertAgent,
        settings: Optional[CertificateSettings] = None,
        on_escalate: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param agent: Certificate agent capability.
        :param settings: Renewal threshold, attempts and backoff.
        :param on_escalate: Called with (hostname, error) once all attempts failed.
        """
        self.agent = agent
        self.settings = settings or CertificateSettings()
        self.on_escalate = on_escalate
        self._clock = clock
        self._sleep = sleep
        self.logger = structlog.get_logger().bind(component="cert_manager")

    def expiry(self, hostname: str) -> Optional[datetime]:
        return self.agent.expiry(hostname)

    def needs_renewal(self, expiry: Optional[datetime]) -> bool:
        """True if there is no certificate or it expires within the threshold."""
        if expiry is None:
            return True
        return expiry - self._clock() < timedelta(days=self.settings.renew_before_days)

    def ensure(self, hostname: str) -> None:
        """
        Issues or renews the certificate for ``hostname``.

        :raises CertificateError: With ``escalated`` set once ``max_attempts`` failed.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_seconds, max=3600),
            retry=retry_if_exception_type(CertificateError),
            sleep=self._sleep,
            before_sleep=lambda state: self.logger.warning(
                "certificate attempt failed, retrying",
                hostname=hostname,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
        )
        try:
            retrying(self._attempt, hostname)
        except RetryError as e:
            error = str(e.last_attempt.exception())
            self._escalate(hostname, error)
            raise CertificateError(
                f"gave up after {self.settings.max_attempts} attempts: {error}", escalated=True
            ) from e
        self.logger.info("certificate ready", hostname=hostname, expires=str(self.agent.expiry(hostname)))

    def _attempt(self, hostname: str) -> None:
        self.agent.issue_or_renew(hostname)
        expiry = self.agent.expiry(hostname)
        if expiry is None:
            raise CertificateError(f"agent reported success but no certificate for {hostname} is on disk")
        if self.needs_renewal(expiry):
            raise CertificateError(
                f"agent reported success but the certificate for {hostname} still expires {expiry.isoformat()}"
            )

    def _escalate(self, hostname: str, error: str) -> None:
        self.logger.critical("certificate renewal escalated", hostname=hostname, error=error)
        if self.on_escalate:
            self.on_escalate(hostname, error)
        if self.settings.alert_command:
            command = [arg.format(hostname=hostname, error=error) for arg in self.settings.alert_command]
            try:
                subprocess.run(command, capture_output=True, text=True, timeout=60)
            except (OSError, subprocess.TimeoutExpired) as e:
                self.logger.error("alert command failed", command=command[0], error=str(e))
