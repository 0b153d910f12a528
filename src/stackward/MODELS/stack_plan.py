"""
Models for the overall stack: services plus proxy, certificate and execution settings.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .service_spec import ServiceSpec, VolumeBinding

DEFAULT_NGINX_VALIDATE = ["nginx", "-t"]
DEFAULT_NGINX_RELOAD = ["nginx", "-s", "reload"]


class ProxySettings(BaseModel):
    """
    Where the reverse proxy reads its routes and how to check and reload it.
    ``{config}`` in ``validate_command`` is replaced by the candidate file path.
    """
    model_config = ConfigDict(frozen=True)

    config_path: str
    validate_command: List[str] = Field(default_factory=lambda: list(DEFAULT_NGINX_VALIDATE))
    reload_command: List[str] = Field(default_factory=lambda: list(DEFAULT_NGINX_RELOAD))
    reload_url: Optional[str] = None
    template: Optional[str] = None
    tls: bool = False
    certificate_path: str = "/etc/letsencrypt/live/{hostname}/fullchain.pem"
    key_path: str = "/etc/letsencrypt/live/{hostname}/privkey.pem"
    upstream_host: str = "127.0.0.1"


class CertificateSettings(BaseModel):
    """
    Renewal policy for certificates handed to the external agent.
    """
    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    webroot: str = "/var/www/certbot"
    renew_before_days: int = Field(default=30, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)
    alert_command: List[str] = []


class StackSettings(BaseModel):
    """
    Execution knobs for apply.
    """
    model_config = ConfigDict(frozen=True)

    workers: int = Field(default=1, ge=1)
    fs_retries: int = Field(default=3, ge=0)
    fs_retry_delay: float = Field(default=0.5, ge=0)
    health_wait_timeout: Optional[float] = Field(default=None, gt=0)
    probe_poll_interval: float = Field(default=0.5, gt=0)
    stop_timeout: int = Field(default=30, ge=0)


class StackPlan(BaseModel):
    """
    Complete desired state for one host. Services are kept in declaration order.
    """
    model_config = ConfigDict(frozen=True)

    project: str = "stackward"
    services: List[ServiceSpec]
    proxy: Optional[ProxySettings] = None
    certificates: CertificateSettings = Field(default_factory=CertificateSettings)
    settings: StackSettings = Field(default_factory=StackSettings)

    @field_validator("project")
    @classmethod
    def _project_name(cls, value):
        if not value or not value.replace("-", "").replace("_", "").isalnum():
            raise ValueError("project must be alphanumeric with '-' or '_'")
        return value

    @property
    def volumes(self) -> List[VolumeBinding]:
        """Every ownership requirement, in service declaration then mount order."""
        bindings = []
        for svc in self.services:
            bindings.extend(svc.volume_bindings)
        return bindings

    def service(self, name: str) -> ServiceSpec:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    def service_names(self) -> List[str]:
        return [svc.name for svc in self.services]

    def dependencies(self) -> Dict[str, List[str]]:
        return {svc.name: list(svc.depends_on) for svc in self.services}

    def public_services(self) -> List[ServiceSpec]:
        return [svc for svc in self.services if svc.hostname and svc.public_port]
