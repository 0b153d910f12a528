"""
Reverse proxy route rendering and atomic activation.
"""
import hashlib
import json
import os
import shutil
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Iterable, List, Optional

import structlog
from jinja2 import Template

from ..errors import ProxyError
from ..MODELS.stack_plan import ProxySettings, StackPlan

NGINX_TEMPLATE = """\
# Managed by stackward for project {{ project }}. Local edits are overwritten.
{% for route in routes %}
server {
    listen 80;
    server_name {{ route.hostname }};

    location /.well-known/acme-challenge/ {
        root {{ webroot }};
    }
{% if route.tls %}
    location / {
        return 301 https://$host$request_uri;
    }
}

server {
    listen 443 ssl;
    server_name {{ route.hostname }};

    ssl_certificate {{ route.certificate }};
    ssl_certificate_key {{ route.key }};
{% endif %}
    location / {
        proxy_pass http://{{ route.upstream }};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }
}
{% endfor %}
"""


@dataclass(frozen=True)
class Route:
    hostname: str
    service: str
    upstream: str
    tls: bool = False
    certificate: Optional[str] = None
    key: Optional[str] = None


class ProxyManager:
    """
    Renders routes for healthy public services and swaps them in without ever
    leaving a partially written configuration behind.
    """

    def __init__(self, settings: ProxySettings, project: str = "stackward", webroot: str = "/var/www/certbot"):
        self.settings = settings
        self.project = project
        self.webroot = webroot
        if settings.template:
            with open(settings.template, "r", encoding="utf-8") as f:
                self.template = Template(f.read())
        else:
            self.template = Template(NGINX_TEMPLATE)
        self.logger = structlog.get_logger().bind(component="proxy_manager")

    def routes(self, plan: StackPlan, available: Iterable[str], certified: Iterable[str] = ()) -> List[Route]:
        """
        Routes for public services that are available, in declaration order.

        :param available: Names of services that can receive traffic.
        :param certified: Hostnames that have a certificate on disk.
        """
        available = set(available)
        certified = set(certified)
        routes = []
        for svc in plan.public_services():
            if svc.name not in available:
                continue
            tls = self.settings.tls and svc.hostname in certified
            routes.append(
                Route(
                    hostname=svc.hostname,
                    service=svc.name,
                    upstream=f"{self.settings.upstream_host}:{svc.public_port}",
                    tls=tls,
                    certificate=self.settings.certificate_path.format(hostname=svc.hostname) if tls else None,
                    key=self.settings.key_path.format(hostname=svc.hostname) if tls else None,
                )
            )
        return routes

    def render(self, routes: List[Route]) -> str:
        return self.template.render(routes=routes, project=self.project, webroot=self.webroot)

    @staticmethod
    def digest(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def current_digest(self) -> Optional[str]:
        """Digest of the active configuration file, None when there is none."""
        try:
            with open(self.settings.config_path, "r", encoding="utf-8") as f:
                return self.digest(f.read())
        except FileNotFoundError:
            return None

    def activate(self, routes: List[Route]) -> None:
        """
        Writes, validates and reloads the proxy configuration.

        When the validate command names ``{config}`` the candidate file is checked
        before it replaces the active one. Otherwise the candidate is swapped in,
        validated, and the previous file is restored if validation fails.

        :raises ProxyError: If writing, validation or the reload fails.
        """
        config_path = self.settings.config_path
        content = self.render(routes)
        try:
            self._swap(config_path, content)
        except OSError as e:
            raise ProxyError(f"cannot write {config_path}: {e}") from e

        self._reload()
        self.logger.info(
            "proxy configuration activated",
            path=config_path,
            routes=[r.hostname for r in routes],
            digest=self.digest(content)[:12],
        )

    def _swap(self, config_path: str, content: str) -> None:
        candidate = config_path + ".new"
        os.makedirs(os.path.dirname(config_path) or ".", exist_ok=True)
        with open(candidate, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        validate = self.settings.validate_command
        if any("{config}" in arg for arg in validate):
            try:
                self._run([arg.replace("{config}", candidate) for arg in validate], "validation")
            except ProxyError:
                os.remove(candidate)
                raise
            os.replace(candidate, config_path)
            return

        backup = config_path + ".bak"
        had_previous = os.path.exists(config_path)
        if had_previous:
            shutil.copy2(config_path, backup)
        os.replace(candidate, config_path)
        try:
            if validate:
                self._run(validate, "validation")
        except ProxyError:
            if had_previous:
                os.replace(backup, config_path)
            else:
                os.remove(config_path)
            raise

    def _reload(self) -> None:
        if self.settings.reload_url:
            body = json.dumps({"project": self.project}).encode("utf-8")
            request = urllib.request.Request(
                self.settings.reload_url,
                data=body,
                method="POST",
                headers={"Content-Type": "application/json"},
            )
            try:
                with urllib.request.urlopen(request, timeout=30) as resp:
                    if resp.status >= 400:
                        raise ProxyError(f"reload endpoint answered HTTP {resp.status}")
            except urllib.error.HTTPError as e:
                raise ProxyError(f"reload endpoint answered HTTP {e.code}") from e
            except (urllib.error.URLError, OSError) as e:
                raise ProxyError(f"reload endpoint unreachable: {e}") from e
            return
        if self.settings.reload_command:
            self._run(self.settings.reload_command, "reload")

    def _run(self, command: List[str], what: str) -> None:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=60)
        except FileNotFoundError as e:
            raise ProxyError(f"{what} command not found: {command[0]}") from e
        except subprocess.TimeoutExpired:
            raise ProxyError(f"{what} command timed out: {' '.join(command)}") from None
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()[-500:]
            raise ProxyError(f"{what} failed ({' '.join(command)}): {detail}")
