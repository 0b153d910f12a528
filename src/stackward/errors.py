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
Error taxonomy shared by the loader, the executor and the CLI.

Load-time errors (``ConfigError``, ``DependencyCycle``) abort before anything is
touched. Apply-time errors derive from ``ActionError`` and always carry the action
kind, the target and the underlying cause so that a partial failure summary can be
printed without further context.
"""
from typing import List, Optional


class StackwardError(Exception):
    """Base exception for stackward operations."""


class ConfigError(StackwardError):
    """The plan file is invalid. ``field`` names the offending location."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}" if field else message)


class DependencyCycle(ConfigError):
    """Services depend on each other in a loop."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"dependency cycle: {' -> '.join(self.cycle)}", field="depends_on"
        )


class InfrastructureError(StackwardError):
    """A collaborator the tool cannot work without is unreachable."""


class ActionError(StackwardError):
    """An action failed while being applied."""

    retryable = False

    def __init__(
        self,
        cause: str,
        kind: Optional[str] = None,
        target: Optional[str] = None,
    ):
        self.cause = cause
        self.kind = kind
        self.target = target
        super().__init__(cause)

    def bind(self, kind: str, target: str) -> "ActionError":
        """Fill in the action context if the raiser did not know it."""
        if self.kind is None:
            self.kind = kind
        if self.target is None:
            self.target = target
        return self

    def __str__(self) -> str:
        if self.kind and self.target:
            return f"{self.kind}({self.target}) failed: {self.cause}"
        return self.cause


class FilesystemError(ActionError):
    """Creating a directory or fixing its ownership failed."""

    def __init__(self, cause: str, retryable: bool = False, **kwargs):
        super().__init__(cause, **kwargs)
        self.retryable = retryable


class ServiceRuntimeError(ActionError):
    """The container runtime refused to start or stop a service."""


class HealthTimeout(ActionError):
    """A service did not become healthy in time."""


class ProxyError(ActionError):
    """Proxy configuration failed validation or could not be reloaded."""


class CertificateError(ActionError):
    """Certificate issuance or renewal failed."""

    def __init__(self, cause: str, escalated: bool = False, **kwargs):
        super().__init__(cause, **kwargs)
        self.escalated = escalated
