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
Loader for stack plan files (YAML, JSON or TOML) into a validated StackPlan.
"""
import json
import os
import tomllib
from typing import Any, Dict, List, Optional

import psutil
import structlog
import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ConfigError
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.stack_plan import StackPlan
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError

FORMATS = {".yaml": "yaml", ".yml": "yaml", ".json": "json", ".toml": "toml"}


class PlanLoader:
    """
    Parser for stack plan files. Loading is pure: files are read, nothing is changed.
    """

    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the loader with an optional environment context for interpolation.

        :param context: Variables for ${VAR} interpolation. Defaults to the process environment.
        """
        self.context = dict(os.environ) if context is None else dict(context)
        self.logger = structlog.get_logger().bind(component="plan_loader")

    def load(self, plan_path: str) -> StackPlan:
        """
        Parses a plan file from a path. A ``.env`` file next to it feeds interpolation.

        :param plan_path: Path to the plan file.
        :return: Validated plan.
        :raises ConfigError: If the file is missing, malformed or invalid.
        """
        if not os.path.isfile(plan_path):
            raise ConfigError(f"plan file not found: {plan_path}")

        base_dir = os.path.dirname(os.path.abspath(plan_path))
        ext = os.path.splitext(plan_path)[1].lower()

        context = dict(self.context)
        dotenv_path = os.path.join(base_dir, ".env")
        if os.path.isfile(dotenv_path):
            for key, value in dotenv_values(dotenv_path).items():
                context.setdefault(key, value or "")

        with open(plan_path, "r", encoding="utf-8") as f:
            content = f.read()
        return self.load_from_string(
            content, fmt=FORMATS.get(ext, "yaml"), base_dir=base_dir, context=context
        )

    def load_from_string(
        self,
        content: str,
        fmt: str = "yaml",
        base_dir: str = ".",
        context: Optional[Dict[str, str]] = None,
    ) -> StackPlan:
        """
        Parses a plan from a string.

        :param content: Plan file contents.
        :param fmt: One of ``yaml``, ``json``, ``toml``.
        :param base_dir: Directory that relative ``env_file`` entries resolve against.
        :param context: Interpolation variables, defaults to the loader's context.
        :return: Validated plan.
        """
        try:
            content = EnvironmentInterpolator.interpolate(
                content, self.context if context is None else context
            )
        except InterpolationError as e:
            raise ConfigError(str(e), field=f"${{{e.name}}}") from None

        data = self._decode(content, fmt)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("top level must be a mapping", field="<root>")

        raw_services = self._service_entries(data.get("services"))
        names: Dict[str, int] = {}
        services: List[ServiceSpec] = []
        for i, raw in enumerate(raw_services):
            field = f"services[{i}]"
            name = raw.get("name")
            if name in names:
                raise ConfigError(
                    f"duplicate service name {name!r} (first declared at services[{names[name]}])",
                    field=f"{field}.name",
                )
            names[name] = i
            services.append(self._parse_service(i, raw, base_dir))

        for i, svc in enumerate(services):
            for j, dep in enumerate(svc.depends_on):
                if dep not in names:
                    raise ConfigError(
                        f"unknown service {dep!r}", field=f"services[{i}].depends_on[{j}]"
                    )
                if dep == svc.name:
                    raise ConfigError(
                        "a service cannot depend on itself", field=f"services[{i}].depends_on[{j}]"
                    )

        # Raises DependencyCycle with the full path
        DependencyResolver({s.name: s.depends_on for s in services}).resolve_order()

        try:
            plan = StackPlan(
                project=data.get("project", "stackward"),
                services=services,
                proxy=data.get("proxy"),
                certificates=data.get("certificates") or {},
                settings=data.get("settings") or {},
            )
        except ValidationError as e:
            raise self._config_error(e) from None

        self._check_shared_volumes(plan)
        self._check_host_capacity(plan)
        return plan

    def _decode(self, content: str, fmt: str) -> Any:
        try:
            if fmt == "json":
                return json.loads(content) if content.strip() else {}
            if fmt == "toml":
                return tomllib.loads(content)
            return yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"cannot parse {fmt}: {e}", field="<root>") from None

    def _service_entries(self, raw: Any) -> List[Dict[str, Any]]:
        """
        Normalizes ``services`` to a list of mappings. A name-keyed mapping keeps its order.
        """
        if raw is None:
            raise ConfigError("at least one service is required", field="services")
        if isinstance(raw, dict):
            entries = []
            for name, spec in raw.items():
                if spec is not None and not isinstance(spec, dict):
                    raise ConfigError("must be a mapping", field=f"services.{name}")
                entry = dict(spec or {})
                entry.setdefault("name", name)
                entries.append(entry)
            raw = entries
        if not isinstance(raw, list) or not raw:
            raise ConfigError("must be a non-empty list", field="services")
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise ConfigError("must be a mapping", field=f"services[{i}]")
            if not entry.get("name"):
                raise ConfigError("is required", field=f"services[{i}].name")
            if not isinstance(entry["name"], str):
                raise ConfigError("must be a string", field=f"services[{i}].name")
        return raw

    def _parse_service(self, index: int, spec: Dict[str, Any], base_dir: str) -> ServiceSpec:
        """
        Parses a single service definition.

        :param index: Declaration position, used for tie-breaking and error locations.
        :param spec: The raw service mapping.
        :param base_dir: Directory for relative env files.
        """
        field = f"services[{index}]"

        environment: Dict[str, str] = {}
        for env_file in self._to_list(spec.get("env_file")):
            path = env_file if os.path.isabs(env_file) else os.path.join(base_dir, env_file)
            if not os.path.isfile(path):
                raise ConfigError(f"env file not found: {env_file}", field=f"{field}.env_file")
            environment.update({k: v or "" for k, v in dotenv_values(path).items()})
        explicit = spec.get("environment") or {}
        if isinstance(explicit, list):
            for entry in explicit:
                key, _, value = str(entry).partition("=")
                environment[key] = value
        elif isinstance(explicit, dict):
            environment.update({str(k): "" if v is None else str(v) for k, v in explicit.items()})
        else:
            raise ConfigError("must be a mapping or a list", field=f"{field}.environment")

        mounts = []
        for m in self._entries(spec.get("mounts", spec.get("volumes")), f"{field}.mounts"):
            if isinstance(m, str):
                parts = m.split(":")
                mount = {"host_path": parts[0], "container_path": parts[1] if len(parts) > 1 else parts[0]}
                if len(parts) > 2:
                    mount["read_only"] = parts[2] == "ro"
                mounts.append(mount)
            elif isinstance(m, dict):
                mount = {
                    "host_path": m.get("host", m.get("host_path", m.get("source"))),
                    "container_path": m.get("container", m.get("container_path", m.get("target"))),
                    "read_only": m.get("mode", "rw") == "ro" or bool(m.get("read_only", False)),
                }
                if m.get("owner") is not None:
                    mount["owner"] = m["owner"]
                mounts.append(mount)
            else:
                mounts.append(m)

        ports = {}
        for p in self._entries(spec.get("ports"), f"{field}.ports"):
            if isinstance(p, dict):
                ports[p.get("target")] = p.get("published", p.get("target"))
            else:
                parts = str(p).split(":")
                try:
                    if len(parts) == 1:
                        ports[int(parts[0])] = int(parts[0])
                    else:
                        ports[int(parts[-1])] = int(parts[-2])
                except ValueError:
                    raise ConfigError(f"invalid port mapping {p!r}", field=f"{field}.ports") from None

        depends_on = spec.get("depends_on")
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        elif isinstance(depends_on, dict):
            depends_on = list(depends_on)

        try:
            return ServiceSpec(
                name=spec["name"],
                image=spec.get("image", ""),
                index=index,
                command=spec.get("command") or [],
                mounts=mounts,
                environment=environment,
                ports=ports,
                hostname=spec.get("hostname"),
                resources=spec.get("resources") or {},
                health_check=spec.get("healthcheck", spec.get("health_check")),
                depends_on=self._entries(depends_on, f"{field}.depends_on"),
            )
        except ValidationError as e:
            raise self._config_error(e, prefix=field) from None

    def _config_error(self, error: ValidationError, prefix: str = "") -> ConfigError:
        first = error.errors()[0]
        loc = prefix
        for part in first["loc"]:
            if isinstance(part, int):
                loc += f"[{part}]"
            else:
                loc += f".{part}" if loc else str(part)
        return ConfigError(first["msg"], field=loc or None)

    def _check_shared_volumes(self, plan: StackPlan) -> None:
        seen = {}
        for binding in plan.volumes:
            other = seen.get(binding.host_path)
            if other is not None and not other.same_requirement(binding):
                raise ConfigError(
                    f"{binding.host_path} is required with different ownership by "
                    f"{other.service!r} and {binding.service!r}",
                    field=f"services[{plan.service(binding.service).index}].mounts",
                )
            seen.setdefault(binding.host_path, binding)

    def _check_host_capacity(self, plan: StackPlan) -> None:
        total_memory = psutil.virtual_memory().total
        cpu_count = psutil.cpu_count() or 1
        for svc in plan.services:
            limits = svc.resources
            if limits.memory and limits.memory > total_memory:
                self.logger.warning(
                    "memory limit exceeds host memory",
                    service=svc.name,
                    limit=limits.memory,
                    host_total=total_memory,
                )
            if limits.cpus and limits.cpus > cpu_count:
                self.logger.warning(
                    "cpu limit exceeds host cpus",
                    service=svc.name,
                    limit=limits.cpus,
                    host_cpus=cpu_count,
                )

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)

    def _entries(self, val: Any, field: str) -> List[Any]:
        """
        Helper for list-valued keys: None means empty, anything else but a list is an error.
        """
        if val is None:
            return []
        if not isinstance(val, list):
            raise ConfigError("must be a list", field=field)
        return val
