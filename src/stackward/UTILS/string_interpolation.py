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
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict

# $$ | ${VAR} | ${VAR:-default} | ${VAR:+value} | ${VAR:?message}
_PATTERN = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([-+?])([^}]*))?\}")


class InterpolationError(KeyError):
    """A required variable is unset."""

    def __init__(self, name: str, message: str):
        self.name = name
        self.message = message
        super().__init__(name)

    def __str__(self) -> str:
        return self.message


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in plan files.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value}, ${VAR:?message} and $$ escapes.
    """

    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises InterpolationError: If a variable is unset and has no default.
        """

        def replace(match: re.Match) -> str:
            if match.group(0) == "$$":
                return "$"

            name, modifier, alt_value = match.groups()
            value = context.get(name)

            if modifier == "-":
                return value if value else alt_value
            if modifier == "+":
                return alt_value if value else ""
            if modifier == "?":
                if not value:
                    raise InterpolationError(name, alt_value or f"{name} is required")
                return value
            if value is None:
                raise InterpolationError(name, f"variable {name} is not set")
            return value

        return _PATTERN.sub(replace, template)
