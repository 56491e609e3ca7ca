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
Utilities for expanding variable references in recipe values.
"""
import re
from typing import Mapping

# \$ escape, ${VAR}, ${VAR:-default}, ${VAR:+value}, or bare $VAR
_PATTERN = re.compile(
    r"\\\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)"
)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default} and ${VAR:+value}.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str], strict: bool = False) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        Unset variables expand to the empty string, as Dockerfile ENV does.

        :param template: The string containing $VAR placeholders.
        :param context: The environment variables context.
        :param strict: Raise KeyError for unset variables without a modifier.
        :return: The interpolated string.
        """
        def replace(match):
            if match.group(0) == "\\$":
                return "$"

            var_name = match.group(1) or match.group(4)
            modifier = match.group(2)
            alt_value = match.group(3)
            value = context.get(var_name)

            if modifier == "-":
                return value if value else alt_value
            if modifier == "+":
                return alt_value if value else ""
            if value is None:
                if strict:
                    raise KeyError(f"Variable {var_name} not found in context")
                return ""
            return value

        return _PATTERN.sub(replace, template)
