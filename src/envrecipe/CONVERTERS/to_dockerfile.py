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
Converters rendering recipes back to Dockerfile text.
"""
import json
import os
from typing import Optional

from jinja2 import Environment

from ..MODELS.recipe import Recipe
from ..REGISTRY.image_reference import ImageReference

DOCKERFILE_TEMPLATE = """\
FROM {{ base }}
{% for step in env_steps %}
ENV {% for name, value in step %}{{ name }}={{ value | dquote }}{% if not loop.last %} {% endif %}{% endfor %}

{% endfor %}
{% if packages %}

RUN apt-get update && \\
    apt-get install -y{% if not install_recommends %} --no-install-recommends{% endif %} {{ packages | join(' ') }} && \\
    apt-get clean && \\
    rm -rf /var/lib/apt/lists/*
{% endif %}
{% for name, value in labels.items() %}
LABEL {{ name }}={{ value | dquote }}
{% endfor %}
{% if user is not none %}
USER {{ user }}
{% endif %}
{% if working_dir is not none %}
WORKDIR {{ working_dir }}
{% endif %}
{% if entrypoint is not none %}
ENTRYPOINT {{ entrypoint | tojson }}
{% endif %}
{% if cmd is not none %}
CMD {{ cmd | tojson }}
{% endif %}
"""


def _dquote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class DockerfileConverter:
    """
    Renders a Recipe as a Dockerfile consumable by any image builder.
    """

    def __init__(self, recipe: Recipe):
        """
        Initializes the converter.

        :param recipe: The parsed recipe.
        """
        self.recipe = recipe
        env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
        env.filters["dquote"] = _dquote
        env.filters["tojson"] = lambda value: json.dumps(list(value))
        self.template = env.from_string(DOCKERFILE_TEMPLATE)

    def render(self, pinned_base: Optional[ImageReference] = None) -> str:
        """
        Renders the Dockerfile text.

        :param pinned_base: Digest-pinned base reference to use instead of the recipe's.
        :return: Dockerfile content.
        """
        recipe = self.recipe
        base = pinned_base.full_name if pinned_base else recipe.base
        return self.template.render(
            base=base,
            env_steps=[step.variables for step in recipe.env_steps],
            packages=recipe.packages.sorted(),
            install_recommends=recipe.install_recommends,
            labels=recipe.labels,
            user=recipe.user,
            working_dir=recipe.working_dir,
            entrypoint=recipe.entrypoint,
            cmd=recipe.cmd,
        )

    def convert(self, output_path: str, pinned_base: Optional[ImageReference] = None) -> str:
        """
        Writes the rendered Dockerfile.

        :param output_path: Destination file.
        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self.render(pinned_base))
        return output_path
