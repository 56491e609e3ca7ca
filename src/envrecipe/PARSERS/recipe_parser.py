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
Parsers turning recipe files (Dockerfile subset or YAML) into Recipe models.
"""
import logging
import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import RecipeError
from ..MODELS.dockerfile_ast import Instruction
from ..MODELS.recipe import EnvironmentConfig, PackageSet, Recipe
from .dockerfile_parser import DockerfileParser

logger = logging.getLogger(__name__)

APT_LISTS_GLOB = "/var/lib/apt/lists/*"
_APT_FLAGS = {"-y", "--yes", "-q", "-qq", "--quiet", "--assume-yes"}
_YAML_KEYS = {
    "base", "env", "packages", "install_recommends",
    "user", "workdir", "cmd", "entrypoint", "labels",
}


class _ProvisioningSteps:
    """Tracks the order of provisioning commands seen across RUN instructions."""

    def __init__(self):
        self.updated = False
        self.cleaned = False
        self.packages: List[str] = []
        self.install_recommends = False

    def feed(self, argv: List[str], raw: str) -> None:
        if argv[:1] == ["rm"]:
            if argv[1:] not in (["-rf", APT_LISTS_GLOB], ["-fr", APT_LISTS_GLOB]):
                raise RecipeError("Unsupported rm command", raw)
            self.cleaned = True
            return

        if argv[:1] not in (["apt-get"], ["apt"]):
            raise RecipeError(f"Unsupported command {argv[0]!r}", raw)

        options = [a for a in argv[1:] if a.startswith("-")]
        words = [a for a in argv[1:] if not a.startswith("-")]
        if not words:
            raise RecipeError("apt-get without an action", raw)
        action, operands = words[0], words[1:]

        if action == "update":
            self.updated = True
        elif action == "install":
            if not self.updated:
                raise RecipeError("Package install before index update", raw)
            if self.cleaned:
                raise RecipeError("Package install after cache cleanup", raw)
            unknown = [o for o in options if o not in _APT_FLAGS | {"--no-install-recommends"}]
            if unknown:
                raise RecipeError(f"Unsupported apt-get option {unknown[0]!r}", raw)
            if "--no-install-recommends" not in options:
                self.install_recommends = True
            self.packages.extend(operands)
        elif action == "clean":
            self.cleaned = True
        else:
            raise RecipeError(f"Unsupported apt-get action {action!r}", raw)


class RecipeParser:
    """
    Builds Recipe models from Dockerfiles or YAML documents.
    """
    def __init__(self):
        self.dockerfile_parser = DockerfileParser()

    def load(self, path: str) -> Recipe:
        """
        Loads a recipe, choosing the format from the file suffix.

        :param path: Path to a Dockerfile or a .yml/.yaml recipe.
        :return: The parsed recipe.
        """
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        if Path(path).suffix in (".yml", ".yaml"):
            return self.parse_yaml(content, source=path)
        return self.parse_dockerfile(content, source=path)

    def parse_dockerfile(self, content: str, source: Optional[str] = None) -> Recipe:
        """
        Parses the supported Dockerfile subset.

        :param content: Dockerfile text.
        :param source: Where the text came from, kept on the recipe.
        :return: The parsed recipe.
        :raises RecipeError: On unsupported or malformed directives.
        """
        ast = self.dockerfile_parser.parse_ast(content)
        froms = ast.of_type("FROM")
        if len(froms) > 1:
            raise RecipeError("Multi-stage builds are not supported", froms[1].raw)

        base = None
        env_steps: List[Dict[str, str]] = []
        overrides: Dict[str, Any] = {"labels": {}}
        steps = _ProvisioningSteps()

        for inst in ast.instructions:
            cmd = inst.instruction
            if cmd == "FROM":
                base = self._parse_from(inst)
            elif base is None:
                raise RecipeError("First instruction must be FROM", inst.raw)
            elif cmd == "ENV":
                env_steps.append(self._parse_env(inst))
            elif cmd == "RUN":
                self._parse_run(inst, steps)
            elif cmd == "USER":
                overrides["user"] = self._single(inst)
            elif cmd == "WORKDIR":
                overrides["working_dir"] = self._single(inst)
            elif cmd in ("CMD", "ENTRYPOINT"):
                args = inst.arguments
                if not inst.raw[len(cmd):].strip().startswith("["):
                    args = ["/bin/sh", "-c", " ".join(args)]
                overrides["cmd" if cmd == "CMD" else "entrypoint"] = args
            elif cmd == "LABEL":
                overrides["labels"].update(self._parse_pairs(inst))
            else:
                raise RecipeError(f"Unsupported instruction {cmd}", inst.raw)

        if base is None:
            raise RecipeError("Recipe has no FROM instruction")
        if steps.packages and not steps.cleaned:
            logger.debug("Recipe does not clean the package cache; cleanup runs anyway")

        return self._build(
            base=base,
            env_steps=env_steps,
            packages=steps.packages,
            install_recommends=steps.install_recommends,
            source=source,
            **overrides,
        )

    def parse_yaml(self, content: str, source: Optional[str] = None) -> Recipe:
        """
        Parses a YAML recipe::

            base: docker.io/ubuntu:noble
            env:
              DEBIAN_FRONTEND: noninteractive
            packages: [curl]

        ``env`` entries apply in order; each may reference the entries above it.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise RecipeError(f"Invalid YAML recipe: {e}") from e
        if not isinstance(data, dict):
            raise RecipeError("YAML recipe must be a mapping")

        unknown = sorted(str(key) for key in set(data) - _YAML_KEYS)
        if unknown:
            raise RecipeError(f"Unknown recipe keys: {', '.join(unknown)}")
        if "base" not in data:
            raise RecipeError("Recipe has no base image")

        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise RecipeError("'env' must be a mapping")
        packages = data.get("packages") or []
        if not isinstance(packages, list):
            raise RecipeError("'packages' must be a list")
        labels = data.get("labels") or {}
        if not isinstance(labels, dict):
            raise RecipeError("'labels' must be a mapping")

        return self._build(
            base=str(data["base"]),
            env_steps=[{str(k): str(v)} for k, v in env.items()],
            packages=[str(p) for p in packages],
            install_recommends=bool(data.get("install_recommends", False)),
            user=data.get("user"),
            working_dir=data.get("workdir"),
            cmd=data.get("cmd"),
            entrypoint=data.get("entrypoint"),
            labels={str(k): str(v) for k, v in labels.items()},
            source=source,
        )

    @staticmethod
    def _build(env_steps: List[Dict[str, str]], packages: List[str], **fields) -> Recipe:
        try:
            return Recipe(
                env_steps=tuple(EnvironmentConfig.from_mapping(step) for step in env_steps),
                packages=PackageSet(names=frozenset(packages)),
                **fields,
            )
        except ValidationError as e:
            details = "; ".join(err["msg"] for err in e.errors())
            raise RecipeError(f"Invalid recipe: {details}") from e
        except ValueError as e:
            raise RecipeError(f"Invalid recipe: {e}") from e

    @staticmethod
    def _single(inst: Instruction) -> str:
        if len(inst.arguments) != 1 or not inst.arguments[0]:
            raise RecipeError(f"{inst.instruction} takes exactly one argument", inst.raw)
        return inst.arguments[0]

    @staticmethod
    def _parse_from(inst: Instruction) -> str:
        words = inst.arguments[0].split() if inst.arguments else []
        if words and words[0].startswith("--"):
            raise RecipeError("FROM flags are not supported", inst.raw)
        if len(words) == 3 and words[1].lower() == "as":
            words = words[:1]
        if len(words) != 1:
            raise RecipeError("FROM takes a single image reference", inst.raw)
        return words[0]

    @staticmethod
    def _parse_env(inst: Instruction) -> Dict[str, str]:
        args = inst.arguments
        if len(args) == 2 and "=" not in args[0]:
            return {args[0]: args[1]}
        pairs = {}
        for arg in args:
            if "=" not in arg:
                raise RecipeError("ENV expects KEY=VALUE", inst.raw)
            key, value = arg.split("=", 1)
            pairs[key] = value
        if not pairs:
            raise RecipeError("ENV without variables", inst.raw)
        return pairs

    @staticmethod
    def _parse_pairs(inst: Instruction) -> Dict[str, str]:
        try:
            words = shlex.split(inst.arguments[0] if inst.arguments else "")
        except ValueError as e:
            raise RecipeError(f"Unbalanced quotes ({e})", inst.raw) from e
        pairs = {}
        for word in words:
            if "=" not in word:
                raise RecipeError("LABEL expects KEY=VALUE", inst.raw)
            key, value = word.split("=", 1)
            pairs[key] = value
        return pairs

    @staticmethod
    def _parse_run(inst: Instruction, steps: _ProvisioningSteps) -> None:
        if not inst.arguments or inst.raw[len("RUN"):].strip().startswith("["):
            raise RecipeError("RUN must use shell form", inst.raw)
        for command in re.split(r"&&|;", inst.arguments[0]):
            try:
                argv = shlex.split(command)
            except ValueError as e:
                raise RecipeError(f"Unbalanced quotes ({e})", inst.raw) from e
            if not argv:
                raise RecipeError("Empty command in RUN", inst.raw)
            if "=" in argv[0]:
                raise RecipeError("Inline variable assignments are not supported; use ENV", inst.raw)
            steps.feed(argv, inst.raw)
