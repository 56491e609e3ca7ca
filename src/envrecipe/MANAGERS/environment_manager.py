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
Managers for the persistent image environment and executable lookup.
"""
import logging
import os
import posixpath
from pathlib import Path
from typing import Iterable, Mapping, Optional

from dotenv import dotenv_values

from ..MODELS.recipe import EnvironmentConfig, SEARCH_PATH_VARIABLE
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Applies declared variables on top of the base image environment.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def load_env_file(self, env_file: str) -> dict:
        """
        Reads extra variables from a dotenv file.

        :param env_file: Path to the file, relative to ``base_dir``.
        :return: Mapping of variables; entries without a value are skipped.
        """
        path = os.path.join(self.base_dir, env_file)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Environment file not found: {path}")
        return {k: v for k, v in dotenv_values(path).items() if v is not None}

    def configure(self,
                  base: EnvironmentConfig,
                  steps: Iterable[EnvironmentConfig],
                  extra: Optional[Mapping[str, str]] = None) -> EnvironmentConfig:
        """
        Applies ENV steps on top of the base image environment.

        References in a step expand against the environment as it was before
        that step, so ``ENV A=x B=$A`` sees the previous value of ``A``.
        Later writes win.

        :param base: Environment inherited from the base image.
        :param steps: Variables declared by the recipe, one record per ENV directive.
        :param extra: Variables supplied by the driver, applied last as one step.
        :return: A new environment record.
        """
        merged = base.as_dict()
        steps = list(steps)
        if extra:
            steps.append(EnvironmentConfig.from_mapping(extra))
        for step in steps:
            merged = self.apply_step(merged, step)

        result = EnvironmentConfig.from_mapping(merged)
        if SEARCH_PATH_VARIABLE in merged:
            search_path = result.search_path
            if str(search_path) != merged[SEARCH_PATH_VARIABLE]:
                # Normalized form drops empty segments
                result = result.with_updates({SEARCH_PATH_VARIABLE: str(search_path)})
            if search_path.duplicates:
                logger.debug("Search path lists %s more than once", ", ".join(search_path.duplicates))
        return result

    @staticmethod
    def apply_step(current: Mapping[str, str], step: EnvironmentConfig) -> dict:
        """Returns ``current`` updated with ``step``, expanded against ``current``."""
        updated = dict(current)
        for name, value in step.variables:
            updated[name] = EnvironmentInterpolator.interpolate(value, current)
        return updated

    @staticmethod
    def which(name: str, environment: EnvironmentConfig, rootfs: str = "/") -> Optional[str]:
        """
        Resolves an executable name against the search path inside ``rootfs``.

        Directories that do not exist are skipped, as the shell does.

        :return: The path as seen inside the image, or None.
        """
        for directory in environment.search_path:
            candidate = posixpath.normpath(posixpath.join("/", directory, name))
            host_path = resolve_in_root(rootfs, candidate)
            if host_path is None:
                continue
            if host_path.is_file() and os.access(host_path, os.X_OK):
                return candidate
        return None


def resolve_in_root(rootfs: str, path: str, max_links: int = 40) -> Optional[Path]:
    """
    Maps an image path to the host, following symlinks without leaving ``rootfs``.

    Absolute link targets are interpreted relative to ``rootfs``.
    Returns None for dangling paths or link loops.
    """
    root = Path(rootfs)
    pending = [p for p in path.split("/") if p]
    resolved: list = []
    links = 0
    while pending:
        part = pending.pop(0)
        if part == ".":
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        current = root.joinpath(*resolved, part)
        if current.is_symlink():
            links += 1
            if links > max_links:
                return None
            target = os.readlink(current)
            if target.startswith("/"):
                resolved = []
            pending = [p for p in target.split("/") if p] + pending
            continue
        if not current.exists():
            return None
        resolved.append(part)
    return root.joinpath(*resolved)
