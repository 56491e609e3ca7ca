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
Models for recipes: the base image, the persistent environment and the package set.
"""
import re
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from ..REGISTRY.image_reference import ImageReference

SEARCH_PATH_VARIABLE = "PATH"
NON_INTERACTIVE_VARIABLE = "DEBIAN_FRONTEND"
NON_INTERACTIVE_VALUE = "noninteractive"

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PACKAGE_PATTERN = re.compile(
    r"^[a-z0-9][a-z0-9+.\-]+(:[a-z0-9\-]+)?(=[A-Za-z0-9.+~:\-]+)?$"
)


class SearchPath:
    """
    Ordered list of directories consulted to resolve an executable name.

    Empty segments are dropped; duplicates are kept since they only cost
    an extra lookup.
    """

    def __init__(self, directories: Iterable[str], separator: str = ":"):
        self.separator = separator
        self.directories: Tuple[str, ...] = tuple(d for d in directories if d)

    @classmethod
    def parse(cls, value: str, separator: str = ":") -> "SearchPath":
        return cls(value.split(separator), separator)

    def __iter__(self) -> Iterator[str]:
        return iter(self.directories)

    def __len__(self) -> int:
        return len(self.directories)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SearchPath) and self.directories == other.directories

    def __str__(self) -> str:
        return self.separator.join(self.directories)

    def __repr__(self) -> str:
        return f"SearchPath({str(self)!r})"

    @property
    def duplicates(self) -> List[str]:
        seen = set()
        dupes = []
        for directory in self.directories:
            if directory in seen and directory not in dupes:
                dupes.append(directory)
            seen.add(directory)
        return dupes


class EnvironmentConfig(BaseModel):
    """
    Immutable, ordered set of persistent environment variables.

    Threaded into every build phase and written into the image config;
    updates return a new record.
    """
    model_config = ConfigDict(frozen=True)

    variables: Tuple[Tuple[str, str], ...] = ()

    @field_validator("variables")
    @classmethod
    def _unique_valid_names(cls, value):
        merged: Dict[str, str] = {}
        for name, val in value:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid environment variable name: {name!r}")
            merged[name] = val
        return tuple(merged.items())

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "EnvironmentConfig":
        return cls(variables=tuple(mapping.items()))

    @classmethod
    def from_env_list(cls, entries: Iterable[str]) -> "EnvironmentConfig":
        """Build from image-config style ``KEY=VALUE`` strings."""
        pairs = []
        for entry in entries:
            name, _, value = entry.partition("=")
            pairs.append((name, value))
        return cls(variables=tuple(pairs))

    def with_updates(self, updates: Mapping[str, str]) -> "EnvironmentConfig":
        """Return a copy with ``updates`` applied; last write wins."""
        merged = self.as_dict()
        merged.update(updates)
        return EnvironmentConfig.from_mapping(merged)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.as_dict().get(name, default)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.variables)

    def to_env_list(self) -> List[str]:
        return [f"{name}={value}" for name, value in self.variables]

    def __contains__(self, name: str) -> bool:
        return any(key == name for key, _ in self.variables)

    def __len__(self) -> int:
        return len(self.variables)

    @property
    def search_path(self) -> SearchPath:
        return SearchPath.parse(self.get(SEARCH_PATH_VARIABLE, ""))

    @property
    def non_interactive(self) -> bool:
        return self.get(NON_INTERACTIVE_VARIABLE) == NON_INTERACTIVE_VALUE


class PackageSet(BaseModel):
    """
    Set of package identifiers to install (``name[:arch][=version]``).
    """
    model_config = ConfigDict(frozen=True)

    names: FrozenSet[str] = frozenset()

    @field_validator("names")
    @classmethod
    def _valid_names(cls, value):
        for name in value:
            if not PACKAGE_PATTERN.match(name):
                raise ValueError(f"Invalid package name: {name!r}")
        return value

    @classmethod
    def of(cls, *names: str) -> "PackageSet":
        return cls(names=frozenset(names))

    def sorted(self) -> List[str]:
        return sorted(self.names)

    @property
    def bare_names(self) -> FrozenSet[str]:
        """Package names without architecture or version qualifiers."""
        return frozenset(re.split(r"[:=]", name, maxsplit=1)[0] for name in self.names)

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: str) -> bool:
        return name in self.names


class Recipe(BaseModel):
    """
    A parsed recipe: base image, environment declarations and packages.
    """
    model_config = ConfigDict(frozen=True)

    base: str
    # One entry per ENV directive, in declaration order
    env_steps: Tuple[EnvironmentConfig, ...] = ()
    packages: PackageSet = PackageSet()
    install_recommends: bool = False

    # Overrides; None inherits the base image value
    user: Optional[str] = None
    working_dir: Optional[str] = None
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    labels: Dict[str, str] = {}

    source: Optional[str] = None

    @field_validator("base")
    @classmethod
    def _parseable_base(cls, value: str) -> str:
        ImageReference.parse(value)
        return value

    @property
    def environment(self) -> EnvironmentConfig:
        """Declared variables with their unexpanded values; last write wins."""
        merged: Dict[str, str] = {}
        for step in self.env_steps:
            merged.update(step.as_dict())
        return EnvironmentConfig.from_mapping(merged)

    @property
    def base_image(self) -> ImageReference:
        return ImageReference.parse(self.base)
