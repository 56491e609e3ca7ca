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
Error taxonomy for recipe builds.

Every error is fatal to the build. ``phase`` names the pipeline step that
failed so the driver can report it.
"""
from typing import Iterable, Optional


class BuildError(Exception):
    """Base class for all build failures."""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self) -> str:
        return self.message


class RecipeError(BuildError):
    """The recipe is malformed or uses an unsupported directive."""

    def __init__(self, message: str, line: Optional[str] = None):
        if line:
            message = f"{message}: {line}"
        super().__init__(message, phase="parse")
        self.line = line


class ResolutionError(BuildError):
    """A base image or package name cannot be found."""

    def __init__(self, message: str, names: Iterable[str] = (), phase: Optional[str] = None):
        super().__init__(message, phase=phase)
        self.names = list(names)


class TransportError(BuildError):
    """A registry or package repository could not be reached."""


class FilesystemPermissionError(BuildError, PermissionError):
    """A filesystem write or delete was denied."""


class ProvisioningError(BuildError):
    """The package manager failed for a reason other than the above."""


class InvalidTransitionError(BuildError, RuntimeError):
    """A provisioning phase was entered out of order."""
