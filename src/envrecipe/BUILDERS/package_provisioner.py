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
Package provisioning: refresh the index, install packages, clean caches.

The three steps form a strict state machine
``pending -> indexed -> installed -> cleaned``; any failure moves it to
``failed`` and nothing resumes from there.
"""
import logging
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Set

from ..errors import (
    BuildError,
    FilesystemPermissionError,
    InvalidTransitionError,
    ProvisioningError,
    ResolutionError,
    TransportError,
)
from ..MODELS.recipe import EnvironmentConfig, PackageSet
from ..RUNNERS.command_executor import CommandExecutor, CommandResult

logger = logging.getLogger(__name__)


class ProvisioningPhase(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    INSTALLED = "installed"
    CLEANED = "cleaned"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[ProvisioningPhase, Set[ProvisioningPhase]] = {
    ProvisioningPhase.PENDING: {ProvisioningPhase.INDEXED, ProvisioningPhase.FAILED},
    ProvisioningPhase.INDEXED: {ProvisioningPhase.INSTALLED, ProvisioningPhase.FAILED},
    ProvisioningPhase.INSTALLED: {ProvisioningPhase.CLEANED, ProvisioningPhase.FAILED},
    ProvisioningPhase.CLEANED: set(),
    ProvisioningPhase.FAILED: set(),
}

# Build phase names reported on failure
STEP_NAMES = {
    ProvisioningPhase.INDEXED: "index",
    ProvisioningPhase.INSTALLED: "install",
    ProvisioningPhase.CLEANED: "cleanup",
}


class ProvisioningStateMachine:
    """
    Tracks the provisioning phase and rejects out-of-order transitions.
    """
    def __init__(self):
        self.state = ProvisioningPhase.PENDING
        self.history: List[ProvisioningPhase] = [self.state]

    def require(self, state: ProvisioningPhase) -> None:
        """Assert the machine is in ``state`` before starting the next step."""
        if self.state != state:
            raise InvalidTransitionError(
                f"Provisioning is {self.state.value}, expected {state.value}"
            )

    def transition(self, target: ProvisioningPhase) -> None:
        allowed = VALID_TRANSITIONS[self.state]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        logger.debug("Provisioning %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)


_MISSING_PACKAGE_PATTERNS = (
    re.compile(r"Unable to locate package (\S+)"),
    re.compile(r"Package '?([^'\s]+)'? has no installation candidate"),
    re.compile(r"Version '[^']+' for '([^']+)' was not found"),
)
# apt installs a provider in place of a virtual or renamed package
_SUBSTITUTION_PATTERN = re.compile(r"Note, selecting '([^']+)' instead of '([^']+)'")
_PERMISSION_MARKERS = ("Permission denied", "are you root?")
_TRANSPORT_MARKERS = (
    "Temporary failure resolving",
    "Could not resolve",
    "Failed to fetch",
    "Could not connect",
    "Unable to connect",
    "Connection timed out",
    "Network is unreachable",
    "Some index files failed to download",
)


class AptManager:
    """
    Commands and output classification for apt-based images.
    """
    name = "apt"
    archives_dir = "/var/cache/apt/archives"
    cache_dir = "/var/cache/apt"
    lists_dir = "/var/lib/apt/lists"
    # Entries apt recreates itself and which hold no cached data
    keep_entries = frozenset({"lock", "partial", "auxfiles"})

    def refresh_command(self) -> List[str]:
        return ["apt-get", "update"]

    def install_command(self, packages: PackageSet, install_recommends: bool = False) -> List[str]:
        argv = ["apt-get", "install", "-y"]
        if not install_recommends:
            argv.append("--no-install-recommends")
        return argv + packages.sorted()

    def clean_command(self) -> List[str]:
        return ["apt-get", "clean"]

    def query_installed_command(self) -> List[str]:
        return ["dpkg-query", "-W", "-f=${Status}\t${Package}\n"]

    def parse_installed(self, output: str) -> FrozenSet[str]:
        installed = set()
        for line in output.splitlines():
            status, _, package = line.partition("\t")
            if status.split()[-1:] == ["installed"] and package:
                installed.add(package.strip())
        return frozenset(installed)

    def missing_packages(self, output: str) -> List[str]:
        missing = []
        for pattern in _MISSING_PACKAGE_PATTERNS:
            for name in pattern.findall(output):
                if name not in missing:
                    missing.append(name)
        return missing

    def substitutions(self, output: str) -> Dict[str, str]:
        """Maps each requested package name to the package apt selected for it."""
        selected = {}
        for provider, requested in _SUBSTITUTION_PATTERN.findall(output):
            selected[requested.split(":")[0]] = provider.split(":")[0]
        return selected

    def classify(self, result: CommandResult, phase: str) -> Optional[BuildError]:
        """
        Maps a command result to the error it represents, or None on success.

        ``apt-get update`` reports some fetch failures as warnings with exit
        status 0; those are transport errors too.
        """
        output = result.output
        if result.succeeded and not (phase == "index" and self._has_transport_failure(output)):
            return None

        command = " ".join(result.argv)
        missing = self.missing_packages(output)
        if missing:
            return ResolutionError(
                f"Packages not found in the index: {', '.join(missing)}",
                names=missing,
                phase=phase,
            )
        if any(marker in output for marker in _PERMISSION_MARKERS):
            return FilesystemPermissionError(f"{command}: {self._summary(output)}", phase=phase)
        if self._has_transport_failure(output):
            return TransportError(f"{command}: {self._summary(output)}", phase=phase)
        return ProvisioningError(
            f"{command} exited with status {result.returncode}: {self._summary(output)}",
            phase=phase,
        )

    @staticmethod
    def _has_transport_failure(output: str) -> bool:
        return any(marker in output for marker in _TRANSPORT_MARKERS)

    @staticmethod
    def _summary(output: str) -> str:
        errors = [line for line in output.splitlines() if line.startswith(("E:", "W:"))]
        lines = errors or output.strip().splitlines()[-3:]
        return " ".join(line.strip() for line in lines) or "no output"


@dataclass
class ProvisioningReport:
    """What a completed provisioning run did."""
    installed: FrozenSet[str] = frozenset()
    commands: List[List[str]] = field(default_factory=list)
    history: List[ProvisioningPhase] = field(default_factory=list)


class PackageProvisioner:
    """
    Runs the index, install and cleanup steps through a command executor.
    """
    def __init__(self, executor: CommandExecutor, manager: Optional[AptManager] = None):
        """
        :param executor: Runs commands inside the build root filesystem.
        :param manager: Package manager dialect, apt by default.
        """
        self.executor = executor
        self.manager = manager or AptManager()
        self.machine = ProvisioningStateMachine()
        self.report = ProvisioningReport()

    @property
    def rootfs(self) -> Path:
        return Path(self.executor.rootfs)

    def provision(self,
                  packages: PackageSet,
                  environment: EnvironmentConfig,
                  install_recommends: bool = False) -> ProvisioningReport:
        """
        Runs all three steps in order.

        :raises ResolutionError: A requested package is not in the index.
        :raises TransportError: The repository could not be reached.
        :raises FilesystemPermissionError: A write or delete was denied.
        :raises ProvisioningError: Any other package manager failure.
        """
        if not environment.non_interactive:
            logger.warning("Non-interactive flag is not set; prompts will read from a closed stdin")
        self.refresh_index(environment)
        self.install(packages, environment, install_recommends)
        self.clean(environment)
        self.report.history = list(self.machine.history)
        return self.report

    def refresh_index(self, environment: EnvironmentConfig) -> None:
        self.machine.require(ProvisioningPhase.PENDING)
        self._run(self.manager.refresh_command(), environment, ProvisioningPhase.INDEXED)
        self.machine.transition(ProvisioningPhase.INDEXED)

    def install(self,
                packages: PackageSet,
                environment: EnvironmentConfig,
                install_recommends: bool = False) -> None:
        self.machine.require(ProvisioningPhase.INDEXED)
        selected: Dict[str, str] = {}
        if len(packages):
            result = self._run(
                self.manager.install_command(packages, install_recommends),
                environment,
                ProvisioningPhase.INSTALLED,
            )
            selected = self.manager.substitutions(result.output)
            for requested, provider in sorted(selected.items()):
                logger.info("apt selected %s for %s", provider, requested)
        result = self._run(self.manager.query_installed_command(), environment, ProvisioningPhase.INSTALLED)
        installed = self.manager.parse_installed(result.stdout)

        absent = sorted(name for name in packages.bare_names
                        if selected.get(name, name) not in installed)
        if absent:
            self._fail(ResolutionError(
                f"Packages not installed after install step: {', '.join(absent)}",
                names=absent,
                phase=STEP_NAMES[ProvisioningPhase.INSTALLED],
            ))
        self.report.installed = installed
        self.machine.transition(ProvisioningPhase.INSTALLED)

    def clean(self, environment: EnvironmentConfig) -> None:
        self.machine.require(ProvisioningPhase.INSTALLED)
        phase = STEP_NAMES[ProvisioningPhase.CLEANED]
        self._run(self.manager.clean_command(), environment, ProvisioningPhase.CLEANED)
        try:
            self._empty_directory(self.manager.lists_dir)
        except PermissionError as e:
            self._fail(FilesystemPermissionError(f"Cannot remove package lists: {e}", phase=phase))

        leftovers = self.cache_leftovers()
        if leftovers:
            self._fail(ProvisioningError(
                f"Package cache not empty after cleanup: {', '.join(leftovers[:5])}",
                phase=phase,
            ))
        self.machine.transition(ProvisioningPhase.CLEANED)

    def cache_leftovers(self) -> List[str]:
        """
        Lists cached index and archive files still present, as image paths.
        """
        leftovers = []
        for directory in (self.manager.archives_dir, self.manager.lists_dir):
            host_dir = self._host_path(directory)
            if not host_dir.is_dir():
                continue
            for path in sorted(host_dir.rglob("*")):
                relative = path.relative_to(host_dir)
                if relative.parts[0] in self.manager.keep_entries and path.is_dir():
                    continue
                if path.is_file() and path.name != "lock":
                    leftovers.append(f"{directory}/{relative.as_posix()}")
        cache_dir = self._host_path(self.manager.cache_dir)
        if cache_dir.is_dir():
            leftovers.extend(
                f"{self.manager.cache_dir}/{p.name}" for p in sorted(cache_dir.glob("*.bin"))
            )
        return leftovers

    def _host_path(self, image_path: str) -> Path:
        return self.rootfs / image_path.lstrip("/")

    def _empty_directory(self, image_path: str) -> None:
        directory = self._host_path(image_path)
        if not directory.is_dir():
            return
        for entry in directory.iterdir():
            if entry.name in self.manager.keep_entries:
                if entry.is_dir() and not entry.is_symlink():
                    for child in entry.iterdir():
                        self._remove(child)
                continue
            self._remove(entry)

    @staticmethod
    def _remove(path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def _run(self, argv: List[str], environment: EnvironmentConfig,
             target: ProvisioningPhase) -> CommandResult:
        self.report.commands.append(list(argv))
        result = self.executor.run(argv, environment.as_dict())
        error = self.manager.classify(result, STEP_NAMES[target])
        if error is not None:
            self._fail(error)
        return result

    def _fail(self, error: BuildError) -> None:
        self.machine.transition(ProvisioningPhase.FAILED)
        logger.error("Provisioning failed during %s: %s", error.phase, error)
        raise error
