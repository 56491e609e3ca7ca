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
Execution of provisioning commands against a build root filesystem.
"""
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command."""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


class CommandExecutor:
    """
    Runs a command with an explicit environment and waits for it.

    Subclasses decide which filesystem the command sees; ``rootfs`` is
    the host path of that filesystem.
    """
    def __init__(self, rootfs: str = "/"):
        self.rootfs = rootfs

    def wrap(self, argv: List[str]) -> List[str]:
        return list(argv)

    def run(self, argv: List[str], env: Dict[str, str]) -> CommandResult:
        """
        Runs ``argv`` to completion.

        Args:
            argv (List[str]): Command and arguments, never passed through a shell.
            env (Dict[str, str]): Complete environment for the process.

        Returns:
            CommandResult: Exit status and captured output.
        """
        command = self.wrap(argv)
        logger.info("Running: %s", " ".join(argv))
        try:
            completed = subprocess.run(
                command,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError:
            return CommandResult(argv, 127, "", f"{command[0]}: command not found")
        except PermissionError as e:
            return CommandResult(argv, 126, "", f"{command[0]}: Permission denied ({e})")

        for line in completed.stdout.splitlines():
            logger.debug("[%s] %s", argv[0], line)
        return CommandResult(argv, completed.returncode, completed.stdout, completed.stderr)


class HostExecutor(CommandExecutor):
    """
    Runs commands directly, for builds whose root is the current system.
    """
    def __init__(self):
        super().__init__("/")


class ChrootExecutor(CommandExecutor):
    """
    Runs commands inside ``rootfs`` with chroot(8). Requires root privileges.
    """
    def __init__(self, rootfs: str, chroot_binary: Optional[str] = None):
        super().__init__(rootfs)
        self.chroot_binary = chroot_binary or shutil.which("chroot") or "chroot"

    def wrap(self, argv: List[str]) -> List[str]:
        return [self.chroot_binary, os.fspath(self.rootfs)] + list(argv)


EXECUTORS = {
    "host": lambda rootfs: HostExecutor(),
    "chroot": ChrootExecutor,
}


def create_executor(kind: str, rootfs: str) -> CommandExecutor:
    """
    Creates the executor named ``kind`` for ``rootfs``.
    """
    try:
        factory = EXECUTORS[kind]
    except KeyError:
        raise ValueError(f"Unknown executor {kind!r}; expected one of {', '.join(sorted(EXECUTORS))}")
    return factory(rootfs)
