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
Parsers for Dockerfiles, extracting instructions and arguments.
"""
import json
import re
import shlex
from typing import List, Tuple

from ..MODELS.dockerfile_ast import DockerfileAST, Instruction

_INSTRUCTION = re.compile(r"^\s*([A-Za-z]+)(?:\s+(.*))?$", re.DOTALL)


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse_ast(self, content: str) -> DockerfileAST:
        """Parses Dockerfile text into an AST of instructions."""
        return DockerfileAST(instructions=self.parse_from_string(content))

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []
        for line_no, logical in self._logical_lines(content):
            match = _INSTRUCTION.match(logical)
            if not match:
                continue
            inst = match.group(1).upper()
            args_str = (match.group(2) or "").strip()
            instructions.append(Instruction(
                instruction=inst,
                arguments=self._split_arguments(inst, args_str),
                raw=logical.strip(),
                line=line_no,
            ))
        return instructions

    @staticmethod
    def _logical_lines(content: str) -> List[Tuple[int, str]]:
        """
        Join continuation lines and drop comments.

        Returns (first physical line number, joined text) pairs.
        """
        result = []
        buffer: List[str] = []
        start = 0
        for line_no, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            # Comment lines are ignored, also in the middle of a continuation
            if stripped.startswith("#"):
                continue
            if not buffer:
                if not stripped:
                    continue
                start = line_no
            if re.search(r"\\\s*$", line):
                buffer.append(re.sub(r"\\\s*$", "", line))
                continue
            buffer.append(line)
            result.append((start, " ".join(part.strip() for part in buffer)))
            buffer = []
        if buffer:
            result.append((start, " ".join(part.strip() for part in buffer)))
        return result

    @staticmethod
    def _split_arguments(inst: str, args_str: str) -> List[str]:
        # Exec form
        if args_str.startswith("[") and args_str.endswith("]"):
            try:
                args = json.loads(args_str)
                if isinstance(args, list) and all(isinstance(a, str) for a in args):
                    return args
            except json.JSONDecodeError:
                pass
            return [args_str]

        if inst == "ENV":
            first = args_str.split(None, 1)[0] if args_str else ""
            if "=" in first:
                # KEY=VALUE pairs, quotes removed
                try:
                    return shlex.split(args_str, posix=True)
                except ValueError:
                    return re.findall(r"(\S+=\S+)", args_str)
            # Legacy KEY VALUE form, the value is the rest of the line
            return args_str.split(None, 1)

        return [args_str] if args_str else []
