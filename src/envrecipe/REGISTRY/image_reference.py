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
Image reference parsing and handling.
Parses base image references like 'ubuntu:noble' or 'docker.io/library/ubuntu@sha256:...'.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace


DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference identifying a base image.

    Examples:
        - ubuntu -> docker.io/library/ubuntu:latest
        - ubuntu:noble -> docker.io/library/ubuntu:noble
        - docker.io/ubuntu:noble -> docker.io/library/ubuntu:noble
        - ghcr.io/org/image@sha256:abc... -> ghcr.io/org/image@sha256:abc...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'ubuntu:noble', 'myuser/myimage:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or has an empty component.
        """
        reference = reference.strip() if reference else ""
        if not reference:
            raise ValueError("Empty image reference")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not digest:
                raise ValueError("Empty digest in image reference")

        tag = None
        if ":" in reference:
            last_colon = reference.rfind(":")
            after_colon = reference[last_colon + 1 :]

            # A colon followed by a path is a registry port, not a tag
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]
                if not tag:
                    raise ValueError("Empty tag in image reference")

        parts = reference.split("/")
        if any(not part for part in parts):
            raise ValueError(f"Malformed image reference: {reference!r}")

        if len(parts) == 1:
            registry = cls.DEFAULT_REGISTRY
            repository = f"library/{parts[0]}"
        else:
            first_part = parts[0]
            if "." in first_part or ":" in first_part or first_part == "localhost":
                registry = first_part
                repository = "/".join(parts[1:])
            else:
                registry = cls.DEFAULT_REGISTRY
                repository = reference

        # Official images on Docker Hub live under library/
        if registry == cls.DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def is_digest_pinned(self) -> bool:
        """Whether the reference names an immutable manifest digest."""
        return self.digest is not None

    def with_digest(self, digest: str) -> "ImageReference":
        """Return a copy pinned to ``digest``, keeping the tag for readability."""
        if not DIGEST_PATTERN.match(digest):
            raise ValueError(f"Invalid digest: {digest!r}")
        return replace(self, digest=digest)

    @property
    def manifest_selector(self) -> str:
        """Tag or digest used to address the manifest endpoint."""
        return self.digest or self.tag or self.DEFAULT_TAG

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.tag:
            repo = f"{repo}:{self.tag}"
        if self.digest:
            repo = f"{repo}@{self.digest}"
        return repo

    @property
    def registry_url(self) -> str:
        """Get the registry URL for API calls."""
        if self.registry == "docker.io":
            return "https://registry-1.docker.io"
        if self.registry.startswith("localhost"):
            return f"http://{self.registry}"
        return f"https://{self.registry}"

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
