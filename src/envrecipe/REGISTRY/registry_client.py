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
Registry client used by base selection.
Implements the pull side of the Registry HTTP API V2.
"""

import base64
import hashlib
import json
import logging
import os
import shutil
import socket
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..errors import ResolutionError, TransportError
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

PHASE = "base"

MANIFEST_LIST_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)
MANIFEST_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
)


def _keep_mode_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """
    The ``tar`` extraction filter without its mode changes.

    Paths outside the destination are still refused, but sticky, setuid and
    group/other write bits are kept as the image declares them.
    """
    return tarfile.tar_filter(member, dest_path).replace(mode=member.mode, deep=False)


@dataclass
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class LayerBlob:
    """A downloaded, digest-verified layer of the base image."""

    digest: str
    size: int
    path: Path
    media_type: str = "application/vnd.oci.image.layer.v1.tar+gzip"


@dataclass
class ResolvedImage:
    """A base image identity resolved to exactly one manifest."""

    reference: ImageReference
    digest: str
    manifest: Dict[str, Any]
    config: Dict[str, Any]

    @property
    def pinned(self) -> ImageReference:
        """The reference pinned to the resolved manifest digest."""
        return self.reference.with_digest(self.digest)


@dataclass
class BaseSnapshot:
    """Root filesystem populated from a resolved base image."""

    image: ResolvedImage
    rootfs: Path
    layers: List[LayerBlob] = field(default_factory=list)

    @property
    def diff_ids(self) -> List[str]:
        return list(self.image.config.get("rootfs", {}).get("diff_ids", []))

    @property
    def container_config(self) -> Dict[str, Any]:
        return self.image.config.get("config") or {}


def parse_platform(platform: str) -> Tuple[str, str, Optional[str]]:
    """Split 'os/arch[/variant]' into its parts."""
    parts = platform.split("/")
    if len(parts) not in (2, 3) or not all(parts):
        raise ValueError(f"Invalid platform: {platform!r}")
    return parts[0], parts[1], parts[2] if len(parts) == 3 else None


class RegistryClient:
    """
    Client for resolving and pulling base images.
    Supports Docker Hub and OCI-compatible registries.
    """

    def __init__(self, cache_dir: Optional[str] = None, timeout: float = 60.0):
        """
        Initialize the registry client.

        Args:
            cache_dir: Directory to cache downloaded layers. Defaults to ~/.envrecipe/cache
            timeout: Socket timeout in seconds for every registry request.
        """
        if cache_dir:
            self.cache_dir = Path(cache_dir)
        else:
            self.cache_dir = Path.home() / ".envrecipe" / "cache"
        self.timeout = timeout

        self._auth_tokens: Dict[str, str] = {}
        self._credentials: Dict[str, RegistryAuth] = {}

    def set_credentials(self, registry: str, username: str, password: str) -> None:
        """
        Set credentials for a registry.

        Args:
            registry: Registry hostname (e.g., 'docker.io')
            username: Username
            password: Password or access token
        """
        self._credentials[registry] = RegistryAuth(username=username, password=password)

    def _basic_auth(self, registry: str) -> Optional[str]:
        creds = self._credentials.get(registry)
        if creds and creds.username and creds.password:
            auth = base64.b64encode(f"{creds.username}:{creds.password}".encode()).decode()
            return f"Basic {auth}"
        return None

    def _get_auth_token(self, ref: ImageReference) -> Optional[str]:
        """Get authentication token for a registry."""
        cache_key = f"{ref.registry}/{ref.repository}"
        if cache_key in self._auth_tokens:
            return self._auth_tokens[cache_key]

        if ref.registry == "docker.io":
            token = self._get_docker_hub_token(ref)
            self._auth_tokens[cache_key] = token
            return token

        return self._basic_auth(ref.registry)

    def _get_docker_hub_token(self, ref: ImageReference) -> str:
        """Get a Docker Hub bearer token scoped to pulling ``ref``."""
        params = {
            "service": "registry.docker.io",
            "scope": f"repository:{ref.repository}:pull",
        }
        request = Request(f"https://auth.docker.io/token?{urlencode(params)}")
        basic = self._basic_auth("docker.io")
        if basic:
            request.add_header("Authorization", basic)

        try:
            with urlopen(request, timeout=self.timeout) as response:
                data = json.loads(response.read().decode())
        except HTTPError as e:
            raise TransportError(
                f"Token request for {ref.full_name} failed: HTTP {e.code}", phase=PHASE
            ) from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise TransportError(
                f"Cannot reach auth.docker.io: {getattr(e, 'reason', e)}", phase=PHASE
            ) from e
        return f"Bearer {data['token']}"

    def _make_request(
        self, url: str, ref: ImageReference, accept: Optional[str] = None
    ) -> Tuple[bytes, Dict[str, str]]:
        """Make an authenticated request to the registry."""
        request = Request(url)
        token = self._get_auth_token(ref)
        if token:
            request.add_header("Authorization", token)
        if accept:
            request.add_header("Accept", accept)

        try:
            with urlopen(request, timeout=self.timeout) as response:
                return response.read(), dict(response.headers)
        except HTTPError as e:
            if e.code in (401, 403, 404):
                # Registries answer 401 for repositories that do not exist
                raise ResolutionError(
                    f"Image {ref.full_name} not found (HTTP {e.code})",
                    names=[ref.full_name],
                    phase=PHASE,
                ) from e
            raise TransportError(
                f"Registry error for {ref.full_name}: HTTP {e.code} {e.reason}", phase=PHASE
            ) from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise TransportError(
                f"Cannot reach {ref.registry_url}: {getattr(e, 'reason', e)}", phase=PHASE
            ) from e

    def _fetch_manifest(self, ref: ImageReference) -> Tuple[Dict[str, Any], str]:
        """Fetch the manifest addressed by ``ref`` and return it with its digest."""
        url = f"{ref.registry_url}/v2/{ref.repository}/manifests/{ref.manifest_selector}"
        accept = ", ".join(MANIFEST_TYPES + MANIFEST_LIST_TYPES)
        content, headers = self._make_request(url, ref, accept)

        computed = f"sha256:{hashlib.sha256(content).hexdigest()}"
        if ref.digest and ref.digest != computed:
            raise ResolutionError(
                f"Digest of {ref.full_name} cannot be verified: manifest hashes to {computed}",
                names=[ref.full_name],
                phase=PHASE,
            )
        header_digest = {k.lower(): v for k, v in headers.items()}.get("docker-content-digest")
        return json.loads(content.decode()), ref.digest or header_digest or computed

    def resolve(self, ref: ImageReference, platform: str = "linux/amd64") -> ResolvedImage:
        """
        Resolve a reference to exactly one image manifest and its configuration.

        Args:
            ref: Image reference
            platform: Target platform, selects an entry from multi-arch indexes

        Returns:
            The resolved image, digest included.

        Raises:
            ResolutionError: The image does not exist or its digest does not verify.
            TransportError: The registry is unreachable.
        """
        manifest, digest = self._fetch_manifest(ref)

        if manifest.get("mediaType") in MANIFEST_LIST_TYPES or "manifests" in manifest:
            child_digest = self._select_platform_digest(ref, manifest, platform)
            child_ref = ImageReference(
                registry=ref.registry, repository=ref.repository, tag=ref.tag, digest=child_digest
            )
            manifest, _ = self._fetch_manifest(child_ref)

        config = self._get_config(ref, manifest)
        logger.debug("Resolved %s to %s", ref.full_name, digest)
        return ResolvedImage(reference=ref, digest=digest, manifest=manifest, config=config)

    def _select_platform_digest(
        self, ref: ImageReference, manifest_list: Dict[str, Any], platform: str
    ) -> str:
        """Select the manifest matching ``platform`` from a manifest list."""
        os_name, arch, variant = parse_platform(platform)
        for entry in manifest_list.get("manifests", []):
            info = entry.get("platform", {})
            if info.get("os") != os_name or info.get("architecture") != arch:
                continue
            if variant and info.get("variant") not in (None, variant):
                continue
            return entry["digest"]

        raise ResolutionError(
            f"Image {ref.full_name} has no manifest for platform {platform}",
            names=[ref.full_name],
            phase=PHASE,
        )

    def _get_config(self, ref: ImageReference, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch the image configuration blob referenced by ``manifest``."""
        digest = manifest.get("config", {}).get("digest", "")
        if not digest:
            raise ResolutionError(
                f"Manifest of {ref.full_name} has no config digest",
                names=[ref.full_name],
                phase=PHASE,
            )
        url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        content, _ = self._make_request(url, ref)
        return json.loads(content.decode())

    def pull_layer(self, ref: ImageReference, layer: Dict[str, Any]) -> LayerBlob:
        """
        Download a layer into the cache, verifying its digest.

        Args:
            ref: Image reference
            layer: Layer descriptor from manifest

        Returns:
            The cached layer blob
        """
        digest = layer.get("digest", "")
        if not digest:
            raise ResolutionError(
                f"Layer descriptor of {ref.full_name} has no digest", phase=PHASE
            )
        media_type = layer.get("mediaType", LayerBlob.media_type)

        cache_path = self.cache_dir / "layers" / digest.replace(":", "_")
        if cache_path.exists():
            logger.info("Using cached layer %s", digest[:19])
            return LayerBlob(digest, cache_path.stat().st_size, cache_path, media_type)

        logger.info("Pulling layer %s", digest[:19])
        url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        content, _ = self._make_request(url, ref)

        actual_digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        if actual_digest != digest:
            raise ResolutionError(
                f"Layer digest mismatch: expected {digest}, got {actual_digest}",
                names=[ref.full_name],
                phase=PHASE,
            )

        cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cache_path.with_suffix(".partial")
        with open(tmp_path, "wb") as f:
            f.write(content)
        os.replace(tmp_path, cache_path)
        return LayerBlob(digest, len(content), cache_path, media_type)

    def extract_layer(self, layer_path: Path, dest_dir: Path) -> None:
        """
        Extract a layer tarball to a directory.

        Args:
            layer_path: Path to the layer tarball (gzip or plain)
            dest_dir: Directory to extract to
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        can_mknod = os.geteuid() == 0 if hasattr(os, "geteuid") else False

        with tarfile.open(layer_path, mode="r:*") as tar:
            for member in tar.getmembers():
                name = member.name[2:] if member.name.startswith("./") else member.name
                if name.startswith("/") or ".." in name.split("/"):
                    continue
                if name.split("/")[-1].startswith(".wh."):
                    self._handle_whiteout(dest_dir, name)
                    continue
                if (member.ischr() or member.isblk()) and not can_mknod:
                    logger.debug("Skipping device node %s", name)
                    continue
                tar.extract(member, dest_dir, filter=_keep_mode_filter)

    def _handle_whiteout(self, dest_dir: Path, whiteout_path: str) -> None:
        """Handle a whiteout entry (marks a path as deleted)."""
        parts = whiteout_path.split("/")
        filename = parts[-1]
        parent = dest_dir.joinpath(*parts[:-1])

        if filename == ".wh..wh..opq":
            # Opaque whiteout: the directory's lower contents are hidden
            if parent.is_dir():
                for item in parent.iterdir():
                    if item.is_dir() and not item.is_symlink():
                        shutil.rmtree(item)
                    else:
                        item.unlink()
            return

        target = parent / filename[len(".wh."):]
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()

    def pull(
        self,
        image: ImageReference,
        rootfs: Path,
        platform: str = "linux/amd64",
        extract: bool = True,
    ) -> BaseSnapshot:
        """
        Resolve ``image`` and populate ``rootfs`` with its layers.

        Args:
            image: Base image reference
            rootfs: Empty directory to extract the filesystem into
            platform: Target platform
            extract: Download layers without extracting them when False,
                for builds running on an already populated root

        Returns:
            The populated snapshot, layers in application order.
        """
        logger.info("Pulling base image %s", image.full_name)
        resolved = self.resolve(image, platform)
        if extract:
            rootfs.mkdir(parents=True, exist_ok=True)

        layers = resolved.manifest.get("layers", [])
        blobs = []
        for i, layer in enumerate(layers):
            logger.info("Processing layer %d/%d", i + 1, len(layers))
            blob = self.pull_layer(image, layer)
            if extract:
                self.extract_layer(blob.path, rootfs)
            blobs.append(blob)

        return BaseSnapshot(image=resolved, rootfs=rootfs, layers=blobs)
