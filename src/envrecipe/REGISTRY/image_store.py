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
Local content-addressed image store.
Built images are written here and tagged only once every build phase succeeded.
"""

import hashlib
import json
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"


def canonical_json(data: Dict[str, Any]) -> bytes:
    """Serialize ``data`` deterministically so equal content hashes equally."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def normalize_tag(tag: str) -> str:
    """Append the default tag when ``tag`` names only a repository."""
    tag = tag.strip()
    if not tag:
        raise ValueError("Empty image tag")
    name = tag.rsplit("/", 1)[-1]
    return tag if ":" in name else f"{tag}:latest"


@dataclass
class StoredImage:
    """Information about a tagged image in the store."""
    tag: str
    digest: str
    size: int
    created: str
    base: str


class ImageStore:
    """
    Manages the local store of built images.
    Blobs are addressed by sha256 digest; index.json maps tags to manifests.
    """

    def __init__(self, store_dir: Optional[str] = None):
        """
        Initialize the image store.

        Args:
            store_dir: Directory for store data. Defaults to ~/.envrecipe/store
        """
        if store_dir:
            self.store_dir = Path(store_dir)
        else:
            self.store_dir = Path.home() / ".envrecipe" / "store"

        self.blobs_dir = self.store_dir / "blobs" / "sha256"
        self.index_file = self.store_dir / "index.json"
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the store index from disk."""
        if self.index_file.exists():
            with open(self.index_file, "r") as f:
                return json.load(f)
        return {"tags": {}, "images": {}}

    def _save_index(self) -> None:
        """Atomically save the store index to disk."""
        tmp_path = self.index_file.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._index, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.index_file)

    def blob_path(self, digest: str) -> Path:
        """Path of the blob with ``digest`` (which may not exist)."""
        algorithm, _, hexdigest = digest.partition(":")
        if algorithm != "sha256" or not hexdigest:
            raise ValueError(f"Unsupported digest: {digest!r}")
        return self.blobs_dir / hexdigest

    def has_blob(self, digest: str) -> bool:
        return self.blob_path(digest).exists()

    def write_blob(self, data: bytes) -> Tuple[str, int]:
        """
        Store ``data`` and return its digest and size.
        """
        digest = f"sha256:{hashlib.sha256(data).hexdigest()}"
        path = self.blob_path(digest)
        if not path.exists():
            tmp_path = path.with_suffix(".tmp")
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        return digest, len(data)

    def import_blob(self, digest: str, source: Path) -> Path:
        """
        Copy an already-verified blob (e.g. a base layer from the registry cache).
        """
        path = self.blob_path(digest)
        if not path.exists():
            tmp_path = path.with_suffix(".tmp")
            shutil.copyfile(source, tmp_path)
            os.replace(tmp_path, path)
        return path

    def read_json(self, digest: str) -> Dict[str, Any]:
        with open(self.blob_path(digest), "rb") as f:
            return json.loads(f.read().decode("utf-8"))

    def commit(self, tag: str, manifest: Dict[str, Any], base: str = "") -> StoredImage:
        """
        Write ``manifest`` and point ``tag`` at it.

        Every blob the manifest references must already be in the store.

        Args:
            tag: Human-readable tag for the image
            manifest: Image manifest referencing the config and layer blobs
            base: Pinned base image reference, for listing

        Returns:
            StoredImage describing the tagged image
        """
        tag = normalize_tag(tag)
        referenced = [manifest["config"]] + list(manifest.get("layers", []))
        missing = [d["digest"] for d in referenced if not self.has_blob(d["digest"])]
        if missing:
            raise ValueError(f"Manifest references missing blobs: {', '.join(missing)}")

        digest, manifest_size = self.write_blob(canonical_json(manifest))
        size = manifest_size + sum(d.get("size", 0) for d in referenced)

        entry = {
            "digest": digest,
            "size": size,
            "created": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "base": base,
        }
        self._index["images"][digest] = entry
        self._index["tags"][tag] = digest
        self._save_index()
        return StoredImage(tag=tag, **entry)

    def resolve_tag(self, tag: str) -> Optional[str]:
        """Return the manifest digest ``tag`` points at, if any."""
        return self._index["tags"].get(normalize_tag(tag))

    def get(self, tag: str) -> Optional[StoredImage]:
        """
        Get a tagged image.

        Args:
            tag: Image tag

        Returns:
            StoredImage if found, None otherwise
        """
        digest = self.resolve_tag(tag)
        if digest is None:
            return None
        return StoredImage(tag=normalize_tag(tag), **self._index["images"][digest])

    def get_manifest(self, tag: str) -> Optional[Dict[str, Any]]:
        digest = self.resolve_tag(tag)
        return self.read_json(digest) if digest else None

    def get_config(self, tag: str) -> Optional[Dict[str, Any]]:
        """Return the image configuration of a tagged image."""
        manifest = self.get_manifest(tag)
        return self.read_json(manifest["config"]["digest"]) if manifest else None

    def list_images(self) -> List[StoredImage]:
        """
        List all tagged images, sorted by tag.
        """
        return [
            StoredImage(tag=tag, **self._index["images"][digest])
            for tag, digest in sorted(self._index["tags"].items())
        ]

    def remove(self, tag: str) -> bool:
        """
        Untag an image; its blobs stay until :meth:`prune`.

        Returns:
            True if removed, False if not found
        """
        tag = normalize_tag(tag)
        digest = self._index["tags"].pop(tag, None)
        if digest is None:
            return False
        if digest not in self._index["tags"].values():
            del self._index["images"][digest]
        self._save_index()
        return True

    def _referenced_blobs(self) -> Iterable[str]:
        for digest in self._index["images"]:
            manifest = self.read_json(digest)
            yield digest
            yield manifest["config"]["digest"]
            for layer in manifest.get("layers", []):
                yield layer["digest"]

    def prune(self) -> Dict[str, int]:
        """
        Delete blobs no tagged image references.

        Returns:
            Statistics about removed blobs
        """
        used = {digest.split(":", 1)[1] for digest in self._referenced_blobs()}
        removed_blobs = 0
        freed_bytes = 0
        for path in self.blobs_dir.iterdir():
            if path.name not in used:
                freed_bytes += path.stat().st_size
                path.unlink()
                removed_blobs += 1
        return {"removed_blobs": removed_blobs, "freed_bytes": freed_bytes}

    def format_size(self, size_bytes: float) -> str:
        """Format a size in bytes to human readable string."""
        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} PB"
