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
Filesystem snapshots and layer commits.

A layer is the difference between two snapshots of the build root, written
as a deterministic tar with OCI whiteouts for deleted paths.
"""
import gzip
import hashlib
import io
import logging
import os
import stat
import tarfile
import tempfile
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from ..errors import FilesystemPermissionError
from ..MODELS.image import LayerRecord
from ..REGISTRY.image_store import ImageStore

logger = logging.getLogger(__name__)

# Pseudo filesystems and scratch space never belong in a layer
DEFAULT_EXCLUDES = ("proc", "sys", "dev", "run", "tmp")


class Entry(NamedTuple):
    kind: str
    mode: int
    size: int
    mtime_ns: int
    link: str


Snapshot = Dict[str, Entry]


def _kind(st_mode: int) -> str:
    if stat.S_ISDIR(st_mode):
        return "dir"
    if stat.S_ISLNK(st_mode):
        return "link"
    if stat.S_ISREG(st_mode):
        return "file"
    return "other"


class LayerRecorder:
    """
    Takes snapshots of a root filesystem and commits the changes between them.
    """
    def __init__(self, rootfs: str, excludes: Iterable[str] = ()):
        """
        :param rootfs: Host path of the build root filesystem.
        :param excludes: Image paths (relative to the root) to ignore.
        """
        self.rootfs = os.fspath(rootfs)
        self.excludes = {e.strip("/") for e in excludes if e.strip("/")}

    def _excluded(self, relative: str) -> bool:
        return any(relative == e or relative.startswith(e + "/") for e in self.excludes)

    def snapshot(self) -> Snapshot:
        """
        Records type, mode, size and mtime of every path under the root.
        """
        entries: Snapshot = {}
        for dirpath, dirnames, filenames in os.walk(self.rootfs):
            rel_dir = os.path.relpath(dirpath, self.rootfs)
            rel_dir = "" if rel_dir == "." else rel_dir
            kept = []
            for name in sorted(dirnames):
                relative = f"{rel_dir}/{name}" if rel_dir else name
                if self._excluded(relative):
                    continue
                entries[relative] = self._entry(os.path.join(dirpath, name))
                # os.walk does not descend into symlinked directories, record them only
                if entries[relative].kind == "dir":
                    kept.append(name)
            dirnames[:] = kept
            for name in filenames:
                relative = f"{rel_dir}/{name}" if rel_dir else name
                if not self._excluded(relative):
                    entries[relative] = self._entry(os.path.join(dirpath, name))
        return entries

    @staticmethod
    def _entry(path: str) -> Entry:
        st = os.lstat(path)
        kind = _kind(st.st_mode)
        link = os.readlink(path) if kind == "link" else ""
        size = st.st_size if kind == "file" else 0
        return Entry(kind, stat.S_IMODE(st.st_mode), size, st.st_mtime_ns, link)

    @staticmethod
    def diff(before: Snapshot, after: Snapshot) -> Tuple[List[str], List[str]]:
        """
        Returns (changed, removed) relative paths, both sorted.

        Removed paths under an already removed directory are folded into it.
        """
        changed = sorted(p for p, entry in after.items() if before.get(p) != entry)
        removed = []
        for path in sorted(p for p in before if p not in after):
            if removed and path.startswith(removed[-1] + "/"):
                continue
            removed.append(path)
        return changed, removed

    def commit(self, before: Snapshot, created_by: str, store: ImageStore,
               after: Optional[Snapshot] = None) -> LayerRecord:
        """
        Writes the changes since ``before`` into ``store`` as a gzip layer blob.

        :param before: Snapshot taken before the step ran.
        :param created_by: The directive that produced the changes.
        :param store: Destination for the layer blob.
        :param after: Snapshot after the step; taken now when omitted.
        :return: The committed layer.
        """
        after = after if after is not None else self.snapshot()
        changed, removed = self.diff(before, after)
        logger.info("Committing layer: %d changed, %d removed", len(changed), len(removed))

        with tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024) as raw:
            try:
                self._write_tar(raw, changed, removed)
            except PermissionError as e:
                raise FilesystemPermissionError(f"Cannot read {e.filename}: {e.strerror}", phase="commit") from e

            raw.seek(0)
            diff_hash = hashlib.sha256()
            compressed = io.BytesIO()
            with gzip.GzipFile(fileobj=compressed, mode="wb", mtime=0) as gz:
                for chunk in iter(lambda: raw.read(1024 * 1024), b""):
                    diff_hash.update(chunk)
                    gz.write(chunk)

        digest, size = store.write_blob(compressed.getvalue())
        return LayerRecord(
            digest=digest,
            diff_id=f"sha256:{diff_hash.hexdigest()}",
            size=size,
            created_by=created_by,
        )

    def _write_tar(self, fileobj, changed: List[str], removed: List[str]) -> None:
        def normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
            info.uname = ""
            info.gname = ""
            return info

        with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for relative in changed:
                tar.add(os.path.join(self.rootfs, relative), arcname=relative,
                        recursive=False, filter=normalize)
            for relative in removed:
                parent, _, name = relative.rpartition("/")
                whiteout = tarfile.TarInfo(f"{parent}/.wh.{name}" if parent else f".wh.{name}")
                whiteout.mtime = 0
                tar.addfile(whiteout)
