"""
Shared fixtures: a fake registry serving a tiny base image and a fake apt
executor operating on the build root filesystem.
"""
import hashlib
import io
import tarfile
from pathlib import Path
from typing import Dict, List

import pytest

from envrecipe.config import BuildSettings
from envrecipe.errors import ResolutionError
from envrecipe.REGISTRY.image_reference import ImageReference
from envrecipe.REGISTRY.image_store import ImageStore
from envrecipe.REGISTRY.registry_client import BaseSnapshot, LayerBlob, RegistryClient, ResolvedImage
from envrecipe.RUNNERS.command_executor import CommandExecutor, CommandResult

BASE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
BASE_DIGEST = "sha256:" + "a" * 64


def _add_dir(tar, name, mode=0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    tar.addfile(info)


def _add_file(tar, name, data=b"", mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def _add_link(tar, name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    tar.addfile(info)


def make_base_layer() -> bytes:
    """A gzip layer with just enough of an Ubuntu root for the fake apt."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for directory in ("etc", "usr", "usr/bin", "usr/sbin", "var", "var/lib", "var/lib/apt",
                          "var/lib/apt/lists", "var/lib/apt/lists/partial", "var/cache",
                          "var/cache/apt", "var/cache/apt/archives",
                          "var/cache/apt/archives/partial", "root"):
            _add_dir(tar, directory)
        _add_dir(tar, "tmp", mode=0o1777)
        _add_link(tar, "bin", "usr/bin")
        _add_file(tar, "etc/os-release", b"ID=ubuntu\nVERSION_CODENAME=noble\n")
        _add_file(tar, "usr/bin/bash", b"#!fake\n", mode=0o755)
        _add_file(tar, "var/lib/apt/lists/lock")
    return buffer.getvalue()


class FakeRegistry(RegistryClient):
    """Serves ubuntu:noble from memory; every other image is unknown."""

    KNOWN = {"docker.io/library/ubuntu"}

    def __init__(self, cache_dir):
        super().__init__(cache_dir=str(cache_dir))
        self.layer = make_base_layer()
        self.layer_digest = f"sha256:{hashlib.sha256(self.layer).hexdigest()}"
        self.pulls: List[ImageReference] = []

    def resolve(self, ref, platform="linux/amd64"):
        if f"{ref.registry}/{ref.repository}" not in self.KNOWN or ref.tag not in (None, "noble"):
            raise ResolutionError(f"Image {ref.full_name} not found (HTTP 404)",
                                  names=[ref.full_name], phase="base")
        if ref.digest and ref.digest != BASE_DIGEST:
            raise ResolutionError(f"Digest of {ref.full_name} cannot be verified",
                                  names=[ref.full_name], phase="base")
        config = {
            "architecture": "amd64",
            "os": "linux",
            "config": {"Env": [f"PATH={BASE_PATH}"], "Cmd": ["/bin/bash"]},
            "rootfs": {"type": "layers", "diff_ids": ["sha256:" + "b" * 64]},
            "history": [{"created_by": "/bin/sh -c #(nop) ADD file:rootfs in / "}],
        }
        manifest = {"layers": [{"digest": self.layer_digest, "size": len(self.layer)}]}
        return ResolvedImage(reference=ref, digest=BASE_DIGEST, manifest=manifest, config=config)

    def pull_layer(self, ref, layer):
        path = self.cache_dir / "layers" / layer["digest"].replace(":", "_")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.layer)
        return LayerBlob(layer["digest"], len(self.layer), path)

    def pull(self, image, rootfs, platform="linux/amd64", extract=True):
        self.pulls.append(image)
        return super().pull(image, rootfs, platform, extract=extract)


class FakeApt(CommandExecutor):
    """
    Emulates apt-get and dpkg-query against ``rootfs``.

    ``index`` maps available package names to their dependencies and
    ``virtual`` maps virtual package names to the package providing them.
    """

    def __init__(self, rootfs, index=None, network=True, installed=("base-files", "bash"),
                 virtual=None):
        super().__init__(str(rootfs))
        self.index: Dict[str, List[str]] = index if index is not None else {
            "curl": ["libcurl4t64", "ca-certificates"],
            "libcurl4t64": [],
            "ca-certificates": [],
            "git": [],
            "mawk": [],
        }
        self.virtual: Dict[str, str] = virtual if virtual is not None else {"awk": "mawk"}
        self.network = network
        self.installed = set(installed)
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []

    def path(self, image_path):
        return Path(self.rootfs) / image_path.lstrip("/")

    def run(self, argv, env):
        self.calls.append(list(argv))
        self.envs.append(dict(env))
        if argv[:2] == ["apt-get", "update"]:
            return self._update(argv)
        if argv[:2] == ["apt-get", "install"]:
            return self._install(argv)
        if argv[:2] == ["apt-get", "clean"]:
            for path in self.path("/var/cache/apt/archives").glob("*.deb"):
                path.unlink()
            for path in self.path("/var/cache/apt").glob("*.bin"):
                path.unlink()
            return CommandResult(argv, 0)
        if argv[0] == "dpkg-query":
            out = "".join(f"install ok installed\t{name}\n" for name in sorted(self.installed))
            return CommandResult(argv, 0, out)
        return CommandResult(argv, 127, "", f"{argv[0]}: command not found")

    def _update(self, argv):
        if not self.network:
            return CommandResult(argv, 100, "", (
                "Err:1 http://archive.ubuntu.com/ubuntu noble InRelease\n"
                "  Temporary failure resolving 'archive.ubuntu.com'\n"
                "E: Failed to fetch http://archive.ubuntu.com/ubuntu/dists/noble/InRelease\n"
            ))
        self.path("/var/lib/apt/lists/archive.ubuntu.com_ubuntu_dists_noble_InRelease").write_text("index")
        self.path("/var/cache/apt/pkgcache.bin").write_bytes(b"cache")
        return CommandResult(argv, 0, "Reading package lists... Done\n")

    def _install(self, argv):
        names = [a for a in argv[2:] if not a.startswith("-")]
        missing = [n for n in names
                   if n.split("=")[0] not in self.index and n.split("=")[0] not in self.virtual]
        if missing:
            errors = "".join(f"E: Unable to locate package {n}\n" for n in missing)
            return CommandResult(argv, 100, "Reading package lists...\n", errors)
        out = "Reading package lists...\n"
        pending = []
        for name in names:
            bare = name.split("=")[0]
            if bare in self.virtual:
                out += f"Note, selecting '{self.virtual[bare]}' instead of '{bare}'\n"
                bare = self.virtual[bare]
            pending.append(bare)
        while pending:
            name = pending.pop().split("=")[0]
            if name in self.installed:
                continue
            self.installed.add(name)
            pending.extend(self.index[name])
            binary = self.path(f"/usr/bin/{name}")
            binary.write_text("#!/bin/sh\n")
            binary.chmod(0o755)
            self.path(f"/var/cache/apt/archives/{name}_1.0_amd64.deb").write_bytes(b"deb")
        return CommandResult(argv, 0, out + "Setting up packages...\n")


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("ENVRECIPE_EXECUTOR", raising=False)
    return BuildSettings(
        store_dir=tmp_path / "store",
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        _env_file=None,
    )


@pytest.fixture
def registry(settings):
    return FakeRegistry(settings.cache_dir)


@pytest.fixture
def store(settings):
    return ImageStore(str(settings.store_dir))


@pytest.fixture
def apt_factory():
    """Executor factory recording the FakeApt instances it creates."""
    created = []

    def factory(kind, rootfs, **kwargs):
        executor = FakeApt(rootfs, **kwargs)
        created.append(executor)
        return executor

    factory.created = created
    return factory
