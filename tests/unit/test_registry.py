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
Unit tests for the registry module.
"""
import hashlib
import io
import json
import stat
import tarfile
from urllib.error import HTTPError, URLError

import pytest

from envrecipe.errors import ResolutionError, TransportError
from envrecipe.REGISTRY import registry_client
from envrecipe.REGISTRY.image_reference import ImageReference
from envrecipe.REGISTRY.registry_client import RegistryClient, parse_platform

from ..conftest import make_base_layer

DIGEST = "sha256:" + "c" * 64


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Test parsing a simple image name."""
        ref = ImageReference.parse("ubuntu")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/ubuntu"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        """Test parsing image with tag."""
        ref = ImageReference.parse("ubuntu:noble")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/ubuntu"
        assert ref.tag == "noble"

    def test_parse_explicit_docker_hub(self):
        """docker.io/ubuntu names the same image as ubuntu."""
        assert ImageReference.parse("docker.io/ubuntu:noble") == ImageReference.parse("ubuntu:noble")

    def test_parse_user_image(self):
        """Test parsing user/image format."""
        ref = ImageReference.parse("myuser/myimage:v1")
        assert ref.registry == "docker.io"
        assert ref.repository == "myuser/myimage"
        assert ref.tag == "v1"

    def test_parse_full_reference(self):
        """Test parsing full registry reference."""
        ref = ImageReference.parse("gcr.io/project/image:latest")
        assert ref.registry == "gcr.io"
        assert ref.repository == "project/image"
        assert ref.tag == "latest"

    def test_parse_with_digest(self):
        """Test parsing image with digest."""
        ref = ImageReference.parse(f"ubuntu@{DIGEST}")
        assert ref.repository == "library/ubuntu"
        assert ref.digest == DIGEST
        assert ref.tag is None
        assert ref.is_digest_pinned

    def test_parse_tag_and_digest(self):
        ref = ImageReference.parse(f"ubuntu:noble@{DIGEST}")
        assert ref.tag == "noble"
        assert ref.digest == DIGEST
        assert ref.manifest_selector == DIGEST

    def test_parse_localhost_registry(self):
        """Test parsing localhost registry."""
        ref = ImageReference.parse("localhost:5000/myimage:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "myimage"
        assert ref.tag == "v1"
        assert ref.registry_url == "http://localhost:5000"

    def test_with_digest(self):
        ref = ImageReference.parse("ubuntu:noble").with_digest(DIGEST)
        assert ref.full_name == f"docker.io/library/ubuntu:noble@{DIGEST}"
        with pytest.raises(ValueError):
            ref.with_digest("sha256:short")

    def test_full_name(self):
        """Test full_name property."""
        ref = ImageReference.parse("ubuntu:noble")
        assert ref.full_name == "docker.io/library/ubuntu:noble"

    def test_short_name(self):
        """Test short_name property."""
        ref = ImageReference.parse("ubuntu:noble")
        assert ref.short_name == "ubuntu:noble"

        ref2 = ImageReference.parse("myuser/myimage:v1")
        assert ref2.short_name == "myuser/myimage:v1"

    def test_registry_url(self):
        """Test registry_url property."""
        ref = ImageReference.parse("ubuntu")
        assert ref.registry_url == "https://registry-1.docker.io"

        ref2 = ImageReference.parse("gcr.io/project/image")
        assert ref2.registry_url == "https://gcr.io"

    @pytest.mark.parametrize("reference", ["", "   ", "ubuntu:", "ubuntu@", "a//b"])
    def test_malformed_reference_raises(self, reference):
        with pytest.raises(ValueError):
            ImageReference.parse(reference)

    def test_str_representation(self):
        """Test string representation."""
        ref = ImageReference.parse("ubuntu:noble")
        assert str(ref) == "ubuntu:noble"


def test_parse_platform():
    assert parse_platform("linux/amd64") == ("linux", "amd64", None)
    assert parse_platform("linux/arm64/v8") == ("linux", "arm64", "v8")
    with pytest.raises(ValueError):
        parse_platform("amd64")


class _Response:
    def __init__(self, body, headers=None):
        self.body = body
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self.body


class FakeRegistryServer:
    """Answers urlopen calls from a dict of URL -> bytes or exception."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.headers = []

    def add_json(self, url, document):
        body = json.dumps(document).encode()
        self.routes[url] = body
        return f"sha256:{hashlib.sha256(body).hexdigest()}"

    def __call__(self, request, timeout=None):
        url = request.full_url
        self.requests.append(url)
        self.headers.append(dict(request.header_items()))
        answer = self.routes.get(url)
        if answer is None:
            raise HTTPError(url, 404, "Not Found", {}, None)
        if isinstance(answer, Exception):
            raise answer
        return _Response(answer)


BASE_URL = "https://registry.example.com/v2/tools/base"


@pytest.fixture
def server(monkeypatch):
    fake = FakeRegistryServer()
    monkeypatch.setattr(registry_client, "urlopen", fake)
    return fake


@pytest.fixture
def client(tmp_path):
    return RegistryClient(cache_dir=str(tmp_path / "cache"), timeout=5)


def _image(server, arch="amd64"):
    """Registers a manifest and its config blob; returns the manifest digest and body."""
    config = json.dumps({"architecture": arch, "config": {"Env": ["PATH=/usr/bin:/bin"]}}).encode()
    config_digest = f"sha256:{hashlib.sha256(config).hexdigest()}"
    server.routes[f"{BASE_URL}/blobs/{config_digest}"] = config
    manifest = {
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "config": {"digest": config_digest},
        "layers": [],
    }
    body = json.dumps(manifest).encode()
    digest = f"sha256:{hashlib.sha256(body).hexdigest()}"
    server.routes[f"{BASE_URL}/manifests/{digest}"] = body
    return digest, body


class TestRegistryClient:
    def test_resolve_single_manifest(self, server, client):
        digest, body = _image(server)
        server.routes[f"{BASE_URL}/manifests/1.0"] = body
        resolved = client.resolve(ImageReference.parse("registry.example.com/tools/base:1.0"))
        assert resolved.digest == digest
        assert resolved.config["architecture"] == "amd64"
        assert resolved.pinned.digest == digest

    def test_resolve_selects_platform(self, server, client):
        amd64, _ = _image(server, "amd64")
        arm64, _ = _image(server, "arm64")
        server.add_json(f"{BASE_URL}/manifests/1.0", {
            "mediaType": "application/vnd.oci.image.index.v1+json",
            "manifests": [
                {"digest": amd64, "platform": {"os": "linux", "architecture": "amd64"}},
                {"digest": arm64, "platform": {"os": "linux", "architecture": "arm64", "variant": "v8"}},
            ],
        })
        ref = ImageReference.parse("registry.example.com/tools/base:1.0")
        assert client.resolve(ref, "linux/arm64").config["architecture"] == "arm64"
        assert client.resolve(ref, "linux/amd64").config["architecture"] == "amd64"

    def test_resolve_missing_platform(self, server, client):
        server.add_json(f"{BASE_URL}/manifests/1.0", {"manifests": []})
        with pytest.raises(ResolutionError) as exc_info:
            client.resolve(ImageReference.parse("registry.example.com/tools/base:1.0"), "linux/s390x")
        assert exc_info.value.phase == "base"

    def test_unknown_image_is_resolution_error(self, server, client):
        with pytest.raises(ResolutionError) as exc_info:
            client.resolve(ImageReference.parse("registry.example.com/tools/missing:1.0"))
        assert exc_info.value.names == ["registry.example.com/tools/missing:1.0"]
        assert exc_info.value.phase == "base"

    def test_unreachable_registry_is_transport_error(self, server, client):
        server.routes[f"{BASE_URL}/manifests/1.0"] = URLError("Name or service not known")
        with pytest.raises(TransportError):
            client.resolve(ImageReference.parse("registry.example.com/tools/base:1.0"))

    def test_server_error_is_transport_error(self, server, client):
        url = f"{BASE_URL}/manifests/1.0"
        server.routes[url] = HTTPError(url, 503, "Service Unavailable", {}, None)
        with pytest.raises(TransportError):
            client.resolve(ImageReference.parse("registry.example.com/tools/base:1.0"))

    def test_pinned_digest_is_verified(self, server, client):
        _, body = _image(server)
        server.routes[f"{BASE_URL}/manifests/{DIGEST}"] = body
        with pytest.raises(ResolutionError, match="cannot be verified"):
            client.resolve(ImageReference.parse(f"registry.example.com/tools/base@{DIGEST}"))

    def test_basic_auth_for_private_registry(self, server, client):
        _, body = _image(server)
        server.routes[f"{BASE_URL}/manifests/1.0"] = body
        client.set_credentials("registry.example.com", "builder", "s3cret")
        client.resolve(ImageReference.parse("registry.example.com/tools/base:1.0"))
        assert server.headers[0]["Authorization"] == "Basic YnVpbGRlcjpzM2NyZXQ="

    def test_pull_layer_verifies_and_caches(self, server, client):
        content = b"layer bytes"
        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        server.routes[f"{BASE_URL}/blobs/{digest}"] = content
        ref = ImageReference.parse("registry.example.com/tools/base:1.0")

        blob = client.pull_layer(ref, {"digest": digest})
        assert blob.path.read_bytes() == content
        client.pull_layer(ref, {"digest": digest})
        assert server.requests.count(f"{BASE_URL}/blobs/{digest}") == 1

    def test_pull_layer_digest_mismatch(self, server, client):
        server.routes[f"{BASE_URL}/blobs/{DIGEST}"] = b"tampered"
        with pytest.raises(ResolutionError, match="mismatch"):
            client.pull_layer(ImageReference.parse("registry.example.com/tools/base:1.0"), {"digest": DIGEST})


def _layer(tmp_path, entries):
    path = tmp_path / "layer.tar"
    with tarfile.open(path, "w") as tar:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class TestExtractLayer:
    def test_whiteout_removes_lower_file(self, tmp_path, client):
        rootfs = tmp_path / "rootfs"
        client.extract_layer(_layer(tmp_path, [("etc/motd", b"hi"), ("etc/keep", b"k")]), rootfs)
        client.extract_layer(_layer(tmp_path, [("etc/.wh.motd", b"")]), rootfs)
        assert not (rootfs / "etc" / "motd").exists()
        assert (rootfs / "etc" / "keep").exists()
        assert not (rootfs / "etc" / ".wh.motd").exists()

    def test_opaque_whiteout_empties_directory(self, tmp_path, client):
        rootfs = tmp_path / "rootfs"
        client.extract_layer(_layer(tmp_path, [("opt/a", b"a"), ("opt/b", b"b")]), rootfs)
        client.extract_layer(_layer(tmp_path, [("opt/.wh..wh..opq", b""), ("opt/c", b"c")]), rootfs)
        assert sorted(p.name for p in (rootfs / "opt").iterdir()) == ["c"]

    def test_special_mode_bits_survive(self, tmp_path, client):
        layer = tmp_path / "base.tar.gz"
        layer.write_bytes(make_base_layer())
        rootfs = tmp_path / "rootfs"
        client.extract_layer(layer, rootfs)
        assert stat.S_IMODE((rootfs / "tmp").stat().st_mode) == 0o1777

        path = tmp_path / "suid.tar"
        with tarfile.open(path, "w") as tar:
            info = tarfile.TarInfo("usr/bin/passwd")
            info.mode = 0o4755
            tar.addfile(info, io.BytesIO(b""))
        client.extract_layer(path, rootfs)
        assert stat.S_IMODE((rootfs / "usr/bin/passwd").stat().st_mode) == 0o4755

    def test_write_through_symlink_outside_root_is_refused(self, tmp_path, client):
        path = tmp_path / "escape.tar"
        with tarfile.open(path, "w") as tar:
            link = tarfile.TarInfo("up")
            link.type = tarfile.SYMTYPE
            link.linkname = ".."
            tar.addfile(link)
            tar.addfile(tarfile.TarInfo("up/outside"), io.BytesIO(b""))
        with pytest.raises(tarfile.OutsideDestinationError):
            client.extract_layer(path, tmp_path / "rootfs")
        assert not (tmp_path / "outside").exists()
