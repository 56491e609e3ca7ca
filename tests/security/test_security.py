import io
import tarfile

import pytest

from envrecipe.errors import RecipeError
from envrecipe.PARSERS.recipe_parser import RecipeParser
from envrecipe.REGISTRY.registry_client import RegistryClient
from envrecipe.RUNNERS.command_executor import ChrootExecutor, HostExecutor


def test_command_injection_attempt(tmp_path):
    """
    Shell operators in argv must reach the program as literal arguments.
    """
    injected_file = tmp_path / "injected.txt"
    result = HostExecutor().run(["echo", "hello", ";", "touch", str(injected_file)],
                                {"PATH": "/usr/bin:/bin"})
    assert result.succeeded
    assert ";" in result.stdout
    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_missing_program_is_reported_not_raised():
    result = HostExecutor().run(["definitely-not-a-real-program-xyz"], {})
    assert result.returncode == 127
    assert "command not found" in result.stderr


def test_chroot_wraps_command(tmp_path):
    executor = ChrootExecutor(str(tmp_path), chroot_binary="/usr/sbin/chroot")
    assert executor.wrap(["apt-get", "update"]) == ["/usr/sbin/chroot", str(tmp_path), "apt-get", "update"]


def test_executor_env_is_exact(monkeypatch):
    """Nothing from the driver's environment leaks into the build."""
    monkeypatch.setenv("ENVRECIPE_LEAK_CHECK", "1")
    result = HostExecutor().run(["env"], {"PATH": "/usr/bin:/bin", "ONLY": "this"})
    assert "ONLY=this" in result.stdout
    assert "ENVRECIPE_LEAK_CHECK" not in result.stdout


def _tar_with(tmp_path, name, data=b"owned"):
    path = tmp_path / "evil.tar"
    with tarfile.open(path, "w") as tar:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return path


@pytest.mark.parametrize("name", ["../escape.txt", "usr/../../escape.txt", "/escape.txt"])
def test_layer_extraction_path_traversal(tmp_path, name):
    rootfs = tmp_path / "rootfs"
    RegistryClient(cache_dir=str(tmp_path / "cache")).extract_layer(_tar_with(tmp_path, name), rootfs)
    assert not (tmp_path / "escape.txt").exists()
    assert not (rootfs / "escape.txt").exists()


def test_inline_shell_is_rejected():
    """Recipes can only express package provisioning, never arbitrary commands."""
    with pytest.raises(RecipeError):
        RecipeParser().parse_dockerfile(
            "FROM ubuntu:noble\nRUN apt-get update && curl https://example.com/install.sh | sh\n"
        )


def test_package_names_cannot_smuggle_options():
    with pytest.raises(RecipeError):
        RecipeParser().parse_yaml("base: ubuntu:noble\npackages: ['-o=Dpkg::Options::=--force-all']\n")


def test_missing_recipe_file():
    with pytest.raises(FileNotFoundError):
        RecipeParser().load("non_existent_file_12345.txt")
