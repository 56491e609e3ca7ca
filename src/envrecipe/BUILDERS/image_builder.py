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
Builders executing recipes: base selection, environment configuration and
package provisioning, committed into the image store.
"""
import logging
import os
import shlex
import shutil
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config import BuildSettings
from ..errors import BuildError, FilesystemPermissionError
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.image import BuiltImage, HistoryEntry, ImageConfig, LayerRecord
from ..MODELS.recipe import EnvironmentConfig, Recipe
from ..REGISTRY.image_store import CONFIG_MEDIA_TYPE, MANIFEST_MEDIA_TYPE, ImageStore, canonical_json, normalize_tag
from ..REGISTRY.registry_client import BaseSnapshot, RegistryClient, parse_platform
from ..RUNNERS.command_executor import CommandExecutor, create_executor
from .layer_recorder import DEFAULT_EXCLUDES, LayerRecorder
from .package_provisioner import AptManager, PackageProvisioner

logger = logging.getLogger(__name__)

PHASE_BASE = "base"
PHASE_ENVIRONMENT = "environment"
PHASE_COMMIT = "commit"

# Host paths that change on their own during an in-place build
IN_PLACE_EXCLUDES = ("var/log", "var/tmp", "home", "root/.cache")

ExecutorFactory = Callable[[str, str], CommandExecutor]


class ImageBuilder:
    """
    Runs a recipe as a linear pipeline and tags the result only if every
    phase succeeded.
    """
    def __init__(self,
                 settings: Optional[BuildSettings] = None,
                 registry: Optional[RegistryClient] = None,
                 store: Optional[ImageStore] = None,
                 executor_factory: ExecutorFactory = create_executor,
                 environment_manager: Optional[EnvironmentManager] = None):
        """
        Initializes the ImageBuilder.

        :param settings: Build settings; read from the environment when omitted.
        :param registry: Client used for base selection.
        :param store: Destination of layers and tagged images.
        :param executor_factory: Creates the command executor for a root filesystem.
        :param environment_manager: Merges declared variables into the base environment.
        """
        self.settings = settings or BuildSettings()
        self.registry = registry or RegistryClient(
            cache_dir=str(self.settings.cache_dir), timeout=self.settings.registry_timeout
        )
        self.store = store or ImageStore(str(self.settings.store_dir))
        self.executor_factory = executor_factory
        self.environment_manager = environment_manager or EnvironmentManager()
        self.package_manager = AptManager()

    def build(self,
              recipe: Recipe,
              tag: str,
              platform: Optional[str] = None,
              extra_env: Optional[Mapping[str, str]] = None,
              executor: Optional[str] = None,
              keep_rootfs: Optional[bool] = None) -> BuiltImage:
        """
        Builds ``recipe`` and tags the result as ``tag``.

        :param recipe: The parsed recipe.
        :param tag: Tag to assign to the image.
        :param platform: Target platform, e.g. linux/arm64.
        :param extra_env: Driver-supplied variables applied after the recipe's.
        :param executor: 'chroot' to build in a fresh root, 'host' to build on the current system.
        :param keep_rootfs: Keep the build root filesystem after the build.
        :return: The built image.
        :raises BuildError: On any failure; the ``phase`` attribute names the failing step.
        """
        tag = normalize_tag(tag)
        platform = platform or self.settings.platform
        parse_platform(platform)
        executor = executor or self.settings.executor
        keep_rootfs = self.settings.keep_rootfs if keep_rootfs is None else keep_rootfs

        in_place = executor == "host"
        build_dir = Path(self.settings.work_dir) / uuid.uuid4().hex[:12]
        rootfs = Path("/") if in_place else build_dir / "rootfs"

        phase = PHASE_BASE
        try:
            base = self._select_base(recipe, rootfs, platform, extract=not in_place)
            base_config = ImageConfig.from_container_config(base.container_config)

            phase = PHASE_ENVIRONMENT
            environment = self.environment_manager.configure(
                base_config.environment, recipe.env_steps, extra_env
            )
            history = [HistoryEntry(created_by=f"ENV {line}", empty_layer=True)
                       for line in self._declared_lines(recipe, extra_env)]

            recorder = LayerRecorder(str(rootfs), excludes=self.layer_excludes(in_place))
            before = recorder.snapshot()
            provisioner = PackageProvisioner(self.executor_factory(executor, str(rootfs)),
                                             self.package_manager)
            phase = "provision"
            with host_resolver(rootfs, enabled=not in_place):
                report = provisioner.provision(recipe.packages, environment, recipe.install_recommends)

            phase = PHASE_COMMIT
            created_by = self._provision_directive(provisioner)
            layer = recorder.commit(before, created_by, self.store)
            history.append(HistoryEntry(created_by=created_by))

            config = self._final_config(recipe, base_config, environment)
            image = self._commit(tag, platform, base, config, layer, history, report.installed)
            if keep_rootfs or in_place:
                image.rootfs = str(rootfs)
            logger.info("Built %s as %s", image.short_id, tag)
            return image
        except BuildError as e:
            if e.phase is None:
                e.phase = phase
            raise
        except PermissionError as e:
            raise FilesystemPermissionError(f"{e.filename or ''}: {e.strerror or e}", phase=phase) from e
        finally:
            if not in_place and not keep_rootfs and build_dir.exists():
                shutil.rmtree(build_dir, ignore_errors=True)

    def layer_excludes(self, in_place: bool) -> List[str]:
        """
        Paths left out of the provisioning layer.

        In-place builds also skip host churn and envrecipe's own state directories.
        """
        excludes = list(DEFAULT_EXCLUDES)
        if in_place:
            state_dirs = (self.settings.store_dir, self.settings.cache_dir, self.settings.work_dir)
            excludes += list(IN_PLACE_EXCLUDES)
            excludes += [str(Path(p).resolve()).lstrip("/") for p in state_dirs]
        return excludes

    def _select_base(self, recipe: Recipe, rootfs: Path, platform: str, extract: bool) -> BaseSnapshot:
        reference = recipe.base_image
        if self.settings.registry_username and self.settings.registry_password:
            self.registry.set_credentials(
                reference.registry, self.settings.registry_username, self.settings.registry_password
            )
        if not reference.is_digest_pinned:
            logger.warning(
                "Base image %s is pinned by tag only; builds may observe a different image later",
                reference.full_name,
            )
        base = self.registry.pull(reference, rootfs, platform, extract=extract)
        logger.info("Base image %s resolved to %s", reference.full_name, base.image.digest)
        for blob in base.layers:
            self.store.import_blob(blob.digest, blob.path)
        return base

    @staticmethod
    def _declared_lines(recipe: Recipe, extra_env: Optional[Mapping[str, str]]) -> List[str]:
        steps = [step.to_env_list() for step in recipe.env_steps]
        if extra_env:
            steps.append([f"{name}={value}" for name, value in extra_env.items()])
        return [" ".join(step) for step in steps]

    def _provision_directive(self, provisioner: PackageProvisioner) -> str:
        commands = [shlex.join(argv) for argv in provisioner.report.commands
                    if argv[0] != "dpkg-query"]
        commands.append(f"rm -rf {self.package_manager.lists_dir}/*")
        return "RUN " + " && ".join(commands)

    @staticmethod
    def _final_config(recipe: Recipe, base: ImageConfig, environment: EnvironmentConfig) -> ImageConfig:
        return ImageConfig(
            environment=environment,
            user=base.user if recipe.user is None else recipe.user,
            working_dir=base.working_dir if recipe.working_dir is None else recipe.working_dir,
            cmd=base.cmd if recipe.cmd is None else recipe.cmd,
            entrypoint=base.entrypoint if recipe.entrypoint is None else recipe.entrypoint,
            labels={**base.labels, **recipe.labels},
        )

    def _commit(self,
                tag: str,
                platform: str,
                base: BaseSnapshot,
                config: ImageConfig,
                layer: LayerRecord,
                history: List[HistoryEntry],
                installed) -> BuiltImage:
        base_config = base.image.config
        os_name, arch, variant = parse_platform(platform)
        image_config: Dict[str, Any] = {
            "architecture": base_config.get("architecture", arch),
            "os": base_config.get("os", os_name),
            "config": config.to_container_config(),
            "rootfs": {"type": "layers", "diff_ids": base.diff_ids + [layer.diff_id]},
            "history": list(base_config.get("history", []))
                       + [entry.model_dump(exclude_defaults=True) for entry in history],
        }
        if base_config.get("variant") or variant:
            image_config["variant"] = base_config.get("variant", variant)

        config_digest, config_size = self.store.write_blob(canonical_json(image_config))
        manifest = {
            "schemaVersion": 2,
            "mediaType": MANIFEST_MEDIA_TYPE,
            "config": {"mediaType": CONFIG_MEDIA_TYPE, "digest": config_digest, "size": config_size},
            "layers": [
                {"mediaType": blob.media_type, "digest": blob.digest, "size": blob.size}
                for blob in base.layers
            ] + [{"mediaType": layer.media_type, "digest": layer.digest, "size": layer.size}],
        }
        pinned = base.image.pinned.full_name
        stored = self.store.commit(tag, manifest, base=pinned)

        return BuiltImage(
            id=stored.digest,
            tag=tag,
            base=pinned,
            base_digest=base.image.digest,
            config=config,
            layers=[layer],
            history=history,
            installed_packages=installed,
        )

    def which(self, image: BuiltImage, name: str) -> Optional[str]:
        """
        Locates ``name`` on the image's search path in its kept root filesystem.
        """
        if not image.rootfs:
            raise ValueError("The image was built without keeping its root filesystem")
        return self.environment_manager.which(name, image.config.environment, image.rootfs)


@contextmanager
def host_resolver(rootfs: Path, enabled: bool = True):
    """
    Provides the host's resolver configuration inside ``rootfs`` while
    packages are fetched, restoring the image's own file afterwards.
    """
    host_conf = Path("/etc/resolv.conf")
    if not enabled or not host_conf.is_file():
        yield
        return

    target = rootfs / "etc" / "resolv.conf"
    link = os.readlink(target) if target.is_symlink() else None
    original = target.read_bytes() if link is None and target.is_file() else None
    times = None
    if link is not None or original is not None:
        st = os.lstat(target)
        times = (st.st_atime_ns, st.st_mtime_ns)
    if link is not None:
        target.unlink()
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(host_conf, target)
    try:
        yield
    finally:
        target.unlink(missing_ok=True)
        if link is not None:
            os.symlink(link, target)
        elif original is not None:
            target.write_bytes(original)
        if times is not None:
            os.utime(target, ns=times, follow_symlinks=False)
