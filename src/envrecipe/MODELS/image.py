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
Models representing built images, their configuration and layers.
"""
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict

from .recipe import EnvironmentConfig


class ImageConfig(BaseModel):
    """
    Runtime configuration inherited from the base image and carried into the result.
    """
    model_config = ConfigDict(frozen=True)

    environment: EnvironmentConfig = EnvironmentConfig()
    user: str = ""
    working_dir: str = ""
    cmd: List[str] = []
    entrypoint: List[str] = []
    labels: Dict[str, str] = {}

    @classmethod
    def from_container_config(cls, config: Dict) -> "ImageConfig":
        """Build from the ``config`` section of an image configuration blob."""
        return cls(
            environment=EnvironmentConfig.from_env_list(config.get("Env") or []),
            user=config.get("User") or "",
            working_dir=config.get("WorkingDir") or "",
            cmd=config.get("Cmd") or [],
            entrypoint=config.get("Entrypoint") or [],
            labels=config.get("Labels") or {},
        )

    def to_container_config(self) -> Dict:
        config: Dict = {"Env": self.environment.to_env_list()}
        if self.user:
            config["User"] = self.user
        if self.working_dir:
            config["WorkingDir"] = self.working_dir
        if self.cmd:
            config["Cmd"] = list(self.cmd)
        if self.entrypoint:
            config["Entrypoint"] = list(self.entrypoint)
        if self.labels:
            config["Labels"] = dict(self.labels)
        return config


class LayerRecord(BaseModel):
    """
    A committed, content-addressed filesystem layer.

    ``digest`` addresses the compressed blob, ``diff_id`` the uncompressed tar.
    """
    model_config = ConfigDict(frozen=True)

    digest: str
    diff_id: str
    size: int
    created_by: str
    media_type: str = "application/vnd.oci.image.layer.v1.tar+gzip"


class HistoryEntry(BaseModel):
    """One step of image history; metadata-only steps have ``empty_layer`` set."""
    model_config = ConfigDict(frozen=True)

    created_by: str
    empty_layer: bool = False


class BuiltImage(BaseModel):
    """
    Result of a successful build.
    """
    id: str
    tag: str
    base: str
    base_digest: str
    config: ImageConfig
    layers: List[LayerRecord] = []
    history: List[HistoryEntry] = []
    installed_packages: FrozenSet[str] = frozenset()
    rootfs: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id.split(":", 1)[-1][:12]
