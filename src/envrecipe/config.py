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
Build settings with environment variable overrides.

All settings can be overridden via ENVRECIPE_* environment variables or a
.env file in the working directory, e.g.::

    export ENVRECIPE_STORE_DIR=/var/lib/envrecipe/store
    export ENVRECIPE_LOG_LEVEL=DEBUG
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class BuildSettings(BaseSettings):
    """
    Settings shared by the build driver and its collaborators.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENVRECIPE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    store_dir: Path = Path.home() / ".envrecipe" / "store"
    cache_dir: Path = Path.home() / ".envrecipe" / "cache"
    work_dir: Path = Path.home() / ".envrecipe" / "work"

    # Base selection
    platform: str = "linux/amd64"
    registry_timeout: float = 60.0
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None

    # Provisioning
    executor: str = "chroot"
    keep_rootfs: bool = False

    log_level: str = "INFO"
