# Copyright (c) 2020 SUSE LLC
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

import logging
import os
import shutil
import stat
from typing import Optional
import uuid

import paramiko.rsakey

from kola.config import settings
from kola.lib.common import handle_cleanup_input


logger = logging.getLogger(__name__)

KEY_BITS = 2048


def _make_writable(top: str):
    # qemu leaves read-only overlays behind, rmtree would stop half way
    for root, dirs, files in os.walk(top):
        for name in dirs + files:
            path = os.path.join(root, name)
            try:
                os.chmod(path, os.stat(path).st_mode | stat.S_IWUSR)
            except (FileNotFoundError, PermissionError):
                # dangling symlinks, files of other users
                logger.debug(f"cannot make {path} writable")


class Workspace():
    """A per-run scratch directory plus the ssh key shared by all clusters

    Clusters put their per-machine output (console, journal, user-data)
    below `working_dir`, so keeping the workspace keeps the logs.
    """
    def __init__(self, base_dir: Optional[str] = None):
        self._id = uuid.uuid4().hex[:8]
        self._working_dir = os.path.join(
            base_dir or settings.WORKSPACE_DIR, self.name)
        os.makedirs(self._working_dir)

        self._pkey = paramiko.rsakey.RSAKey.generate(KEY_BITS)
        self._private_key = self.path('private.key')
        self._pkey.write_private_key_file(self._private_key)
        os.chmod(self._private_key, 0o400)
        self._public_key = f"{self._pkey.get_name()} " \
                           f"{self._pkey.get_base64()}"
        with open(self.path('public.key'), 'w') as f:
            f.write(f"{self._public_key} {self.name}\n")

        logger.info(f"Workspace {self.name} set up at {self.working_dir}")
        logger.debug(f"ssh key for the machines: {self._private_key}")

    @property
    def name(self) -> str:
        return f"{settings.CLUSTER_PREFIX}{self._id}"

    @property
    def working_dir(self) -> str:
        return self._working_dir

    @property
    def public_key(self) -> str:
        """The key in authorized_keys format, without a comment"""
        return self._public_key

    @property
    def private_key(self) -> str:
        """Path of the private key file, for `ssh -i`"""
        return self._private_key

    @property
    def pkey(self) -> paramiko.rsakey.RSAKey:
        return self._pkey

    def path(self, *parts: str) -> str:
        return os.path.join(self._working_dir, *parts)

    def destroy(self, skip=False):
        if settings.as_bool('_TEAR_DOWN_CLUSTER_CONFIRM'):
            handle_cleanup_input("pause before cleanup workspace")

        if skip or not settings.as_bool('_REMOVE_WORKSPACE'):
            logger.warning(f"Workspace left behind at {self.working_dir}")
            return

        logger.info(f"Removing workspace {self.working_dir} from disk")
        _make_writable(self.working_dir)
        shutil.rmtree(self.working_dir)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.destroy(skip=not settings.as_bool('_TEAR_DOWN_CLUSTER'))
