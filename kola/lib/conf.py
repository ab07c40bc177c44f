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

# User-data handling. A UserData is the template a test asks for; rendering
# it with the provider placeholders (eg. $public_ipv4) gives the Conf that
# is actually handed to the instance.

from enum import Enum
import json
import logging
from typing import Any, Dict, List, Optional, Union

import yaml


logger = logging.getLogger(__name__)


class ConfKind(Enum):
    EMPTY = 0
    IGNITION = 1
    CLOUD_CONFIG = 2
    SCRIPT = 3


class UserData():
    def __init__(self, kind: ConfKind, data: str = ""):
        self.kind = kind
        self.data = data

    def render(self, substitutions: Dict[str, str]) -> 'Conf':
        """Substitute every placeholder key with its value

        Values are inserted verbatim, so a value such as
        "${COREOS_EC2_IPV4_PUBLIC}" survives into the payload for the
        instance's own agent to expand at boot.
        """
        data = self.data
        for placeholder, value in substitutions.items():
            data = data.replace(placeholder, value)
        return Conf(self.kind, data)


def ignition(data: Union[str, Dict[str, Any]]) -> UserData:
    if not isinstance(data, str):
        data = json.dumps(data)
    return UserData(ConfKind.IGNITION, data)


def cloud_config(data: str) -> UserData:
    return UserData(ConfKind.CLOUD_CONFIG, data)


def script(data: str) -> UserData:
    return UserData(ConfKind.SCRIPT, data)


def empty() -> UserData:
    return UserData(ConfKind.EMPTY)


class Conf():
    """A rendered user-data payload"""
    def __init__(self, kind: ConfKind, data: str = ""):
        self.kind = kind
        self._data = data

    def is_ignition(self) -> bool:
        return self.kind == ConfKind.IGNITION

    def is_empty(self) -> bool:
        return self.kind == ConfKind.EMPTY

    def add_authorized_keys(self, user: str, keys: List[str]):
        """Inject ssh keys for platforms without key metadata (eg. qemu)"""
        if self.kind == ConfKind.IGNITION:
            config = json.loads(self._data)
            users = config.setdefault('passwd', {}).setdefault('users', [])
            for u in users:
                if u.get('name') == user:
                    u.setdefault('sshAuthorizedKeys', []).extend(keys)
                    break
            else:
                users.append({'name': user, 'sshAuthorizedKeys': keys})
            self._data = json.dumps(config)
        elif self.kind in (ConfKind.CLOUD_CONFIG, ConfKind.EMPTY):
            config: Optional[Dict[str, Any]] = None
            if self._data:
                config = yaml.safe_load(self._data)
            config = config or {}
            config.setdefault('ssh_authorized_keys', []).extend(keys)
            self.kind = ConfKind.CLOUD_CONFIG
            self._data = "#cloud-config\n" + yaml.safe_dump(config)
        else:
            logger.warning("Cannot add ssh keys to a script user-data")

    def string(self) -> str:
        return self._data

    def __str__(self):
        return self._data

    def write_file(self, path: str):
        with open(path, 'w') as f:
            f.write(self._data)
