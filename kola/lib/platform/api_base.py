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

# The provider API layer is a thin wrapper around each vendor SDK. It knows
# nothing about clusters or tests; it creates and deletes instances and
# whatever they need, and reclaims what earlier runs leaked.

from abc import ABC, abstractmethod
import datetime
import logging
from typing import Any, Optional, Tuple


logger = logging.getLogger(__name__)

# Every resource created by kola carries this tag (or metadata, or label),
# gc never touches anything without it.
CREATED_BY_TAG = "CreatedBy"
CREATED_BY_VALUE = "kola"


class Instance():
    """A provider neutral view of a created instance

    `handle` is the SDK object (or id) the provider needs to act on the
    instance again.
    """
    def __init__(self, id: str, public_ip: Optional[str] = None,
                 private_ip: Optional[str] = None, handle: Any = None):
        self.id = id
        self.public_ip = public_ip
        self.private_ip = private_ip
        self.handle = handle

    def __repr__(self):
        return (f"Instance(id={self.id!r}, public_ip={self.public_ip!r}, "
                f"private_ip={self.private_ip!r})")


def older_than(created: datetime.datetime,
               grace_period: datetime.timedelta) -> bool:
    """True if `created` lies further back than `grace_period`

    Naive datetimes are taken to be UTC, which is what every SDK we talk to
    returns when it drops the timezone.
    """
    if created.tzinfo is None:
        created = created.replace(tzinfo=datetime.timezone.utc)
    now = datetime.datetime.now(datetime.timezone.utc)
    return now - created > grace_period


class ProviderAPI(ABC):
    """
    Base class for the per provider API clients
    """
    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    @abstractmethod
    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        """
        Create an instance and block until it runs with an address

        Anything created on the way is removed again if a later step fails,
        the failure is raised as ProvisioningError.
        """
        pass

    @abstractmethod
    def terminate_instance(self, instance_id: str):
        pass

    @abstractmethod
    def get_console_output(self, instance_id: str) -> str:
        """
        Return the serial console log, "" if the provider has none yet
        """
        pass

    @abstractmethod
    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        """
        Remove everything tagged as created by kola and older than
        `grace_period`
        """
        pass

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        """Return the current (public, private) addresses of `instance`"""
        return instance.public_ip, instance.private_ip

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        """Upload a key pair, returns the handle create_instance expects

        Providers without key pairs return None and get the key through
        user-data instead.
        """
        return None

    def delete_key(self, name: str):
        pass
