# Copyright (c) 2019 SUSE LINUX GmbH
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

# A cluster is the set of machines one test runs against. It owns the
# provider API client and the per-cluster provider resources (keys,
# networks, resource groups); the machines only borrow them.

from abc import ABC, abstractmethod
from collections import OrderedDict
import logging
import os
import threading
from typing import Dict, List, Optional, Tuple, Type
import uuid

from kola.config import settings
from kola.lib import conf
from kola.lib.common import CleanupStack, handle_cleanup_input
from kola.lib.exceptions import MultiError, ProvisioningError
from kola.lib.platform.api_base import Instance, ProviderAPI
from kola.lib.platform.machine_base import MachineBase
from kola.lib.ssh import SSHConnector
from kola.lib.workspace import Workspace


logger = logging.getLogger(__name__)


class RuntimeConfig():
    """Settings a cluster reads once when it is created"""
    def __init__(self, output_dir: str, user: str = "core",
                 ssh_timeout: float = 300,
                 no_ssh_key_in_metadata: bool = False,
                 expected_os_id: str = ""):
        self.output_dir = output_dir
        self.user = user
        self.ssh_timeout = ssh_timeout
        self.no_ssh_key_in_metadata = no_ssh_key_in_metadata
        self.expected_os_id = expected_os_id

    @classmethod
    def from_settings(cls, output_dir: str) -> 'RuntimeConfig':
        return cls(
            output_dir,
            user=settings.NODE_IMAGE_USER,
            ssh_timeout=int(settings.SSH_TIMEOUT),
            no_ssh_key_in_metadata=settings.as_bool(
                'NO_SSH_KEY_IN_METADATA'),
            expected_os_id=settings.EXPECTED_OS_ID,
        )


class ClusterBase(ABC):
    """
    Base Cluster class
    """
    # Placeholders in user-data and what each provider replaces them with
    substitutions: Dict[str, str] = {}
    machine_class: Type[MachineBase] = MachineBase

    def __init__(self, workspace: Workspace, api: Optional[ProviderAPI] = None,
                 rconf: Optional[RuntimeConfig] = None,
                 ssh: Optional[SSHConnector] = None,
                 log: Optional[logging.Logger] = None):
        self._workspace = workspace
        self._name = f"{workspace.name}-{uuid.uuid4().hex[:6]}"
        self._log = log or logger
        self._rconf = rconf or RuntimeConfig.from_settings(
            workspace.path(self._name))
        os.makedirs(self._rconf.output_dir, exist_ok=True)
        self._ssh = ssh or SSHConnector(
            self._rconf.user, pkey=workspace.pkey, log=self._log)
        self._api = api or self.get_api()
        self._machines: Dict[str, MachineBase] = OrderedDict()
        self._machines_lock = threading.Lock()
        self._cleanups = CleanupStack(self._log)
        self._ssh_key_name: Optional[str] = None
        self._setup_done = False
        self._setup_lock = threading.Lock()

        self._log.info(f"cluster {self.name}: using {workspace.name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def api(self) -> ProviderAPI:
        return self._api

    @property
    def rconf(self) -> RuntimeConfig:
        return self._rconf

    @property
    def ssh_connector(self) -> SSHConnector:
        return self._ssh

    @property
    def cleanups(self) -> CleanupStack:
        return self._cleanups

    @abstractmethod
    def get_api(self) -> ProviderAPI:
        """Build the provider API client from the settings"""
        pass

    def setup(self):
        """
        One time provider setup, done before the first machine is created
        """
        with self._setup_lock:
            if self._setup_done:
                return
            self._log.info(f"cluster {self.name}: setting up")
            self._setup()
            self._setup_done = True

    def _setup(self):
        if self._rconf.no_ssh_key_in_metadata:
            return
        key_name = f"{self.name}-key"
        self._ssh_key_name = self._api.add_key(
            key_name, self._workspace.public_key)
        if self._ssh_key_name is not None:
            self._cleanups.push(f"deleting key {key_name}",
                                self._api.delete_key, key_name)

    def keys(self) -> List[str]:
        return [self._workspace.public_key]

    def vmname(self) -> str:
        return f"{self.name}-{uuid.uuid4().hex[:6]}"

    def render_userdata(self, userdata: conf.UserData) -> conf.Conf:
        rendered = userdata.render(self.substitutions)
        if self._rconf.no_ssh_key_in_metadata or self._ssh_key_name is None:
            rendered.add_authorized_keys(self._rconf.user, self.keys())
        return rendered

    def _create_instance(self, name: str, rendered: conf.Conf) -> Instance:
        return self._api.create_instance(
            name, rendered.string(), ssh_key=self._ssh_key_name)

    def new_machine(self, userdata: Optional[conf.UserData] = None
                    ) -> MachineBase:
        """
        Create a machine and return it once it booted and passed the
        baseline checks
        """
        self.setup()
        rendered = self.render_userdata(userdata or conf.empty())
        name = self.vmname()
        self._log.info(f"cluster {self.name}: creating machine {name}")
        instance = self._create_instance(name, rendered)

        machine = self.machine_class(self, instance, log=self._log)
        try:
            if not machine.id or not machine.ip:
                raise ProvisioningError(
                    f"creating {name}", ValueError(
                        f"instance has no id or address: {instance}"))
            machine.setup(rendered)
            machine.boot()
        except Exception:
            try:
                machine.destroy()
            except MultiError as e:
                self._log.error(f"cleaning up {name} failed: {e}")
            raise

        self.add_machine(machine)
        return machine

    def add_machine(self, machine: MachineBase):
        self._log.info(f"adding machine {machine.id} to cluster {self.name}")
        with self._machines_lock:
            self._machines[machine.id] = machine

    def del_machine(self, machine: MachineBase):
        with self._machines_lock:
            self._machines.pop(machine.id, None)

    def machines(self) -> List[MachineBase]:
        with self._machines_lock:
            return list(self._machines.values())

    def ssh(self, machine: MachineBase, command: str) -> Tuple[bytes, bytes]:
        stdout, stderr = self._ssh.run(machine.ip, command)
        return stdout.strip(), stderr

    def destroy(self, skip=False):
        """
        Destroy every machine, newest first, then the cluster resources in
        reverse creation order. All failures are raised together.
        """
        if skip:
            self._log.warning("Cluster will not be removed!")
            self._log.warning("The following machines and their associated "
                              "resources will remain:")
            for m in self.machines():
                self._log.warning(f"Leaving machine {m.id} at ip {m.ip}")
            return

        if settings.as_bool('_TEAR_DOWN_CLUSTER_CONFIRM'):
            handle_cleanup_input("pause before cleanup cluster")

        self._log.info(f"Remove all machines from cluster {self.name}")
        errors: List[BaseException] = []
        for m in reversed(self.machines()):
            try:
                m.destroy()
            except MultiError as e:
                errors.append(e)
        errors.extend(self._cleanups.run(raise_errors=False))
        if errors:
            raise MultiError(errors)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.destroy(skip=not settings.as_bool('_TEAR_DOWN_CLUSTER'))
