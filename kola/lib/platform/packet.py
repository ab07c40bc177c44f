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

# Packet (now Equinix Metal) bare metal devices through libcloud. Devices
# take a while to provision, and their serial console is only reachable
# over the SOS ssh endpoint with a key the project knows about.

import datetime
import io
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from libcloud.common.types import LibcloudError
from libcloud.compute.providers import get_driver
from libcloud.compute.types import NodeState, Provider
import paramiko

from kola.config import settings
from kola.lib.common import wait_until_ready
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform.api_base import (CREATED_BY_TAG, CREATED_BY_VALUE,
                                        Instance, ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.ssh import SSHConnector


logger = logging.getLogger(__name__)

CREATED_BY = f"{CREATED_BY_TAG}={CREATED_BY_VALUE}"

# bare metal takes its time
RUNNING_TIMEOUT = 1200
RUNNING_INTERVAL = 30

SOS_HOST = "sos.{facility}.platformequinix.com"


def _ipv4(addresses: List[str]) -> Optional[str]:
    for addr in addresses:
        if ':' not in addr:
            return addr
    return None


class API(ProviderAPI):
    def __init__(self, api_key: str, project_id: str, facility: str,
                 plan: str, operating_system: str,
                 pkey: Optional[paramiko.PKey] = None,
                 console_read_timeout: float = 10,
                 driver: Any = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._project_id = project_id
        self._facility = facility
        self._plan = plan
        self._operating_system = operating_system
        self._pkey = pkey
        self._console_read_timeout = console_read_timeout
        if driver is None:
            cls = get_driver(Provider.EQUINIXMETAL)
            driver = cls(api_key, project=project_id)
        self._driver = driver
        self._keys: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, pkey: Optional[paramiko.PKey] = None,
                      log: Optional[logging.Logger] = None) -> 'API':
        return cls(settings.PACKET.API_KEY, settings.PACKET.PROJECT_ID,
                   settings.PACKET.FACILITY, settings.PACKET.PLAN,
                   settings.PACKET.OPERATING_SYSTEM, pkey=pkey,
                   console_read_timeout=float(
                       settings.PACKET.CONSOLE_READ_TIMEOUT),
                   log=log)

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        self._keys[name] = self._driver.create_key_pair(name, public_key)
        self._log.info(f"ssh key {name} created")
        return name

    def delete_key(self, name: str):
        keypair = self._keys.pop(name, None)
        if keypair is not None:
            self._driver.delete_key_pair(keypair)
            self._log.info(f"ssh key {name} deleted")

    def _find(self, items, wanted: str, what: str):
        for item in items:
            if item.id == wanted or item.name == wanted:
                return item
        raise KolaError(f"{what} {wanted} not found")

    def _get_node(self, node_id: str):
        for node in self._driver.list_nodes(ex_project_id=self._project_id):
            if node.id == node_id:
                return node
        raise KolaError(f"device {node_id} not found")

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        step = "resolving plan"
        try:
            size = self._find(self._driver.list_sizes(), self._plan, "plan")
            step = "resolving operating system"
            image = self._find(self._driver.list_images(),
                               self._operating_system, "operating system")
            step = "resolving facility"
            location = self._find(self._driver.list_locations(),
                                  self._facility, "facility")
            step = "creating device"
            node = self._driver.create_node(
                name, size, image, location,
                ex_project_id=self._project_id,
                cloud_init=userdata or None,
                tags=[CREATED_BY])
        except (LibcloudError, KolaError) as e:
            raise ProvisioningError(step, e) from e
        node_id = node.id
        self._log.info(f"device {name} ({node_id}) created")

        def running():
            nonlocal node
            node = self._get_node(node_id)
            if node.state == NodeState.ERROR:
                raise KolaError(f"device {node_id} failed to provision")
            return (node.state == NodeState.RUNNING and
                    _ipv4(node.public_ips) is not None)

        try:
            wait_until_ready(RUNNING_TIMEOUT, RUNNING_INTERVAL, running,
                             description=f"waiting for {node_id} to run")
        except Exception as e:
            try:
                self.terminate_instance(node_id)
            except (LibcloudError, KolaError) as delete_error:
                self._log.error(f"could not delete {node_id} after a "
                                f"failed start: {delete_error}")
            raise ProvisioningError("waiting for device to run", e) from e

        return Instance(node_id, _ipv4(node.public_ips),
                        _ipv4(node.private_ips), handle=node)

    def terminate_instance(self, instance_id: str):
        self._driver.destroy_node(self._get_node(instance_id))
        self._log.info(f"device {instance_id} deleted")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        node = self._get_node(instance.id)
        return _ipv4(node.public_ips), _ipv4(node.private_ips)

    def get_console_output(self, instance_id: str) -> str:
        """Read what the serial console shows for a few seconds

        Needs the project to know our key; without one there is no console.
        """
        if self._pkey is None:
            return ""
        sos = SSHConnector(instance_id, pkey=self._pkey, log=self._log)
        buf = io.BytesIO()
        stop = threading.Event()
        timer = threading.Timer(self._console_read_timeout, stop.set)
        timer.start()
        try:
            sos.stream(SOS_HOST.format(facility=self._facility), None, buf,
                       stop)
        finally:
            timer.cancel()
        return buf.getvalue().decode(errors='replace')

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        for node in self._driver.list_nodes(ex_project_id=self._project_id):
            if CREATED_BY not in (node.extra.get('tags') or []):
                continue
            created = node.extra.get('created_at')
            if created is None or not older_than(
                    datetime.datetime.fromisoformat(
                        created.replace('Z', '+00:00')), grace_period):
                self._log.debug(f"skipping device {node.id} due to being "
                                "too new")
                continue
            if dry_run:
                self._log.info(f"would delete device {node.name} "
                               f"({node.id})")
                continue
            self._driver.destroy_node(node)
            self._log.info(f"device {node.name} ({node.id}) deleted")


class Cluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_PACKET_IPV4_PUBLIC_0}",
        "$private_ipv4": "${COREOS_PACKET_IPV4_PRIVATE_0}",
    }

    def get_api(self) -> ProviderAPI:
        return API.from_settings(pkey=self.workspace.pkey, log=self._log)
