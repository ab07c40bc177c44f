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


import datetime
import logging
from typing import List, Optional, Tuple

import openstack
import openstack.exceptions

from kola.config import settings
from kola.lib.common import Step, run_steps, wait_until_ready
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform.api_base import (CREATED_BY_TAG, CREATED_BY_VALUE,
                                        Instance, ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)

ACTIVE_TIMEOUT = 300
ACTIVE_INTERVAL = 10


def _parse_created(created: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(created.replace('Z', '+00:00'))


class API(ProviderAPI):
    def __init__(self, image: str, flavor: str, network: str = "",
                 external_network: str = "",
                 security_groups: Optional[List[str]] = None,
                 conn: Optional[openstack.connection.Connection] = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._conn = conn or openstack.connect()
        self._security_groups = security_groups or ["default"]

        # check if flavor, image and networks are available
        self._flavor = self._conn.get_flavor(flavor)
        if not self._flavor:
            raise KolaError(f"Flavor {flavor} not found. Check "
                            "OPENSTACK.NODE_SIZE setting")
        self._image = self._conn.get_image(image)
        if not self._image:
            raise KolaError(f"Image {image} not found. Check "
                            "OPENSTACK.NODE_IMAGE setting")
        if network:
            self._network = self._conn.get_network(network)
            if not self._network:
                raise KolaError(f"Network {network} not found. Check "
                                "OPENSTACK.NETWORK setting")
        else:
            networks = self._conn.list_networks()
            if not networks:
                raise KolaError("no networks found")
            self._network = networks[0]
        self._external_network = None
        if external_network:
            self._external_network = self._conn.get_network(external_network)
            if not self._external_network:
                raise KolaError(f"External network {external_network} not "
                                "found. Check OPENSTACK.EXTERNAL_NETWORK "
                                "setting")

    @classmethod
    def from_settings(cls, log: Optional[logging.Logger] = None) -> 'API':
        conn = openstack.connect(
            cloud=settings.OPENSTACK.CLOUD or None,
            region_name=settings.OPENSTACK.REGION or None)
        return cls(settings.OPENSTACK.NODE_IMAGE,
                   settings.OPENSTACK.NODE_SIZE,
                   network=settings.OPENSTACK.NETWORK,
                   external_network=settings.OPENSTACK.EXTERNAL_NETWORK,
                   security_groups=list(settings.OPENSTACK.SECURITY_GROUPS),
                   conn=conn, log=log)

    @property
    def conn(self) -> openstack.connection.Connection:
        return self._conn

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        keypair = self._conn.create_keypair(name, public_key)
        self._log.info(f"keypair {name} created")
        return keypair.name

    def delete_key(self, name: str):
        self._conn.delete_keypair(name)
        self._log.info(f"keypair {name} deleted")

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        try:
            floating_ip = self._conn.create_floating_ip(
                network=self._external_network.id
                if self._external_network else None)
        except openstack.exceptions.SDKException as e:
            raise ProvisioningError("creating floating ip", e) from e
        self._log.info(f"floating ip {floating_ip.floating_ip_address} "
                       f"({floating_ip.id}) created")

        try:
            server = self._conn.create_server(
                name, image=self._image, flavor=self._flavor,
                key_name=ssh_key, network=self._network,
                security_groups=self._security_groups,
                meta={CREATED_BY_TAG: CREATED_BY_VALUE},
                userdata=userdata or None, auto_ip=False, wait=False)
        except openstack.exceptions.SDKException as e:
            self._rollback(None, floating_ip.id)
            raise ProvisioningError("creating server", e) from e
        server_id = server.id
        self._log.info(f"server {name} ({server_id}) created")

        def active():
            nonlocal server
            server = self._conn.get_server_by_id(server_id)
            if server.status == 'ERROR':
                raise KolaError(f"server {server_id} went into ERROR: "
                                f"{server.get('fault')}")
            return server.status == 'ACTIVE'

        try:
            wait_until_ready(ACTIVE_TIMEOUT, ACTIVE_INTERVAL, active,
                             description=f"waiting for {server_id} to be "
                             "active")
        except Exception as e:
            self._rollback(server_id, floating_ip.id)
            raise ProvisioningError("waiting for instance to run", e) from e

        try:
            self._conn.add_ip_list(server, [floating_ip.floating_ip_address])
        except openstack.exceptions.SDKException as e:
            self._rollback(server_id, floating_ip.id)
            raise ProvisioningError("associating floating ip", e) from e

        try:
            server = self._conn.get_server_by_id(server_id)
        except openstack.exceptions.SDKException as e:
            self._rollback(server_id, floating_ip.id, associated=True)
            raise ProvisioningError("retrieving server info", e) from e

        return Instance(server_id, floating_ip.floating_ip_address,
                        server.get('private_v4') or None, handle=floating_ip)

    def _rollback(self, server_id: Optional[str], floating_ip_id: str,
                  associated: bool = False):
        steps: List[Step] = []
        if associated and server_id:
            steps.append((f"disassociating floating ip {floating_ip_id}",
                          self.disassociate_floating_ip,
                          (server_id, floating_ip_id)))
        if server_id:
            steps.append((f"deleting server {server_id}",
                          self.terminate_instance, (server_id,)))
        steps.append((f"deleting floating ip {floating_ip_id}",
                      self.delete_floating_ip, (floating_ip_id,)))
        if run_steps(steps, self._log):
            self._log.error(f"rolling back {server_id or floating_ip_id} "
                            "was incomplete, manual deletion may be required")

    def disassociate_floating_ip(self, server_id: str, floating_ip_id: str):
        self._conn.detach_ip_from_server(server_id, floating_ip_id)

    def delete_floating_ip(self, floating_ip_id: str):
        self._conn.delete_floating_ip(floating_ip_id)
        self._log.info(f"floating ip {floating_ip_id} deleted")

    def terminate_instance(self, instance_id: str):
        self._conn.delete_server(instance_id)
        self._log.info(f"server {instance_id} deleted")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        server = self._conn.get_server_by_id(instance.id)
        return (instance.public_ip or server.get('public_v4') or None,
                server.get('private_v4') or instance.private_ip)

    def get_console_output(self, instance_id: str) -> str:
        return self._conn.get_server_console(instance_id) or ""

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        for server in self._conn.list_servers():
            metadata = server.get('metadata') or {}
            if metadata.get(CREATED_BY_TAG) != CREATED_BY_VALUE:
                continue
            if not older_than(_parse_created(server.created), grace_period):
                self._log.debug(f"skipping server {server.id} due to being "
                                "too new")
                continue
            if dry_run:
                self._log.info(f"would delete server {server.name} "
                               f"({server.id})")
                continue
            self._conn.delete_server(server.id, delete_ips=True)
            self._log.info(f"server {server.name} ({server.id}) deleted")


class Machine(MachineBase):
    def _terminate_steps(self) -> List[Step]:
        api = self.cluster.api
        floating_ip = self.instance.handle
        steps: List[Step] = []
        if floating_ip is not None:
            steps.append((f"disassociating floating ip of {self.id}",
                          api.disassociate_floating_ip,
                          (self.id, floating_ip.id)))
        steps.extend(super()._terminate_steps())
        if floating_ip is not None:
            steps.append((f"deleting floating ip {floating_ip.id}",
                          api.delete_floating_ip, (floating_ip.id,)))
        return steps


class Cluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_OPENSTACK_IPV4_PUBLIC}",
        "$private_ipv4": "${COREOS_OPENSTACK_IPV4_LOCAL}",
    }
    machine_class = Machine

    def get_api(self) -> ProviderAPI:
        return API.from_settings(log=self._log)
