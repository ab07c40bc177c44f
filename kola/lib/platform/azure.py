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

# Every cluster gets its own resource group. Machines live in it together
# with their public IP and NIC, so deleting the group at the end removes
# whatever a failed machine teardown left behind.

import base64
import datetime
import logging
from typing import Any, Dict, Optional, Tuple
import uuid

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient
import paramiko.rsakey
import requests

from kola.config import settings
from kola.lib.common import wait_until_ready
from kola.lib.conf import Conf
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform.api_base import (CREATED_BY_VALUE, Instance,
                                        ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase


logger = logging.getLogger(__name__)

# resource manager tag names are case-insensitive but kept as written
CREATED_BY_TAG = "createdBy"
CREATED_AT_TAG = "createdAt"

VIRTUAL_NETWORK = "kola-vn"
SUBNET = "kola-subnet"

PROVISIONED_TIMEOUT = 300
PROVISIONED_INTERVAL = 10


def random_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class API(ProviderAPI):
    def __init__(self, subscription_id: str, location: str, size: str,
                 image: str, admin_user: str = "core",
                 diagnostics_storage_uri: str = "",
                 credential: Any = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._location = location
        self._size = size
        self._image = image
        self._admin_user = admin_user
        self._diagnostics_storage_uri = diagnostics_storage_uri
        credential = credential or DefaultAzureCredential()
        self._resources = ResourceManagementClient(credential,
                                                   subscription_id)
        self._network = NetworkManagementClient(credential, subscription_id)
        self._compute = ComputeManagementClient(credential, subscription_id)
        self.resource_group: Optional[str] = None

    @classmethod
    def from_settings(cls, log: Optional[logging.Logger] = None) -> 'API':
        return cls(settings.AZURE.SUBSCRIPTION_ID, settings.AZURE.LOCATION,
                   settings.AZURE.NODE_SIZE, settings.AZURE.IMAGE_ID,
                   admin_user=settings.AZURE.ADMIN_USER or "core",
                   diagnostics_storage_uri=(
                       settings.AZURE.DIAGNOSTICS_STORAGE_URI),
                   log=log)

    def _tags(self) -> Dict[str, str]:
        return {
            CREATED_BY_TAG: CREATED_BY_VALUE,
            CREATED_AT_TAG: datetime.datetime.now(
                datetime.timezone.utc).isoformat(),
        }

    def create_resource_group(self, prefix: str) -> str:
        name = random_name(prefix)
        self._resources.resource_groups.create_or_update(
            name, {"location": self._location, "tags": self._tags()})
        self.resource_group = name
        self._log.info(f"resource group {name} created")
        return name

    def delete_resource_group(self, name: str):
        self._resources.resource_groups.begin_delete(name).result()
        self._log.info(f"resource group {name} deleted")

    def prepare_network(self) -> Any:
        self._network.virtual_networks.begin_create_or_update(
            self.resource_group, VIRTUAL_NETWORK, {
                "location": self._location,
                "address_space": {"address_prefixes": ["10.0.0.0/16"]},
            }).result()
        return self._network.subnets.begin_create_or_update(
            self.resource_group, VIRTUAL_NETWORK, SUBNET,
            {"address_prefix": "10.0.0.0/24"}).result()

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        # there are no key pairs, the key goes straight into the VM
        return public_key

    def _image_reference(self) -> Dict[str, str]:
        if self._image.count(':') == 3:
            publisher, offer, sku, version = self._image.split(':')
            return {"publisher": publisher, "offer": offer, "sku": sku,
                    "version": version}
        return {"id": self._image}

    def _vm_parameters(self, name: str, userdata: str, ssh_key: str,
                       nic_id: str) -> Dict[str, Any]:
        os_profile: Dict[str, Any] = {
            "admin_username": self._admin_user,
            "computer_name": name,
            "linux_configuration": {
                "disable_password_authentication": True,
                "ssh": {
                    "public_keys": [{
                        "path": (f"/home/{self._admin_user}/.ssh/"
                                 "authorized_keys"),
                        "key_data": ssh_key,
                    }],
                },
            },
        }
        if userdata:
            os_profile["custom_data"] = base64.b64encode(
                userdata.encode()).decode()
        boot_diagnostics: Dict[str, Any] = {"enabled": True}
        if self._diagnostics_storage_uri:
            boot_diagnostics["storage_uri"] = self._diagnostics_storage_uri
        return {
            "location": self._location,
            "tags": self._tags(),
            "hardware_profile": {"vm_size": self._size},
            "storage_profile": {
                "image_reference": self._image_reference(),
                "os_disk": {"create_option": "FromImage"},
            },
            "os_profile": os_profile,
            "network_profile": {
                "network_interfaces": [{"id": nic_id, "primary": True}],
            },
            "diagnostics_profile": {"boot_diagnostics": boot_diagnostics},
        }

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        if self.resource_group is None:
            raise KolaError("no resource group, create one first")
        rg = self.resource_group
        if not ssh_key:
            raise ProvisioningError("creating instance",
                                    ValueError("azure needs an ssh key"))

        step = "preparing network resources"
        try:
            subnet = self._network.subnets.get(rg, VIRTUAL_NETWORK, SUBNET)
            step = "creating public ip"
            ip_name = random_name("ip")
            ip = self._network.public_ip_addresses.begin_create_or_update(
                rg, ip_name, {"location": self._location}).result()
            step = "creating nic"
            nic_name = random_name("nic")
            nic = self._network.network_interfaces.begin_create_or_update(
                rg, nic_name, {
                    "location": self._location,
                    "ip_configurations": [{
                        "name": random_name("nic-ipconf"),
                        "public_ip_address": {"id": ip.id},
                        "private_ip_allocation_method": "Dynamic",
                        "subnet": {"id": subnet.id},
                    }],
                }).result()
            step = "creating instance"
            self._compute.virtual_machines.begin_create_or_update(
                rg, name, self._vm_parameters(name, userdata, ssh_key,
                                              nic.id))
        except AzureError as e:
            raise ProvisioningError(step, e) from e
        self._log.info(f"virtual machine {name} created in {rg}")

        def provisioned():
            vm = self._compute.virtual_machines.get(rg, name)
            return vm.provisioning_state == "Succeeded"

        instance = Instance(name, handle={"nic": nic_name,
                                          "public_ip": ip_name})
        try:
            wait_until_ready(PROVISIONED_TIMEOUT, PROVISIONED_INTERVAL,
                             provisioned,
                             description=f"waiting for {name} to become "
                             "active")
            instance.public_ip, instance.private_ip = self.get_addresses(
                instance)
        except Exception as e:
            try:
                self.terminate_instance(name)
            except AzureError as delete_error:
                self._log.error(f"could not delete {name} after a failed "
                                f"start: {delete_error}")
            raise ProvisioningError(
                "waiting for machine to become active", e) from e
        return instance

    def terminate_instance(self, instance_id: str):
        self._compute.virtual_machines.begin_delete(
            self.resource_group, instance_id).result()
        self._log.info(f"virtual machine {instance_id} deleted")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        rg = self.resource_group
        ip = self._network.public_ip_addresses.get(
            rg, instance.handle["public_ip"])
        if ip.ip_address is None:
            raise KolaError(f"public ip of {instance.id} is not allocated")
        nic = self._network.network_interfaces.get(rg, instance.handle["nic"])
        for config in nic.ip_configurations or []:
            if config.private_ip_address is None:
                raise KolaError(f"private ip of {instance.id} is not "
                                "allocated")
            return ip.ip_address, config.private_ip_address
        raise KolaError(f"no ip configurations found for {instance.id}")

    def get_console_output(self, instance_id: str) -> str:
        vm = self._compute.virtual_machines.get(
            self.resource_group, instance_id, expand="instanceView")
        diagnostics = vm.instance_view.boot_diagnostics \
            if vm.instance_view else None
        uri = diagnostics.serial_console_log_blob_uri \
            if diagnostics else None
        if uri is None:
            raise KolaError(f"serial console URI of {instance_id} is unset")
        r = requests.get(uri, timeout=60)
        r.raise_for_status()
        return r.text

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        for group in self._resources.resource_groups.list():
            tags = group.tags or {}
            if tags.get(CREATED_BY_TAG) != CREATED_BY_VALUE:
                continue
            created = tags.get(CREATED_AT_TAG)
            if created is None:
                self._log.warning(f"resource group {group.name} has no "
                                  f"{CREATED_AT_TAG} tag, skipping")
                continue
            if not older_than(datetime.datetime.fromisoformat(created),
                              grace_period):
                self._log.debug(f"skipping resource group {group.name} due "
                                "to being too new")
                continue
            if dry_run:
                self._log.info(f"would delete resource group {group.name}")
                continue
            self.delete_resource_group(group.name)


class Cluster(ClusterBase):
    # The Azure agent only knows about the dynamic address
    substitutions = {
        "$private_ipv4": "${COREOS_AZURE_IPV4_DYNAMIC}",
        "$public_ipv4": "${COREOS_AZURE_IPV4_DYNAMIC}",
    }
    _fake_key: Optional[str] = None

    def get_api(self) -> ProviderAPI:
        return API.from_settings(log=self._log)

    def _setup(self):
        api: API = self.api  # type: ignore
        group = api.create_resource_group(self.name)
        self.cleanups.push(f"deleting resource group {group}",
                           api.delete_resource_group, group)
        api.prepare_network()
        super()._setup()
        if self._ssh_key_name is None:
            # azure refuses VMs without a key; the real one is in user-data
            key = paramiko.rsakey.RSAKey.generate(2048)
            self._fake_key = f"{key.get_name()} {key.get_base64()}"

    def _create_instance(self, name: str, rendered: Conf) -> Instance:
        return self.api.create_instance(
            name, rendered.string(),
            ssh_key=self._ssh_key_name or self._fake_key)
