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

import base64
import datetime
import logging
from typing import Any, Dict, Optional, Tuple

import oci
from oci.core.models import (CaptureConsoleHistoryDetails,
                             CreateInternetGatewayDetails, CreateSubnetDetails,
                             CreateVcnDetails, CreateVnicDetails,
                             InstanceSourceViaImageDetails,
                             LaunchInstanceDetails, RouteRule,
                             UpdateRouteTableDetails)
from oci.exceptions import ServiceError

from kola.config import settings
from kola.lib.common import wait_until_ready
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform.api_base import (CREATED_BY_TAG, CREATED_BY_VALUE,
                                        Instance, ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase


logger = logging.getLogger(__name__)

RUNNING_TIMEOUT = 600
RUNNING_INTERVAL = 10
CONSOLE_TIMEOUT = 120
CONSOLE_INTERVAL = 5
# console history content is capped at 1MB by the service
CONSOLE_LENGTH = 1024 * 1024


class API(ProviderAPI):
    def __init__(self, compartment_id: str, availability_domain: str,
                 shape: str, image_id: str, subnet_id: str = "",
                 config: Optional[Dict[str, Any]] = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._compartment_id = compartment_id
        self._availability_domain = availability_domain
        self._shape = shape
        self._image_id = image_id
        self.subnet_id = subnet_id
        config = config or oci.config.from_file()
        self._compute = oci.core.ComputeClient(config)
        self._network = oci.core.VirtualNetworkClient(config)

    @classmethod
    def from_settings(cls, log: Optional[logging.Logger] = None) -> 'API':
        config = oci.config.from_file(
            profile_name=settings.OCI.PROFILE or "DEFAULT")
        return cls(settings.OCI.COMPARTMENT_ID,
                   settings.OCI.AVAILABILITY_DOMAIN, settings.OCI.SHAPE,
                   settings.OCI.IMAGE_ID, subnet_id=settings.OCI.SUBNET_ID,
                   config=config, log=log)

    def _freeform_tags(self) -> Dict[str, str]:
        return {CREATED_BY_TAG: CREATED_BY_VALUE}

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        # keys go into the instance metadata
        return public_key

    def launch_details(self, name: str, userdata: str,
                       ssh_key: Optional[str] = None) -> LaunchInstanceDetails:
        metadata = {}
        if ssh_key:
            metadata["ssh_authorized_keys"] = ssh_key
        if userdata:
            metadata["user_data"] = base64.b64encode(
                userdata.encode()).decode()
        return LaunchInstanceDetails(
            availability_domain=self._availability_domain,
            compartment_id=self._compartment_id,
            display_name=name,
            shape=self._shape,
            source_details=InstanceSourceViaImageDetails(
                image_id=self._image_id),
            create_vnic_details=CreateVnicDetails(
                subnet_id=self.subnet_id, assign_public_ip=True),
            metadata=metadata,
            freeform_tags=self._freeform_tags(),
        )

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        if not self.subnet_id:
            raise KolaError("no subnet, configure OCI.SUBNET_ID or create "
                            "a network first")
        try:
            instance = self._compute.launch_instance(
                self.launch_details(name, userdata, ssh_key)).data
        except ServiceError as e:
            raise ProvisioningError("launching instance", e) from e
        instance_id = instance.id
        self._log.info(f"instance {name} ({instance_id}) launched")

        def running():
            state = self._compute.get_instance(instance_id).data \
                .lifecycle_state
            if state in ("TERMINATING", "TERMINATED"):
                raise KolaError(f"instance {instance_id} is {state}")
            return state == "RUNNING"

        result = Instance(instance_id)
        try:
            wait_until_ready(RUNNING_TIMEOUT, RUNNING_INTERVAL, running,
                             description=f"waiting for {instance_id} to run")
            result.public_ip, result.private_ip = self.get_addresses(result)
        except Exception as e:
            try:
                self.terminate_instance(instance_id)
            except ServiceError as delete_error:
                self._log.error(f"could not terminate {instance_id} after "
                                f"a failed start: {delete_error}")
            raise ProvisioningError("waiting for instance to run", e) from e
        return result

    def terminate_instance(self, instance_id: str):
        self._compute.terminate_instance(instance_id)
        self._log.info(f"instance {instance_id} terminated")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        attachments = self._compute.list_vnic_attachments(
            self._compartment_id, instance_id=instance.id).data
        for attachment in attachments:
            if attachment.lifecycle_state != "ATTACHED":
                continue
            vnic = self._network.get_vnic(attachment.vnic_id).data
            return vnic.public_ip, vnic.private_ip
        raise KolaError(f"no attached vnic found for {instance.id}")

    def get_console_output(self, instance_id: str) -> str:
        history = self._compute.capture_console_history(
            CaptureConsoleHistoryDetails(instance_id=instance_id)).data

        def captured():
            state = self._compute.get_console_history(history.id).data \
                .lifecycle_state
            if state == "FAILED":
                raise KolaError(f"capturing console of {instance_id} failed")
            return state == "SUCCEEDED"

        try:
            wait_until_ready(CONSOLE_TIMEOUT, CONSOLE_INTERVAL, captured,
                             description=f"capturing console of "
                             f"{instance_id}")
            return self._compute.get_console_history_content(
                history.id, length=CONSOLE_LENGTH).data or ""
        finally:
            self._compute.delete_console_history(history.id)

    def create_network(self, name: str, ids: Dict[str, str]):
        """Create a VCN with a public subnet

        The ids are recorded in `ids` as soon as each resource exists, so
        delete_network can undo a partial creation.
        """
        vcn = self._network.create_vcn(CreateVcnDetails(
            cidr_block="10.0.0.0/16", compartment_id=self._compartment_id,
            display_name=name, freeform_tags=self._freeform_tags())).data
        ids["vcn"] = vcn.id
        oci.wait_until(self._network, self._network.get_vcn(vcn.id),
                       'lifecycle_state', 'AVAILABLE')
        gateway = self._network.create_internet_gateway(
            CreateInternetGatewayDetails(
                compartment_id=self._compartment_id, vcn_id=vcn.id,
                is_enabled=True, display_name=f"{name}-gateway",
                freeform_tags=self._freeform_tags())).data
        ids["gateway"] = gateway.id
        ids["route_table"] = vcn.default_route_table_id
        self._network.update_route_table(
            vcn.default_route_table_id, UpdateRouteTableDetails(
                route_rules=[RouteRule(
                    destination="0.0.0.0/0",
                    destination_type="CIDR_BLOCK",
                    network_entity_id=gateway.id)]))
        subnet = self._network.create_subnet(CreateSubnetDetails(
            cidr_block="10.0.0.0/24", compartment_id=self._compartment_id,
            vcn_id=vcn.id, display_name=f"{name}-subnet",
            freeform_tags=self._freeform_tags())).data
        oci.wait_until(self._network, self._network.get_subnet(subnet.id),
                       'lifecycle_state', 'AVAILABLE')
        ids["subnet"] = subnet.id
        self.subnet_id = subnet.id
        self._log.info(f"network {name} ({vcn.id}) created with subnet "
                       f"{subnet.id}")

    def delete_network(self, ids: Dict[str, str]):
        """Undo create_network; the route rules go first so the gateway
        is no longer referenced"""
        if "subnet" in ids:
            self._network.delete_subnet(ids["subnet"])
            oci.wait_until(self._network,
                           self._network.get_subnet(ids["subnet"]),
                           'lifecycle_state', 'TERMINATED',
                           succeed_on_not_found=True)
        if "route_table" in ids:
            self._network.update_route_table(
                ids["route_table"], UpdateRouteTableDetails(route_rules=[]))
        if "gateway" in ids:
            self._network.delete_internet_gateway(ids["gateway"])
        if "vcn" in ids:
            self._network.delete_vcn(ids["vcn"])
            self._log.info(f"network {ids['vcn']} deleted")

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        instances = oci.pagination.list_call_get_all_results(
            self._compute.list_instances, self._compartment_id).data
        for instance in instances:
            tags = instance.freeform_tags or {}
            if tags.get(CREATED_BY_TAG) != CREATED_BY_VALUE:
                continue
            if instance.lifecycle_state in ("TERMINATING", "TERMINATED"):
                continue
            if not older_than(instance.time_created, grace_period):
                self._log.debug(f"skipping instance {instance.id} due to "
                                "being too new")
                continue
            if dry_run:
                self._log.info(f"would terminate {instance.display_name} "
                               f"({instance.id})")
                continue
            self.terminate_instance(instance.id)


class Cluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_OCI_IPV4_PUBLIC_0}",
        "$private_ipv4": "${COREOS_OCI_IPV4_PRIVATE_0}",
    }

    def get_api(self) -> ProviderAPI:
        return API.from_settings(log=self._log)

    def _setup(self):
        api: API = self.api  # type: ignore
        if not api.subnet_id:
            ids: Dict[str, str] = {}
            self.cleanups.push(f"deleting network {self.name}",
                               api.delete_network, ids)
            api.create_network(self.name, ids)
        super()._setup()
