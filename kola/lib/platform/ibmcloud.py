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

import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

from ibm_cloud_sdk_core import ApiException
from ibm_cloud_sdk_core.authenticators import IAMAuthenticator
from ibm_vpc import VpcV1

from kola.config import settings
from kola.lib.common import Step, wait_until_ready
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform.api_base import Instance, ProviderAPI, older_than
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)

RUNNING_TIMEOUT = 600
RUNNING_INTERVAL = 10


class API(ProviderAPI):
    """
    VPC instances with a floating IP each

    Tags live in a separate service, so everything kola creates is found
    again by its name prefix.
    """
    def __init__(self, vpc_id: str, subnet_id: str, zone: str,
                 image_id: str, profile: str, name_prefix: str,
                 service: Optional[VpcV1] = None, api_key: str = "",
                 region: str = "", log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._vpc_id = vpc_id
        self._subnet_id = subnet_id
        self._zone = zone
        self._image_id = image_id
        self._profile = profile
        self._name_prefix = name_prefix
        if service is None:
            service = VpcV1(authenticator=IAMAuthenticator(api_key))
            service.set_service_url(
                f"https://{region}.iaas.cloud.ibm.com/v1")
        self._service = service
        self._keys: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, log: Optional[logging.Logger] = None) -> 'API':
        return cls(settings.IBMCLOUD.VPC_ID, settings.IBMCLOUD.SUBNET_ID,
                   settings.IBMCLOUD.ZONE, settings.IBMCLOUD.IMAGE_ID,
                   settings.IBMCLOUD.PROFILE, settings.CLUSTER_PREFIX,
                   api_key=settings.IBMCLOUD.API_KEY,
                   region=settings.IBMCLOUD.REGION, log=log)

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        key = self._service.create_key(
            public_key=public_key, name=name, type='rsa').get_result()
        self._keys[name] = key['id']
        self._log.info(f"key {name} ({key['id']}) created")
        return key['id']

    def delete_key(self, name: str):
        key_id = self._keys.pop(name, None)
        if key_id is not None:
            self._service.delete_key(key_id)
            self._log.info(f"key {name} ({key_id}) deleted")

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        prototype: Dict[str, Any] = {
            "name": name,
            "profile": {"name": self._profile},
            "vpc": {"id": self._vpc_id},
            "zone": {"name": self._zone},
            "image": {"id": self._image_id},
            "primary_network_interface": {"subnet": {"id": self._subnet_id}},
        }
        if ssh_key:
            prototype["keys"] = [{"id": ssh_key}]
        if userdata:
            prototype["user_data"] = userdata

        try:
            instance = self._service.create_instance(prototype).get_result()
        except ApiException as e:
            raise ProvisioningError("creating instance", e) from e
        instance_id = instance['id']
        self._log.info(f"instance {name} ({instance_id}) created")

        def running():
            nonlocal instance
            instance = self._service.get_instance(instance_id).get_result()
            if instance['status'] == 'failed':
                raise KolaError(f"instance {instance_id} failed to start")
            return instance['status'] == 'running'

        try:
            wait_until_ready(RUNNING_TIMEOUT, RUNNING_INTERVAL, running,
                             description=f"waiting for {instance_id} to run")
        except Exception as e:
            self._delete_after_failure(instance_id)
            raise ProvisioningError("waiting for instance to run", e) from e

        nic = instance['primary_network_interface']
        try:
            floating_ip = self._service.create_floating_ip({
                "name": f"{name}-ip",
                "target": {"id": nic['id']},
            }).get_result()
        except ApiException as e:
            self._delete_after_failure(instance_id)
            raise ProvisioningError("creating floating ip", e) from e

        return Instance(instance_id, floating_ip['address'],
                        nic['primary_ip']['address'],
                        handle=floating_ip['id'])

    def _delete_after_failure(self, instance_id: str):
        try:
            self.terminate_instance(instance_id)
        except ApiException as e:
            self._log.error(f"could not delete {instance_id} after a failed "
                            f"start: {e}")

    def delete_floating_ip(self, floating_ip_id: str):
        self._service.delete_floating_ip(floating_ip_id)
        self._log.info(f"floating ip {floating_ip_id} deleted")

    def terminate_instance(self, instance_id: str):
        self._service.delete_instance(instance_id)
        self._log.info(f"instance {instance_id} deleted")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        nic = self._service.get_instance(instance.id).get_result()[
            'primary_network_interface']
        return instance.public_ip, nic['primary_ip']['address']

    def get_console_output(self, instance_id: str) -> str:
        # the serial console is a websocket session only, nothing to fetch
        return ""

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        instances = self._service.list_instances(
            vpc_id=self._vpc_id).get_result()['instances']
        for instance in instances:
            if not instance['name'].startswith(self._name_prefix):
                continue
            created = datetime.datetime.fromisoformat(
                instance['created_at'].replace('Z', '+00:00'))
            if not older_than(created, grace_period):
                self._log.debug(f"skipping instance {instance['id']} due "
                                "to being too new")
                continue
            if dry_run:
                self._log.info(f"would delete instance {instance['name']} "
                               f"({instance['id']})")
                continue
            self.terminate_instance(instance['id'])

        floating_ips = self._service.list_floating_ips().get_result()[
            'floating_ips']
        for floating_ip in floating_ips:
            # an unbound floating ip is what a deleted instance leaves behind
            if not floating_ip['name'].startswith(self._name_prefix) or \
                    floating_ip.get('target'):
                continue
            if dry_run:
                self._log.info("would delete floating ip "
                               f"{floating_ip['address']}")
                continue
            self.delete_floating_ip(floating_ip['id'])


class Machine(MachineBase):
    def _terminate_steps(self) -> List[Step]:
        steps: List[Step] = []
        if self.instance.handle:
            steps.append((f"deleting floating ip of {self.id}",
                          self.cluster.api.delete_floating_ip,
                          (self.instance.handle,)))
        steps.extend(super()._terminate_steps())
        return steps


class Cluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_IBMCLOUD_IPV4_PUBLIC_0}",
        "$private_ipv4": "${COREOS_IBMCLOUD_IPV4_PRIVATE_0}",
    }
    machine_class = Machine

    def get_api(self) -> ProviderAPI:
        return API.from_settings(log=self._log)
