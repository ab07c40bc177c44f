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
import functools
import logging
from typing import Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from kola.config import settings
from kola.lib.common import CleanupStack, named_lock, wait_until_ready
from kola.lib.exceptions import MultiError, ProvisioningError
from kola.lib.platform.api_base import (CREATED_BY_TAG, CREATED_BY_VALUE,
                                        Instance, ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase


logger = logging.getLogger(__name__)

# 10 minutes is a reasonable time for an instance to come up; polling faster
# than every 10 seconds runs into the API rate limit.
RUNNING_TIMEOUT = 600
RUNNING_INTERVAL = 10

VPC_CIDR = "172.31.0.0/16"
# a /20 per availability zone fits 16 zones into the /16
MAX_SUBNETS = 16


class API(ProviderAPI):
    def __init__(self, ami: str, instance_type: str, security_group: str,
                 iam_instance_profile: str = "",
                 session: Optional[boto3.session.Session] = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._ami = ami
        self._instance_type = instance_type
        self._security_group = security_group
        self._iam_instance_profile = iam_instance_profile
        self._session = session or boto3.session.Session()
        self._ec2 = self._session.resource('ec2')

    @classmethod
    def from_settings(cls, log: Optional[logging.Logger] = None) -> 'API':
        session = boto3.session.Session(
            region_name=settings.AWS.REGION or None)
        return cls(settings.AWS.AMI_IMAGE_ID, settings.AWS.NODE_SIZE,
                   settings.AWS.SECURITY_GROUP,
                   settings.AWS.IAM_INSTANCE_PROFILE,
                   session=session, log=log)

    def _tag_created_by(self, resource):
        resource.create_tags(
            Tags=[{"Key": CREATED_BY_TAG, "Value": CREATED_BY_VALUE}])

    def add_key(self, name: str, public_key: str) -> Optional[str]:
        keypair = self._ec2.import_key_pair(
            KeyName=name, PublicKeyMaterial=public_key.encode())
        self._log.info(f"Created keypair {keypair.name}")
        return keypair.name

    def delete_key(self, name: str):
        self._ec2.KeyPair(name).delete()
        self._log.info(f"Deleted keypair {name}")

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None) -> Instance:
        step = "verifying IAM instance profile"
        try:
            self._ensure_instance_profile()
            step = "resolving security group"
            sg_id = self._get_security_group_id(self._security_group)
            step = "resolving vpc"
            vpc_id = self._ec2.SecurityGroup(sg_id).vpc_id
            step = "resolving subnet"
            subnet_id = self._get_subnet_id(vpc_id)

            kwargs = dict(
                ImageId=self._ami,
                InstanceType=self._instance_type,
                MinCount=1,
                MaxCount=1,
                SecurityGroupIds=[sg_id],
                SubnetId=subnet_id,
                TagSpecifications=[{
                    'ResourceType': 'instance',
                    'Tags': [
                        {"Key": "Name", "Value": name},
                        {"Key": CREATED_BY_TAG, "Value": CREATED_BY_VALUE},
                    ],
                }],
            )
            # boto3 does the base64 encoding of UserData itself
            if userdata:
                kwargs['UserData'] = userdata
            if ssh_key:
                kwargs['KeyName'] = ssh_key
            if self._iam_instance_profile:
                kwargs['IamInstanceProfile'] = {
                    'Name': self._iam_instance_profile}

            step = "running instance"
            instance = self._ec2.create_instances(**kwargs)[0]
        except ClientError as e:
            raise ProvisioningError(step, e) from e
        self._log.info(f"Created instance {instance.id} ({name})")

        def running():
            instance.reload()
            return (instance.state['Name'] == 'running' and
                    instance.public_ip_address is not None)

        try:
            wait_until_ready(RUNNING_TIMEOUT, RUNNING_INTERVAL, running,
                             description=f"waiting for {instance.id} to run")
        except Exception as e:
            self._terminate_after_failure(instance.id)
            raise ProvisioningError("waiting for instance to run", e) from e

        return Instance(instance.id, instance.public_ip_address,
                        instance.private_ip_address, handle=instance)

    def _terminate_after_failure(self, instance_id: str):
        try:
            self.terminate_instance(instance_id)
        except ClientError as e:
            self._log.error(f"could not terminate {instance_id} after a "
                            f"failed start, manual deletion may be required:"
                            f" {e}")

    def terminate_instance(self, instance_id: str):
        self._ec2.Instance(instance_id).terminate()
        self._log.info(f"Terminated instance {instance_id}")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        handle = instance.handle or self._ec2.Instance(instance.id)
        handle.reload()
        return handle.public_ip_address, handle.private_ip_address

    def get_console_output(self, instance_id: str) -> str:
        # botocore already decodes the base64 payload; Output is missing
        # until the instance wrote something
        res = self._ec2.Instance(instance_id).console_output()
        return res.get('Output') or ""

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        instances = self._ec2.instances.filter(Filters=[{
            'Name': f"tag:{CREATED_BY_TAG}",
            'Values': [CREATED_BY_VALUE],
        }])
        to_terminate = []
        for instance in instances:
            if not older_than(instance.launch_time, grace_period):
                self._log.debug(
                    f"ec2: skipping instance {instance.id} due to being "
                    "too new")
                continue
            state = instance.state['Name'] if instance.state else None
            if state in ('pending', 'running', 'stopped'):
                to_terminate.append(instance.id)
            elif state not in ('terminated', 'shutting-down'):
                self._log.info(f"ec2: skipping instance {instance.id} in "
                               f"state {state}")

        for instance_id in to_terminate:
            if dry_run:
                self._log.info(f"ec2: would terminate {instance_id}")
                continue
            self.terminate_instance(instance_id)

    def _ensure_instance_profile(self):
        if not self._iam_instance_profile:
            return
        iam = self._session.resource('iam')
        # raises if the profile does not exist
        iam.InstanceProfile(self._iam_instance_profile).load()

    def _get_security_group_id(self, name: str) -> str:
        with named_lock(f"aws-security-group-{name}"):
            # filter on group-name instead of GroupNames so groups outside
            # the default VPC are found too
            groups = list(self._ec2.security_groups.filter(
                Filters=[{'Name': 'group-name', 'Values': [name]}]))
            if groups:
                return groups[0].id
            return self._create_security_group(name)

    def _get_subnet_id(self, vpc_id: str) -> str:
        for subnet in self._ec2.Vpc(vpc_id).subnets.all():
            return subnet.id
        raise ProvisioningError(f"no subnets found for vpc {vpc_id}")

    def _create_vpc(self, cleanups: CleanupStack) -> str:
        vpc = self._ec2.create_vpc(CidrBlock=VPC_CIDR)
        cleanups.push(f"deleting VPC {vpc.id}", vpc.delete)
        self._tag_created_by(vpc)
        vpc.modify_attribute(EnableDnsHostnames={'Value': True})
        vpc.modify_attribute(EnableDnsSupport={'Value': True})
        self._log.info(f"Created VPC {vpc.id}")

        gateway = self._ec2.create_internet_gateway()
        cleanups.push(f"deleting internet gateway {gateway.id}",
                      gateway.delete)
        self._tag_created_by(gateway)
        vpc.attach_internet_gateway(InternetGatewayId=gateway.id)
        cleanups.push(f"detaching internet gateway {gateway.id}",
                      functools.partial(vpc.detach_internet_gateway,
                                        InternetGatewayId=gateway.id))

        routetable = vpc.create_route_table()
        cleanups.push(f"deleting routetable {routetable.id}",
                      routetable.delete)
        self._tag_created_by(routetable)
        routetable.create_route(
            DestinationCidrBlock='0.0.0.0/0', GatewayId=gateway.id)
        self._log.info(f"Created routetable {routetable.id} with gateway "
                       f"{gateway.id} (inside VPC {vpc.id})")

        self._create_subnets(vpc, routetable, cleanups)
        return vpc.id

    def _create_subnets(self, vpc, routetable, cleanups: CleanupStack):
        zones = self._ec2.meta.client.describe_availability_zones()
        for i, zone in enumerate(zones['AvailabilityZones']):
            if i >= MAX_SUBNETS:
                break
            if not zone.get('ZoneName'):
                continue
            try:
                subnet = vpc.create_subnet(
                    AvailabilityZone=zone['ZoneName'],
                    CidrBlock=f"172.31.{i * 16}.0/20")
            except ClientError as e:
                # some zones are listed but cannot hold subnets
                if e.response['Error']['Code'] == 'InvalidParameterValue':
                    continue
                raise
            cleanups.push(f"deleting subnet {subnet.id}", subnet.delete)
            self._tag_created_by(subnet)
            subnet.meta.client.modify_subnet_attribute(
                SubnetId=subnet.id, MapPublicIpOnLaunch={"Value": True})
            association = routetable.associate_with_subnet(
                SubnetId=subnet.id)
            cleanups.push(f"disassociating subnet {subnet.id}",
                          association.delete)
            self._log.info(f"Created subnet {subnet.id} in "
                           f"{zone['ZoneName']}")

    def _create_security_group(self, name: str) -> str:
        # everything created here is removed again if a later step fails
        cleanups = CleanupStack(self._log)
        try:
            vpc_id = self._create_vpc(cleanups)
            sg = self._ec2.create_security_group(
                GroupName=name,
                Description='kola security group for testing',
                VpcId=vpc_id)
            cleanups.push(f"deleting security group {sg.id}", sg.delete)
            self._log.info(f"Created security group {sg.id} ({name})")

            # ssh from anywhere, everything from inside the group
            inside = [{'GroupId': sg.id, 'VpcId': vpc_id}]
            permissions = [
                {'IpProtocol': 'tcp', 'FromPort': 22, 'ToPort': 22,
                 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]},
                {'IpProtocol': 'tcp', 'FromPort': 1, 'ToPort': 65535,
                 'UserIdGroupPairs': inside},
                {'IpProtocol': 'udp', 'FromPort': 1, 'ToPort': 65535,
                 'UserIdGroupPairs': inside},
                {'IpProtocol': 'icmp', 'FromPort': -1, 'ToPort': -1,
                 'UserIdGroupPairs': inside},
            ]
            sg.authorize_ingress(IpPermissions=permissions)
        except Exception as e:
            self._log.error(f"creating security group {name} failed, "
                            f"rolling back: {e}")
            try:
                cleanups.run()
            except MultiError as cleanup_error:
                raise ProvisioningError(
                    f"creating security group {name} (rollback incomplete, "
                    f"manual deletion may be required: {cleanup_error})",
                    e) from e
            raise ProvisioningError(
                f"creating security group {name}", e) from e
        return sg.id


class Cluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_EC2_IPV4_PUBLIC}",
        "$private_ipv4": "${COREOS_EC2_IPV4_LOCAL}",
    }

    def get_api(self) -> ProviderAPI:
        return API.from_settings(log=self._log)
