# Copyright (c) 2020 SUSE LINUX GmbH
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

# Local machines through libvirt. Every cluster gets its own NAT network
# carved out of QEMU.NETWORK_RANGE, machines boot from a qcow2 overlay of
# the configured image and get their user-data either through fw_cfg
# (Ignition) or a cloud-init seed ISO.

import datetime
import logging
import os
import shutil
import tempfile
import textwrap
import threading
from typing import Any, Dict, List, Optional, Tuple
import uuid
from xml.dom import minidom

import libvirt
import netaddr
import wget

from kola.config import converter, settings
from kola.lib.common import execute, named_lock, wait_until_ready
from kola.lib.conf import Conf
from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.omaha import OmahaServer
from kola.lib.platform.api_base import (CREATED_BY_TAG, CREATED_BY_VALUE,
                                        Instance, ProviderAPI, older_than)
from kola.lib.platform.cluster_base import ClusterBase


logger = logging.getLogger(__name__)

# this lock needs to resolve race condition issue while defining a node
libvirt_define_node_lock = threading.Lock()

IP_TIMEOUT = 120
IP_INTERVAL = 3

IGNITION_FW_CFG = "opt/com.coreos/config"


def _description(created: datetime.datetime) -> str:
    return f"{CREATED_BY_TAG}={CREATED_BY_VALUE} created={created.isoformat()}"


def _parse_description(description: str) -> Optional[datetime.datetime]:
    """Return the creation time of a domain kola created, None otherwise"""
    fields = dict(f.split('=', 1) for f in description.split() if '=' in f)
    if fields.get(CREATED_BY_TAG) != CREATED_BY_VALUE or \
            'created' not in fields:
        return None
    return datetime.datetime.fromisoformat(fields['created'])


def get_image_path(image: str, download_dir: str) -> str:
    if not (image.startswith("http://") or image.startswith("https://")):
        return image
    download_location = os.path.join(download_dir, os.path.basename(image))
    # clusters of the same run share the download
    with named_lock(download_location):
        if not os.path.exists(download_location):
            logger.info(f"Downloading image from {image}")
            wget.download(image, download_location, bar=None)
    return download_location


class API(ProviderAPI):
    def __init__(self, image: str, working_dir: str,
                 download_dir: Optional[str] = None, memory: int = 2048,
                 disk_size: str = "10G",
                 enable_kvm: bool = True,
                 connection: str = "qemu:///system",
                 conn: Optional[libvirt.virConnect] = None,
                 log: Optional[logging.Logger] = None):
        super().__init__(log)
        self._image = image
        self._download_dir = download_dir or working_dir
        self._working_dir = working_dir
        self._memory = memory * 1024
        self._disk_size = disk_size
        self._enable_kvm = enable_kvm
        self._conn = conn or self.get_connection(connection)
        self._network = None
        self.gateway: Optional[str] = None
        self._domains: Dict[str, Any] = {}
        self._files: Dict[str, List[str]] = {}

    @classmethod
    def from_settings(cls, working_dir: str, download_dir: str,
                      log: Optional[logging.Logger] = None) -> 'API':
        return cls(settings.QEMU.IMAGE, working_dir,
                   download_dir=download_dir,
                   memory=int(settings.QEMU.VM_MEMORY),
                   disk_size=settings.QEMU.DISK_SIZE,
                   enable_kvm=converter('@bool', settings.QEMU.ENABLE_KVM),
                   connection=settings.QEMU.CONNECTION, log=log)

    @staticmethod
    def get_connection(uri: str) -> libvirt.virConnect:
        conn = libvirt.open(uri)
        if not conn:
            raise KolaError(f"Can not open libvirt connection {uri}")
        logger.debug(f"Got connection to libvirt: {conn}")
        return conn

    def create_network(self, name: str, network_range: str,
                       network_subnet: int) -> str:
        """Create a NAT network in the first free subnet of the range

        Returns the gateway address, which is where the host is reachable
        from the machines.
        """
        subnets = netaddr.IPNetwork(network_range).subnet(network_subnet)
        for network in subnets:
            host_ip = str(netaddr.IPAddress(network.first + 1))
            xml = textwrap.dedent("""
                <network>
                <name>%(network_name)s</name>
                <forward mode="nat"/>
                <ip address="%(host_ip)s" netmask="%(netmask)s">
                    <dhcp>
                        <range start="%(dhcp_start)s" end="%(dhcp_end)s" />
                    </dhcp>
                </ip>
                </network>
            """ % {
                "network_name": name,
                "host_ip": host_ip,
                "netmask": str(network.netmask),
                "dhcp_start": str(netaddr.IPAddress(network.first + 2)),
                "dhcp_end": str(netaddr.IPAddress(network.last - 1)),
            })
            try:
                net = self._conn.networkCreateXML(xml)
            except libvirt.libvirtError as e:
                if "Network is already in use" in e.get_error_message():
                    self._log.debug(f"Network {network} is already in use."
                                    f" Trying next subnet..")
                    continue
                raise
            self._log.info(f"created network {network} as {net.name()}")
            self._network = net
            self.gateway = host_ip
            return host_ip
        raise KolaError(f"no free subnet left in {network_range}")

    def destroy_network(self):
        if self._network is None:
            return
        name = self._network.name()
        self._network.destroy()
        self._network = None
        self._log.info(f"network {name} destroyed")

    def _path(self, name: str, suffix: str) -> str:
        path = os.path.join(self._working_dir, f"{name}-{suffix}")
        self._files.setdefault(name, []).append(path)
        return path

    def _create_overlay(self, name: str) -> str:
        path = self._path(name, "overlay.qcow2")
        backing_file = os.path.realpath(
            get_image_path(self._image, self._download_dir))
        execute(f"qemu-img create -f qcow2 -F qcow2 -o "
                f"backing_file={backing_file},lazy_refcounts=on "
                f"{path} {self._disk_size}")
        self._log.info(f"node {name}: created qcow2 overlay {path}")
        return path

    def _create_ignition_file(self, name: str, userdata: str) -> str:
        path = self._path(name, "config.ign")
        with open(path, 'w') as f:
            f.write(userdata)
        return path

    def _create_cloud_init_seed(self, name: str, userdata: str) -> str:
        meta_data = textwrap.dedent("""
            ---
            instance-id: {}
            local-hostname: {}
        """)

        iso_cmd = shutil.which('mkisofs')
        if not iso_cmd:
            raise KolaError('mkisofs command not found')

        path = self._path(name, "cloud-init-seed.img")
        with tempfile.TemporaryDirectory() as tempdir:
            with open(os.path.join(tempdir, 'user-data'), 'w') as ud:
                ud.write(userdata)
            with open(os.path.join(tempdir, 'meta-data'), 'w') as md:
                md.write(meta_data.format(uuid.uuid4(), name))
            args = [iso_cmd,
                    '-output', path,
                    '-volid', 'cidata',
                    '-joliet', '-rock',
                    tempdir]
            execute(" ".join(args), log_stdout=False, log_stderr=False)
        return path

    def console_path(self, name: str) -> str:
        return os.path.join(self._working_dir, f"{name}-console.txt")

    def domain_xml(self, name: str, image: str,
                   ignition: Optional[str] = None,
                   seed: Optional[str] = None) -> str:
        seed_disk = ""
        if seed:
            seed_disk = textwrap.dedent("""
                    <disk type='file' device='cdrom'>
                        <driver name='qemu' type='raw' />
                        <source file='%s'/>
                        <target dev='sda' bus='sata'/>
                        <readonly/>
                    </disk>""" % seed)
        fw_cfg = ""
        if ignition:
            fw_cfg = textwrap.dedent("""
                <qemu:commandline>
                    <qemu:arg value='-fw_cfg'/>
                    <qemu:arg value='name=%s,file=%s'/>
                </qemu:commandline>""" % (IGNITION_FW_CFG, ignition))
        return textwrap.dedent("""
            <domain type='%(domain_type)s'
                    xmlns:qemu='http://libvirt.org/schemas/domain/qemu/1.0'>
                <name>%(domain_name)s</name>
                <description>%(description)s</description>
                <memory unit='KiB'>%(memory)s</memory>
                <currentMemory unit='KiB'>%(memory)s</currentMemory>
                <vcpu placement='static'>2</vcpu>
                <os>
                    <type arch='x86_64'>hvm</type>
                    <boot dev='hd'/>
                </os>
                <features>
                    <acpi/>
                </features>
                <on_poweroff>destroy</on_poweroff>
                <on_reboot>restart</on_reboot>
                <on_crash>restart</on_crash>
                <devices>
                    <disk type='file' device='disk'>
                        <driver name='qemu' type='qcow2' cache='writeback'/>
                        <source file='%(image)s'/>
                        <target dev='vda' bus='virtio'/>
                        <serial>primary-disk</serial>
                    </disk>%(seed_disk)s
                    <interface type='network'>
                        <source network='%(network_name)s'/>
                        <model type='virtio'/>
                    </interface>
                    <serial type='file'>
                        <source path='%(console)s'/>
                        <target port='0'/>
                    </serial>
                    <console type='file'>
                        <source path='%(console)s'/>
                        <target type='serial' port='0'/>
                    </console>
                    <rng model='virtio'>
                        <backend model='random'>/dev/urandom</backend>
                    </rng>
                </devices>%(fw_cfg)s
            </domain>
        """ % {
            "domain_type": "kvm" if self._enable_kvm else "qemu",
            "domain_name": name,
            "description": _description(
                datetime.datetime.now(datetime.timezone.utc)),
            "memory": self._memory,
            "image": image,
            "seed_disk": seed_disk,
            "network_name": self._network.name(),
            "console": self.console_path(name),
            "fw_cfg": fw_cfg,
        })

    def create_instance(self, name: str, userdata: str,
                        ssh_key: Optional[str] = None,
                        ignition: bool = False) -> Instance:
        if self._network is None:
            raise KolaError("no network, create one first")

        step = "creating overlay"
        try:
            image = self._create_overlay(name)
            ignition_path = seed_path = None
            if ignition:
                step = "writing ignition config"
                ignition_path = self._create_ignition_file(name, userdata)
            elif userdata:
                step = "creating cloud-init seed"
                seed_path = self._create_cloud_init_seed(name, userdata)
            xml = self.domain_xml(name, image, ignition=ignition_path,
                                  seed=seed_path)
            self._log.debug(f"node {name}: libvirt xml: {xml}")
            step = "defining domain"
            with libvirt_define_node_lock:
                dom = self._conn.defineXML(xml)
            self._domains[name] = dom
            step = "starting domain"
            dom.create()
        except Exception as e:
            self._remove_files(name)
            if name in self._domains:
                self._undefine(name)
            raise ProvisioningError(step, e) from e
        self._log.info(f"node {name}: booting with image {image}")

        try:
            ip = self._wait_for_ip(name)
        except Exception as e:
            try:
                self.terminate_instance(name)
            except libvirt.libvirtError as delete_error:
                self._log.error(f"could not destroy {name} after a failed "
                                f"start: {delete_error}")
            raise ProvisioningError("waiting for dhcp lease", e) from e
        return Instance(name, None, ip, handle=dom)

    def _macs(self, dom) -> List[str]:
        xmldoc = minidom.parseString(dom.XMLDesc())
        return [mac.attributes["address"].value.lower()
                for mac in xmldoc.getElementsByTagName('mac')]

    def _lease(self, name: str) -> Optional[str]:
        macs = self._macs(self._domains[name])
        for lease in self._network.DHCPLeases():
            if lease['mac'].lower() in macs:
                return lease['ipaddr']
        return None

    def _wait_for_ip(self, name: str) -> str:
        """get the ip address of the guest domain from the DHCP leases"""
        self._log.info(f"node {name}: wait {IP_TIMEOUT}s to get IP address")
        wait_until_ready(IP_TIMEOUT, IP_INTERVAL,
                         lambda: self._lease(name) is not None,
                         description=f"waiting for an address of {name}")
        ip = self._lease(name)
        self._log.info(f"node {name}: found IP {ip}")
        return ip  # type: ignore

    def _undefine(self, name: str):
        dom = self._domains.pop(name)
        if dom.isActive():
            dom.destroy()
        dom.undefine()

    def _remove_files(self, name: str):
        for path in self._files.pop(name, []):
            if os.path.exists(path):
                os.remove(path)

    def terminate_instance(self, instance_id: str):
        if instance_id in self._domains:
            self._undefine(instance_id)
        self._remove_files(instance_id)
        self._log.info(f"node {instance_id} destroyed")

    def get_addresses(self, instance: Instance) -> Tuple[Optional[str],
                                                         Optional[str]]:
        # the lease survives a reboot, but ask again anyway
        return None, self._lease(instance.id) or instance.private_ip

    def get_console_output(self, instance_id: str) -> str:
        path = self.console_path(instance_id)
        if not os.path.exists(path):
            return ""
        with open(path, 'r', errors='replace') as f:
            return f.read()

    def gc(self, grace_period: datetime.timedelta, dry_run: bool = False):
        for dom in self._conn.listAllDomains():
            xmldoc = minidom.parseString(dom.XMLDesc())
            descriptions = xmldoc.getElementsByTagName('description')
            if not descriptions or not descriptions[0].firstChild:
                continue
            created = _parse_description(
                descriptions[0].firstChild.nodeValue)
            if created is None:
                continue
            if not older_than(created, grace_period):
                self._log.debug(f"skipping domain {dom.name()} due to being "
                                "too new")
                continue
            if dry_run:
                self._log.info(f"would destroy domain {dom.name()}")
                continue
            if dom.isActive():
                dom.destroy()
            dom.undefine()
            self._log.info(f"domain {dom.name()} destroyed")


class Cluster(ClusterBase):
    """
    A libvirt cluster with its own network and an Omaha update server
    listening on the network's gateway
    """
    # There is no public address, both resolve to the lease
    substitutions = {
        "$public_ipv4": "${COREOS_QEMU_IPV4_PRIVATE}",
        "$private_ipv4": "${COREOS_QEMU_IPV4_PRIVATE}",
    }
    omaha_server: Optional[OmahaServer] = None

    def get_api(self) -> ProviderAPI:
        return API.from_settings(self.rconf.output_dir,
                                 self.workspace.working_dir, log=self._log)

    def _setup(self):
        api: API = self.api  # type: ignore
        gateway = api.create_network(
            self.name, settings.QEMU.NETWORK_RANGE,
            int(settings.QEMU.NETWORK_SUBNET))
        self.cleanups.push(f"destroying network {self.name}",
                           api.destroy_network)
        self.omaha_server = OmahaServer(gateway, 0, log=self._log)
        self.omaha_server.start()
        self.cleanups.push("stopping omaha server",
                           self.omaha_server.shutdown)
        super()._setup()

    def _create_instance(self, name: str, rendered: Conf) -> Instance:
        api: API = self.api  # type: ignore
        return api.create_instance(name, rendered.string(),
                                   ignition=rendered.is_ignition())
