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

# The kernel NFS server and client: one machine exports /tmp, a second one
# mounts it through a mount unit and must see a file created on the server.

import logging
import posixpath
from typing import Any, Dict
import urllib.parse

from kola.lib import conf
from kola.lib.common import retry
from kola.lib.exceptions import KolaError, SSHCommandError
from kola.lib.harness.cluster import TestCluster
from kola.lib.harness.register import Test, register


logger = logging.getLogger(__name__)

EXPORTS = "/tmp  *(ro,insecure,all_squash,no_subtree_check,fsid=0)"

MOUNT_ATTEMPTS = 10
MOUNT_DELAY = 3

START_SERVICES_UNIT = """[Unit]
After=rpc-statd.service
Requires=rpc-statd.service
After=rpc-mountd.service
Requires=rpc-mountd.service
After=nfsd.service
Requires=nfsd.service

[Service]
ExecStart=/usr/bin/echo start

[Install]
WantedBy=multi-user.target"""

MOUNT_UNIT = """[Unit]
Description=NFS Client
After=network-online.target
Requires=network-online.target
After=rpc-statd.service
Requires=rpc-statd.service

[Mount]
What=%(server)s:/tmp
Where=/mnt
Type=nfs
Options=defaults,noexec,nfsvers=%(version)d

[Install]
WantedBy=multi-user.target"""


def _data_url(data: str) -> str:
    return "data:," + urllib.parse.quote(data, safe="")


def _hostname(name: str) -> Dict[str, Any]:
    return {
        "filesystem": "root",
        "path": "/etc/hostname",
        "contents": {"source": _data_url(name)},
        "mode": 511,
    }


def server_config() -> conf.UserData:
    return conf.ignition({
        "ignition": {"version": "2.1.0"},
        "storage": {
            "files": [{
                "filesystem": "root",
                "path": "/etc/exports",
                "contents": {"source": _data_url(EXPORTS)},
                "user": {"name": "core"},
                "group": {"name": "core"},
            }, _hostname("nfs1")],
        },
        "systemd": {
            "units": [
                {"name": "rpc-statd.service", "enabled": True},
                {"name": "rpc-mountd.service", "enabled": True},
                {"name": "nfsd.service", "enabled": True},
                {"name": "start-the-services.service", "enabled": True,
                 "contents": START_SERVICES_UNIT},
            ],
        },
    })


def client_config(server_ip: str, nfs_version: int) -> conf.UserData:
    return conf.ignition({
        "ignition": {"version": "2.1.0"},
        "storage": {"files": [_hostname("nfs2")]},
        "systemd": {
            "units": [{
                "name": "mnt.mount",
                "enabled": True,
                "contents": MOUNT_UNIT % {"server": server_ip,
                                          "version": nfs_version},
            }],
        },
    })


def check_nfs(c: TestCluster, nfs_version: int):
    try:
        server = c.new_machine(server_config())
    except KolaError as e:
        c.fatalf("Cluster.new_machine: %s", e)
    c.log("NFS server booted.")

    # poke a file in /tmp
    try:
        tmp = c.ssh(server, "mktemp").decode()
    except SSHCommandError as e:
        c.fatalf("Machine.ssh: %s", e)
    c.logf("Test file %r created on server.", tmp)

    try:
        client = c.new_machine(client_config(server.private_ip, nfs_version))
    except KolaError as e:
        c.fatalf("Cluster.new_machine: %s", e)
    c.log("NFS client booted.")

    def check_mount():
        try:
            status = c.ssh(client, "systemctl is-active mnt.mount").decode()
        except SSHCommandError as e:
            status = e.stdout.decode().strip()
        if status != "active":
            raise KolaError(f"mnt.mount status is {status!r}")
        c.log("Got NFS mount.")

    try:
        retry(MOUNT_ATTEMPTS, MOUNT_DELAY, check_mount)
    except KolaError as e:
        c.fatal(str(e))

    try:
        c.ssh(client, f"stat /mnt/{posixpath.basename(tmp)}")
    except SSHCommandError:
        c.fatalf("file %r does not exist", tmp)


def nfs_v3(c: TestCluster):
    """Test that the kernel NFS server and client work"""
    check_nfs(c, 3)


def nfs_v4(c: TestCluster):
    """Test that NFSv4 without security works"""
    check_nfs(c, 4)


register(Test("linux.nfs.v3", nfs_v3, cluster_size=0))
register(Test("linux.nfs.v4", nfs_v4, cluster_size=0))
