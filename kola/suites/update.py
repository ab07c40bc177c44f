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

# Installs an update payload through update_engine and checks that the
# machine alternates between the USR-A and USR-B partitions. On qemu the
# cluster's own Omaha server hands out the payload; elsewhere the machine
# created at registration runs one through kolet.

import logging
from typing import Dict, List

from kola.config import settings
from kola.lib import conf
from kola.lib.common import wait_until_ready
from kola.lib.exceptions import KolaError, SSHCommandError
from kola.lib.harness.cluster import TestCluster
from kola.lib.harness.register import Test, register
from kola.lib.omaha import OmahaServer
from kola.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)

TEST_NAME = "coreos.update.updatepayload"
UPDATE_VERSION = "9999.9.9"
OMAHA_PORT = 34567
REMOTE_PAYLOAD = "/updates/update.gz"
PAYLOAD_NAME = "update.gz"

UPDATE_TIMEOUT = 120
UPDATE_INTERVAL = 10

USR_A_UUID = "7130c94a-213a-4e5a-8e26-6cce9662f132"
USR_B_UUID = "e03dd35c-7c2d-4a47-b3fe-27f15780a57c"


def split_newline_env(envs: str) -> Dict[str, str]:
    """KEY=VAL pairs, one per line"""
    env = {}
    for line in envs.splitlines():
        if '=' in line:
            key, value = line.split('=', 1)
            env[key] = value
    return env


def split_space_env(envs: str) -> Dict[str, str]:
    """Whitespace separated KEY=VAL pairs, eg. a kernel command line"""
    env = {}
    for pair in envs.split():
        if '=' in pair:
            key, value = pair.split('=', 1)
            env[key] = value
    return env


def serve():
    """Run an Omaha server for the payload at REMOTE_PAYLOAD, forever"""
    server = OmahaServer("0.0.0.0", OMAHA_PORT)
    server.add_package(REMOTE_PAYLOAD, PAYLOAD_NAME)
    server.set_version(UPDATE_VERSION)
    server.serve_forever()


def configure_omaha_server(c: TestCluster) -> str:
    """Start serving the payload, return the host:port to fetch it from"""
    omaha = getattr(c.cluster, "omaha_server", None)
    if omaha is not None:
        try:
            omaha.add_package(settings.UPDATE_PAYLOAD, PAYLOAD_NAME)
        except OSError as e:
            c.fatalf("bad payload: %s", e)
        omaha.set_version(UPDATE_VERSION)
        host, port = omaha.addr
        return f"{host}:{port}"

    srv = c.machines()[0]
    c.must_ssh(srv, f"sudo mkdir -p {REMOTE_PAYLOAD.rsplit('/', 1)[0]} && "
                    f"sudo chown {c.cluster.rconf.user} "
                    f"{REMOTE_PAYLOAD.rsplit('/', 1)[0]}")
    try:
        with open(settings.UPDATE_PAYLOAD, 'rb') as f:
            c.cluster.ssh_connector.put(srv.ip, f, REMOTE_PAYLOAD)
    except OSError as e:
        c.fatalf("copying update payload to omaha server: %s", e)
    c.must_ssh(srv, f"sudo systemd-run --quiet ./kolet run {c.name()} Omaha")
    return f"{srv.private_ip}:{OMAHA_PORT}"


def configure_machine(c: TestCluster, m: MachineBase, addr: str):
    # update atomically so nothing reading update.conf fails
    c.must_ssh(m, f'''sudo bash -c "cat >/etc/coreos/update.conf.new <<EOF
GROUP=developer
SERVER=http://{addr}/v1/update
EOF"''')
    c.must_ssh(m, "sudo mv /etc/coreos/update.conf{.new,}")

    # disable reboot so the test has explicit control
    c.must_ssh(m, "sudo systemctl mask locksmithd.service")
    c.must_ssh(m, "sudo systemctl stop locksmithd.service")
    c.must_ssh(m, "sudo systemctl reset-failed locksmithd.service")

    c.must_ssh(m, "sudo systemctl restart update-engine.service")


def update_machine(c: TestCluster, m: MachineBase):
    c.log("Triggering update_engine")
    c.must_ssh(m, "update_engine_client -check_for_update")

    def updated():
        try:
            envs = c.ssh(m, "update_engine_client -status 2>/dev/null")
        except SSHCommandError as e:
            raise KolaError(f"checking status failed: {e}") from e
        return split_newline_env(envs.decode()).get("CURRENT_OP") == \
            "UPDATE_STATUS_UPDATED_NEED_REBOOT"

    try:
        wait_until_ready(UPDATE_TIMEOUT, UPDATE_INTERVAL, updated,
                         description="waiting for update_engine")
    except KolaError as e:
        c.fatalf("Updating machine: %s", e)

    c.log("Rebooting test machine")
    try:
        m.reboot()
    except KolaError as e:
        c.fatalf("reboot failed: %s", e)


def check_usr_partition(c: TestCluster, m: MachineBase, accept: List[str]):
    cmdline = c.must_ssh(m, "cat /proc/cmdline").decode()
    c.logf("Kernel cmdline: %s", cmdline)

    env = split_space_env(cmdline)
    for a in accept:
        for key in ("mount.usr", "verity.usr", "usr"):
            if env.get(key) == a:
                return
    c.fatalf("mount.usr not one of %r", " ".join(accept))


def check_usr_a(c: TestCluster, m: MachineBase):
    c.log("Checking for boot from USR-A partition")
    check_usr_partition(c, m, [f"PARTUUID={USR_A_UUID}", "PARTLABEL=USR-A"])


def check_usr_b(c: TestCluster, m: MachineBase):
    c.log("Checking for boot from USR-B partition")
    check_usr_partition(c, m, [f"PARTUUID={USR_B_UUID}", "PARTLABEL=USR-B"])


def update_payload(c: TestCluster):
    # The machine created at registration hosts the Omaha server when not on
    # qemu, the one under test is created here.
    try:
        m = c.new_machine(conf.ignition({"ignition": {"version": "2.1.0"}}))
    except KolaError as e:
        c.fatalf("creating test machine: %s", e)

    addr = configure_omaha_server(c)
    configure_machine(c, m, addr)

    check_usr_a(c, m)
    update_machine(c, m)
    check_usr_b(c, m)

    c.must_ssh(m, "sudo coreos-setgoodroot && "
                  "sudo wipefs /dev/disk/by-partlabel/USR-A")

    update_machine(c, m)
    check_usr_a(c, m)


register(Test(TEST_NAME, update_payload, cluster_size=1,
              platforms=["qemu", "aws"],
              native_funcs={"Omaha": serve}))
