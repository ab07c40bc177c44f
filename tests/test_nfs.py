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

import json
import os
import urllib.parse

import pytest

from kola.lib.exceptions import SSHCommandError, TestFatal
from kola.lib.harness import register
from kola.lib.harness.cluster import TestCluster
from kola.suites import nfs


MOUNT_STATUS = "systemctl is-active mnt.mount"


@pytest.fixture
def tc(cluster, fake_ssh):
    fake_ssh.responses["mktemp"] = b"/tmp/tmp.XyZ\n"
    fake_ssh.responses[MOUNT_STATUS] = b"active\n"
    return TestCluster("linux.nfs.v4", cluster)


def userdata(rconf, machine):
    with open(os.path.join(rconf.output_dir, machine.id, 'user-data')) as f:
        return json.load(f)


def test_registered():
    assert register.get("linux.nfs.v3").run is nfs.nfs_v3
    assert register.get("linux.nfs.v4").run is nfs.nfs_v4
    assert register.get("linux.nfs.v4").cluster_size == 0


def test_server_config():
    config = json.loads(nfs.server_config().data)
    files = {f["path"]: f for f in config["storage"]["files"]}
    assert urllib.parse.unquote(
        files["/etc/exports"]["contents"]["source"][len("data:,"):]) == \
        nfs.EXPORTS
    assert files["/etc/hostname"]["contents"]["source"] == "data:,nfs1"
    units = [u["name"] for u in config["systemd"]["units"]]
    assert "nfsd.service" in units
    assert "start-the-services.service" in units


def test_check_nfs(tc, rconf, fake_ssh):
    nfs.check_nfs(tc, 4)

    server, client = tc.machines()
    config = userdata(rconf, client)
    mount = config["systemd"]["units"][0]
    assert mount["name"] == "mnt.mount"
    assert f"What={server.private_ip}:/tmp" in mount["contents"]
    assert "nfsvers=4" in mount["contents"]
    assert fake_ssh.ran("stat /mnt/tmp.XyZ")
    assert b"Got NFS mount." in tc.output()


def test_check_nfs_v3(tc, rconf):
    nfs.check_nfs(tc, 3)
    _, client = tc.machines()
    assert "nfsvers=3" in userdata(rconf, client)["systemd"]["units"][0][
        "contents"]


def test_mount_never_active(tc, fake_ssh, monkeypatch):
    monkeypatch.setattr(nfs, "MOUNT_ATTEMPTS", 2)
    monkeypatch.setattr(nfs, "MOUNT_DELAY", 0)
    fake_ssh.responses[MOUNT_STATUS] = SSHCommandError(
        MOUNT_STATUS, 3, b"failed\n")

    with pytest.raises(TestFatal, match="'failed'"):
        nfs.check_nfs(tc, 4)
    assert len(fake_ssh.ran(MOUNT_STATUS)) == 2


def test_missing_file(tc, fake_ssh):
    fake_ssh.responses["stat /mnt/tmp.XyZ"] = SSHCommandError(
        "stat /mnt/tmp.XyZ", 1)
    with pytest.raises(TestFatal, match="does not exist"):
        nfs.check_nfs(tc, 4)


def test_server_boot_failure(tc, fake_api):
    fake_api.fail_create = True
    with pytest.raises(TestFatal, match="Cluster.new_machine"):
        nfs.check_nfs(tc, 4)
