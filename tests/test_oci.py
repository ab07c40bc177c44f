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
from unittest import mock

import pytest

from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform import oci as kola_oci


@pytest.fixture
def clients(monkeypatch):
    compute = mock.MagicMock()
    network = mock.MagicMock()
    monkeypatch.setattr("oci.core.ComputeClient",
                        mock.MagicMock(return_value=compute))
    monkeypatch.setattr("oci.core.VirtualNetworkClient",
                        mock.MagicMock(return_value=network))
    monkeypatch.setattr("oci.wait_until", mock.MagicMock())
    return compute, network


@pytest.fixture
def api(clients):
    return kola_oci.API("ocid1.compartment", "AD-1", "VM.Standard2.1",
                        "ocid1.image", subnet_id="ocid1.subnet",
                        config={"region": "eu-frankfurt-1"})


def test_launch_details(api):
    details = api.launch_details("kola-vm", '{"ignition": {}}',
                                 ssh_key="ssh-rsa AAAA")
    assert details.display_name == "kola-vm"
    assert details.shape == "VM.Standard2.1"
    assert details.source_details.image_id == "ocid1.image"
    assert details.create_vnic_details.subnet_id == "ocid1.subnet"
    assert details.metadata["ssh_authorized_keys"] == "ssh-rsa AAAA"
    assert base64.b64decode(details.metadata["user_data"]) == \
        b'{"ignition": {}}'
    assert details.freeform_tags == {"CreatedBy": "kola"}


def test_launch_details_without_userdata(api):
    assert api.launch_details("kola-vm", "").metadata == {}


def test_key_goes_into_metadata(api):
    assert api.add_key("kola-key", "ssh-rsa AAAA") == "ssh-rsa AAAA"


def test_create_instance_without_subnet(api):
    api.subnet_id = ""
    with pytest.raises(KolaError, match="no subnet"):
        api.create_instance("kola-vm", "")


def test_create_instance(api, clients):
    compute, network = clients
    compute.launch_instance.return_value.data.id = "ocid1.instance"
    compute.get_instance.return_value.data.lifecycle_state = "RUNNING"
    compute.list_vnic_attachments.return_value.data = [
        mock.MagicMock(lifecycle_state="DETACHED", vnic_id="old"),
        mock.MagicMock(lifecycle_state="ATTACHED", vnic_id="ocid1.vnic"),
    ]
    network.get_vnic.return_value.data = mock.MagicMock(
        public_ip="203.0.113.7", private_ip="10.0.0.7")

    instance = api.create_instance("kola-vm", "")
    assert instance.id == "ocid1.instance"
    assert (instance.public_ip, instance.private_ip) == \
        ("203.0.113.7", "10.0.0.7")
    network.get_vnic.assert_called_once_with("ocid1.vnic")


def test_create_instance_terminated(api, clients):
    compute, _ = clients
    compute.launch_instance.return_value.data.id = "ocid1.instance"
    compute.get_instance.return_value.data.lifecycle_state = "TERMINATED"

    with pytest.raises(ProvisioningError, match="is TERMINATED"):
        api.create_instance("kola-vm", "")
    compute.terminate_instance.assert_called_once_with("ocid1.instance")


def test_create_network_records_ids(api, clients):
    _, network = clients
    network.create_vcn.return_value.data = mock.MagicMock(
        id="vcn-1", default_route_table_id="rt-1")
    network.create_internet_gateway.return_value.data.id = "gw-1"
    network.create_subnet.return_value.data.id = "subnet-1"

    ids = {}
    api.create_network("kola-net", ids)
    assert ids == {"vcn": "vcn-1", "gateway": "gw-1", "route_table": "rt-1",
                   "subnet": "subnet-1"}
    assert api.subnet_id == "subnet-1"
    rule = network.update_route_table.call_args[0][1].route_rules[0]
    assert rule.network_entity_id == "gw-1"


def test_create_network_partial_failure(api, clients):
    _, network = clients
    network.create_vcn.return_value.data = mock.MagicMock(
        id="vcn-1", default_route_table_id="rt-1")
    network.create_internet_gateway.side_effect = KolaError("limit")

    ids = {}
    with pytest.raises(KolaError):
        api.create_network("kola-net", ids)
    assert ids == {"vcn": "vcn-1"}

    api.delete_network(ids)
    network.delete_subnet.assert_not_called()
    network.delete_internet_gateway.assert_not_called()
    network.delete_vcn.assert_called_once_with("vcn-1")


def test_delete_network_order(api, clients):
    _, network = clients
    api.delete_network({"vcn": "vcn-1", "gateway": "gw-1",
                        "route_table": "rt-1", "subnet": "subnet-1"})
    assert [c[0] for c in network.method_calls
            if c[0].startswith(("delete", "update"))] == [
        "delete_subnet", "update_route_table", "delete_internet_gateway",
        "delete_vcn"]


def test_cluster_creates_network(workspace, rconf, fake_ssh, api, clients):
    _, network = clients
    api.subnet_id = ""
    network.create_vcn.return_value.data = mock.MagicMock(
        id="vcn-1", default_route_table_id="rt-1")
    network.create_internet_gateway.return_value.data.id = "gw-1"
    network.create_subnet.return_value.data.id = "subnet-1"

    cluster = kola_oci.Cluster(workspace, api=api, rconf=rconf, ssh=fake_ssh)
    cluster.setup()
    assert api.subnet_id == "subnet-1"
    # the network plus the key
    assert len(cluster.cleanups) == 2

    cluster.destroy()
    network.delete_vcn.assert_called_once_with("vcn-1")


@pytest.mark.parametrize("dry_run", [True, False])
def test_gc(api, clients, monkeypatch, dry_run):
    compute, _ = clients
    now = datetime.datetime.now(datetime.timezone.utc)
    old = now - datetime.timedelta(hours=5)

    def instance(id, created, state="RUNNING", tags=None):
        return mock.MagicMock(id=id, time_created=created,
                              lifecycle_state=state,
                              freeform_tags={"CreatedBy": "kola"}
                              if tags is None else tags)

    instances = [
        instance("old", old),
        instance("new", now),
        instance("gone", old, state="TERMINATED"),
        instance("foreign", old, tags={}),
    ]
    monkeypatch.setattr(
        "oci.pagination.list_call_get_all_results",
        mock.MagicMock(return_value=mock.MagicMock(data=instances)))

    api.gc(datetime.timedelta(hours=1), dry_run=dry_run)
    terminated = [c[0][0] for c in compute.terminate_instance.call_args_list]
    assert terminated == ([] if dry_run else ["old"])
