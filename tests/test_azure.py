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

from azure.core.exceptions import HttpResponseError
import pytest

from kola.lib.exceptions import KolaError, ProvisioningError
from kola.lib.platform import azure


@pytest.fixture
def clients(monkeypatch):
    resources = mock.MagicMock()
    network = mock.MagicMock()
    compute = mock.MagicMock()
    monkeypatch.setattr(azure, "ResourceManagementClient",
                        mock.MagicMock(return_value=resources))
    monkeypatch.setattr(azure, "NetworkManagementClient",
                        mock.MagicMock(return_value=network))
    monkeypatch.setattr(azure, "ComputeManagementClient",
                        mock.MagicMock(return_value=compute))
    return resources, network, compute


@pytest.fixture
def api(clients):
    api = azure.API("subscription", "westeurope", "Standard_D2s_v3",
                    "kinvolk:flatcar-container-linux:stable:latest",
                    credential=object())
    api.resource_group = "kola-rg"
    return api


def test_image_reference(api, clients):
    assert api._image_reference() == {
        "publisher": "kinvolk", "offer": "flatcar-container-linux",
        "sku": "stable", "version": "latest"}
    custom = azure.API("subscription", "westeurope", "Standard_D2s_v3",
                       "/subscriptions/s/images/flatcar",
                       credential=object())
    assert custom._image_reference() == {
        "id": "/subscriptions/s/images/flatcar"}


def test_vm_parameters(api):
    params = api._vm_parameters("kola-vm", "{}", "ssh-rsa AAAA", "nic-id")
    os_profile = params["os_profile"]
    assert base64.b64decode(os_profile["custom_data"]) == b"{}"
    keys = os_profile["linux_configuration"]["ssh"]["public_keys"]
    assert keys == [{"path": "/home/core/.ssh/authorized_keys",
                     "key_data": "ssh-rsa AAAA"}]
    assert params["tags"]["createdBy"] == "kola"
    assert "createdAt" in params["tags"]
    assert params["network_profile"]["network_interfaces"][0]["id"] == \
        "nic-id"
    assert "custom_data" not in api._vm_parameters(
        "kola-vm", "", "ssh-rsa AAAA", "nic-id")["os_profile"]


def test_create_instance_needs_key(api):
    with pytest.raises(ProvisioningError, match="needs an ssh key"):
        api.create_instance("kola-vm", "")


def test_create_instance_needs_resource_group(api):
    api.resource_group = None
    with pytest.raises(KolaError, match="no resource group"):
        api.create_instance("kola-vm", "", ssh_key="ssh-rsa AAAA")


def test_create_instance(api, clients):
    _, network, compute = clients
    compute.virtual_machines.get.return_value.provisioning_state = \
        "Succeeded"
    network.public_ip_addresses.get.return_value.ip_address = "20.1.2.3"
    network.network_interfaces.get.return_value.ip_configurations = [
        mock.MagicMock(private_ip_address="10.0.0.4")]

    instance = api.create_instance("kola-vm", "{}", ssh_key="ssh-rsa AAAA")
    assert instance.id == "kola-vm"
    assert (instance.public_ip, instance.private_ip) == \
        ("20.1.2.3", "10.0.0.4")
    assert instance.handle["nic"].startswith("nic-")
    assert instance.handle["public_ip"].startswith("ip-")
    rg, name, params = \
        compute.virtual_machines.begin_create_or_update.call_args[0]
    assert (rg, name) == ("kola-rg", "kola-vm")


def test_create_instance_api_error(api, clients):
    _, network, _ = clients
    network.public_ip_addresses.begin_create_or_update.side_effect = \
        HttpResponseError("quota")
    with pytest.raises(ProvisioningError) as e:
        api.create_instance("kola-vm", "", ssh_key="ssh-rsa AAAA")
    assert e.value.step == "creating public ip"


def test_console_without_diagnostics(api, clients):
    _, _, compute = clients
    compute.virtual_machines.get.return_value.instance_view = None
    with pytest.raises(KolaError, match="serial console URI"):
        api.get_console_output("kola-vm")


def group(name, tags):
    g = mock.MagicMock(tags=tags)
    g.name = name
    return g


@pytest.mark.parametrize("dry_run", [True, False])
def test_gc(api, clients, dry_run):
    resources, _, _ = clients
    now = datetime.datetime.now(datetime.timezone.utc)
    old = (now - datetime.timedelta(hours=5)).isoformat()
    resources.resource_groups.list.return_value = [
        group("rg-old", {"createdBy": "kola", "createdAt": old}),
        group("rg-new", {"createdBy": "kola", "createdAt": now.isoformat()}),
        group("rg-untagged", {"createdBy": "kola"}),
        group("rg-foreign", None),
    ]
    api.gc(datetime.timedelta(hours=1), dry_run=dry_run)
    deleted = [c[0][0] for c in
               resources.resource_groups.begin_delete.call_args_list]
    assert deleted == ([] if dry_run else ["rg-old"])
