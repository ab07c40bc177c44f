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
from unittest import mock

from ibm_cloud_sdk_core import ApiException
import pytest

from kola.lib.exceptions import ProvisioningError
from kola.lib.platform import ibmcloud


def result(value):
    return mock.MagicMock(**{"get_result.return_value": value})


NIC = {"id": "nic-1", "primary_ip": {"address": "10.240.0.4"}}


@pytest.fixture
def service():
    service = mock.MagicMock()
    service.create_instance.return_value = result({"id": "ins-1"})
    service.get_instance.return_value = result({
        "id": "ins-1", "status": "running",
        "primary_network_interface": NIC})
    service.create_floating_ip.return_value = result(
        {"id": "fip-1", "address": "169.48.0.9"})
    service.create_key.return_value = result({"id": "key-1"})
    return service


@pytest.fixture
def api(service):
    return ibmcloud.API("vpc-1", "subnet-1", "us-south-1", "image-1",
                        "bx2-2x8", "kola-", service=service)


def test_create_instance(api, service):
    instance = api.create_instance("kola-vm", "{}", ssh_key="key-1")
    assert instance.id == "ins-1"
    assert instance.public_ip == "169.48.0.9"
    assert instance.private_ip == "10.240.0.4"
    assert instance.handle == "fip-1"

    prototype = service.create_instance.call_args[0][0]
    assert prototype["keys"] == [{"id": "key-1"}]
    assert prototype["user_data"] == "{}"
    assert prototype["primary_network_interface"] == {
        "subnet": {"id": "subnet-1"}}
    service.create_floating_ip.assert_called_once_with({
        "name": "kola-vm-ip", "target": {"id": "nic-1"}})


def test_floating_ip_fails(api, service):
    service.create_floating_ip.side_effect = ApiException(
        409, message="quota")
    with pytest.raises(ProvisioningError) as e:
        api.create_instance("kola-vm", "")
    assert e.value.step == "creating floating ip"
    service.delete_instance.assert_called_once_with("ins-1")


def test_instance_fails(api, service):
    service.get_instance.return_value = result(
        {"id": "ins-1", "status": "failed"})
    with pytest.raises(ProvisioningError, match="failed to start"):
        api.create_instance("kola-vm", "")
    service.delete_instance.assert_called_once_with("ins-1")


def test_keys(api, service):
    assert api.add_key("kola-key", "ssh-rsa AAAA") == "key-1"
    api.delete_key("kola-key")
    service.delete_key.assert_called_once_with("key-1")


def test_machine_deletes_floating_ip_first(workspace, rconf, fake_ssh, api,
                                           service):
    cluster = ibmcloud.Cluster(workspace, api=api, rconf=rconf,
                               ssh=fake_ssh)
    cluster.new_machine()
    service.reset_mock()

    cluster.destroy()
    assert [c[0] for c in service.method_calls] == [
        "delete_floating_ip", "delete_instance", "delete_key"]


@pytest.mark.parametrize("dry_run", [True, False])
def test_gc(api, service, dry_run):
    now = datetime.datetime.now(datetime.timezone.utc)
    old = (now - datetime.timedelta(hours=5)).strftime("%Y-%m-%dT%H:%M:%SZ")
    service.list_instances.return_value = result({"instances": [
        {"id": "old", "name": "kola-old", "created_at": old},
        {"id": "new", "name": "kola-new",
         "created_at": now.strftime("%Y-%m-%dT%H:%M:%SZ")},
        {"id": "other", "name": "prod-db", "created_at": old},
    ]})
    service.list_floating_ips.return_value = result({"floating_ips": [
        {"id": "fip-free", "name": "kola-old-ip", "address": "169.48.0.1"},
        {"id": "fip-bound", "name": "kola-new-ip", "address": "169.48.0.2",
         "target": {"id": "nic-2"}},
    ]})

    api.gc(datetime.timedelta(hours=1), dry_run=dry_run)
    deleted = [c[0][0] for c in service.delete_instance.call_args_list]
    released = [c[0][0] for c in service.delete_floating_ip.call_args_list]
    assert deleted == ([] if dry_run else ["old"])
    assert released == ([] if dry_run else ["fip-free"])
