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

import yaml

from kola.lib import conf


SUBSTITUTIONS = {
    "$public_ipv4": "${COREOS_AWS_IPV4_PUBLIC_0}",
    "$private_ipv4": "${COREOS_AWS_IPV4_PRIVATE_0}",
}


def test_render_keeps_values_verbatim():
    userdata = conf.cloud_config(
        "#cloud-config\nwrite_files:\n- content: $public_ipv4 $private_ipv4")
    rendered = userdata.render(SUBSTITUTIONS)
    assert "${COREOS_AWS_IPV4_PUBLIC_0} ${COREOS_AWS_IPV4_PRIVATE_0}" in \
        rendered.string()
    assert "$public_ipv4" not in rendered.string()
    # the template is left alone
    assert "$public_ipv4" in userdata.data


def test_ignition_from_dict():
    rendered = conf.ignition({"ignition": {"version": "2.1.0"}}).render({})
    assert rendered.is_ignition()
    assert json.loads(rendered.string()) == {"ignition": {"version": "2.1.0"}}


def test_add_authorized_keys_ignition():
    rendered = conf.ignition({
        "ignition": {"version": "2.1.0"},
        "passwd": {"users": [{"name": "core", "sshAuthorizedKeys": ["a"]}]},
    }).render({})
    rendered.add_authorized_keys("core", ["b"])
    users = json.loads(rendered.string())["passwd"]["users"]
    assert users == [{"name": "core", "sshAuthorizedKeys": ["a", "b"]}]


def test_add_authorized_keys_new_ignition_user():
    rendered = conf.ignition({"ignition": {"version": "2.1.0"}}).render({})
    rendered.add_authorized_keys("core", ["ssh-rsa AAAA"])
    users = json.loads(rendered.string())["passwd"]["users"]
    assert users == [{"name": "core", "sshAuthorizedKeys": ["ssh-rsa AAAA"]}]


def test_add_authorized_keys_cloud_config():
    rendered = conf.cloud_config(
        "#cloud-config\nhostname: test\n").render({})
    rendered.add_authorized_keys("core", ["ssh-rsa AAAA"])
    assert rendered.string().startswith("#cloud-config\n")
    config = yaml.safe_load(rendered.string())
    assert config == {"hostname": "test",
                      "ssh_authorized_keys": ["ssh-rsa AAAA"]}


def test_add_authorized_keys_empty_becomes_cloud_config():
    rendered = conf.empty().render({})
    assert rendered.is_empty()
    rendered.add_authorized_keys("core", ["ssh-rsa AAAA"])
    assert rendered.kind == conf.ConfKind.CLOUD_CONFIG
    config = yaml.safe_load(rendered.string())
    assert config == {"ssh_authorized_keys": ["ssh-rsa AAAA"]}


def test_add_authorized_keys_script_is_untouched():
    rendered = conf.script("#!/bin/sh\necho hi\n").render({})
    rendered.add_authorized_keys("core", ["ssh-rsa AAAA"])
    assert rendered.string() == "#!/bin/sh\necho hi\n"


def test_write_file(tmp_path):
    path = tmp_path / "user-data"
    conf.script("#!/bin/sh\n").render({}).write_file(str(path))
    assert path.read_text() == "#!/bin/sh\n"
