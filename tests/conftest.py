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
import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
import uuid

import pytest

from kola.lib.exceptions import KolaError, SSHCommandError
from kola.lib.platform.api_base import Instance, ProviderAPI
from kola.lib.platform.cluster_base import ClusterBase, RuntimeConfig
from kola.lib.workspace import Workspace


logger = logging.getLogger(__name__)

# NOTE: Nothing here talks to a real provider. The fakes record what they
#       were asked to do so tests can assert on the sequence of calls.


class FakeAPI(ProviderAPI):
    def __init__(self, log=None):
        super().__init__(log)
        self.calls: List[Tuple] = []
        self.instances: Dict[str, Instance] = {}
        self.fail_terminate: Set[str] = set()
        self.fail_create = False
        self._count = 0
        self._lock = threading.Lock()

    def create_instance(self, name, userdata, ssh_key=None):
        with self._lock:
            self._count += 1
            n = self._count
        self.calls.append(('create_instance', name, userdata, ssh_key))
        if self.fail_create:
            raise KolaError("creating instance failed")
        instance = Instance(f"i-{n}", f"192.0.2.{n}", f"10.0.0.{n}")
        self.instances[instance.id] = instance
        return instance

    def terminate_instance(self, instance_id):
        self.calls.append(('terminate_instance', instance_id))
        if instance_id in self.fail_terminate:
            raise KolaError(f"terminating {instance_id} failed")
        self.instances.pop(instance_id, None)

    def get_console_output(self, instance_id):
        return f"console of {instance_id}"

    def gc(self, grace_period, dry_run=False):
        self.calls.append(('gc', grace_period, dry_run))

    def add_key(self, name, public_key):
        self.calls.append(('add_key', name))
        return name

    def delete_key(self, name):
        self.calls.append(('delete_key', name))


Response = Union[bytes, Callable[[str, str], bytes], SSHCommandError]


class FakeSSH():
    """Answers commands from `responses`, anything else succeeds silently

    A response is the stdout, a callable (ip, command) -> stdout, or an
    SSHCommandError to raise.
    """
    def __init__(self, user: str = "core"):
        self.user = user
        self.responses: Dict[str, Response] = {}
        self.commands: List[Tuple[str, str]] = []
        self.puts: List[Tuple[str, bytes, str]] = []
        self._boot = 0

    def run(self, ip: str, command: str) -> Tuple[bytes, bytes]:
        self.commands.append((ip, command))
        if command == "sudo systemctl reboot":
            self._boot += 1
        if command == "cat /proc/sys/kernel/random/boot_id" and \
                command not in self.responses:
            return f"boot-{self._boot}\n".encode(), b""
        response = self.responses.get(command, b"")
        if isinstance(response, SSHCommandError):
            raise response
        if callable(response):
            response = response(ip, command)
        return response, b""

    def ran(self, fragment: str) -> List[str]:
        return [c for _, c in self.commands if fragment in c]

    def wait_for_ssh(self, ip, timeout=300, interval=3, cancel=None):
        pass

    def stream(self, ip, command, sink, stop):
        pass

    def put(self, ip, fileobj, remote_path, mode=0o644):
        self.puts.append((ip, fileobj.read(), remote_path))


class FakeCluster(ClusterBase):
    substitutions = {
        "$public_ipv4": "${COREOS_AWS_IPV4_PUBLIC_0}",
        "$private_ipv4": "${COREOS_AWS_IPV4_PRIVATE_0}",
    }

    def get_api(self) -> ProviderAPI:
        return FakeAPI()


@pytest.fixture
def workspace(tmp_path):
    ws = Workspace(base_dir=str(tmp_path / "workspace"))
    yield ws


@pytest.fixture
def rconf(tmp_path):
    return RuntimeConfig(str(tmp_path / "output"), ssh_timeout=5)


@pytest.fixture
def fake_api():
    return FakeAPI()


@pytest.fixture
def fake_ssh():
    return FakeSSH()


@pytest.fixture
def make_cluster(workspace, tmp_path):
    """Returns a factory for fake clusters sharing one fake ssh"""
    ssh = FakeSSH()

    def factory(api: Optional[ProviderAPI] = None,
                rconf: Optional[RuntimeConfig] = None) -> FakeCluster:
        rconf = rconf or RuntimeConfig(
            str(tmp_path / "output" / uuid.uuid4().hex), ssh_timeout=5)
        return FakeCluster(workspace, api=api or FakeAPI(), rconf=rconf,
                           ssh=ssh)  # type: ignore

    factory.ssh = ssh  # type: ignore
    return factory


@pytest.fixture
def cluster(workspace, rconf, fake_api, fake_ssh):
    c = FakeCluster(workspace, api=fake_api, rconf=rconf,
                    ssh=fake_ssh)  # type: ignore
    yield c


@pytest.fixture
def an_hour_ago():
    return datetime.datetime.now(datetime.timezone.utc) - \
        datetime.timedelta(hours=1)
