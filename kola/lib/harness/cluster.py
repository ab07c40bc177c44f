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

import logging
import threading
from typing import List, NoReturn, Optional

from kola.lib.conf import UserData
from kola.lib.exceptions import SSHCommandError, TestFatal
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)


class TestCluster():
    """
    What a test function gets: its cluster plus logging that ends up in
    the test's output, and fatal() to fail the test
    """
    __test__ = False

    def __init__(self, name: str, cluster: ClusterBase,
                 log: Optional[logging.Logger] = None):
        self._name = name
        self.cluster = cluster
        self._log = log or logger
        self._output: List[str] = []
        self._output_lock = threading.Lock()

    def name(self) -> str:
        return self._name

    def machines(self) -> List[MachineBase]:
        return self.cluster.machines()

    def new_machine(self, userdata: Optional[UserData] = None
                    ) -> MachineBase:
        return self.cluster.new_machine(userdata)

    def log(self, msg: str):
        with self._output_lock:
            self._output.append(msg)
        self._log.info(f"{self._name}: {msg}")

    def logf(self, fmt: str, *args):
        self.log(fmt % args)

    def fatal(self, msg: str) -> NoReturn:
        """Log `msg` and stop the test, which is then failed"""
        self.log(msg)
        raise TestFatal(msg)

    def fatalf(self, fmt: str, *args) -> NoReturn:
        self.fatal(fmt % args)

    def output(self) -> bytes:
        with self._output_lock:
            return "".join(f"{line}\n" for line in self._output).encode()

    def ssh(self, machine: MachineBase, command: str) -> bytes:
        """Run `command` and return its stripped stdout

        Raises SSHCommandError if the command fails.
        """
        stdout, _ = machine.ssh(command)
        return stdout

    def must_ssh(self, machine: MachineBase, command: str) -> bytes:
        """Like ssh(), but a failing command is fatal"""
        try:
            return self.ssh(machine, command)
        except SSHCommandError as e:
            self.fatalf("%s failed: output %s, status %d: %s", command,
                        e.stdout.decode(errors='replace'), e.status,
                        e.stderr.decode(errors='replace'))
