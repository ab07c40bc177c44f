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

from enum import Enum
import logging
import os
from typing import TYPE_CHECKING, List, Optional, Tuple

from kola.lib.common import Step, run_steps, wait_until_ready
from kola.lib.conf import Conf
from kola.lib.exceptions import KolaError, MultiError, SSHCommandError
from kola.lib.journal import Journal
from kola.lib.platform.api_base import Instance
from kola.lib.ssh import SSH_RETRYABLE_ERRORS

if TYPE_CHECKING:
    from kola.lib.platform.cluster_base import ClusterBase


logger = logging.getLogger(__name__)


class MachineState(Enum):
    CREATED = 0
    BOOTING = 1
    READY = 2
    REBOOTING = 3
    DESTROYED = 4


class MachineBase():
    """
    A booted instance plus what kola keeps about it locally
    """
    def __init__(self, cluster: 'ClusterBase', instance: Instance,
                 log: Optional[logging.Logger] = None):
        # The cluster owns its machines; this is only a way back to it.
        self._cluster = cluster
        self._instance = instance
        self._log = log or logger
        self.state = MachineState.CREATED
        self.dir: Optional[str] = None
        self.journal: Optional[Journal] = None
        self._console = ""

    @property
    def id(self) -> str:
        return self._instance.id

    @property
    def ip(self) -> Optional[str]:
        """The address to reach the machine on, public where there is one"""
        return self._instance.public_ip or self._instance.private_ip

    @property
    def private_ip(self) -> Optional[str]:
        return self._instance.private_ip or self._instance.public_ip

    @property
    def instance(self) -> Instance:
        return self._instance

    @property
    def cluster(self) -> 'ClusterBase':
        return self._cluster

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} ({self.ip})>"

    def ssh(self, command: str) -> Tuple[bytes, bytes]:
        return self._cluster.ssh(self, command)

    def setup(self, conf: Conf):
        """Create the output directory, store the user-data and start the
        journal"""
        self.dir = os.path.join(self._cluster.rconf.output_dir, self.id)
        os.makedirs(self.dir, exist_ok=True)
        conf.write_file(os.path.join(self.dir, 'user-data'))
        self.journal = Journal(self.dir, log=self._log)

    def boot(self):
        """Wait for ssh, follow the journal and run the baseline checks"""
        self.state = MachineState.BOOTING
        self._cluster.ssh_connector.wait_for_ssh(
            self.ip, timeout=self._cluster.rconf.ssh_timeout)
        if self.journal is not None:
            self.journal.start(self._cluster.ssh_connector, self.ip)
        self.check()
        self.state = MachineState.READY
        self._log.info(f"machine {self.id} ready at {self.ip}")

    def check(self):
        """
        Make sure the machine finished booting into the expected OS with no
        failed units
        """
        expected_os_id = self._cluster.rconf.expected_os_id
        if expected_os_id:
            out, _ = self.ssh("grep ^ID= /etc/os-release")
            os_id = out.decode().split('=', 1)[-1].strip('"')
            if os_id != expected_os_id:
                raise KolaError(f"machine {self.id} runs {os_id!r}, "
                                f"expected {expected_os_id!r}")

        def boot_finished():
            try:
                out, _ = self.ssh("systemctl is-system-running")
            except SSHCommandError as e:
                # non-zero unless "running", the state is still on stdout
                out = e.stdout.strip()
            return out.decode() not in ("initializing", "starting")

        wait_until_ready(self._cluster.rconf.ssh_timeout, 5, boot_finished,
                         retry_on=SSH_RETRYABLE_ERRORS,
                         description=f"waiting for {self.id} to boot")

        out, _ = self.ssh("systemctl --no-legend --state failed list-units")
        if out:
            raise KolaError(f"some systemd units failed on {self.id}:\n"
                            f"{out.decode()}")

    def boot_id(self) -> str:
        out, _ = self.ssh("cat /proc/sys/kernel/random/boot_id")
        return out.decode()

    def refresh_addresses(self):
        public_ip, private_ip = self._cluster.api.get_addresses(
            self._instance)
        self._instance.public_ip = public_ip
        self._instance.private_ip = private_ip

    def reboot(self):
        self.state = MachineState.REBOOTING
        old_boot_id = self.boot_id()
        self._log.info(f"rebooting {self.id} (boot {old_boot_id})")
        if self.journal is not None:
            self.journal.stop()
        try:
            self.ssh("sudo systemctl reboot")
        except SSH_RETRYABLE_ERRORS + (SSHCommandError,) as e:
            # the connection goes away with the machine
            self._log.debug(f"reboot of {self.id}: {e}")

        def rebooted():
            self.refresh_addresses()
            return self.boot_id() != old_boot_id

        wait_until_ready(self._cluster.rconf.ssh_timeout, 5, rebooted,
                         retry_on=SSH_RETRYABLE_ERRORS,
                         description=f"waiting for {self.id} to reboot")
        if self.journal is not None:
            self.journal.start(self._cluster.ssh_connector, self.ip)
        self.check()
        self.state = MachineState.READY
        self._log.info(f"machine {self.id} back at {self.ip}")

    def save_console(self):
        self._console = self._cluster.api.get_console_output(self.id)
        if self.dir is not None:
            with open(os.path.join(self.dir, 'console.txt'), 'w') as f:
                f.write(self._console)

    def console_output(self) -> str:
        return self._console

    def journal_output(self) -> str:
        if self.journal is None:
            return ""
        return self.journal.read().decode(errors='replace')

    def _terminate_steps(self) -> List[Step]:
        """
        Provider specific release of the instance. Override to release
        resources that live next to the instance (eg. floating IPs).
        """
        return [
            (f"terminating {self.id}", self._cluster.api.terminate_instance,
             (self.id,)),
        ]

    def destroy(self):
        """
        Release everything the machine holds

        Every step is attempted even if an earlier one failed. Destroying a
        destroyed machine does nothing.
        """
        if self.state == MachineState.DESTROYED:
            return
        self._log.info(f"destroying machine {self.id}")

        steps: List[Step] = [
            (f"saving console of {self.id}", self.save_console, ()),
        ]
        steps.extend(self._terminate_steps())
        if self.journal is not None:
            steps.append(
                (f"closing journal of {self.id}", self.journal.destroy, ()))
        steps.append(
            (f"removing {self.id} from cluster", self._cluster.del_machine,
             (self,)))

        errors = run_steps(steps, self._log)
        self.state = MachineState.DESTROYED
        if errors:
            raise MultiError(errors)
