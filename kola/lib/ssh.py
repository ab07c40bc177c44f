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
import socket
import threading
from typing import BinaryIO, Optional, Tuple

import paramiko

from kola.lib.common import wait_until_ready
from kola.lib.exceptions import SSHCommandError


logger = logging.getLogger(__name__)

# Errors seen while a machine is still booting (sshd not up yet, key not
# installed yet, connection reset during reboot)
SSH_RETRYABLE_ERRORS = (
    paramiko.ssh_exception.SSHException,
    socket.error,
    EOFError,
)


class SSHConnector():
    """Runs commands on machines as `user` with the workspace key"""
    def __init__(self, user: str, pkey: Optional[paramiko.PKey] = None,
                 key_filename: Optional[str] = None, port: int = 22,
                 connect_timeout: float = 30,
                 log: Optional[logging.Logger] = None):
        self.user = user
        self._pkey = pkey
        self._key_filename = key_filename
        self._port = port
        self._connect_timeout = connect_timeout
        self._log = log or logger

    def connect(self, ip: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # machines are ephemeral, their host keys are never known upfront
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(ip, port=self._port, username=self.user,
                           pkey=self._pkey, key_filename=self._key_filename,
                           timeout=self._connect_timeout,
                           allow_agent=False, look_for_keys=False)
        except Exception:
            client.close()
            raise
        return client

    def run(self, ip: str, command: str) -> Tuple[bytes, bytes]:
        """Execute `command` once and return (stdout, stderr)

        Raises SSHCommandError if the command exits non-zero. Connection
        errors are raised as is; retrying is up to the caller.
        """
        client = self.connect(ip)
        try:
            self._log.debug(f"{self.user}@{ip}: running {command!r}")
            _, stdout, stderr = client.exec_command(command)
            out = stdout.read()
            err = stderr.read()
            status = stdout.channel.recv_exit_status()
        finally:
            client.close()
        if status != 0:
            raise SSHCommandError(command, status, out, err)
        return out, err

    def stream(self, ip: str, command: Optional[str], sink: BinaryIO,
               stop: threading.Event):
        """Copy the output of a long running `command` into `sink`

        With no command an interactive shell is opened instead (serial
        console endpoints only offer that). Returns when the command exits or
        `stop` is set.
        """
        client = self.connect(ip)
        try:
            channel = client.get_transport().open_session()
            if command is None:
                channel.get_pty()
                channel.invoke_shell()
            else:
                channel.exec_command(command)
            while not stop.is_set():
                if channel.recv_ready():
                    sink.write(channel.recv(32768))
                    sink.flush()
                elif channel.exit_status_ready():
                    break
                else:
                    stop.wait(0.5)
            channel.close()
        finally:
            client.close()

    def put(self, ip: str, fileobj: BinaryIO, remote_path: str,
            mode: int = 0o644):
        client = self.connect(ip)
        try:
            sftp = client.open_sftp()
            sftp.putfo(fileobj, remote_path)
            sftp.chmod(remote_path, mode)
            sftp.close()
        finally:
            client.close()

    def wait_for_ssh(self, ip: str, timeout: float = 300,
                     interval: float = 3,
                     cancel: Optional[threading.Event] = None):
        self._log.info(f"waiting {timeout} s for ssh to {self.user}@{ip}")

        def check():
            self.run(ip, "true")
            return True

        wait_until_ready(timeout, interval, check,
                         retry_on=SSH_RETRYABLE_ERRORS, cancel=cancel,
                         description=f"waiting for ssh on {ip}")
        self._log.info(f"ssh ready on {self.user}@{ip}")
