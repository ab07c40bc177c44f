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
import os
import threading
from typing import Optional

from kola.lib.ssh import SSHConnector


logger = logging.getLogger(__name__)

JOURNAL_COMMAND = "journalctl -q -b -f --no-tail -o short-monotonic"


class Journal():
    """Follows a machine's systemd journal into <dir>/journal.txt"""
    def __init__(self, directory: str, log: Optional[logging.Logger] = None):
        self.path = os.path.join(directory, 'journal.txt')
        self._log = log or logger
        self._file = open(self.path, 'ab')
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, ssh: SSHConnector, ip: str):
        self.stop()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._follow, args=(ssh, ip, self._stop), daemon=True)
        self._thread.start()
        self._log.debug(f"journal: following {ip} into {self.path}")

    def _follow(self, ssh: SSHConnector, ip: str, stop: threading.Event):
        try:
            ssh.stream(ip, JOURNAL_COMMAND, self._file, stop)
        except Exception as e:
            # A lost journal stream does not fail the machine. The connection
            # drops on every reboot and is restarted by the machine.
            self._log.warning(f"journal: stream from {ip} ended: {e}")

    def stop(self, timeout: float = 10):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def read(self) -> bytes:
        with self._lock:
            if not self._file.closed:
                self._file.flush()
            with open(self.path, 'rb') as f:
                return f.read()

    def destroy(self):
        self.stop()
        with self._lock:
            if not self._file.closed:
                self._file.close()
