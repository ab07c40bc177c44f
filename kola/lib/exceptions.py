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

from typing import List, Optional


class KolaError(Exception):
    """Base class for all errors raised by kola"""


class ProvisioningError(KolaError):
    """A provider API call failed while creating or wiring up a resource.

    `step` names the operation that failed (eg. "creating floating ip") so
    the message reads like "creating floating ip: <cause>".
    """
    def __init__(self, step: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        if cause is not None:
            super().__init__(f"{step}: {cause}")
        else:
            super().__init__(step)


class ReadinessTimeout(KolaError):
    """A readiness poll gave up after its timeout elapsed"""
    def __init__(self, timeout: float, description: str = ""):
        self.timeout = timeout
        self.description = description
        msg = f"timed out after {timeout}s"
        if description:
            msg = f"{description}: {msg}"
        super().__init__(msg)


class PollCancelled(KolaError):
    """A readiness poll was aborted through its cancel event"""


class MultiError(KolaError):
    """Aggregate of every failure seen during a best-effort sequence"""
    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))

    def __len__(self):
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)


class SSHCommandError(KolaError):
    """A remote command exited with a non-zero status"""
    def __init__(self, command: str, status: int, stdout: bytes = b"",
                 stderr: bytes = b""):
        self.command = command
        self.status = status
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"command {command!r} exited with {status}: "
            f"{stderr.decode('utf-8', 'replace').strip()}")


class TestFatal(KolaError):
    """Raised by a test to stop itself. Only that test is failed."""
    __test__ = False


class ReporterStateError(KolaError):
    """A reporter method was called out of order"""
