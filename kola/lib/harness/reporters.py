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

from abc import ABC, abstractmethod
from collections import OrderedDict
import datetime
import json
import logging
import threading
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from kola.lib.exceptions import MultiError, ReporterStateError


logger = logging.getLogger(__name__)

# Existing consumers of the report expect the escaping of Go's encoder
_GO_ESCAPES = {
    '<': '\\u003c',
    '>': '\\u003e',
    '&': '\\u0026',
    '\u2028': '\\u2028',
    '\u2029': '\\u2029',
}
# Output is decoded with surrogateescape, so every byte that is not valid
# UTF-8 shows up as a lone surrogate. Go replaces each such byte with an
# escaped U+FFFD.
_INVALID_BYTES = {c: '\\ufffd' for c in range(0xdc80, 0xdd00)}


def go_json_dumps(obj: Any) -> str:
    """Compact JSON as Go's encoding/json writes it"""
    s = json.dumps(obj, ensure_ascii=False, separators=(',', ':'))
    # these characters can only occur inside strings, so replacing them
    # everywhere is safe
    for char, escaped in _GO_ESCAPES.items():
        s = s.replace(char, escaped)
    return s.translate(_INVALID_BYTES)


def duration_ns(duration: datetime.timedelta) -> int:
    return ((duration.days * 86400 + duration.seconds) * 10**9 +
            duration.microseconds * 1000)


class Reporter(ABC):
    @abstractmethod
    def open_file(self, path: str):
        pass

    @abstractmethod
    def report_test(self, name: str, result: str,
                    duration: datetime.timedelta, output: bytes):
        pass

    @abstractmethod
    def set_result(self, result: str):
        pass

    @abstractmethod
    def output(self):
        pass

    @abstractmethod
    def cleanup(self):
        pass

    @abstractmethod
    def filename(self) -> str:
        pass


class JSONReporter(Reporter):
    """
    Collects test results and writes them as one JSON document

    The order of calls is fixed: report_test() any number of times,
    set_result(), then output(). Reporting after output() or writing the
    report without a result raises ReporterStateError.
    """
    def __init__(self, filename: str, platform: str, version: str):
        self._filename = filename
        self.platform = platform
        self.version = version
        self.tests: List[Dict[str, Any]] = []
        self.result: Optional[str] = None
        self._file: Optional[BinaryIO] = None
        self._written = False
        self._lock = threading.Lock()

    def open_file(self, path: str):
        self._file = open(path, 'wb')

    def report_test(self, name: str, result: str,
                    duration: datetime.timedelta, output: bytes):
        with self._lock:
            if self._written:
                raise ReporterStateError(
                    f"cannot report {name}, the report was already written")
            self.tests.append(OrderedDict([
                ('name', name),
                ('result', result),
                ('duration', duration_ns(duration)),
                ('output', output.decode('utf-8', 'surrogateescape')),
            ]))

    def set_result(self, result: str):
        self.result = result

    def to_json(self) -> str:
        with self._lock:
            return go_json_dumps(OrderedDict([
                ('tests', list(self.tests) or None),
                ('result', self.result or ""),
                ('platform', self.platform),
                ('version', self.version),
            ]))

    def output(self):
        if self._written:
            return
        if self.result is None:
            raise ReporterStateError("set_result must be called before "
                                     "output")
        if self._file is None:
            raise ReporterStateError("open_file must be called before "
                                     "output")
        data = self.to_json()
        with self._lock:
            self._file.write(data.encode('utf-8'))
            self._file.flush()
            self._written = True

    def cleanup(self):
        if self._file is not None and not self._file.closed:
            self._file.close()

    def filename(self) -> str:
        return self._filename


class Reporters(list):
    """Fans every call out to a list of reporters"""
    def report_test(self, name: str, result: str,
                    duration: datetime.timedelta, output: bytes):
        for r in self:
            r.report_test(name, result, duration, output)

    def set_result(self, result: str):
        for r in self:
            r.set_result(result)

    def output(self):
        for r in self:
            r.output()

    def open_file(self, path_func: Callable[[str], str]):
        for r in self:
            r.open_file(path_func(r.filename()))

    def cleanup(self):
        errors: List[BaseException] = []
        for r in self:
            try:
                r.cleanup()
            except Exception as e:
                logger.error(f"cleaning up reporter {r.filename()}: {e}")
                errors.append(e)
        if errors:
            raise MultiError(errors)
