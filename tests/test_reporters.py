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
import json

import pytest

from kola.lib.exceptions import MultiError, ReporterStateError
from kola.lib.harness.reporters import (JSONReporter, Reporters,
                                        duration_ns, go_json_dumps)


@pytest.fixture
def reporter(tmp_path):
    r = JSONReporter("report.json", "aws", "2512.3.0")
    r.open_file(str(tmp_path / r.filename()))
    yield r
    r.cleanup()


def test_duration_ns():
    assert duration_ns(datetime.timedelta(seconds=1.5)) == 1500000000
    assert duration_ns(datetime.timedelta(days=1)) == 86400 * 10**9
    assert duration_ns(datetime.timedelta()) == 0


def test_go_json_dumps_escapes_html():
    assert go_json_dumps({"a": "<b>&</b>"}) == \
        '{"a":"\\u003cb\\u003e\\u0026\\u003c/b\\u003e"}'
    assert go_json_dumps(["\u2028\u2029"]) == '["\\u2028\\u2029"]'
    # non-ascii stays as is
    assert go_json_dumps("é") == '"é"'


def test_report(reporter, tmp_path):
    reporter.report_test("linux.nfs.v4", "PASS",
                         datetime.timedelta(seconds=2), b"mounted\n")
    reporter.report_test("linux.nfs.v3", "FAIL",
                         datetime.timedelta(milliseconds=5), b"")
    reporter.set_result("FAIL")
    reporter.output()

    data = (tmp_path / "report.json").read_bytes()
    report = json.loads(data)
    assert list(report) == ["tests", "result", "platform", "version"]
    assert report["tests"] == [
        {"name": "linux.nfs.v4", "result": "PASS",
         "duration": 2000000000, "output": "mounted\n"},
        {"name": "linux.nfs.v3", "result": "FAIL",
         "duration": 5000000, "output": ""},
    ]
    assert report["result"] == "FAIL"
    assert report["platform"] == "aws"
    assert report["version"] == "2512.3.0"


def test_report_without_tests(reporter, tmp_path):
    reporter.set_result("PASS")
    reporter.output()
    assert (tmp_path / "report.json").read_text() == \
        '{"tests":null,"result":"PASS","platform":"aws",' \
        '"version":"2512.3.0"}'


def test_invalid_utf8_output_is_escaped_per_byte(reporter, tmp_path):
    # a truncated three byte sequence, then a byte that never occurs in UTF-8
    reporter.report_test("t", "PASS", datetime.timedelta(),
                         b"a\xe2\x82b\xffok \xc3\xa9")
    reporter.set_result("PASS")
    reporter.output()

    data = (tmp_path / "report.json").read_bytes()
    assert b'"output":"a\\ufffd\\ufffdb\\ufffdok \xc3\xa9"' in data
    assert json.loads(data)["tests"][0]["output"] == \
        "a\ufffd\ufffdb\ufffdok \u00e9"


def test_go_json_dumps_replaces_escaped_bytes():
    assert go_json_dumps(b"\x80".decode('utf-8', 'surrogateescape')) == \
        '"\\ufffd"'


def test_output_requires_result(reporter):
    with pytest.raises(ReporterStateError):
        reporter.output()


def test_output_requires_file():
    r = JSONReporter("report.json", "aws", "")
    r.set_result("PASS")
    with pytest.raises(ReporterStateError):
        r.output()


def test_report_after_output(reporter, tmp_path):
    reporter.set_result("PASS")
    reporter.output()
    with pytest.raises(ReporterStateError):
        reporter.report_test("late", "PASS", datetime.timedelta(), b"")

    # a second output does not write again
    reporter.output()
    assert json.loads((tmp_path / "report.json").read_bytes())["tests"] \
        is None


class BrokenReporter(JSONReporter):
    def cleanup(self):
        raise OSError("disk gone")


def test_reporters_fan_out(tmp_path):
    first = JSONReporter("first.json", "qemu", "1")
    second = JSONReporter("second.json", "qemu", "1")
    reporters = Reporters([first, second])
    reporters.open_file(lambda filename: str(tmp_path / filename))
    reporters.report_test("t", "PASS", datetime.timedelta(), b"")
    reporters.set_result("PASS")
    reporters.output()
    reporters.cleanup()

    for name in ("first.json", "second.json"):
        report = json.loads((tmp_path / name).read_bytes())
        assert [t["name"] for t in report["tests"]] == ["t"]


def test_reporters_cleanup_collects_errors(tmp_path):
    good = JSONReporter("good.json", "qemu", "1")
    reporters = Reporters([BrokenReporter("bad.json", "qemu", "1"), good])
    reporters.open_file(lambda filename: str(tmp_path / filename))
    with pytest.raises(MultiError, match="disk gone"):
        reporters.cleanup()
    # the later reporter was still cleaned up
    assert good._file.closed
