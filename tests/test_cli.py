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

import pytest

from kola import cli
from kola.lib.exceptions import KolaError
from kola.lib.harness import register
from kola.lib.platform import get_cluster_class
from kola.lib.platform.cluster_base import ClusterBase
from kola.suites import update


def test_parse_run():
    args = cli.parse_args(["-p", "aws", "run", "linux.*", "--parallel", "3"])
    assert args.platform == "aws"
    assert args.pattern == "linux.*"
    assert args.parallel == 3
    assert args.func is cli.cmd_run


def test_parse_run_defaults():
    args = cli.parse_args(["run"])
    assert args.pattern == "*"
    assert args.parallel == 1
    assert args.platform == "qemu"


def test_parse_unknown_platform():
    with pytest.raises(SystemExit):
        cli.parse_args(["-p", "vagrant", "run"])


def test_list(capsys):
    assert cli.main(["list"]) == 0
    out = capsys.readouterr().out
    assert "linux.nfs.v4" in out
    assert "coreos.update.updatepayload" in out
    assert "qemu,aws" in out


def test_run(monkeypatch, workspace, capsys):
    run_tests = mock.MagicMock(return_value=False)
    monkeypatch.setattr(cli, "run_tests", run_tests)
    monkeypatch.setattr(cli, "Workspace", lambda: workspace)

    assert cli.main(["-p", "aws", "run", "linux.nfs.*"]) == 1
    assert capsys.readouterr().out.strip() == "FAIL"
    args, kwargs = run_tests.call_args
    assert args[:3] == ("linux.nfs.*", "aws", workspace)
    assert kwargs["parallel"] == 1
    assert kwargs["reporters"][0].platform == "aws"


def test_gc(monkeypatch, workspace):
    cluster = mock.MagicMock()
    new_cluster = mock.MagicMock(return_value=cluster)
    monkeypatch.setattr(cli, "new_cluster", new_cluster)
    monkeypatch.setattr(cli, "Workspace", lambda: workspace)

    assert cli.main(["-p", "oci", "gc", "--grace-period", "60", "-d"]) == 0
    new_cluster.assert_called_once_with("oci", workspace)
    cluster.api.gc.assert_called_once_with(datetime.timedelta(seconds=60),
                                           dry_run=True)


def test_kola_error_is_reported(monkeypatch, workspace):
    monkeypatch.setattr(cli, "new_cluster",
                        mock.MagicMock(side_effect=KolaError("no creds")))
    monkeypatch.setattr(cli, "Workspace", lambda: workspace)
    assert cli.main(["gc"]) == 1


def test_kolet_runs_native_function(monkeypatch):
    called = []
    test = register.get(update.TEST_NAME)
    monkeypatch.setitem(test.native_funcs, "Omaha",
                        lambda: called.append(True))
    assert cli.kolet_main(["run", update.TEST_NAME, "Omaha"]) == 0
    assert called == [True]


def test_kolet_unknown(monkeypatch):
    assert cli.kolet_main(["run", "linux.missing", "Omaha"]) == 1
    assert cli.kolet_main(["run", "linux.nfs.v4", "Omaha"]) == 1


def test_unknown_platform():
    with pytest.raises(KolaError, match="not yet supported"):
        get_cluster_class("vagrant")


def test_platform_cluster_class():
    pytest.importorskip("libvirt")
    cls = get_cluster_class("qemu")
    assert issubclass(cls, ClusterBase)
    assert cls.substitutions["$private_ipv4"] == \
        "${COREOS_QEMU_IPV4_PRIVATE}"
