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

# Every test gets a cluster of its own. Tests run in threads, at most
# `parallel` at a time, and a failing test (or a cluster that fails to come
# up or go away) only fails that test.

import datetime
import logging
import threading
import time
import traceback
from typing import Callable, List, Optional

from kola.lib.exceptions import MultiError, TestFatal
from kola.lib.harness import register
from kola.lib.harness.cluster import TestCluster
from kola.lib.harness.reporters import JSONReporter, Reporters
from kola.lib.platform import new_cluster
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.workspace import Workspace


logger = logging.getLogger(__name__)

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"

ClusterFactory = Callable[[str, Workspace], ClusterBase]


class TestResult():
    __test__ = False

    def __init__(self, name: str, result: str,
                 duration: datetime.timedelta, output: bytes = b""):
        self.name = name
        self.result = result
        self.duration = duration
        self.output = output

    def __repr__(self):
        return f"<TestResult {self.name} {self.result}>"


def run_test(test: register.Test, platform: str, workspace: Workspace,
             cluster_factory: ClusterFactory = new_cluster) -> TestResult:
    """Run a single test on a fresh cluster and tear the cluster down"""
    started = time.monotonic()
    result = PASS
    tc: Optional[TestCluster] = None
    errors: List[str] = []

    try:
        with cluster_factory(platform, workspace) as cluster:
            for _ in range(test.cluster_size):
                cluster.new_machine(test.userdata)
            tc = TestCluster(test.name, cluster)
            try:
                test.run(tc)
            except TestFatal:
                result = FAIL
    except MultiError as e:
        # raised by the cluster teardown
        logger.error(f"{test.name}: cleaning up failed: {e}")
        errors.append(f"cleaning up failed: {e}")
        result = FAIL
    except Exception as e:
        logger.error(f"{test.name}: {e}")
        errors.append(traceback.format_exc())
        result = FAIL

    output = tc.output() if tc is not None else b""
    output += "".join(f"{e}\n" for e in errors).encode()
    duration = datetime.timedelta(seconds=time.monotonic() - started)
    logger.info(f"--- {result}: {test.name} ({duration.total_seconds():.2f}s)")
    return TestResult(test.name, result, duration, output)


def run_tests(pattern: str, platform: str, workspace: Workspace,
              parallel: int = 1, reporters: Optional[Reporters] = None,
              cluster_factory: ClusterFactory = new_cluster) -> bool:
    """
    Run every registered test matching the glob `pattern` and write the
    reports into the workspace

    Tests that do not run on `platform` are reported as SKIP. Returns
    True if no test failed.
    """
    selected = register.filter_tests(pattern, platform)
    if not selected:
        logger.warning(f"no tests match {pattern!r}")

    if reporters is None:
        reporters = Reporters([JSONReporter("report.json", platform, "")])
    reporters.open_file(workspace.path)

    results: List[TestResult] = []
    results_lock = threading.Lock()
    semaphore = threading.BoundedSemaphore(max(parallel, 1))

    def record(test_result: TestResult):
        with results_lock:
            results.append(test_result)
            reporters.report_test(test_result.name, test_result.result,
                                  test_result.duration, test_result.output)

    def run(test: register.Test):
        with semaphore:
            record(run_test(test, platform, workspace, cluster_factory))

    threads = []
    for test, runs_on in selected:
        if not runs_on:
            logger.info(f"--- {SKIP}: {test.name} (not on {platform})")
            record(TestResult(test.name, SKIP, datetime.timedelta()))
            continue
        t = threading.Thread(target=run, args=(test,), name=test.name)
        threads.append(t)
        t.start()

    # wait for all threads to finish
    for t in threads:
        t.join()

    passed = all(r.result != FAIL for r in results)
    try:
        reporters.set_result(PASS if passed else FAIL)
        reporters.output()
    finally:
        reporters.cleanup()
    return passed
