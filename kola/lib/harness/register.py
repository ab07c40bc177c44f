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

from collections import OrderedDict
import fnmatch
from typing import (TYPE_CHECKING, Callable, Dict, List, Optional, Sequence,
                    Tuple)

from kola.lib.conf import UserData
from kola.lib.exceptions import KolaError

if TYPE_CHECKING:
    from kola.lib.harness.cluster import TestCluster


class Test():
    """
    A registered test

    `cluster_size` machines are created with `userdata` before `run` is
    called. `platforms` limits the test to those platforms, an empty list
    means all of them. `native_funcs` are run inside a machine through
    `kolet run <test> <func>`.
    """
    __test__ = False

    def __init__(self, name: str, run: Callable[['TestCluster'], None],
                 cluster_size: int = 0,
                 platforms: Optional[Sequence[str]] = None,
                 exclude_platforms: Optional[Sequence[str]] = None,
                 native_funcs: Optional[Dict[str, Callable[[], None]]] = None,
                 userdata: Optional[UserData] = None):
        self.name = name
        self.run = run
        self.cluster_size = cluster_size
        self.platforms = list(platforms or [])
        self.exclude_platforms = list(exclude_platforms or [])
        self.native_funcs = dict(native_funcs or {})
        self.userdata = userdata

    def runs_on(self, platform: str) -> bool:
        if platform in self.exclude_platforms:
            return False
        return not self.platforms or platform in self.platforms

    def __repr__(self):
        return f"<Test {self.name}>"


_tests: Dict[str, Test] = OrderedDict()


def register(test: Test):
    if test.name in _tests:
        raise KolaError(f"test {test.name} is already registered")
    _tests[test.name] = test


def tests() -> List[Test]:
    return list(_tests.values())


def get(name: str) -> Test:
    try:
        return _tests[name]
    except KeyError:
        raise KolaError(f"no test named {name}") from None


def filter_tests(pattern: str, platform: str) -> List[Tuple[Test, bool]]:
    """Return (test, runs on platform) for every test matching the glob"""
    return [(t, t.runs_on(platform)) for t in tests()
            if fnmatch.fnmatchcase(t.name, pattern)]
