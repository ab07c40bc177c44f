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

import argparse
import datetime
import logging
import sys
from typing import List, Optional

from kola.config import settings
from kola.lib.exceptions import KolaError
from kola.lib.harness import register
from kola.lib.harness.reporters import JSONReporter, Reporters
from kola.lib.harness.runner import run_tests
from kola.lib.platform import PLATFORMS, new_cluster
from kola.lib.workspace import Workspace
import kola.suites  # noqa: F401


logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # the SDKs are very chatty on DEBUG
    for name in ("botocore", "urllib3", "paramiko", "azure"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print_config(platform: str):
    logger.info("#"*79)
    logger.info("# kola Settings:")
    logger.info("# ==============")
    logger.info(f"# KOLA_CLUSTER_PREFIX={settings.CLUSTER_PREFIX}")
    logger.info(f"# KOLA_WORKSPACE_DIR={settings.WORKSPACE_DIR}")
    logger.info(f"# KOLA_PLATFORM={platform}")
    logger.info(f"# KOLA_PARALLEL={settings.PARALLEL}")
    logger.info(f"# KOLA_NODE_IMAGE_USER={settings.NODE_IMAGE_USER}")
    logger.info(f"# KOLA_SSH_TIMEOUT={settings.SSH_TIMEOUT}")
    logger.info(
        f"# KOLA_NO_SSH_KEY_IN_METADATA={settings.NO_SSH_KEY_IN_METADATA}")
    logger.info(f"# KOLA_VERSION={settings.VERSION}")
    logger.info(f"# KOLA_UPDATE_PAYLOAD={settings.UPDATE_PAYLOAD}")
    logger.info(f"# KOLA__REMOVE_WORKSPACE={settings._REMOVE_WORKSPACE}")
    logger.info(f"# KOLA__TEAR_DOWN_CLUSTER={settings._TEAR_DOWN_CLUSTER}")
    logger.info(
        f"# KOLA__TEAR_DOWN_CLUSTER_CONFIRM="
        f"{settings._TEAR_DOWN_CLUSTER_CONFIRM}")
    logger.info("#"*79)


def cmd_run(args: argparse.Namespace) -> int:
    _print_config(args.platform)
    with Workspace() as workspace:
        reporters = Reporters([
            JSONReporter(settings.JSON_REPORT, args.platform,
                         settings.VERSION),
        ])
        passed = run_tests(args.pattern, args.platform, workspace,
                           parallel=args.parallel, reporters=reporters)
        logger.info(f"report written to {workspace.working_dir}")
    print("PASS" if passed else "FAIL")
    return 0 if passed else 1


def cmd_list(args: argparse.Namespace) -> int:
    print(f"{'Test Name':<40} {'Platforms':<30} {'Machines'}")
    for test in register.tests():
        platforms = ",".join(test.platforms) or "all"
        print(f"{test.name:<40} {platforms:<30} {test.cluster_size}")
    return 0


def cmd_gc(args: argparse.Namespace) -> int:
    grace_period = datetime.timedelta(seconds=args.grace_period)
    with Workspace() as workspace:
        cluster = new_cluster(args.platform, workspace)
        cluster.api.gc(grace_period, dry_run=args.dry_run)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kola",
        description="Runs integration tests against machines on cloud "
                    "platforms and local qemu.")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Log at DEBUG level.")
    parser.add_argument('-p', '--platform', choices=PLATFORMS,
                        default=settings.PLATFORM,
                        help="Platform to run on (default: KOLA_PLATFORM).")
    subparsers = parser.add_subparsers(dest='command', required=True)

    run = subparsers.add_parser('run', help="Run tests.")
    run.add_argument('pattern', nargs='?', default='*',
                     help="Glob of the test names to run, eg. 'linux.*'")
    run.add_argument('--parallel', type=int, default=int(settings.PARALLEL),
                     help="Number of tests to run at the same time.")
    run.set_defaults(func=cmd_run)

    list_ = subparsers.add_parser('list', help="List the registered tests.")
    list_.set_defaults(func=cmd_list)

    gc = subparsers.add_parser(
        'gc', help="Remove resources created by kola that may be orphaned.")
    gc.add_argument('--grace-period', type=int,
                    default=int(settings.GC_GRACE_PERIOD),
                    help="Only remove resources older than this many "
                         "seconds.")
    gc.add_argument('-d', '--dry-run', action='store_true',
                    help="Do not actually remove resources. "
                         "Logs what would happen.")
    gc.set_defaults(func=cmd_gc)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _setup_logging(args.verbose)
    try:
        return args.func(args)
    except KolaError as e:
        logger.error(str(e))
        return 1


def kolet_main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the helper that runs native test functions inside a
    machine"""
    parser = argparse.ArgumentParser(
        prog="kolet", description="Runs native functions of kola tests.")
    subparsers = parser.add_subparsers(dest='command', required=True)
    run = subparsers.add_parser('run', help="Run a native function.")
    run.add_argument('test', help="Name of the test, eg. "
                                  "coreos.update.updatepayload")
    run.add_argument('func', help="Name of the native function.")
    args = parser.parse_args(argv)
    _setup_logging(False)

    try:
        test = register.get(args.test)
    except KolaError as e:
        logger.error(str(e))
        return 1
    func = test.native_funcs.get(args.func)
    if func is None:
        logger.error(f"test {args.test} has no native function {args.func}")
        return 1
    func()
    return 0


if __name__ == '__main__':
    sys.exit(main())
