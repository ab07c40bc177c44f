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

import logging
import pdb
import subprocess
import threading
import time
from typing import (Any, Callable, Dict, Iterable, List, Optional, Tuple,
                    Type)

from kola.lib.exceptions import MultiError, PollCancelled, ReadinessTimeout


logger = logging.getLogger(__name__)

# Locks for get-or-create of provider resources, keyed by resource name
_named_locks: Dict[str, threading.Lock] = {}
_named_locks_lock = threading.Lock()


def named_lock(name: str) -> threading.Lock:
    """Return the process wide lock for `name`, creating it if needed

    Provider APIs do not serialize creation of resources that are looked up
    by name (security groups, networks), so concurrent clusters in the same
    account must hold this lock around their get-or-create.
    """
    with _named_locks_lock:
        if name not in _named_locks:
            _named_locks[name] = threading.Lock()
        return _named_locks[name]


def wait_until_ready(timeout: float, interval: float,
                     predicate: Callable[[], bool],
                     retry_on: Tuple[Type[BaseException], ...] = (),
                     cancel: Optional[threading.Event] = None,
                     description: str = "") -> None:
    """Polls `predicate` until it returns True or `timeout` seconds elapse

    The first call happens immediately; afterwards `predicate` is called at
    most once per `interval`. Any exception raised by `predicate` aborts the
    poll and is propagated, unless it is an instance of one of the
    `retry_on` types, in which case it counts as "not ready yet".

    Raises ReadinessTimeout when the timeout elapses and PollCancelled when
    `cancel` is set.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise PollCancelled(description or "poll cancelled")
        attempt += 1
        started = time.monotonic()
        try:
            if predicate():
                return
        except retry_on as e:
            logger.debug(f"{description or predicate}: attempt {attempt} "
                         f"failed with retryable error: {e}")

        now = time.monotonic()
        if now >= deadline:
            raise ReadinessTimeout(timeout, description)
        # wait out the rest of the interval, but never past the deadline
        sleep = min(interval - (now - started), deadline - now)
        if sleep > 0:
            if cancel is not None:
                if cancel.wait(sleep):
                    raise PollCancelled(description or "poll cancelled")
            else:
                time.sleep(sleep)


def retry(attempts: int, delay: float, func: Callable[[], Any]) -> Any:
    """Calls `func` until it does not raise, at most `attempts` times

    Returns the result of the first successful call. The last exception is
    re-raised if every attempt failed.
    """
    if attempts < 1:
        raise ValueError(f"retry needs at least one attempt, got {attempts}")
    for i in range(attempts):
        try:
            return func()
        except Exception as e:
            if i == attempts - 1:
                raise
            logger.debug(f"attempt {i + 1}/{attempts} failed: {e}")
            time.sleep(delay)


Step = Tuple[str, Callable[..., Any], tuple]


def run_steps(steps: Iterable[Step],
              log: Optional[logging.Logger] = None) -> List[BaseException]:
    """Run every (description, func, args) step, even after failures

    Returns the exceptions raised by failing steps, in order.
    """
    log = log or logger
    errors: List[BaseException] = []
    for description, func, args in steps:
        try:
            func(*args)
        except Exception as e:
            log.error(f"{description} failed: {e}")
            errors.append(e)
    return errors


class CleanupStack():
    """An ordered list of named teardown steps

    Steps run in reverse order of registration. Every step is attempted even
    if an earlier one failed; failures are logged and collected into a
    MultiError raised once all steps ran.
    """
    def __init__(self, log: Optional[logging.Logger] = None):
        self._steps: List[Step] = []
        self._log = log or logger

    def push(self, description: str, func: Callable[..., Any], *args):
        self._steps.append((description, func, args))

    def __len__(self):
        return len(self._steps)

    def run(self, raise_errors: bool = True) -> List[BaseException]:
        steps, self._steps = self._steps, []
        errors = run_steps(reversed(steps), self._log)
        if errors and raise_errors:
            raise MultiError(errors)
        return errors


def execute(command: str, capture: bool = False, check: bool = True,
            log_stdout: bool = True, log_stderr: bool = True,
            env: Optional[Dict[str, str]] = None,
            logger_name: Optional[str] = None) -> Tuple[
                int, Optional[str], Optional[str]]:
    """A helper util to excute `command`.

    If `log_stdout` or `log_stderr` are True, the stdout and stderr
    (respectfully) are redirected to the logging module. You can optionally
    catpure it by setting `capture` to True. stderr is logged as a warning as
    it is up to the caller to raise any actual errors from the RC code (or to
    use the `check` param).

    If `check` is true, subprocess.CalledProcessError is raised when the RC is
    non-zero. Note, however, that due to the way we're buffering the output
    into memory, stdout and stderr are only available on the exception if
    `capture` was True.

    `env` is a dictionary of environment vars passed into Popen.

    `logger_name` changes the logger used. Otherwise `command` is used.

    Returns a tuple of (rc code, stdout, stdin), where stdout and stdin are
    None if `capture` is False, or are a string.
    """
    stdout_pipe = subprocess.PIPE \
        if log_stdout or capture else subprocess.DEVNULL

    stderr_pipe = subprocess.PIPE \
        if log_stderr or capture else subprocess.DEVNULL

    process = subprocess.Popen(
        command,
        shell=True,
        stdout=stdout_pipe, stderr=stderr_pipe,
        universal_newlines=True,
        env=env,
    )

    # Use a dictionary to capture the output as it is a mutable object that
    # we can access outside of the threads.
    output: Dict[str, Optional[str]] = {}
    output['stdout'] = None
    output['stderr'] = None
    if capture:
        output['stdout'] = ""
        output['stderr'] = ""

    def read_from_process(stream, key, level, capture_dict, logger_name):
        log = logging.getLogger(logger_name)
        while True:
            line = stream.readline()
            if line:
                log.log(level, line.rstrip())
                if capture_dict[key] is not None:
                    capture_dict[key] += line
            elif line == '' and process.poll() is not None:
                break

    logger_name = logger_name if logger_name is not None else command
    threads = []
    if log_stdout:
        threads.append(threading.Thread(
            target=read_from_process,
            args=(process.stdout, 'stdout', logging.INFO, output,
                  logger_name)
        ))
    if log_stderr:
        threads.append(threading.Thread(
            target=read_from_process,
            args=(process.stderr, 'stderr', logging.WARNING, output,
                  logger_name)
        ))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    if not log_stdout and capture:
        output['stdout'] = process.stdout.read()  # type: ignore
    if not log_stderr and capture:
        output['stderr'] = process.stderr.read()  # type: ignore

    rc = process.wait()
    logger.debug(f"Command {command} finished with RC {rc}")

    if check and rc != 0:
        if capture:
            raise subprocess.CalledProcessError(
                rc, command, output['stdout'], output['stderr'])
        else:
            raise subprocess.CalledProcessError(rc, command)

    return (rc, output['stdout'], output['stderr'])


def handle_cleanup_input(msg):
    """Hold a teardown until the operator continues or asks for pdb

    Used with KOLA__TEAR_DOWN_CLUSTER_CONFIRM to inspect machines before
    they go away. Input is line buffered, the answer needs an enter.
    """
    msg = f"\n{msg} (c=continue, d=debugger)\n"
    while True:
        i = input(msg).lower()
        if i == "c":
            break
        elif i == "d":
            pdb.set_trace()
            break
