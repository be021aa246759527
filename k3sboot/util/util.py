"""
General purpose utilities
"""
import os
import re
import signal
import subprocess as sp
import threading
import time

from functools import wraps

from k3sboot.util.logger import Logger

LOGGER = Logger(__name__)


class CommandError(RuntimeError):
    """An external command exited with a non-zero return code"""

    def __init__(self, cmd, returncode, output=""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__("command '{}' failed with exit code {}".format(
            " ".join(cmd) if isinstance(cmd, (list, tuple)) else cmd,
            returncode))


class PollTimeout(TimeoutError):
    """A bounded wait ran out of attempts or time"""

    def __init__(self, msg, attempts=0):
        self.attempts = attempts
        super().__init__(msg)


class PollCancelled(RuntimeError):
    """A wait was cancelled by its caller"""


def name_validation(name):
    """
    Validates a name that will be used as a cluster id.
    Each name should conform to the following convention:
    not too long (maximum 244 characters)
    only ASCII-letters, numbers and dashes

    Args:
        name (str): The name to be checked

    Returns:
        Name if valid

    Raises:
        ValueError if the name is invalid
    """
    if not isinstance(name, str) or not name:
        raise ValueError("cluster-id must be a non empty string")
    if len(name) > 244:
        raise ValueError("cluster-id is too long")
    allowed = re.compile(r"^[a-zA-Z\d-]+$")
    if not allowed.match(name):
        raise ValueError(f"cluster-id '{name}' is using illegal characters")
    return name


def run_cmd(cmd, env=None, check=True, shell=False, timeout=None):
    """Run an external command and log its output line by line.

    Output (stderr merged into stdout) is logged while the command runs,
    so a command which hangs still leaves its last lines in the log.

    Args:
        cmd (list or str): The command to run.
        env (dict): Extra environment variables, merged over ``os.environ``.
        check (bool): Raise :class:`CommandError` on a non-zero exit code.
        shell (bool): Run ``cmd`` through the shell.
        timeout (int): Seconds after which the command is killed.

    Returns:
        A ``subprocess.CompletedProcess`` with ``stdout`` as text.

    Raises:
        subprocess.TimeoutExpired if the command was killed after
        ``timeout`` seconds.
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update({k: str(v) for k, v in env.items()})

    printable = cmd if isinstance(cmd, str) else " ".join(cmd)
    LOGGER.debug("Running: %s", printable)

    lines = []
    killed = threading.Event()
    # a new session, so children of install scripts are killed too
    with sp.Popen(cmd, env=full_env, shell=shell, stdout=sp.PIPE,
                  stderr=sp.STDOUT, universal_newlines=True,
                  start_new_session=True) as proc:

        def kill():
            killed.set()
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        timer = None
        if timeout:
            timer = threading.Timer(timeout, kill)
            timer.start()
        try:
            for line in proc.stdout:
                line = line.rstrip("\n")
                LOGGER.info(line, color=False)
                lines.append(line)
            returncode = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()

    output = "".join(line + "\n" for line in lines)
    if killed.is_set():
        raise sp.TimeoutExpired(cmd, timeout, output=output)

    if check and returncode:
        raise CommandError(cmd, returncode, output)

    return sp.CompletedProcess(cmd, returncode, stdout=output)


def poll_until(predicate, interval, max_attempts=None, timeout=None,
               cancel=None, sleep=time.sleep, clock=time.monotonic,
               description="condition"):
    """Call ``predicate`` every ``interval`` seconds until it is true.

    Without ``max_attempts`` and ``timeout`` the wait is unbounded. A
    ``threading.Event`` passed as ``cancel`` stops the wait between two
    attempts.

    Args:
        predicate (callable): Returns a truthy value once the wait is over.
        interval (float): Fixed number of seconds between two attempts.
        max_attempts (int): Give up after this many calls of ``predicate``.
        timeout (float): Give up when this many seconds have passed.
        cancel (threading.Event): Abort the wait once set.
        sleep (callable): Used to wait between attempts.
        clock (callable): Monotonic time source for ``timeout``.
        description (str): Used in log and error messages.

    Returns:
        The truthy value returned by ``predicate``.

    Raises:
        PollTimeout if the attempts or the time are exhausted.
        PollCancelled if ``cancel`` was set.
    """
    start = clock()
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise PollCancelled(f"waiting for {description} was cancelled")

        attempt += 1
        result = predicate()
        if result:
            LOGGER.debug("%s reached after %d attempt(s)", description,
                         attempt)
            return result

        if max_attempts is not None and attempt >= max_attempts:
            raise PollTimeout(
                f"{description} not reached after {attempt} attempts",
                attempts=attempt)
        if timeout is not None and clock() - start >= timeout:
            raise PollTimeout(
                f"{description} not reached within {timeout} seconds",
                attempts=attempt)

        sleep(interval)


def retry(exceptions, tries=4, delay=3, backoff=1, logger=None,
          sleep=time.sleep):
    """
    Retry calling the decorated function with a fixed delay.

    Args:
        exceptions: The exception to check. may be a tuple of exceptions to check.
        tries: Number of times to try (not retry) before giving up.
        delay: Initial delay between retries in seconds.
        backoff: Backoff multiplier, the default keeps the delay fixed.
        logger: Logger to use. If None, print.
        sleep: Used to wait between two tries.
    """
    def deco_retry(f):  # pylint: disable=invalid-name

        @wraps(f)
        def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return f(*args, **kwargs)
                except exceptions as e:  # pylint: disable=invalid-name
                    msg = '{}, Retrying in {} seconds...'.format(e,
                                                                 int(mdelay))
                    if logger:
                        logger(msg)
                    else:
                        print(msg)
                    sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return f(*args, **kwargs)

        return f_retry  # true decorator

    return deco_retry


def write_if_changed(path, content, mode=None):
    """Write ``content`` to ``path`` unless it already holds exactly that.

    Args:
        path (pathlib.Path): The target file, parents are created.
        content (str): The full new file content.
        mode (int): Permission bits applied on every call.

    Returns:
        True if the file was (re)written.
    """
    changed = True
    if path.exists() and path.read_text() == content:
        changed = False

    if changed:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    if mode is not None:
        os.chmod(path, mode)

    return changed
