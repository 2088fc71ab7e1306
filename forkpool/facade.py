import itertools
import os
import weakref
from collections.abc import Mapping

from .config import Config
from .pool import ProcessPool
from .signals import SignalBridge
from .task import Task


class UnjoinedError(RuntimeError):
    """A ForkPool was discarded with tasks that were never waited for."""


class ForkPool():
    """Runs callables in forked processes and collects their results.

    A ForkPool may be created with no argument (default options), with a positive integer
    (the concurrency), or with a mapping of options (see Config).

    Tasks are queued with fork(). The first fork() starts a master process, which forks one
    worker per task, never more than `concurrency` at once. Results come back in the order
    the tasks were queued, through wait() and get(), or one by one through generator().

    Only the process that created the ForkPool (the owner) tears it down. A ForkPool that
    forked tasks must be joined - by wait(), get() or by exhausting generator() - before it
    is closed, otherwise close() raises UnjoinedError.

    May be used with Python's `with` statement - upon the exit of the block the ForkPool is closed."""
    def __init__(self, parameter=None):
        if parameter is None:
            config = Config()
        elif isinstance(parameter, Config):
            config = parameter
        elif isinstance(parameter, bool):
            raise TypeError("ForkPool accepts nothing, a positive integer or a mapping of options")
        elif isinstance(parameter, int):
            if parameter < 1:
                raise ValueError("concurrency must be at least 1")
            config = Config({"concurrency": parameter})
        elif isinstance(parameter, Mapping):
            config = Config(parameter)
        else:
            raise TypeError("ForkPool accepts nothing, a positive integer or a mapping of options")

        self._config = config
        self._owner_pid = os.getpid()
        self._pool = ProcessPool(config, self._owner_pid)
        self._log = self._pool.log
        self._task_ids = itertools.count(1)
        self._joined = False
        self._forked = False
        self._closed = False
        self._received_signal = None

        self._bridge = SignalBridge(_weak_callback(self._on_signal))
        try:
            self._bridge.install()
        except ValueError:
            self._log.warning("signal handlers were not installed: not running in the main thread")

        self._log.info("parent pid: {}".format(self._owner_pid))

    @property
    def concurrency(self) -> int:
        """Maximum number of tasks running at once. Read-only."""
        return self._config.concurrency

    @property
    def owner_pid(self) -> int:
        """The pid of the process that created this ForkPool. Read-only."""
        return self._owner_pid

    @property
    def received_signal(self):
        """The shutdown signal received by the owner, or None. Read-only."""
        return self._received_signal

    def is_owner(self) -> bool:
        """Return true if the calling process is the one that created this ForkPool."""
        return os.getpid() == self._owner_pid

    def fork(self, invocable, args=(), tag=None):
        """Queue a task.

        Parameters
        ----------
        invocable
            A function, lambda, bound method, callable object, or a (receiver, "method_name") pair.
        args: optional
            The positional arguments. A list or tuple is used as the argument list;
            any other value is passed as the only argument.
        tag: str, optional
            A label that get(tag) can later select the result by.

        Raises RuntimeError if the task could not be handed to the master process."""
        task = Task(next(self._task_ids), invocable, args, tag)

        if not self._pool.exists_master():
            try:
                self._pool.fork_master()
            except OSError as e:
                raise RuntimeError("Could not start the master process: {}".format(e)) from e

        self._pool.enqueue(task)
        self._joined = False
        self._forked = True
        self._log.info("queued task #{}".format(self._pool.queued_count))

    def wait(self):
        """Block until every queued task has completed. Returns immediately if there is nothing to wait for."""
        self._pool.wait()
        self._joined = True

    def has_error(self) -> bool:
        """Return true if a worker exited non-zero or was killed. Does not block."""
        self._pool.poll()
        return self._pool.error

    def get_error(self):
        """The FailureRecord of the most recent abnormal termination, or None. Does not block."""
        self._pool.poll()
        return self._pool.last_failure

    def get(self, tag=None):
        """Return the results, waiting for the tasks first if necessary.

        Parameters
        ----------
        tag: str, optional
            Only return the results of tasks queued with this tag.

        Returns
        -------
        ResultCollection
            The results, in the order their tasks were queued

        Raises ValueError if no task was queued with `tag`."""
        if not self._joined:
            self.wait()
        if tag is not None and not self._pool.has_tag(tag):
            raise ValueError("unknown tag: {}".format(tag))
        if tag is None:
            return self._pool.collection
        return self._pool.collection.filter(tag)

    def generator(self):
        """Yield the return value of each task in queue order, as soon as it is available.

        A later task that finishes first is held back until all earlier ones were yielded.
        No tasks may be queued while the generator runs."""
        for value in self._pool.results():
            yield value
        self._joined = True

    def set_received_signal(self, signum):
        self._received_signal = signum

    def close(self):
        """Shut down the master process if it is still running and check that the tasks were joined.

        Does nothing outside the owner process, and nothing the second time.
        Raises UnjoinedError if tasks were forked but never joined and no shutdown signal was received."""
        self._close(check_joined=True)

    def _close(self, check_joined):
        if not self.is_owner() or self._closed:
            return
        self._closed = True

        if self._pool.exists_master():
            self._log.info("shutdown master process.")
            self._pool.shutdown()
            self._log.info("master process has been shut down.")
        self._bridge.restore()

        if self._forked and not self._joined and self._received_signal is None:
            message = "forkpool will have to wait for the child processes to complete. please use ForkPool.wait()"
            self._log.error(message)
            if check_joined:
                raise UnjoinedError(message)

    def _on_signal(self, signum):
        if not self.is_owner():
            return
        self._log.info("received signal. signo: {}".format(signum))
        self.set_received_signal(signum)

        self._log.info("--> sending a signal to the master.")
        self._pool.signal_master(signum)
        self._log.info("<-- signal handling has been completed successfully.")

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        # an exception already unwinding the block takes precedence over UnjoinedError
        self._close(check_joined=type is None)

    def __del__(self):
        # an UnjoinedError raised here is reported through sys.unraisablehook
        if "_pool" in self.__dict__:
            self.close()


def _weak_callback(method):
    # the signal module holds the handler; it must not keep the ForkPool alive
    ref = weakref.WeakMethod(method)

    def callback(signum):
        bound = ref()
        if bound is not None:
            bound(signum)
    return callback
