import bisect
import os
import signal
from enum import Enum
from typing import List, Optional


class StatusKind(Enum):
    """How a worker finished.

    Values:
    SUCCESS - the task returned normally and the worker exited 0
    EXITED - the worker exited with a non-zero code, or its result could not be delivered
    KILLED - the worker was terminated by a signal"""
    SUCCESS = 1
    EXITED = 2
    KILLED = 3


class Status():
    """The termination status attached to a Result."""
    def __init__(self, kind, code=0):
        self._kind = kind
        self._code = code

    @classmethod
    def success(cls):
        return cls(StatusKind.SUCCESS)

    @classmethod
    def exited(cls, code):
        return cls(StatusKind.EXITED, code)

    @classmethod
    def killed(cls, signum):
        return cls(StatusKind.KILLED, signum)

    @classmethod
    def from_wait_status(cls, wait_status):
        """Decode a status word returned by os.waitpid()."""
        if os.WIFSIGNALED(wait_status):
            return cls.killed(os.WTERMSIG(wait_status))
        code = os.WEXITSTATUS(wait_status)
        if code == 0:
            return cls.success()
        return cls.exited(code)

    @property
    def kind(self) -> StatusKind:
        """Read-only."""
        return self._kind

    @property
    def code(self) -> int:
        """The exit code for EXITED, the signal number for KILLED, 0 for SUCCESS. Read-only."""
        return self._code

    @property
    def ok(self) -> bool:
        """True only for SUCCESS. Read-only."""
        return self._kind == StatusKind.SUCCESS

    def __eq__(self, other):
        if not isinstance(other, Status):
            return NotImplemented
        return self._kind == other._kind and self._code == other._code

    def __hash__(self):
        return hash((self._kind, self._code))

    def __repr__(self):
        if self._kind == StatusKind.SUCCESS:
            return "Status(SUCCESS)"
        if self._kind == StatusKind.KILLED:
            try:
                name = signal.Signals(self._code).name
            except ValueError:
                name = str(self._code)
            return "Status(KILLED, {})".format(name)
        return "Status(EXITED, {})".format(self._code)


class Result():
    """The outcome of one executed Task.

    Created by the worker that ran the task, then owned by the master and finally
    handed to the owner process by value."""
    def __init__(self, task_id, tag, value=None, output="", status=None, pid=None, error=None):
        self._task_id = task_id
        self._tag = tag
        self._value = value
        self._output = output
        self._status = status if status is not None else Status.success()
        self._pid = pid
        self._error = error

    @property
    def task_id(self) -> int:
        """Read-only."""
        return self._task_id

    @property
    def tag(self) -> Optional[str]:
        """Read-only."""
        return self._tag

    @property
    def value(self):
        """The value returned by the task, None if it did not return. Read-only."""
        return self._value

    @property
    def output(self) -> str:
        """Everything the task wrote to standard output. Read-only."""
        return self._output

    @property
    def status(self) -> Status:
        """Read-only."""
        return self._status

    @property
    def pid(self) -> Optional[int]:
        """The pid of the worker that ran the task. Read-only."""
        return self._pid

    @property
    def error(self) -> Optional[str]:
        """The formatted traceback if the task raised, None otherwise. Read-only."""
        return self._error

    def with_status(self, status, pid=None):
        """A copy of this result carrying a different status (and pid, if given)."""
        return Result(self._task_id, self._tag, self._value, self._output, status,
                      pid if pid is not None else self._pid, self._error)

    def __repr__(self):
        return "Result(#{}, tag={!r}, value={!r}, {!r})".format(
            self._task_id, self._tag, self._value, self._status)


class ResultCollection():
    """Results ordered by task id, which is the order the tasks were enqueued.

    Results may be added in any order; iteration, indexing and to_list() always follow
    enqueue order. A secondary index keeps the ids carrying each tag."""
    def __init__(self, results=()):
        self._results = {}
        self._ids = []
        self._tags = {}
        for result in results:
            self.add(result)

    def add(self, result):
        if result.task_id in self._results:
            raise ValueError("A result for task #{} was already collected".format(result.task_id))
        self._results[result.task_id] = result
        bisect.insort(self._ids, result.task_id)
        if result.tag is not None:
            bisect.insort(self._tags.setdefault(result.tag, []), result.task_id)

    def has(self, task_id) -> bool:
        return task_id in self._results

    def by_id(self, task_id) -> Result:
        return self._results[task_id]

    def has_tag(self, tag) -> bool:
        return tag in self._tags

    def tags(self) -> List[str]:
        """The distinct tags present, in order of their first task."""
        return sorted(self._tags, key=lambda tag: self._tags[tag][0])

    def filter(self, tag):
        """A new collection holding only the results whose task carried `tag`."""
        return ResultCollection(self._results[task_id] for task_id in self._tags.get(tag, []))

    def to_list(self) -> list:
        """The return values, in enqueue order."""
        return [result.value for result in self]

    def outputs(self) -> List[str]:
        """The captured standard output of each task, in enqueue order."""
        return [result.output for result in self]

    def __iter__(self):
        return (self._results[task_id] for task_id in list(self._ids))

    def __len__(self):
        return len(self._ids)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._results[task_id] for task_id in self._ids[index]]
        return self._results[self._ids[index]]

    def __contains__(self, result):
        return isinstance(result, Result) and self._results.get(result.task_id) is result

    def __repr__(self):
        return "ResultCollection({!r})".format(list(self))


class FailureRecord():
    """Details of an abnormal worker termination.

    Exactly one of `signal` and `exit_code` is set."""
    def __init__(self, pid, status, tag=None, task_id=None, message=""):
        self._pid = pid
        self._status = status
        self._tag = tag
        self._task_id = task_id
        self._message = message

    @property
    def pid(self) -> Optional[int]:
        """Read-only."""
        return self._pid

    @property
    def status(self) -> Status:
        """Read-only."""
        return self._status

    @property
    def signal(self) -> Optional[int]:
        """The signal that killed the worker, or None. Read-only."""
        if self._status.kind == StatusKind.KILLED:
            return self._status.code
        return None

    @property
    def exit_code(self) -> Optional[int]:
        """The exit code of the worker, or None if it was killed. Read-only."""
        if self._status.kind == StatusKind.KILLED:
            return None
        return self._status.code

    @property
    def cause(self) -> int:
        """The signal number or exit code, whichever applies. Read-only."""
        return self._status.code

    @property
    def tag(self) -> Optional[str]:
        """Read-only."""
        return self._tag

    @property
    def task_id(self) -> Optional[int]:
        """Read-only."""
        return self._task_id

    @property
    def message(self) -> str:
        """Read-only."""
        return self._message

    def __repr__(self):
        return "FailureRecord(pid={}, {!r}, tag={!r}, task_id={}, message={!r})".format(
            self._pid, self._status, self._tag, self._task_id, self._message)
