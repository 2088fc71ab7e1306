import functools
import inspect
from enum import Enum
from typing import Optional, Tuple


class InvocableKind(Enum):
    """The shape of the work a Task runs.

    Values:
    FUNCTION - a named, module-level function (or any other plain callable)
    BOUND_METHOD - a method looked up by name on a receiver object
    CLOSURE - a lambda, nested function or partial carrying a captured environment"""
    FUNCTION = 1
    BOUND_METHOD = 2
    CLOSURE = 3


class Invocable():
    """A reference to executable work with a single way to run it: `invoke(args)`.

    Use Invocable.of() to build one from a callable or from a (receiver, "method_name") pair."""
    def __init__(self, kind, target, selector=None):
        self._kind = kind
        self._target = target
        self._selector = selector

    @classmethod
    def of(cls, work):
        """Classify `work` and wrap it.

        Parameters
        ----------
        work
            A function, lambda, bound method, callable object, functools.partial,
            or a (receiver, "method_name") pair.

        Returns
        -------
        Invocable
            The wrapped work; `work` itself if it already is an Invocable
        """
        if isinstance(work, Invocable):
            return work
        if isinstance(work, tuple):
            if len(work) != 2 or not isinstance(work[1], str):
                raise TypeError("A method reference must be a (receiver, \"method_name\") pair")
            receiver, selector = work
            if not callable(getattr(receiver, selector, None)):
                raise TypeError("{!r} has no method named {!r}".format(receiver, selector))
            return cls(InvocableKind.BOUND_METHOD, receiver, selector)
        if not callable(work):
            raise TypeError("Tasks can only run callables, got {!r}".format(work))

        if inspect.ismethod(work):
            return cls(InvocableKind.BOUND_METHOD, work.__self__, work.__name__)
        if isinstance(work, functools.partial):
            return cls(InvocableKind.CLOSURE, work)
        if inspect.isfunction(work):
            if work.__name__ == "<lambda>" or "<locals>" in work.__qualname__ or work.__closure__:
                return cls(InvocableKind.CLOSURE, work)
            return cls(InvocableKind.FUNCTION, work)
        if inspect.isbuiltin(work) or inspect.isclass(work):
            return cls(InvocableKind.FUNCTION, work)
        # an instance with __call__
        return cls(InvocableKind.BOUND_METHOD, work, "__call__")

    @property
    def kind(self) -> InvocableKind:
        """The InvocableKind of this work. Read-only."""
        return self._kind

    @property
    def receiver(self):
        """The object a BOUND_METHOD is looked up on, None for other kinds. Read-only."""
        if self._kind == InvocableKind.BOUND_METHOD:
            return self._target
        return None

    @property
    def selector(self) -> Optional[str]:
        """The method name of a BOUND_METHOD, None for other kinds. Read-only."""
        return self._selector

    def invoke(self, args):
        """Run the work with the positional arguments in `args` and return its value."""
        if self._kind == InvocableKind.BOUND_METHOD:
            return getattr(self._target, self._selector)(*args)
        return self._target(*args)

    def __repr__(self):
        if self._kind == InvocableKind.BOUND_METHOD:
            return "Invocable({}, {!r}.{})".format(self._kind.name, self._target, self._selector)
        name = getattr(self._target, "__qualname__", repr(self._target))
        return "Invocable({}, {})".format(self._kind.name, name)


def normalize_args(args) -> Tuple:
    """Lists and tuples are argument lists; any other value is a single argument."""
    if isinstance(args, (list, tuple)):
        return tuple(args)
    return (args,)


class Task():
    """One unit of enqueued work. Immutable once created."""
    def __init__(self, task_id, invocable, args=(), tag=None):
        if tag is not None and not isinstance(tag, str):
            raise TypeError("A tag must be a string or None")
        self._task_id = task_id
        self._invocable = Invocable.of(invocable)
        self._args = normalize_args(args)
        self._tag = tag

    @property
    def task_id(self) -> int:
        """The sequence number assigned at enqueue time. Read-only."""
        return self._task_id

    @property
    def invocable(self) -> Invocable:
        """The work to run. Read-only."""
        return self._invocable

    @property
    def args(self) -> Tuple:
        """The positional arguments passed to the work. Read-only."""
        return self._args

    @property
    def tag(self) -> Optional[str]:
        """The caller-supplied label used to group results, or None. Read-only."""
        return self._tag

    def run(self):
        return self._invocable.invoke(self._args)

    def __repr__(self):
        return "Task(#{}, {!r}, tag={!r})".format(self._task_id, self._invocable, self._tag)
