"""
forkpool - run callables in a bounded pool of forked processes

    from forkpool import ForkPool

    with ForkPool(4) as pool:
        for n in range(10):
            pool.fork(pow, (n, 2), tag="squares")
        print(pool.get("squares").to_list())
"""

import logging

from .config import Config
from .facade import ForkPool, UnjoinedError
from .result import FailureRecord, Result, ResultCollection, Status, StatusKind
from .signals import ShutdownState, SignalBridge
from .task import Invocable, InvocableKind, Task

logging.getLogger("forkpool").addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "FailureRecord",
    "ForkPool",
    "Invocable",
    "InvocableKind",
    "Result",
    "ResultCollection",
    "ShutdownState",
    "SignalBridge",
    "Status",
    "StatusKind",
    "Task",
    "UnjoinedError",
]
