"""
simple io use case - run work in another process, collect what it printed and what it returned
"""
import os

from forkpool import ForkPool

def greet(name):
    print("Hello {}, from pid {}!".format(name, os.getpid()))
    return len(name)

with ForkPool() as pool:
    pool.fork(greet, "world")
    result = pool.get()[0]
    print(result.output, end="")
    print("returned {!r} with {!r}".format(result.value, result.status))
