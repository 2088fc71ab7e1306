"""
state management example - stream results, inspect failures, stop with a signal

Queues a few sleepers, one of which fails, and prints each value as soon as it is
the next one in queue order. Press Ctrl-C (or send SIGTERM) to stop the owner; the
master and every worker are terminated with it.
"""

import logging
import sys
import time

from forkpool import ForkPool

def sleeper(seconds):
    time.sleep(seconds)
    if seconds == 2:
        sys.exit(2)
    return seconds

def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    print("Spawning sleepers...")
    with ForkPool({"concurrency": 2}) as pool:
        for seconds in [3, 1, 2, 5]:
            pool.fork(sleeper, seconds, "sleepers")

        for value in pool.generator():
            print("Sleeper finished: {}".format(value))

        if pool.has_error():
            error = pool.get_error()
            print("A sleeper failed: pid {} exited with {}".format(error.pid, error.exit_code))

    print("All sleepers are finished.")

if __name__ == "__main__":
    main()
