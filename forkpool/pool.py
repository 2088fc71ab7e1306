import io
import os
import signal
import sys
import time
import traceback
from collections import deque
from enum import Enum

from .log import Log
from .result import FailureRecord, Result, ResultCollection, Status, StatusKind
from .signals import SignalBridge, block_signals, unblock_signals
from .transport import Channel, ResultStore, TransportError


class Role(Enum):
    """The part a process plays. Set once, right after the fork that created the process."""
    OWNER = "owner"
    MASTER = "master"
    WORKER = "worker"


class ProcessPool():
    """Runs Tasks in forked worker processes, at most `config.concurrency` at a time.

    The same object is used in all three roles. In the owner it starts the master,
    sends it tasks and collects what the master reports. In the master it runs the
    dispatch/reap loop. In a worker it executes exactly one task.

    Should not be instantiated directly - ForkPool creates and drives it."""
    def __init__(self, config, owner_pid):
        self._config = config
        self._owner_pid = owner_pid
        self.role = Role.OWNER
        self.log = Log(config.logger, self.role.value)

        self.collection = ResultCollection()
        self.error = False
        self.last_failure = None

        self._channel = None
        self._master_pid = None
        self._master_done = False
        self._close_sent = False
        self._queued = 0
        self._tags = set()
        self._unyielded = deque()

        self._queue = deque()
        self._running = {}
        self._closing = False
        self._store = None
        self._bridge = None

    @property
    def master_pid(self):
        """The pid of the running master, or None. Read-only."""
        return self._master_pid

    @property
    def queued_count(self) -> int:
        """The number of tasks enqueued since the current master started. Read-only."""
        return self._queued

    def exists_master(self) -> bool:
        return self._master_pid is not None

    def has_tag(self, tag) -> bool:
        """Whether a task enqueued since the current master started carried `tag`."""
        return tag in self._tags

    # owner side

    def fork_master(self):
        """Start a master process for a new generation of tasks."""
        self.collection = ResultCollection()
        self.error = False
        self.last_failure = None
        self._master_done = False
        self._close_sent = False
        self._queued = 0
        self._tags = set()
        self._unyielded.clear()

        task_r, task_w = os.pipe()
        result_r, result_w = os.pipe()
        mask = block_signals()
        try:
            pid = os.fork()
        except OSError:
            unblock_signals(mask)
            for fd in (task_r, task_w, result_r, result_w):
                os.close(fd)
            raise
        if pid == 0:
            os.close(task_w)
            os.close(result_r)
            self._run_as_master(Channel(task_r, result_w), mask)

        unblock_signals(mask)
        os.close(task_r)
        os.close(result_w)
        self._master_pid = pid
        self._channel = Channel(result_r, task_w)
        self.log.info("forked master process. pid: {}".format(pid))

    def enqueue(self, task):
        """Hand a task to the master. Raises RuntimeError if it cannot be delivered."""
        if self._master_pid is None:
            raise RuntimeError("The master process is not running")
        if self._close_sent:
            raise RuntimeError("Tasks cannot be added while the results are being drained")
        try:
            self._channel.send("task", task)
        except Exception as e:
            raise RuntimeError("Could not enqueue task #{}: {}".format(task.task_id, e)) from e
        self._queued += 1
        if task.tag is not None:
            self._tags.add(task.tag)
        self._unyielded.append(task.task_id)

    def poll(self):
        """Take in whatever the master already reported, without blocking."""
        if self._channel is not None:
            self._absorb(self._channel.poll())

    def wait(self):
        """Block until the master has run every task, then reap it. Does nothing without a master."""
        if self._master_pid is None:
            return
        self._close_queue()
        while not self._master_done and not self._channel.eof:
            self._absorb(self._channel.receive())
        self._reap_master()

    def results(self):
        """Yield return values in enqueue order as soon as each one is available.

        Results that finish early are held back until every earlier task has been yielded.
        A task whose result never arrives (the master died) is skipped."""
        if self._master_pid is not None:
            self._close_queue()
        while self._unyielded:
            task_id = self._unyielded[0]
            while not self.collection.has(task_id) and self._awaiting_master():
                self._absorb(self._channel.receive())
            self._unyielded.popleft()
            if self.collection.has(task_id):
                yield self.collection.by_id(task_id).value
        self.wait()

    def signal_master(self, signum=signal.SIGTERM):
        if self._master_pid is None:
            return
        try:
            os.kill(self._master_pid, signum)
        except ProcessLookupError:
            self.log.info("master process {} is already gone".format(self._master_pid))

    def shutdown(self):
        """Terminate the master (which terminates its workers) and reap it."""
        if self._master_pid is None:
            return
        self.signal_master(signal.SIGTERM)
        try:
            os.waitpid(self._master_pid, 0)
        except ChildProcessError:
            pass
        self._channel.close()
        self._channel = None
        self._master_pid = None

    def _awaiting_master(self) -> bool:
        return self._master_pid is not None and not self._master_done and not self._channel.eof

    def _close_queue(self):
        if self._close_sent:
            return
        self._close_sent = True
        try:
            self._channel.send("close")
        except BrokenPipeError:
            # the master is gone; the drain loop sees EOF and _reap_master records it
            self.log.error("could not reach the master process {}".format(self._master_pid))

    def _absorb(self, messages):
        for kind, payload in messages:
            if kind == "result":
                self.collection.add(payload)
            elif kind == "failure":
                self.error = True
                self.last_failure = payload
            elif kind == "done":
                self._master_done = True

    def _reap_master(self):
        pid = self._master_pid
        try:
            _, wait_status = os.waitpid(pid, 0)
            status = Status.from_wait_status(wait_status)
        except ChildProcessError:
            status = Status.exited(1)
        if not self._master_done:
            self.error = True
            self.last_failure = FailureRecord(
                pid, status, message="the master process ended before reporting completion")
            self.log.error("master process {} ended unexpectedly: {!r}".format(pid, status))
        else:
            self.log.info("master process {} completed {} tasks".format(pid, len(self.collection)))
        self._channel.close()
        self._channel = None
        self._master_pid = None

    # master side

    def _set_role(self, role):
        self.role = role
        self.log.role = role.value

    def _run_as_master(self, channel, mask):
        code = 1
        try:
            self._set_role(Role.MASTER)
            self._channel = channel
            self._master_pid = None
            os.setpgid(0, 0)
            self._bridge = SignalBridge(self._forward_to_workers)
            self._bridge.install()
            unblock_signals(mask)
            self._store = ResultStore.create(self._config.tmp_dir)
            try:
                code = self._master_loop()
            except BrokenPipeError:
                self.log.error("the owner process went away; terminating workers")
                self._terminate_workers(signal.SIGTERM)
        except Exception:
            self.log.exception("the master loop failed")
        finally:
            if self.role is Role.MASTER:
                if self._store is not None:
                    self._store.remove()
                os._exit(code)

    def _master_loop(self) -> int:
        interval = self._config.polling_interval
        while not self._closing or self._queue or self._running:
            self._dispatch()
            if self._channel.eof:
                if not self._closing:
                    self.log.error("the owner process went away; terminating workers")
                    self._terminate_workers(signal.SIGTERM)
                    return 1
                time.sleep(interval)
                messages = []
            elif self._running:
                messages = self._channel.receive(interval)
            elif self._closing:
                continue
            else:
                messages = self._channel.receive()

            for kind, payload in messages:
                if kind == "task":
                    self._queue.append(payload)
                elif kind == "close":
                    self._closing = True
            self._reap()

        self.log.info("collected {} results".format(len(self.collection)))
        self._channel.send("done")
        return 0

    def _dispatch(self):
        while self._queue and len(self._running) < self._config.concurrency:
            task = self._queue.popleft()
            try:
                pid = self._fork_worker(task)
            except OSError as e:
                self.log.error("could not fork a worker for task #{}: {}".format(task.task_id, e))
                self._publish(task, Result(task.task_id, task.tag, status=Status.exited(1),
                                           error="fork failed: {}".format(e)), None)
                continue
            self._running[pid] = task
            self.log.debug("forked worker for task #{}. pid: {}".format(task.task_id, pid))

    def _fork_worker(self, task) -> int:
        mask = block_signals()
        try:
            pid = os.fork()
        except OSError:
            unblock_signals(mask)
            raise
        if pid == 0:
            self._run_as_worker(task, mask)
        unblock_signals(mask)
        return pid

    def _reap(self):
        while self._running:
            try:
                pid, wait_status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                # the workers were reaped behind our back (SIGCHLD ignored); use what they wrote
                for pid, task in list(self._running.items()):
                    del self._running[pid]
                    self._collect(task, pid, None)
                return
            if pid == 0:
                return
            task = self._running.pop(pid, None)
            if task is None:
                continue
            self.log.debug("reaped worker {} for task #{}".format(pid, task.task_id))
            self._collect(task, pid, Status.from_wait_status(wait_status))

    def _collect(self, task, pid, status):
        try:
            result = self._store.read(task.task_id)
        except TransportError as e:
            if status is None:
                status = Status.exited(1)
            elif status.ok:
                # exited cleanly but delivered nothing
                status = Status.exited(0)
            result = Result(task.task_id, task.tag, status=status, pid=pid, error=str(e))
        else:
            if status is not None:
                result = result.with_status(status, pid)
        self._publish(task, result, pid)

    def _publish(self, task, result, pid):
        # queued for the owner; writing waits for room in the pipe, never for the owner
        self.collection.add(result)
        if not result.status.ok:
            record = FailureRecord(pid, result.status, task.tag, task.task_id, _describe(result))
            self.error = True
            self.last_failure = record
            self.log.error("worker {} for task #{} terminated abnormally: {}".format(
                pid, task.task_id, record.message))
            self._channel.post("failure", record)
        self._channel.post("result", result)

    def _terminate_workers(self, signum):
        for pid in list(self._running):
            try:
                os.kill(pid, signum)
            except ProcessLookupError:
                continue
        for pid in list(self._running):
            try:
                os.waitpid(pid, 0)
            except ChildProcessError:
                continue
        self._running.clear()

    def _forward_to_workers(self, signum):
        self.log.info("received signal. signo: {}".format(signum))
        signal.signal(signum, signal.SIG_IGN)
        os.killpg(os.getpgrp(), signum)
        if self._store is not None:
            self._store.remove()
        self.log.info("forwarded signal to {} workers".format(len(self._running)))

    # worker side

    def _run_as_worker(self, task, mask):
        code = 1
        try:
            self._set_role(Role.WORKER)
            self._bridge.reset_to_default()
            unblock_signals(mask)
            self._channel.close()
            code = self._execute(task)
        except Exception:
            self.log.exception("worker for task #{} failed".format(task.task_id))
        finally:
            os._exit(code)

    def _execute(self, task) -> int:
        capture = open(self._store.output_path(task.task_id), "w+b")
        try:
            sys.stdout.flush()
        except (OSError, ValueError):
            pass
        os.dup2(capture.fileno(), 1)
        sys.stdout = io.TextIOWrapper(io.FileIO(1, "w", closefd=False), write_through=True)

        value, error, status = None, None, Status.success()
        try:
            value = task.run()
        except SystemExit as e:
            code = _exit_code(e)
            if code:
                status = Status.exited(code)
        except Exception:
            error = traceback.format_exc()
            status = Status.exited(1)

        sys.stdout.flush()
        capture.seek(0)
        output = capture.read().decode("utf-8", errors="replace")
        capture.close()

        result = Result(task.task_id, task.tag, value, output, status, os.getpid(), error)
        try:
            self._store.write(result)
        except Exception as e:
            status = Status.exited(1)
            self._store.write(Result(task.task_id, task.tag, None, output, status, os.getpid(),
                                     "the return value could not be serialized: {}".format(e)))
        return 0 if status.ok else status.code


def _exit_code(exc):
    if exc.code is None:
        return 0
    if isinstance(exc.code, int):
        # a non-zero code must stay non-zero after truncation to a byte
        return (exc.code & 0xFF or 1) if exc.code else 0
    return 1


def _describe(result):
    if result.error:
        lines = [line for line in result.error.strip().splitlines() if line.strip()]
        return lines[-1] if lines else result.error
    if result.status.kind == StatusKind.KILLED:
        return "killed by signal {}".format(result.status.code)
    return "exited with code {}".format(result.status.code)
