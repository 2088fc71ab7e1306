"""
assorted unit tests for forkpool
"""

import gc
import logging
import os
import signal
import subprocess
import sys
import tempfile
import textwrap
import threading
import time
import unittest
from unittest import mock

from forkpool import (Config, FailureRecord, ForkPool, Invocable, InvocableKind, Result,
                      ResultCollection, ShutdownState, SignalBridge, Status, StatusKind, Task,
                      UnjoinedError)
from forkpool.transport import Channel, ResultStore, TransportError

ROOT = os.path.dirname(os.path.abspath(__file__))


def receives_arguments_and_returns_it(*args):
    return "".join(args)


def returns_foo():
    return "foo"


def sleeps_then_returns(seconds, value):
    time.sleep(seconds)
    return value


def exits_with(code):
    os._exit(code)


def raises_value_error():
    raise ValueError("boom")


class Greeter():
    def __init__(self, greeting):
        self.greeting = greeting

    def returns_foo(self):
        return "foo"

    def greet(self, name):
        return "{} {}".format(self.greeting, name)

    def __call__(self, name):
        return self.greet(name)


def alive(pid):
    """Return true if `pid` is a live process (zombies count as dead)."""
    try:
        with open("/proc/{}/stat".format(pid)) as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return False
    except OSError:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True


def eventually(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class ForkPoolTestCase(unittest.TestCase):

    def make_pool(self, parameter=None):
        pool = ForkPool(parameter)
        self.addCleanup(pool.close)
        return pool


class TestForkPool(ForkPoolTestCase):

    def test_fork_process_and_receive_values(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, ["foo"])
        pool.fork(receives_arguments_and_returns_it, ["bar"])
        self.assertEqual(["foo", "bar"], pool.get().to_list())

    def test_omit_the_arguments(self):
        pool = self.make_pool()
        pool.fork(returns_foo)
        self.assertEqual(["foo"], pool.get().to_list())

    def test_scalar_argument_is_wrapped(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, "foo")
        self.assertEqual(["foo"], pool.get().to_list())

    def test_multiple_arguments(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, ("foo", "bar"))
        self.assertEqual(["foobar"], pool.get().to_list())

    def test_results_follow_enqueue_order(self):
        pool = self.make_pool(4)
        for seconds, value in [(0.3, "a"), (0.2, "b"), (0.1, "c"), (0.0, "d")]:
            pool.fork(sleeps_then_returns, (seconds, value))
        self.assertEqual(["a", "b", "c", "d"], pool.get().to_list())
        self.assertEqual([1, 2, 3, 4], [result.task_id for result in pool.get()])

    def test_concurrency_is_bounded(self):
        pool = self.make_pool(2)
        start = time.time()
        for i in range(4):
            pool.fork(sleeps_then_returns, (0.5, i))
        pool.wait()
        elapsed = time.time() - start
        self.assertGreaterEqual(elapsed, 0.9)
        self.assertLess(elapsed, 1.9)
        self.assertEqual([0, 1, 2, 3], pool.get().to_list())

    def test_workers_keep_running_while_the_owner_is_busy(self):
        pool = self.make_pool(2)
        start = time.time()
        for i in range(6):
            pool.fork(sleeps_then_returns, (0.5, str(i) * 200000))
        time.sleep(2.0)
        pool.wait()
        elapsed = time.time() - start
        self.assertLess(elapsed, 2.4)
        collection = pool.get()
        self.assertFalse(pool.has_error())
        self.assertEqual([str(i) * 200000 for i in range(6)], collection.to_list())

    def test_get_returns_result_collection(self):
        pool = self.make_pool()
        pool.fork(lambda: "foo")
        collection = pool.get()
        self.assertIsInstance(collection, ResultCollection)
        self.assertIsInstance(collection[0], Result)
        self.assertTrue(collection[0].status.ok)

    def test_each_generation_starts_a_fresh_collection(self):
        pool = self.make_pool()
        pool.fork(lambda: "foo")
        self.assertEqual("foo", pool.get()[0].value)

        pool.fork(lambda: "bar")
        collection = pool.get()
        self.assertEqual(1, len(collection))
        self.assertEqual("bar", collection[0].value)
        self.assertEqual(2, collection[0].task_id)

    def test_run_instance_method(self):
        pool = self.make_pool()
        greeter = Greeter("hello")
        pool.fork(greeter.returns_foo)
        pool.fork(greeter.greet, "bar")
        pool.fork((greeter, "greet"), "baz")
        pool.fork(greeter, "qux")
        self.assertEqual(["foo", "hello bar", "hello baz", "hello qux"], pool.get().to_list())

    def test_run_anonymous_function(self):
        pool = self.make_pool()
        prefix = "pre-"
        func = lambda arg="foo": prefix + arg
        pool.fork(func)
        pool.fork(func, "bar")
        self.assertEqual(["pre-foo", "pre-bar"], pool.get().to_list())

    def test_get_results_with_tag(self):
        pool = self.make_pool()
        greeter = Greeter("hi")
        pool.fork(greeter.greet, "bar1", "tag1")
        pool.fork(greeter.greet, "bar2", "tag1")
        pool.fork(greeter.greet, "bar3", "tag2")
        pool.fork(greeter.greet, "bar4")
        pool.fork(greeter.greet, "bar5", "tag2")
        self.assertEqual(["hi bar1", "hi bar2"], pool.get("tag1").to_list())
        self.assertEqual(["hi bar3", "hi bar5"], pool.get("tag2").to_list())
        self.assertEqual(5, len(pool.get()))
        self.assertEqual(["tag1", "tag2"], pool.get().tags())

    def test_unknown_tag_raises(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, "bar", "tag")
        with self.assertRaises(ValueError):
            pool.get("unknown_tag")

    def test_get_output(self):
        pool = self.make_pool()
        pool.fork(lambda: print("foobar", end=""))

        def writes_and_returns():
            sys.stdout.write("line one\n")
            os.write(1, b"raw bytes\n")
            return 42
        pool.fork(writes_and_returns)

        collection = pool.get()
        self.assertEqual("foobar", collection[0].output)
        self.assertIsNone(collection[0].value)
        self.assertEqual("line one\nraw bytes\n", collection[1].output)
        self.assertEqual(42, collection[1].value)
        self.assertEqual(["foobar", "line one\nraw bytes\n"], collection.outputs())

    def test_abnormal_exit(self):
        pool = self.make_pool()
        pool.fork(exits_with, 1, "broken")
        pool.wait()
        self.assertTrue(pool.has_error())
        error = pool.get_error()
        self.assertIsInstance(error, FailureRecord)
        self.assertEqual(1, error.exit_code)
        self.assertIsNone(error.signal)
        self.assertEqual("broken", error.tag)
        self.assertEqual(Status.exited(1), pool.get()[0].status)

    def test_clean_exit_without_result(self):
        pool = self.make_pool()
        pool.fork(os._exit, 0, "silent")
        collection = pool.get()
        self.assertTrue(pool.has_error())
        self.assertEqual(Status.exited(0), collection[0].status)
        self.assertFalse(collection[0].status.ok)
        self.assertIsNone(collection[0].value)
        self.assertEqual("silent", collection[0].tag)
        self.assertIn("no result was written for task #1", pool.get_error().message)
        self.assertEqual(0, pool.get_error().exit_code)

    def test_sys_exit_sets_error(self):
        pool = self.make_pool()
        pool.fork(lambda: sys.exit(3))
        pool.fork(lambda: sys.exit(0))
        pool.fork(lambda: sys.exit(256))
        collection = pool.get()
        self.assertTrue(pool.has_error())
        self.assertEqual(Status.exited(3), collection[0].status)
        self.assertTrue(collection[1].status.ok)
        self.assertEqual(Status.exited(1), collection[2].status)

    def test_exception_in_task_is_recorded(self):
        pool = self.make_pool()
        pool.fork(raises_value_error)
        collection = pool.get()
        self.assertTrue(pool.has_error())
        self.assertIn("ValueError: boom", collection[0].error)
        self.assertEqual("ValueError: boom", pool.get_error().message)
        self.assertEqual(1, pool.get_error().task_id)

    def test_killed_worker(self):
        pool = self.make_pool()
        pool.fork(lambda: os.kill(os.getpid(), signal.SIGKILL))
        collection = pool.get()
        self.assertEqual(StatusKind.KILLED, collection[0].status.kind)
        self.assertEqual(signal.SIGKILL, pool.get_error().signal)
        self.assertEqual(signal.SIGKILL, pool.get_error().cause)

    def test_failure_does_not_stop_siblings(self):
        pool = self.make_pool(2)
        pool.fork(returns_foo)
        pool.fork(exits_with, 2)
        pool.fork(receives_arguments_and_returns_it, "bar")
        collection = pool.get()
        self.assertTrue(pool.has_error())
        self.assertEqual(["foo", None, "bar"], collection.to_list())
        self.assertEqual([True, False, True], [result.status.ok for result in collection])

    def test_most_recent_failure_is_reported(self):
        pool = self.make_pool(1)
        pool.fork(exits_with, 1, "first")
        pool.fork(exits_with, 2, "second")
        pool.wait()
        self.assertEqual("second", pool.get_error().tag)
        self.assertEqual(2, pool.get_error().exit_code)

    def test_no_error(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, ["bar"])
        pool.wait()
        self.assertFalse(pool.has_error())
        self.assertIsNone(pool.get_error())

    def test_errors_are_reset_by_a_new_generation(self):
        pool = self.make_pool()
        pool.fork(exits_with, 1)
        pool.wait()
        self.assertTrue(pool.has_error())
        pool.fork(returns_foo)
        pool.wait()
        self.assertFalse(pool.has_error())

    def test_wait_does_nothing_if_already_joined(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, ["bar"])
        pool.wait()
        self.assertIsNone(pool.wait())
        self.assertEqual(["bar"], pool.get().to_list())

    def test_wait_without_tasks(self):
        pool = self.make_pool()
        self.assertIsNone(pool.wait())
        self.assertEqual(0, len(pool.get()))

    def test_unserializable_return_value(self):
        pool = self.make_pool()
        pool.fork(threading.Lock)
        collection = pool.get()
        self.assertTrue(pool.has_error())
        self.assertEqual(Status.exited(1), collection[0].status)
        self.assertIn("could not be serialized", collection[0].error)

    def test_fork_fails_when_master_is_gone(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            pool = self.make_pool({"tmp_dir": tmp_dir})
            pool.fork(sleeps_then_returns, (0.1, "foo"))
            master_pid = pool._pool.master_pid
            os.kill(master_pid, signal.SIGKILL)
            os.waitid(os.P_PID, master_pid, os.WEXITED | os.WNOWAIT)
            time.sleep(0.1)
            with self.assertRaises(RuntimeError):
                pool.fork(returns_foo)
            pool.wait()
            self.assertTrue(pool.has_error())
            self.assertEqual(signal.SIGKILL, pool.get_error().signal)
            time.sleep(0.2)

    def test_bad_invocable_and_tag(self):
        pool = self.make_pool()
        with self.assertRaises(TypeError):
            pool.fork("not callable")
        with self.assertRaises(TypeError):
            pool.fork(returns_foo, (), 42)
        self.assertIsNone(pool._pool.master_pid)


class TestConstruction(ForkPoolTestCase):

    def test_defaults(self):
        self.assertEqual(5, self.make_pool().concurrency)

    def test_integer_is_concurrency(self):
        self.assertEqual(3, self.make_pool(3).concurrency)

    def test_mapping_of_options(self):
        logger = logging.getLogger("forkpool.tests")
        pool = self.make_pool({"concurrency": 2, "logger": logger})
        self.assertEqual(2, pool.concurrency)

    def test_invalid_arguments(self):
        for parameter in ["foo", 2.5, True, [1]]:
            with self.assertRaises(TypeError):
                ForkPool(parameter)
        for parameter in [0, -1, {"concurrency": 0}, {"bogus": 1}]:
            with self.assertRaises(ValueError):
                ForkPool(parameter)
        with self.assertRaises(TypeError):
            ForkPool({"logger": "not a logger"})

    def test_config(self):
        config = Config({"polling_interval": 0.5})
        self.assertEqual(5, config.concurrency)
        self.assertEqual(0.5, config.polling_interval)
        self.assertIsNone(config.tmp_dir)
        self.assertIs(logging.getLogger("forkpool"), config.logger)
        with self.assertRaises(ValueError):
            Config({"polling_interval": 0})

    def test_logs_are_prefixed_with_role_and_pid(self):
        with self.assertLogs("forkpool", level="INFO") as logs:
            pool = self.make_pool()
            pool.fork(returns_foo)
            pool.wait()
        prefix = "[owner] pid {}: ".format(os.getpid())
        self.assertIn(prefix + "parent pid: {}".format(os.getpid()), logs.output[0])
        self.assertTrue(any(prefix + "queued task #1" in line for line in logs.output))
        self.assertTrue(any("forked master process" in line for line in logs.output))


class TestGenerator(ForkPoolTestCase):

    def test_generator(self):
        pool = self.make_pool()
        pool.fork(receives_arguments_and_returns_it, ["foo"])
        pool.fork(receives_arguments_and_returns_it, ["bar"])
        self.assertEqual(["foo", "bar"], list(pool.generator()))

    def test_generator_matches_get(self):
        pool = self.make_pool(3)
        for seconds, value in [(0.3, 1), (0.0, 2), (0.2, 3), (0.1, 4)]:
            pool.fork(sleeps_then_returns, (seconds, value))
        generator = pool.generator()
        self.assertEqual([1, 2, 3, 4], list(generator))
        with self.assertRaises(StopIteration):
            next(generator)
        self.assertEqual([1, 2, 3, 4], pool.get().to_list())

    def test_generator_yields_before_all_tasks_finish(self):
        pool = self.make_pool(2)
        start = time.time()
        pool.fork(sleeps_then_returns, (0.0, "fast"))
        pool.fork(sleeps_then_returns, (1.0, "slow"))
        generator = pool.generator()
        self.assertEqual("fast", next(generator))
        self.assertLess(time.time() - start, 0.8)
        self.assertEqual(["slow"], list(generator))

    def test_generator_joins(self):
        pool = ForkPool()
        pool.fork(returns_foo)
        for _ in pool.generator():
            pass
        pool.close()
        self.assertIsNone(pool._pool.master_pid)

    def test_new_generator_after_exhaustion_is_empty(self):
        pool = self.make_pool()
        pool.fork(returns_foo)
        self.assertEqual(["foo"], list(pool.generator()))
        self.assertEqual([], list(pool.generator()))

    def test_no_fork_while_draining(self):
        pool = self.make_pool()
        pool.fork(sleeps_then_returns, (0.1, "foo"))
        generator = pool.generator()
        self.assertEqual("foo", next(generator))
        with self.assertRaises(RuntimeError):
            pool.fork(returns_foo)
        self.assertEqual([], list(generator))
        self.assertEqual(["foo"], pool.get().to_list())


class TestShutdown(ForkPoolTestCase):

    def test_unjoined_close_raises(self):
        pool = ForkPool()
        pool.fork(sleeps_then_returns, (5, "foo"))
        master_pid = pool._pool.master_pid
        with self.assertRaises(UnjoinedError):
            pool.close()
        self.assertFalse(alive(master_pid))
        pool.close()

    def test_close_after_received_signal_does_not_raise(self):
        pool = ForkPool()
        pool.fork(returns_foo)
        pool.set_received_signal(signal.SIGTERM)
        self.assertEqual(signal.SIGTERM, pool.received_signal)
        pool.close()

    def test_close_without_fork(self):
        ForkPool().close()

    def test_close_after_master_failed_to_start(self):
        pool = ForkPool()
        with mock.patch.object(pool._pool, "fork_master", side_effect=OSError("no processes")):
            with self.assertRaises(RuntimeError):
                pool.fork(returns_foo)
        self.assertIsNone(pool._pool.master_pid)
        pool.close()

    def test_context_manager(self):
        with ForkPool() as pool:
            pool.fork(returns_foo)
            self.assertEqual(["foo"], pool.get().to_list())
        with self.assertRaises(UnjoinedError):
            with ForkPool() as pool:
                pool.fork(returns_foo)

    def test_context_manager_keeps_the_original_exception(self):
        with self.assertRaises(KeyError):
            with ForkPool() as pool:
                pool.fork(returns_foo)
                raise KeyError("original")

    def test_discarding_unjoined_pool_reports_error(self):
        with mock.patch("sys.unraisablehook") as hook:
            pool = ForkPool()
            pool.fork(returns_foo)
            del pool
            gc.collect()
        self.assertTrue(hook.called)
        self.assertIsInstance(hook.call_args[0][0].exc_value, UnjoinedError)

    def test_close_does_nothing_outside_the_owner(self):
        pool = ForkPool()
        pool.fork(returns_foo)
        with mock.patch("forkpool.facade.os.getpid", return_value=pool.owner_pid + 1):
            self.assertFalse(pool.is_owner())
            pool.close()
        self.assertIsNotNone(pool._pool.master_pid)
        pool.wait()
        pool.close()

    def test_signal_handlers_are_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        pool = ForkPool()
        self.assertNotEqual(before, signal.getsignal(signal.SIGTERM))
        pool.close()
        self.assertEqual(before, signal.getsignal(signal.SIGTERM))

    def test_closing_the_older_pool_keeps_the_newer_handlers(self):
        before = signal.getsignal(signal.SIGTERM)
        older = ForkPool()
        newer = ForkPool()
        older.close()
        self.assertEqual(newer._bridge.handle, signal.getsignal(signal.SIGTERM))
        self.assertEqual(newer._bridge.handle, signal.getsignal(signal.SIGINT))
        newer.close()
        self.assertEqual(before, signal.getsignal(signal.SIGTERM))

    def test_signal_forwards_to_master(self):
        pool = ForkPool()
        pool.fork(sleeps_then_returns, (5, "foo"))
        master_pid = pool._pool.master_pid
        with mock.patch.object(SignalBridge, "terminate") as terminate:
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        terminate.assert_called_once_with(signal.SIGTERM)
        self.assertEqual(signal.SIGTERM, pool.received_signal)
        self.assertTrue(eventually(lambda: not alive(master_pid)))
        pool.close()

    def test_owner_terminated_by_signal(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            pid_file = os.path.join(tmp_dir, "worker.pid")
            script = textwrap.dedent("""
                import os, sys, time
                sys.path.insert(0, {root!r})
                from forkpool import ForkPool

                def sleeper(path):
                    with open(path + ".partial", "w") as f:
                        f.write(str(os.getpid()))
                    os.replace(path + ".partial", path)
                    time.sleep(30)

                pool = ForkPool(2)
                pool.fork(sleeper, {pid_file!r})
                print("ready", flush=True)
                pool.wait()
                print("joined", flush=True)
            """).format(root=ROOT, pid_file=pid_file)
            proc = subprocess.Popen([sys.executable, "-c", script],
                                    stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            self.assertEqual(b"ready", proc.stdout.readline().strip())
            self.assertTrue(eventually(lambda: os.path.exists(pid_file)))
            with open(pid_file) as f:
                worker_pid = int(f.read())

            proc.send_signal(signal.SIGTERM)
            stdout, stderr = proc.communicate(timeout=10)
            self.assertEqual(128 + signal.SIGTERM, proc.returncode)
            self.assertNotIn(b"joined", stdout)
            self.assertNotIn(b"UnjoinedError", stderr)
            self.assertTrue(eventually(lambda: not alive(worker_pid)))


class TestSignalBridge(unittest.TestCase):

    def test_handles_once(self):
        calls = []
        bridge = SignalBridge(calls.append)
        with mock.patch.object(SignalBridge, "terminate") as terminate:
            bridge.handle(signal.SIGINT)
            bridge.handle(signal.SIGINT)
        self.assertEqual([signal.SIGINT], calls)
        terminate.assert_called_once_with(signal.SIGINT)
        self.assertEqual(ShutdownState.TERMINATED, bridge.state)

    def test_install_and_restore(self):
        before = signal.getsignal(signal.SIGUSR1)
        bridge = SignalBridge(lambda signum: None, [signal.SIGUSR1])
        bridge.install()
        self.assertEqual(bridge.handle, signal.getsignal(signal.SIGUSR1))
        bridge.restore()
        self.assertEqual(before, signal.getsignal(signal.SIGUSR1))

    def test_restore_out_of_order(self):
        before = signal.getsignal(signal.SIGUSR1)
        first = SignalBridge(lambda signum: None, [signal.SIGUSR1])
        second = SignalBridge(lambda signum: None, [signal.SIGUSR1])
        first.install()
        second.install()
        first.restore()
        self.assertEqual(second.handle, signal.getsignal(signal.SIGUSR1))
        second.restore()
        self.assertEqual(before, signal.getsignal(signal.SIGUSR1))


class TestTask(unittest.TestCase):

    def test_invocable_kinds(self):
        greeter = Greeter("hi")
        captured = "x"
        self.assertEqual(InvocableKind.FUNCTION, Invocable.of(returns_foo).kind)
        self.assertEqual(InvocableKind.FUNCTION, Invocable.of(len).kind)
        self.assertEqual(InvocableKind.CLOSURE, Invocable.of(lambda: None).kind)
        self.assertEqual(InvocableKind.CLOSURE, Invocable.of(lambda: captured).kind)
        bound = Invocable.of(greeter.greet)
        self.assertEqual(InvocableKind.BOUND_METHOD, bound.kind)
        self.assertIs(greeter, bound.receiver)
        self.assertEqual("greet", bound.selector)
        self.assertEqual("__call__", Invocable.of(greeter).selector)
        self.assertEqual("hi you", Invocable.of((greeter, "greet")).invoke(("you",)))

    def test_invalid_invocables(self):
        with self.assertRaises(TypeError):
            Invocable.of(42)
        with self.assertRaises(TypeError):
            Invocable.of((Greeter("hi"), "missing"))
        with self.assertRaises(TypeError):
            Invocable.of((Greeter("hi"), "greet", "extra"))

    def test_arguments(self):
        self.assertEqual(("foo",), Task(1, returns_foo, "foo").args)
        self.assertEqual(("a", "b"), Task(1, returns_foo, ["a", "b"]).args)
        self.assertEqual(({"k": 1},), Task(1, returns_foo, {"k": 1}).args)
        self.assertEqual((), Task(1, returns_foo).args)
        self.assertEqual("foobar", Task(1, receives_arguments_and_returns_it, ("foo", "bar")).run())


class TestResultCollection(unittest.TestCase):

    def test_enqueue_order_regardless_of_arrival(self):
        collection = ResultCollection()
        for task_id, tag in [(3, "b"), (1, "a"), (4, None), (2, "b")]:
            collection.add(Result(task_id, tag, value=task_id * 10))
        self.assertEqual([10, 20, 30, 40], collection.to_list())
        self.assertEqual([20, 30], collection.filter("b").to_list())
        self.assertEqual(["a", "b"], collection.tags())
        self.assertEqual(40, collection[-1].value)
        self.assertEqual([20, 30], [result.value for result in collection[1:3]])
        self.assertTrue(collection.has_tag("a"))
        self.assertEqual(0, len(collection.filter("missing")))

    def test_duplicate_result(self):
        collection = ResultCollection([Result(1, None)])
        with self.assertRaises(ValueError):
            collection.add(Result(1, None))


class TestTransport(unittest.TestCase):

    def test_status_from_wait_status(self):
        pid = os.fork()
        if pid == 0:
            os._exit(3)
        _, wait_status = os.waitpid(pid, 0)
        self.assertEqual(Status.exited(3), Status.from_wait_status(wait_status))

        pid = os.fork()
        if pid == 0:
            os.kill(os.getpid(), signal.SIGKILL)
            os._exit(0)
        _, wait_status = os.waitpid(pid, 0)
        self.assertEqual(Status.killed(signal.SIGKILL), Status.from_wait_status(wait_status))

    def test_channel(self):
        down_r, down_w = os.pipe()
        up_r, up_w = os.pipe()
        owner = Channel(up_r, down_w)
        master = Channel(down_r, up_w)
        owner.send("task", {"id": 1})
        owner.send("close")
        self.assertEqual([("task", {"id": 1}), ("close", None)], master.receive(1))
        self.assertEqual([], master.poll())

        master.send("result", Result(1, "t", value="v"))
        master.close()
        messages = owner.receive(1)
        self.assertEqual("v", messages[0][1].value)
        self.assertEqual([], owner.receive(1))
        self.assertTrue(owner.eof)
        with self.assertRaises(BrokenPipeError):
            owner.send("task")
        owner.close()

    def test_channel_post_does_not_wait_for_the_reader(self):
        down_r, down_w = os.pipe()
        up_r, up_w = os.pipe()
        owner = Channel(up_r, down_w)
        master = Channel(down_r, up_w)
        payload = "x" * 500000
        start = time.time()
        master.post("result", payload)
        master.post("done")
        self.assertLess(time.time() - start, 0.5)
        self.assertGreater(master.pending, 0)

        received = []
        while len(received) < 2:
            master.receive(0)
            received.extend(owner.receive(0.1))
        self.assertEqual([("result", payload), ("done", None)], received)
        self.assertEqual(0, master.pending)
        owner.close()
        master.close()

    def test_result_store(self):
        store = ResultStore.create()
        try:
            store.write(Result(7, "tag", value=[1, 2], output="out"))
            result = store.read(7)
            self.assertEqual([1, 2], result.value)
            self.assertEqual("out", result.output)
            with self.assertRaises(TransportError):
                store.read(7)
            with open(store.result_path(8), "wb") as f:
                f.write(b"not a pickle")
            with self.assertRaises(TransportError):
                store.read(8)
        finally:
            store.remove()
        self.assertFalse(os.path.exists(store.directory))


if __name__ == "__main__":
    unittest.main()
