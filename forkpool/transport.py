import os
import select
import shutil
import struct
import tempfile

import cloudpickle

HEADER = struct.Struct("!I")
READ_SIZE = 65536


class TransportError(Exception):
    """A result payload was missing or could not be decoded."""


def dumps(obj) -> bytes:
    return cloudpickle.dumps(obj)


def loads(data: bytes):
    return cloudpickle.loads(data)


class Channel():
    """A duplex message channel built from two pipe ends.

    Messages are (kind, payload) tuples, framed by a 4-byte length. `post` queues a message
    without waiting; the queue is written out whenever the other side makes room, during
    `receive` or `send`. `send` waits until everything queued so far has been written, and
    keeps reading the incoming pipe meanwhile, so two processes sending to each other at
    the same time cannot block each other."""
    def __init__(self, read_fd, write_fd):
        self._read_fd = read_fd
        self._write_fd = write_fd
        self._buffer = bytearray()
        self._outgoing = bytearray()
        self._eof = False
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)

    @property
    def eof(self) -> bool:
        """True once the other side closed its end and every buffered message was consumed. Read-only."""
        return self._eof and not self._has_frame()

    @property
    def closed(self) -> bool:
        """Read-only."""
        return self._read_fd is None

    @property
    def pending(self) -> int:
        """Bytes posted but not yet written. Read-only."""
        return len(self._outgoing)

    def post(self, kind, payload=None):
        """Queue one message for sending and write as much of the queue as fits right now.

        Raises BrokenPipeError if the other side is gone."""
        if self.closed:
            raise BrokenPipeError("The channel is closed")
        data = dumps((kind, payload))
        self._outgoing += HEADER.pack(len(data))
        self._outgoing += data
        self._flush()

    def send(self, kind, payload=None):
        """Send one message, raising BrokenPipeError if the other side is gone."""
        self.post(kind, payload)
        while self._outgoing:
            readers = [] if self._eof else [self._read_fd]
            readable, writable, _ = select.select(readers, [self._write_fd], [])
            if readable:
                self._fill()
            if writable:
                self._flush()

    def receive(self, timeout=None) -> list:
        """Return the messages that are available, waiting up to `timeout` seconds for one.

        With `timeout` None, blocks until at least some data arrives or the other side closes.
        Posted messages are written out while waiting; the call may then return early with
        an empty list."""
        if self.closed:
            return []
        if not self._has_frame():
            readers = [] if self._eof else [self._read_fd]
            writers = [self._write_fd] if self._outgoing else []
            if readers or writers:
                readable, writable, _ = select.select(readers, writers, [], timeout)
                if readable:
                    self._fill()
                if writable:
                    self._flush()
        messages = []
        while self._has_frame():
            messages.append(self._pop_frame())
        return messages

    def poll(self) -> list:
        """Return the messages that are available without waiting."""
        return self.receive(timeout=0)

    def close(self):
        for fd in (self._read_fd, self._write_fd):
            if fd is not None:
                os.close(fd)
        self._read_fd = None
        self._write_fd = None
        self._outgoing.clear()

    def _flush(self):
        while self._outgoing:
            try:
                written = os.write(self._write_fd, self._outgoing)
            except BlockingIOError:
                return
            del self._outgoing[:written]

    def _fill(self):
        while True:
            try:
                chunk = os.read(self._read_fd, READ_SIZE)
            except BlockingIOError:
                return
            if not chunk:
                self._eof = True
                return
            self._buffer.extend(chunk)

    def _has_frame(self) -> bool:
        if len(self._buffer) < HEADER.size:
            return False
        (length,) = HEADER.unpack_from(self._buffer)
        return len(self._buffer) >= HEADER.size + length

    def _pop_frame(self):
        (length,) = HEADER.unpack_from(self._buffer)
        end = HEADER.size + length
        data = bytes(self._buffer[HEADER.size:end])
        del self._buffer[:end]
        return loads(data)


class ResultStore():
    """Per-task result files: written once by a worker, read once by the master.

    Each master owns one directory; the file for a task is named after its id."""
    def __init__(self, directory):
        self._directory = directory

    @classmethod
    def create(cls, parent=None):
        return cls(tempfile.mkdtemp(prefix="forkpool-", dir=parent))

    @property
    def directory(self) -> str:
        """Read-only."""
        return self._directory

    def result_path(self, task_id) -> str:
        return os.path.join(self._directory, "{}.result".format(task_id))

    def output_path(self, task_id) -> str:
        return os.path.join(self._directory, "{}.out".format(task_id))

    def write(self, result):
        """Atomically store a Result; a partially written file is never visible under its final name."""
        data = dumps(result)
        path = self.result_path(result.task_id)
        partial = path + ".partial"
        with open(partial, "wb") as f:
            f.write(data)
        os.replace(partial, path)

    def read(self, task_id):
        """Load and remove the Result stored for `task_id`.

        Raises TransportError if it is missing or corrupt."""
        path = self.result_path(task_id)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            raise TransportError("no result was written for task #{}".format(task_id))
        finally:
            self._discard(task_id)
        try:
            return loads(data)
        except Exception as e:
            raise TransportError("the result of task #{} could not be decoded: {}".format(task_id, e))

    def remove(self):
        shutil.rmtree(self._directory, ignore_errors=True)

    def _discard(self, task_id):
        for path in (self.result_path(task_id), self.result_path(task_id) + ".partial",
                     self.output_path(task_id)):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
