#
# Copyright (c) 2015-2022, Sine Nomine Associates ("SNA")
#
# Permission to use, copy, modify, and/or distribute this software for any
# purpose with or without fee is hereby granted, provided that the above
# copyright notice and this permission notice appear in all copies.
#
# THE SOFTWARE IS PROVIDED "AS IS" AND SNA DISCLAIMS ALL WARRANTIES WITH REGARD
# TO THIS SOFTWARE INCLUDING ALL IMPLIED WARRANTIES OF MERCHANTABILITY AND
# FITNESS. IN NO EVENT SHALL SNA BE LIABLE FOR ANY SPECIAL, DIRECT, INDIRECT, OR
# CONSEQUENTIAL DAMAGES OR ANY DAMAGES WHATSOEVER RESULTING FROM LOSS OF USE,
# DATA OR PROFITS, WHETHER IN AN ACTION OF CONTRACT, NEGLIGENCE OR OTHER TORTIOUS
# ACTION, ARISING OUT OF OR IN CONNECTION WITH THE USE OR PERFORMANCE OF THIS
# SOFTWARE.

import dateutil.parser
import datetime
import itertools
import os
import os.path
import platform
import shutil
import threading
import time
import hashlib
import traceback
import contextlib
import signal

import dbbak.err as err
import dbbak.config as config
import dbbak.log
log = dbbak.log.getLogger(__name__)

class Cancellation:
    """
    An operation-scoped cancellation signal.

    One of these is owned by the orchestrator for each operation, and is handed
    to every component that blocks (the process runner, the pipeline, the
    object store). Components either poll `check()` between units of work, or
    register a callback with `add_callback()` that unblocks them (e.g. by
    killing a child or closing a file handle) when `cancel()` is called.
    """
    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = {}
        self._next_id = 0
        self.reason = None

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self, reason="operation cancelled"):
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks = {}

        log.warn('cancel', "Cancelling: %s" % reason)
        for cb in callbacks:
            try:
                cb()
            except Exception:
                log.exception('cancel_cb_err', "Error running cancellation callback %r" % cb)

    def check(self):
        if self._event.is_set():
            raise err.CancelledError(self.reason)

    def wait(self, timeout):
        """
        Sleep for up to 'timeout' seconds, returning early (True) if we were
        cancelled.
        """
        return self._event.wait(timeout)

    def add_callback(self, cb):
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = cb
                return handle
        # Already cancelled; run it right away.
        cb()
        return None

    def remove_callback(self, handle):
        if handle is None:
            return
        with self._lock:
            self._callbacks.pop(handle, None)

    @contextlib.contextmanager
    def on_cancel(self, cb):
        handle = self.add_callback(cb)
        try:
            yield
        finally:
            self.remove_callback(handle)

# A Cancellation that is never cancelled, for callers that don't care
class NoCancel(Cancellation):
    def cancel(self, reason="operation cancelled"):
        raise err.InternalError("NoCancel cannot be cancelled")

class PrettyBytes:
    def __init__(self, total):
        self._last_bytes = 0
        self._last_time = time.time()

        self.bytes = 'unknown bytes'
        self.rate = 'unknown bytes/s'
        self.total = self.pretty(total)

    @staticmethod
    def pretty(raw):
        if raw is None:
            return "unknown bytes"
        for suffix in ('bytes', 'kB', 'MB', 'GB', 'TB', 'PB', 'EB', 'ZB'):
            if raw < 1024:
                return "%.2f %s" % (raw, suffix)
            raw = raw / 1024
        return "unknown bytes"

    def update_bytes(self, cur_bytes):
        cur_time = time.time()

        diff_bytes = cur_bytes - self._last_bytes
        diff_time = cur_time - self._last_time
        if diff_time <= 0:
            diff_time = 0.001
        raw_rate = diff_bytes / diff_time

        self.bytes = self.pretty(cur_bytes)
        self.rate = "%s/s" % self.pretty(raw_rate)

        self._last_bytes = cur_bytes
        self._last_time = cur_time

def checksum(algo, path, cancel=None):
    """
    Get the checksum of the given file, using the given algorithm.
    """
    m = hashlib.new(algo)

    with open(path, 'rb', buffering=0) as fh:
        while True:
            if cancel is not None:
                cancel.check()
            buf = fh.read(config.get('bufsize'))
            if not buf:
                break
            m.update(buf)

    return m.hexdigest()

def state_source():
    return "%s pid:%d" % (platform.node(), os.getpid())

def timestamp_str(unix_time=None):
    """
    Format a unix timestamp the way we use it in artifact names
    (YYYYmmdd_HHMMSS, in UTC).
    """
    if unix_time is None:
        unix_time = time.time()
    dt = datetime.datetime.fromtimestamp(int(unix_time), tz=datetime.timezone.utc)
    return dt.strftime('%Y%m%d_%H%M%S')

def iso_utc(unix_time):
    dt = datetime.datetime.fromtimestamp(int(unix_time), tz=datetime.timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%SZ')

def time_str2unix(timestr):
    """
    Parse a given datetime string, and return a unix timestamp.
    """
    if timestr[0] == '@':
        return int(timestr[1:])

    dt = dateutil.parser.parse(timestr)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(dt.timestamp())

def time_unix2str(seconds):
    """
    Convert a unix timestamp into a human-readable datetime string.
    """
    return time.strftime("%a %b %d %H:%M:%S %Y %Z", time.localtime(seconds))

def fsync_dir(path):
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)

def remove_quiet(path):
    """
    Remove the given file, ignoring it if it's already gone.
    """
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass

def rmtree_logged(path):
    if not os.path.lexists(path):
        return
    log.d("Removing directory %s" % path)
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log.warn('rmtree_fail', "Failed to remove %s: %s" % (path, exc))

def free_bytes(path):
    """
    Free bytes available to us on the filesystem holding 'path' (or its
    nearest existing parent).
    """
    path = os.path.abspath(path)
    while not os.path.exists(path):
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    st = os.statvfs(path)
    return st.f_bavail * st.f_frsize

_alrm_set = False
@contextlib.contextmanager
def syscall_timeout(timeout):
    """
    Wrap a syscall in this to effectively get a timeout on the call. Example:

        with syscall_timeout(5):
            fcntl.flock(fh, fcntl.LOCK_EX)
            lock_success = True
        if not lock_success:
            timed_out()

    Since this is implemented with SIGALRM, you can only have one running at
    once, so you can't nest these.
    """

    global _alrm_set
    if _alrm_set:
        raise err.InternalError("nested syscall_timeout call")

    class AlarmTriggered(Exception): pass
    def handler(signum, frame):
        raise AlarmTriggered

    orig_alrm = signal.signal(signal.SIGALRM, handler)

    try:
        _alrm_set = True
        signal.alarm(timeout)
        yield
    except AlarmTriggered:
        return
    finally:
        _alrm_set = False
        signal.alarm(0)
        signal.signal(signal.SIGALRM, orig_alrm)

def chomp(msg, sep='\n'):
    """
    Trim off the trailing newline (or trailing sep') of 'msg', if it has one.
    """
    if msg and msg[-1] == sep:
        return msg[:-1]
    return msg

def format_exc(exc):
    # Format the given exception into two strings: the backtrace, and the
    # exception message. The traceback module does not format these
    # separately, so subtract the format_exception_only lines from the full
    # format_exception lines.
    msg_lines = list(traceback.format_exception_only(type(exc), exc))
    full_lines = list(traceback.format_exception(type(exc), exc,
                                                 exc.__traceback__))
    stack_lines = full_lines[:-len(msg_lines)]

    stack_str = chomp(''.join(stack_lines))
    msg_str = chomp(''.join(msg_lines))

    return (stack_str, msg_str)

class json_generator(list):
    """
    Wrap a generator in this 'list' subclass, in order to let json.dump()
    encode the generator like a normal list.

    This iterates over the given generator, but also appends something to the
    internal list if the generator is non-empty, since json needs __len__ to
    return nonzero in order to render the list at all.
    """

    # pylint: disable=super-init-not-called
    def __init__(self, gen):
        it = iter(gen)
        try:
            self._first = iter([next(it)])
            self.append(it)
        except StopIteration:
            self._first = []

    def __iter__(self):
        return itertools.chain(self._first, *self[:1])

def list2str(items):
    """
    Stringify a list like ['foo', 'bar', 'baz'] into a human-readable string
    like 'foo, bar, and baz'.
    """
    if len(items) > 1:
        items = items[:-1] + ['and ' + items[-1]]
    if len(items) > 2:
        return ', '.join(items)
    else:
        return ' '.join(items)
