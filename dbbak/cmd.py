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

import os
import re
import select
import signal
import subprocess
import threading
import time

import dbbak.err as err
import dbbak.log
log = dbbak.log.getLogger(__name__)

#
# How to use a cursor:
#
# Collect the (small) stdout of a command, e.g. listing databases:
#
#   cursor = Cursor(['psql', '-Atc', 'SELECT 1'], parser=LinesParser())
#   lines = cursor.run()
#
# Stream the (large) stdout of a command, e.g. a dump:
#
#   cursor = Cursor(['pg_dump', ...], steal_stdout=True, cancel=cancel)
#   while True:
#       buf = cursor.read_stdout(bufsize)
#       if buf is None:
#           break
#       sink.write(buf)
#
# Feed a command's stdin from a reader, e.g. a restore:
#
#   cursor = Cursor(['psql', ...], stdin=True)
#   cursor.feed(reader)
#   cursor.run()
#
# Every cursor is tracked in the process registry from start() until its child
# has been reaped.

class ProcessRegistry:
    """
    The set of live child processes started by this process.

    Cursors register themselves when their child is spawned and unregister
    when it is reaped; unregistering twice is harmless. The orchestrator uses
    `terminate_all` when the whole operation is cancelled.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._cursors = {}

    def register(self, cursor):
        with self._lock:
            self._cursors[cursor.pid] = cursor
        log.d("Registered child pid %d (%s)" % (cursor.pid, cursor.argv[0]))

    def unregister(self, cursor):
        with self._lock:
            found = self._cursors.pop(cursor.pid, None)
        if found is not None:
            log.d("Unregistered child pid %d" % cursor.pid)

    def live(self):
        with self._lock:
            return list(self._cursors.values())

    def terminate_all(self, grace=5):
        """
        Ask every live child to exit, and kill whatever is still around after
        'grace' seconds. The cursors themselves reap their children.
        """
        cursors = self.live()
        if not cursors:
            return
        log.warn('terminate_children', "Terminating %d child process(es)" % len(cursors))
        for cursor in cursors:
            cursor.signal_group(signal.SIGTERM)

        end = time.monotonic() + grace
        while time.monotonic() < end and any(cur.alive() for cur in cursors):
            time.sleep(0.1)

        for cursor in cursors:
            if cursor.alive():
                cursor.signal_group(signal.SIGKILL)

registry = ProcessRegistry()

class _ProcessCursor:
    _nosig_delay = 5
    _sigkill_delay = 5

    # How often we wake up to check our deadlines and cancellation, in seconds
    _poll_slice = 0.25

    def __init__(self, parser, argv, extra_env=None, stdin=False,
                 cancel=None, timeout=None, idle_timeout=None, grace=5):
        self._parser = parser
        self.argv = [str(arg) for arg in argv]
        self._extra_env = extra_env
        self._want_stdin = stdin
        self._cancel = cancel
        self._timeout = timeout
        self._idle_timeout = idle_timeout
        self._grace = grace

        self._stdout_closed = False
        self._stderr_closed = False

        self._stdout_stolen = False
        self._stdout_lastbuf = None

        self._proc = None
        self._started = None
        self._last_activity = None
        self._timed_out = False
        self._cancel_handle = None

        self._feeder = None
        self._feed_exc = None
        self._feed_broken = False

        self._bufsize = 64 * 1024

    @property
    def pid(self):
        return self._proc.pid

    def _popen_exc(self, exc, argv, env):
        if isinstance(exc, (FileNotFoundError, PermissionError)):
            log.error('runpath', "Cannot run '%s', is it in your PATH? (PATH: '%s', full command: '%s')" % \
                                 (argv[0], env.get('PATH', ''), ' '.join(argv)))
        else:
            log.error('popen', "Error running command '%s'" % ' '.join(argv))

    def _popen(self, argv, env):
        if self._want_stdin:
            stdin = subprocess.PIPE
        else:
            stdin = subprocess.DEVNULL
        # The child gets its own process group, so we can signal it and
        # anything it spawns all at once.
        return subprocess.Popen(argv, stdin=stdin,
                                stdout=subprocess.PIPE,
                                stderr=subprocess.PIPE,
                                env=env, start_new_session=True)

    def start(self):
        if self._proc:
            return
        if self._cancel is not None:
            self._cancel.check()

        env = os.environ.copy()
        if self._extra_env:
            env.update(self._extra_env)
        try:
            self._proc = self._popen(self.argv, env)
        except OSError as exc:
            try:
                self._popen_exc(exc, self.argv, env)
            except Exception:
                pass
            raise LaunchError("%s: %s" % (type(exc).__name__, exc),
                              argv=self.argv) from exc

        self._started = time.monotonic()
        self._last_activity = self._started
        registry.register(self)
        log.d("Started pid %d: %s" % (self._proc.pid, ' '.join(self.argv)))

        if self._cancel is not None:
            self._cancel_handle = self._cancel.add_callback(self._on_cancel)

    def get_proc(self):
        return self._proc

    def alive(self):
        return self._proc is not None and self._proc.poll() is None

    def signal_group(self, signum):
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, signum)
        except (ProcessLookupError, PermissionError):
            pass

    def _on_cancel(self):
        # Called from whatever thread cancelled the operation. Our reading
        # thread notices the cancellation and escalates to SIGKILL.
        self.signal_group(signal.SIGTERM)

    def _check_deadlines(self, now):
        if self._cancel is not None and self._cancel.cancelled:
            raise err.CancelledError("'%s' cancelled: %s" % (
                                     self.argv[0], self._cancel.reason))
        if self._timeout and now - self._started > self._timeout:
            self._timed_out = True
            raise ProcessDeadlineError("Command exceeded its deadline of %d seconds" % self._timeout,
                                       argv=self.argv)
        if self._idle_timeout and now - self._last_activity > self._idle_timeout:
            self._timed_out = True
            raise ProcessDeadlineError("Command timed out after we waited %d seconds for output" % self._idle_timeout,
                                       argv=self.argv)

    def _read_step(self, bufsize=None):
        self._stdout_lastbuf = None
        if self._stdout_closed and self._stderr_closed:
            return False

        if bufsize is None:
            bufsize = self._bufsize

        poll = select.poll()
        if not self._stdout_closed:
            poll.register(self._proc.stdout, select.POLLIN)
        if not self._stderr_closed:
            poll.register(self._proc.stderr, select.POLLIN)

        ready = poll.poll(int(self._poll_slice * 1000))
        now = time.monotonic()
        self._check_deadlines(now)
        if not ready:
            return True
        self._last_activity = now

        for fd, _ in ready:
            buf = os.read(fd, bufsize)
            if not self._stdout_closed and fd == self._proc.stdout.fileno():
                if not buf:
                    self._stdout_closed = True
                elif self._stdout_stolen:
                    self._stdout_lastbuf = buf
                else:
                    self._parser.got_stdout(buf)
            else:
                assert fd == self._proc.stderr.fileno()
                if not buf:
                    self._stderr_closed = True
                else:
                    self._parser.got_stderr(buf)

        if self._stdout_closed and self._stderr_closed:
            self._parser.done()
            return False
        return True

    def _graceful_exit(self, delay_seconds):
        try:
            self._proc.wait(timeout=delay_seconds)
        except subprocess.TimeoutExpired:
            return False
        return True

    def _wait_exit(self, graceful):
        self._proc.poll()
        if self._proc.returncode is not None:
            return

        if graceful:
            # Our pipes are closed, so the process should be on its way out.
            if self._graceful_exit(self._nosig_delay):
                return

        self.signal_group(signal.SIGTERM)
        if self._graceful_exit(self._grace):
            return

        log.warn('child_kill', "Process %d (%s) did not exit after SIGTERM; killing it" % (
                               self._proc.pid, self.argv[0]))
        self.signal_group(signal.SIGKILL)
        if not self._graceful_exit(self._sigkill_delay):
            raise ProcessError("Timed out waiting for process to die", argv=self.argv)

    def _close_pipes(self):
        for fh in (self._proc.stdout, self._proc.stderr, self._proc.stdin):
            if fh is None:
                continue
            try:
                fh.close()
            except (OSError, ValueError):
                # stdin may still hold unflushed data for a dead child
                pass

    def _cleanup_proc(self, graceful):
        try:
            self._wait_exit(graceful)
        finally:
            if self._feeder is not None:
                self._feeder.join(self._grace)
            self._close_pipes()
            registry.unregister(self)
            if self._cancel is not None:
                self._cancel.remove_callback(self._cancel_handle)
                self._cancel_handle = None

    def _feed_thread(self, reader, bufsize):
        stdin = self._proc.stdin
        try:
            while True:
                if self._cancel is not None:
                    self._cancel.check()
                buf = reader.read(bufsize)
                if not buf:
                    break
                stdin.write(buf)
            stdin.flush()
        except BrokenPipeError:
            self._feed_broken = True
        except Exception as exc:
            self._feed_exc = exc
            self.signal_group(signal.SIGTERM)
        finally:
            try:
                stdin.close()
            except OSError:
                self._feed_broken = True

    def feed(self, reader, bufsize=None):
        """
        Copy everything from 'reader' (anything with a read(n) method) into the
        child's stdin in a separate thread, and close the child's stdin when
        we hit EOF. Call this before `run`.
        """
        if not self._want_stdin:
            raise RuntimeError("Cursor feed() called, but stdin was not requested")
        if bufsize is None:
            bufsize = self._bufsize
        self._feeder = threading.Thread(target=self._feed_thread,
                                        args=(reader, bufsize),
                                        name='feed-%d' % self._proc.pid)
        self._feeder.daemon = True
        self._feeder.start()

    def write_stdin(self, data):
        """
        Write to the child's stdin directly. Only use this when something else
        (another thread) is consuming the child's stdout, or we may deadlock.
        """
        try:
            self._proc.stdin.write(data)
        except BrokenPipeError:
            self._feed_broken = True
            raise ProcessError("Process closed its input early", argv=self.argv) from None

    def close_stdin(self):
        try:
            self._proc.stdin.close()
        except BrokenPipeError:
            self._feed_broken = True

    def steal_stdout(self):
        self._stdout_stolen = True

    def read_stdout(self, bufsize=None):
        """
        Read the next chunk of the child's stdout. Returns None at EOF, after
        checking that the child exited successfully.
        """
        if not self._stdout_stolen:
            raise RuntimeError("Cursor read_stdout() called, but stdout is not stolen")

        graceful = False
        more = False
        try:
            more = self._read_step(bufsize=bufsize)
            while more and self._stdout_lastbuf is None:
                more = self._read_step(bufsize=bufsize)
            graceful = True
        finally:
            if not more or not graceful:
                self._cleanup_proc(graceful)

        if more:
            buf = self._stdout_lastbuf
            assert buf is not None
            return buf

        assert self._stdout_lastbuf is None
        self._check_retcode()
        return None

    def abort(self):
        """
        Stop the child without caring about its result, e.g. because whoever
        was consuming its output failed.
        """
        if self._proc is None or self._proc.stdout.closed:
            return
        self._cleanup_proc(False)

    def error_str(self):
        return self._parser.error_str()

    def _throw_err(self, message, klass=None):
        parser_err = self._parser.error_str()
        err_str = parser_err
        if err_str:
            err_str = "\n" + err_str
        if klass is None:
            klass = ProcessError
            if self._parser.auth_failed():
                klass = ProcessAuthError
        raise klass("%s%s" % (message, err_str),
                    argv=self.argv,
                    stderr=self._parser.stderr_tail())

    def _check_retcode(self):
        if self._feed_exc is not None:
            raise self._feed_exc
        if self._proc:
            self._proc.poll()
            code = self._proc.returncode
            if code is not None and code != 0:
                if self._cancel is not None and self._cancel.cancelled:
                    raise err.CancelledError("'%s' cancelled: %s" % (
                                             self.argv[0], self._cancel.reason))
                if code < 0:
                    self._throw_err("Process killed by signal %d" % -code)
                self._throw_err("Process died with code %d" % code)
            if self._feed_broken:
                self._throw_err("Process exited before reading all of its input")

    def run(self):
        if self._stdout_stolen:
            raise RuntimeError("Cursor run() called, but stdout is stolen")

        try:
            graceful = False
            try:
                while self._read_step():
                    pass
                graceful = True

            finally:
                self._cleanup_proc(graceful)

            self._check_retcode()
            return self._parser.get_result()

        except OSError as e:
            raise ProcessError("%s: %s" % (type(e).__name__, e), argv=self.argv) from e

def Cursor(argv, parser=None, steal_stdout=False, **kwargs):
    """
    Start running the given command, and return a cursor for it.

    Args:
        argv (list of str): The command to run.
        parser (`_BaseParser`, optional): What processes the command's output.
            Defaults to a parser that ignores stdout.
        steal_stdout (bool, optional): If True, the caller reads stdout via
            `read_stdout` instead of the parser seeing it.
        **kwargs: extra_env, stdin, cancel, timeout, idle_timeout, grace.
    """
    if parser is None:
        parser = NullParser()
    cursor = _ProcessCursor(parser, argv, **kwargs)
    if steal_stdout:
        cursor.steal_stdout()
    cursor.start()
    return cursor

def long_opts(args):
    """
    Converts kwargs like dict(host='db1', no_password=True) to CLI args like
    ['--host=db1', '--no-password'].

    Args:
        args (dict): A kwargs-style dict to convert. Underscores in keys become
            dashes. None and False values are skipped.

    Returns:
        list of str: The CLI argument list.
    """
    ret = []
    for (key, val) in args.items():
        key = key.replace('_', '-')
        if val is None or val is False:
            pass
        elif val is True:
            ret.append("--%s" % key)
        else:
            ret.append("--%s=%s" % (key, val))
    return ret

class _TextLines:
    lines_limit = 100
    _newline = b'\n'
    _newline_re = re.compile(b'(%s)' % _newline)

    def __init__(self, cb=None, strip_lines=True):
        self.lines = []

        self._lastline = b''
        self._cb = cb
        self._strip_lines = strip_lines

    @classmethod
    def splitnl(cls, text):
        """
        Split the given lines of text.

        This is basically `splitlines(True)`, but we only split on the '\\n'
        character, and we retain the trailing '\\n' on each line that has one.
        """
        raw_lines = cls._newline_re.split(text)

        on_newline = False
        lines = []

        for cur_line in raw_lines:
            if on_newline:
                assert cur_line == cls._newline
                lines[-1] = lines[-1] + cur_line
                on_newline = False

            else:
                lines.append(cur_line)
                on_newline = True

        if lines[-1] == b'':
            del lines[-1]

        return lines

    def _got_lines(self, lines):
        if self._cb:
            for line in lines:
                self._cb(line)
        else:
            self.lines.extend(lines)
            if len(self.lines) > self.lines_limit:
                self.lines = self.lines[-self.lines_limit:]

    def new_text(self, text):
        text = self._lastline + text
        lines = self.splitnl(text)

        if not lines:
            self._lastline = b''
            return

        if not lines[-1].endswith(self._newline):
            # Incomplete last line; hold onto it until we see the rest.
            self._lastline = lines[-1]
            lines = lines[:-1]
        else:
            self._lastline = b''

        strip_chars = None
        if not self._strip_lines:
            strip_chars = b'\n'

        for index, line in enumerate(lines):
            lines[index] = line.rstrip(strip_chars)

        self._got_lines(lines)

    def tail(self, nlines):
        if self._lastline:
            nlines -= 1

        ret = self.lines[-nlines:] if nlines > 0 else []
        if self._lastline:
            ret += [self._lastline]
        return ret

    def done(self):
        if self._lastline:
            line = self._lastline
            self._lastline = b''
            self._got_lines([line.rstrip(b'\n')])

class _BaseParser:
    # stderr text that means our credentials were rejected
    _auth_re = re.compile(rb'password authentication failed|'
                          rb'authentication failed|'
                          rb'no password supplied|'
                          rb'permission denied|'
                          rb'access denied for user|'
                          rb'must be (?:superuser|owner)',
                          re.IGNORECASE)

    def __init__(self, name=None, log_stderr=True):
        self.name = name
        self._log_stderr = log_stderr
        self._auth_failed = False

        self._stdout_lines = _TextLines(strip_lines=False)
        self._stderr_lines = _TextLines(cb=self._stderr_line)
        self._stderr_tail = []

    def _stderr_line(self, line):
        if self._auth_re.search(line):
            self._auth_failed = True
        self._stderr_tail.append(line)
        if len(self._stderr_tail) > _TextLines.lines_limit:
            del self._stderr_tail[0]
        if self._log_stderr:
            log.info('child_stderr', "%s: %s" % (self.name or 'child',
                                                 line.decode('utf-8', 'replace')))
        self.parse_stderr_line(line)

    def parse_stderr_line(self, line):
        pass

    def auth_failed(self):
        return self._auth_failed

    def stderr_tail(self):
        return '\n'.join(line.decode('utf-8', 'replace') for line in self._stderr_tail[-24:])

    def error_str(self):
        ret = ''

        stdout_tail = self._stdout_lines.tail(24)
        if stdout_tail:
            ret += "stdout:\n"
            for line in stdout_tail:
                ret += "%r\n" % line

        if self._stderr_tail:
            ret += "stderr:\n"
            for line in self._stderr_tail[-24:]:
                ret += "%r\n" % line

        return ret

    def got_stdout(self, data):
        self._stdout_lines.new_text(data)

    def got_stderr(self, data):
        self._stderr_lines.new_text(data)

    def done(self):
        self._stdout_lines.done()
        self._stderr_lines.done()

    def get_result(self):
        return None

class NullParser(_BaseParser):
    pass

class LinesParser(_BaseParser):
    """
    Collects every stdout line (decoded, without the trailing newline) and
    returns them from `run`.
    """
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._result = []
        self._data_lines = _TextLines(cb=self._got_line)

    def _got_line(self, line):
        self._result.append(line.rstrip(b'\r\n').decode('utf-8', 'replace'))

    def got_stdout(self, data):
        super().got_stdout(data)
        self._data_lines.new_text(data)

    def done(self):
        super().done()
        self._data_lines.done()

    def get_result(self):
        return self._result

class BaseBackupParser(_BaseParser):
    """
    Picks the WAL start position out of pg_basebackup's verbose stderr, e.g.:

        pg_basebackup: write-ahead log start point: 0/2000028 on timeline 1
    """
    _start_re = re.compile(rb'(?:write-ahead log|transaction log) start point: '
                           rb'([0-9A-Fa-f]+/[0-9A-Fa-f]+) on timeline (\d+)')

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.wal_start = None
        self.timeline = None

    def parse_stderr_line(self, line):
        match = self._start_re.search(line)
        if match:
            self.wal_start = match.group(1).decode('ascii')
            self.timeline = int(match.group(2))

class ProcessError(err.FatalIOError):
    dbbak_mid = 'process_err'

    def __init__(self, message, argv=None, stderr=None):
        if argv:
            message = "While running '%s': %s" % (' '.join(argv), message)
        self.stderr = stderr
        self.argv = argv
        super().__init__(message)

class LaunchError(ProcessError): dbbak_mid = 'process_launch'

class ProcessAuthError(err.AuthError, ProcessError):
    dbbak_mid = 'process_auth'
    kind = 'AuthError'

class ProcessDeadlineError(err.DeadlineError, ProcessError):
    dbbak_mid = 'process_deadline'
    kind = 'TimeoutError'

class StdoutReader:
    """
    File-like wrapper around a cursor with stolen stdout, so a child's output
    can be used anywhere we expect something with a read(n) method.
    """
    def __init__(self, cursor):
        self._cursor = cursor
        self._eof = False
        self._pending = b''

    def read(self, size=-1):
        if size is None or size < 0:
            chunks = [self._pending]
            self._pending = b''
            while not self._eof:
                chunks.append(self._next())
            return b''.join(chunks)

        while not self._pending and not self._eof:
            self._pending = self._next()
        ret = self._pending[:size]
        self._pending = self._pending[size:]
        return ret

    def _next(self):
        buf = self._cursor.read_stdout(64 * 1024)
        if buf is None:
            self._eof = True
            return b''
        return buf

    def close(self):
        if not self._eof:
            self._cursor.abort()
            self._eof = True
