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

"""
Running one top-level operation (a backup, a restore, a cleanup, ...).

    with Operation('backup-single', target='sales') as op:
        (path, info) = engine.backup_single(conn, 'sales', backup_dir,
                                            cancel=op.cancel, progress=op.progress)
        op.add_artifact(path, info)
        op.succeed({'artifact': path})

The operation owns the cancellation signal for everything it runs, turns
SIGINT/SIGTERM into a cancellation, keeps a stack of cleanup actions that
run in reverse order however the operation ends, and records the operation
in the catalog (`dbbak.db`).
"""

import contextlib
import signal
import threading
import time

import dbbak.err as err
import dbbak.cmd as cmd
import dbbak.config as config
import dbbak.db as db
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

class Operation:
    """
    Attributes:
        verb (str): What we're doing, e.g. 'backup-cluster'.
        target (str): What we're doing it to, or None.
        cancel (`dbbak.util.Cancellation`): The operation's cancellation
            signal.
        state (str): One of `dbbak.db.STATES`.
        result (dict): The result set by `succeed`.
        error (Exception): The exception the operation ended with, if any.
        destructive (bool): Whether the operation changes existing data
            (restores and cleanups); failures then report what was changed.
    """
    def __init__(self, verb, target=None, destructive=False, catalog=True,
                 handle_signals=True):
        self.verb = verb
        self.target = target
        self.destructive = destructive
        self.cancel = util.Cancellation()
        self.state = 'NEW'
        self.result = None
        self.error = None
        self.changes = []
        self.artifacts = []
        self.events = {}
        self.started = None
        self.ended = None

        self._catalog = catalog
        self._handle_signals = handle_signals
        self._op_id = None
        self._stack = contextlib.ExitStack()
        self._old_handlers = {}

    def _on_signal(self, signum, frame):
        # pylint: disable=unused-argument
        name = signal.Signals(signum).name
        self.cancel.cancel("received %s" % name)

        # Children normally exit when their cursors see the cancellation;
        # make sure of it even if nobody is reading from them right now.
        thread = threading.Thread(target=cmd.registry.terminate_all,
                                  kwargs={'grace': config.get('process/grace')},
                                  name='dbbak-terminate', daemon=True)
        thread.start()

    def _install_signals(self):
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._old_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signals(self):
        for signum, handler in self._old_handlers.items():
            signal.signal(signum, handler)
        self._old_handlers = {}

    def __enter__(self):
        self.started = time.time()
        self.state = 'RUNNING'
        self._install_signals()
        if self._catalog:
            self._op_id = db.record_start(self.verb, self.target)
        log.info('op_start', "Starting %s%s" % (self.verb,
                                                ' of %s' % self.target if self.target else ''))
        return self

    def __exit__(self, exc_type, exc_value, tb):
        try:
            self._stack.close()
        finally:
            self._restore_signals()
            self.ended = time.time()
            self._finish(exc_value)
        # Let the exception propagate to our caller
        return False

    def _finish(self, exc):
        if exc is None:
            self.state = 'DONE'
        elif isinstance(exc, (err.CancelledError, KeyboardInterrupt)) or self.cancel.cancelled:
            self.state = 'CANCELLED'
            self.error = exc
        else:
            self.state = 'FAILED'
            self.error = exc

        summary = self.summary()
        if self.state == 'DONE':
            log.info('op_done', "%s finished in %.1f seconds" % (self.verb, summary['duration']))
        else:
            log.error('op_failed', "%s %s: %s: %s" % (self.verb, self.state.lower(),
                                                      summary['error_kind'], exc))
            if self.destructive:
                log.error('op_changes', summary['changes_descr'])

        if self._catalog:
            db.record_finish(self._op_id, self.state, self._descr(summary),
                             result=summary, error_kind=summary['error_kind'])

    def _descr(self, summary):
        if self.state == 'DONE':
            return "%s done" % self.verb
        return "%s %s: %s" % (self.verb, self.state.lower(), self.error)

    def callback(self, func, *args, **kwargs):
        """
        Run func(*args, **kwargs) when the operation ends, whether it succeeds
        or not. Cleanups run in the reverse order they were added.
        """
        return self._stack.callback(func, *args, **kwargs)

    def enter_context(self, ctx):
        return self._stack.enter_context(ctx)

    def tempdir(self, path):
        """
        Remove the directory 'path' when the operation ends.
        """
        self.callback(util.rmtree_logged, path)
        return path

    def progress(self, event, **data):
        """
        Progress callback for the engines: progress(event, **data).
        """
        self.events[event] = self.events.get(event, 0) + 1
        if event != 'bytes':
            log.d("%s progress: %s %r" % (self.verb, event, data))

    def note_change(self, descr):
        """
        Record a change we made to existing data, for the failure summary.
        """
        self.changes.append(descr)

    def add_artifact(self, path, info):
        self.artifacts.append(path)
        if self._catalog:
            db.record_artifact(self._op_id, path, info)

    def succeed(self, result):
        self.result = result

    def changes_descr(self):
        if not self.changes:
            return "No existing data was changed."
        return "Changed before the failure: %s. Nothing else was changed." % '; '.join(self.changes)

    def summary(self):
        end = self.ended if self.ended is not None else time.time()
        ret = {
            'verb': self.verb,
            'target': self.target,
            'state': self.state,
            'duration': round(end - (self.started or end), 3),
            'artifacts': list(self.artifacts),
            'result': self.result,
            'error': None,
            'error_kind': None,
        }
        if self.error is not None:
            ret['error'] = str(self.error)
            ret['error_kind'] = err.kind_of(self.error) if self.state != 'CANCELLED' else \
                                err.CancelledError.kind
        if self.destructive:
            ret['changes'] = list(self.changes)
            ret['changes_descr'] = self.changes_descr()
        return ret
