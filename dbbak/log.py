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
import sys
import syslog
import logging
import logging.config
import importlib.resources
import warnings

# Interactive commands log to stderr. The WAL verbs are run by the database
# server, so they log to syslog instead (see 'log/config_file').
CLI_CONFIG = 'log_cli.conf'
DAEMON_CONFIG = 'log_daemon.conf'

# Setting DBBAK_DEBUG turns on debug logging before our config or even our
# command-line arguments are parsed.
DEBUG_ENV = 'DBBAK_DEBUG'

def getLogger(name):
    assert name.startswith('dbbak.') or name == 'dbbak'
    return DbbakLogger(name)

def resource_path(name):
    """Get the filesystem path for a packaged data file, like 'log_cli.conf'."""
    return str(importlib.resources.files('dbbak').joinpath(name))

def init(config_file=None, log_level=None, debug_fmt=None):
    """
    (Re)configure logging from a logging.config file, dropping any handlers
    from a previous call. We get called once at startup with the defaults,
    and again after our config is loaded.

    :param config_file: Path to the logging.config file. Defaults to our
      packaged stderr config.
    :param log_level: Level name for the root logger ('debug', 'info', ...),
      or None to keep what the config file says.
    :param debug_fmt: When debugging, also log to stderr in this format. The
      daemon config only logs to syslog, which is hard to watch by hand.
    """
    if os.environ.get(DEBUG_ENV):
        log_level = 'debug'
    if config_file is None:
        config_file = resource_path(CLI_CONFIG)

    # fileConfig silently ignores a filename it can't read, so open it here
    # and let that raise.
    with open(config_file) as fh:
        logging.config.fileConfig(fh, disable_existing_loggers=False)

    logging.captureWarnings(True)

    if log_level is None:
        return

    root = logging.getLogger()
    root.setLevel(log_level.upper())

    if log_level == 'debug':
        if debug_fmt:
            handler = logging.StreamHandler()
            handler.setFormatter(Formatter(debug_fmt))
            root.addHandler(handler)
        if not sys.warnoptions:
            warnings.simplefilter('default')
        getLogger(__name__).d('Debug logging enabled')

class Formatter(logging.Formatter):
    """
    A Formatter that can interpolate %(mid)s for any record. Records from
    our own loggers carry a mid; records from other libraries (boto3,
    sqlalchemy, python warnings) get a placeholder.
    """

    def format(self, record):
        if not hasattr(record, 'mid'):
            if record.name == 'py.warnings':
                record.mid = 'py_warning'
            else:
                record.mid = '__NOMID__'
        return super().format(record)

class DbbakLogger:
    """
    Our logger. Every method except `d` takes a leading message id (mid): a
    short snake_case string like 'cluster_db_failed' that identifies the
    message, so log processing can match on it without parsing the text.
    """

    def __init__(self, name):
        self._logger = logging.getLogger(name)

    def _log(self, level, mid, msg, args, exc_info=False):
        if exc_info:
            # Our exceptions say which mid they should be logged with
            mid = getattr(sys.exc_info()[1], 'dbbak_mid', mid)

        # stacklevel points filename/lineno at whoever called d/info/etc
        self._logger.log(level, msg, *args, exc_info=exc_info,
                         extra={'mid': mid}, stacklevel=3)

    def d(self, msg, *args):
        self._log(logging.DEBUG, 'debug', msg, args)

    def info(self, mid, msg, *args):
        self._log(logging.INFO, mid, msg, args)

    def warn(self, mid, msg, *args):
        self._log(logging.WARNING, mid, msg, args)

    def error(self, mid, msg, *args):
        self._log(logging.ERROR, mid, msg, args)

    def exception(self, mid, msg, *args):
        self._log(logging.ERROR, mid, msg, args, exc_info=True)

class SyslogHandler(logging.Handler):
    """
    Log through the local syslog() call, one syslog line per line of the
    formatted message.

    :param facility: Facility name without the LOG_ prefix, like 'DAEMON' or
      'LOCAL3'.
    :param ident: Defaults to 'dbbak'.
    """

    _facilities = ('USER', 'DAEMON', 'LOCAL0', 'LOCAL1', 'LOCAL2', 'LOCAL3',
                   'LOCAL4', 'LOCAL5', 'LOCAL6', 'LOCAL7')

    _prio_map = {
        logging.DEBUG:    syslog.LOG_DEBUG,
        logging.INFO:     syslog.LOG_INFO,
        logging.WARNING:  syslog.LOG_WARNING,
        logging.ERROR:    syslog.LOG_ERR,
        logging.CRITICAL: syslog.LOG_CRIT,
    }

    def __init__(self, facility='DAEMON', ident='dbbak'):
        super().__init__()

        if facility.upper() not in self._facilities:
            raise ValueError("'%s' is not a valid syslog facility" % facility)
        syslog.openlog(ident, syslog.LOG_PID,
                       getattr(syslog, 'LOG_' + facility.upper()))

    def close(self):
        super().close()
        syslog.closelog()

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            self.handleError(record)
            return

        # Levels between the standard ones map to the next one down
        prio = syslog.LOG_DEBUG
        for level in sorted(self._prio_map):
            if record.levelno >= level:
                prio = self._prio_map[level]

        for line in msg.splitlines():
            syslog.syslog(prio, line)
