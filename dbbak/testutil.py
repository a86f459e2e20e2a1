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

# This file contains some helper and utility functionality to run our tests.
# All tests should probably import this module and run tests through our
# DbbakTest class (or subclasses) to get some convenient functionality.

import pytest
import sys
import shlex
import time
import contextlib
import tempfile
import os
import os.path
import json
import multiprocessing
import copy
import yaml

import sqlalchemy as sa
from sqlalchemy.pool import NullPool

import dbbak.scripts.dbbak
import dbbak.config
import dbbak.db as db
import dbbak.mocktools as mocktools

class DbbakTest:
    curTest = None
    config = {
        'db': {
            'enabled': False,
        },
    }
    _capfd = None
    _tmp = None
    _out_strs = None
    _err_strs = None

    @pytest.fixture(autouse=True)
    def dbbak_cap(self, capfd):
        DbbakTest.curTest = self
        self._capfd = capfd
        self._out_strs = []
        self._err_strs = []

        yield

        # After the rest has run, print out all of the captured and consumed
        # stdout/stderr data, so it doesn't disappear.
        if self._out_strs:
            sys.stdout.write("\n")
        for ostr in self._out_strs:
            sys.stdout.write(ostr)

        if self._err_strs:
            sys.stderr.write("\n")
        for estr in self._err_strs:
            sys.stderr.write(estr)

        self._out_strs = []
        self._err_strs = []
        self._capfd = None
        DbbakTest.curTest = None

    @pytest.fixture(autouse=True)
    def dbbak_tmp(self, tmpdir):
        self._tmp = tmpdir
        yield
        self._tmp = None

    @pytest.fixture
    def tzutc(self):
        prev_tz = os.environ.get('TZ', None)
        os.environ['TZ'] = 'UTC'
        time.tzset()

        yield

        if prev_tz is None:
            del os.environ['TZ']
        else:
            os.environ['TZ'] = prev_tz
        time.tzset()

    def comment(self, astr):
        for line in astr.splitlines():
            print('# ' + line, file=sys.stderr)

    def mkftemp(self, prefix, adir=False):
        prefix = '%s.' % prefix
        kwargs = {}

        # Use line-buffered files
        kwargs['buffering'] = 1

        # Use our per-test tmp dir
        kwargs['dir'] = self._tmp

        assert self._tmp is not None

        if adir:
            return tempfile.mkdtemp(prefix=prefix, dir=self._tmp)
        else:
            return tempfile.NamedTemporaryFile(mode='w+', prefix=prefix, delete=False, **kwargs)

    def tmp_path(self, *parts):
        return os.path.join(str(self._tmp), *parts)

    def write_file(self, path, data, mode=0o644):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if isinstance(data, str):
            data = data.encode('utf-8')
        with open(path, 'wb') as fh:
            fh.write(data)
        os.chmod(path, mode)
        return path

    def run_in_fork(self, func, fail=False, init_config=False, exitcode=None):
        def target():
            with contextlib.ExitStack() as stack:
                stack.enter_context(db.ensure_reset())
                if init_config:
                    config_path = stack.enter_context(self.config_file())
                    dbbak.config.load(cli_conf_file=config_path)
                ret = func()
                if ret is None:
                    ret = 0
            sys.exit(ret)

        # 'target' is a closure, so this only works with fork
        child = multiprocessing.get_context('fork').Process(target=target)
        child.start()
        child.join()
        assert child.exitcode is not None
        if exitcode is not None:
            assert child.exitcode == exitcode
        elif fail:
            assert child.exitcode != 0
        else:
            assert child.exitcode == 0
        return child.exitcode

    @contextlib.contextmanager
    def config_file(self, skip=False):
        """
        Write out our data in self.config to a tmp file, to use as a dbbak
        config file.
        """
        if skip:
            yield None
            return

        config_fh = self.mkftemp('config')
        try:
            if self.config is not None:
                yaml.safe_dump(self.config, stream=config_fh)
                config_fh.flush()
            yield config_fh.name
        finally:
            config_fh.close()

    @contextlib.contextmanager
    def loaded_config(self):
        """
        Load self.config into this process, for tests that call our modules
        directly instead of going through the command line.
        """
        with self.config_file() as config_path:
            dbbak.config.load(cli_conf_file=config_path)
        try:
            yield
        finally:
            dbbak.config.reset()
            db.reset()

    def _dbbak(self, argstr, fail=False, exitcode=None):
        """
        Run the equivalent of 'dbbak <argstr>'.

        So, self._dbbak('foo --bar') is like running 'dbbak foo --bar'.

        Args:
            argstr (str): Arguments to 'dbbak'.
            fail (bool, optional): If True, assert that the command fails
                (exits with nonzero). Otherwise, assert that the command
                succeeds (exits with 0). Defaults to False.
            exitcode (int, optional): If given, assert that the command exits
                with exactly this code.
        """

        argv = shlex.split(argstr)

        # Unless --config was explicitly specified in the args, provide a
        # config file to use, so we don't use the default /etc/dbbak config
        # files if the machine we're running on has some.
        skip_config = False
        if '--config' in argv:
            skip_config = True

        with self.config_file(skip=skip_config) as config_path:
            if config_path is not None:
                argv.extend(['--config', config_path])

            return self.run_in_fork(lambda: dbbak.scripts.dbbak.main(argv), fail=fail,
                                    exitcode=exitcode)

    def _readout(self, stderr, show=False):
        """
        Args:
            stderr (bool): If True, return captured stderr data. Otherwise,
                return captured stdout data.
            show (bool, optional): If True, still print the captured data back
                out afterwards, in addition to returning it here.

        Returns:
            str: Captured data.
        """
        out, err = self._capfd.readouterr()

        if stderr:
            # Return stderr data
            retval = err
            if not show:
                # Don't save the captured stderr
                err = ''

        else:
            # Return stdout data
            retval = out
            if not show:
                # Don't save the captured stdout
                out = ''

        if out:
            self._out_strs.append(out)
        if err:
            self._err_strs.append(err)

        return retval

    def _dbbak_cap(self, argstr, stderr=False, fail=False, exitcode=None):
        """
        Same as `_dbbak`, but capture the stdout (or stderr) output from the
        dbbak call and return it.
        """
        self._readout(stderr=stderr, show=True)
        self._dbbak(argstr, fail=fail, exitcode=exitcode)
        return self._readout(stderr=stderr)

    def dbbak_stdout(self, argstr, fail=False, exitcode=None):
        """
        Run the given dbbak command, capture stdout from it, and return the
        captured stdout string
        """
        return self._dbbak_cap(argstr, fail=fail, exitcode=exitcode)

    def dbbak_stderr(self, argstr, fail=True, exitcode=None):
        """
        Same as dbbak_stdout(), but capture stderr instead of stdout
        """
        return self._dbbak_cap(argstr, stderr=True, fail=fail, exitcode=exitcode)

    def dbbak_json(self, argstr, fail=False, exitcode=None):
        """
        Same as dbbak_stdout(), but run the command with json formatting, and
        return the parsed json object
        """
        return json.loads(self.dbbak_stdout(argstr + ' --format json', fail=fail,
                                            exitcode=exitcode))

    def dbbak_comment(self, argstr):
        """
        Same as dbbak_stdout(), but output the captured stdout as a comment
        """
        self.comment(self.dbbak_stdout(argstr))

def curTest():
    """
    Get the object for the current-running test. We can't always easily pass in
    the test case object to some objects, callback functions, etc, so just
    store it globally for convenience.
    """
    assert DbbakTest.curTest is not None
    return DbbakTest.curTest

# Runs dbbak.mocktools as a separate process, standing in for the real
# database client tools
MOCK_CMD = [sys.executable, '-m', 'dbbak.mocktools']

# Where the 'dbbak' package lives, so the mock tools can import it
_SRC_DIR = os.path.dirname(os.path.dirname(os.path.abspath(mocktools.__file__)))

def mock_state_base():
    return {
        'version': '15.4',
        'databases': {
            'sales': {
                'size': 8192,
                'tables': {
                    'public.orders': ['%d\tbook %d' % (num, num) for num in range(1, 11)],
                    'public.customers': ['1\talice', '2\tbob'],
                },
            },
            'hr': {
                'size': 4096,
                'tables': {
                    'public.staff': ['1\tcarol'],
                },
            },
        },
        'globals': "CREATE ROLE app;\nALTER ROLE app WITH LOGIN;\n",
        'fail': {},
        'sleep': {},
        'calls': [],
    }

class DbbakMockEnvTest(DbbakTest):
    """
    Tests that run against a fake database server (see `dbbak.mocktools`),
    with all of our directories in the per-test tmp dir.
    """
    mock_state = None

    config_base = {
## Uncomment to show a ton of debug info while tests are running
#        'log': {
#            'level': 'debug',
#        },
        'conn': {
            'kind': 'postgresql',
            'host': 'db.example.com',
            'user': 'backup',
        },
        'pg': {
            'pg_dump': MOCK_CMD + ['pg_dump'],
            'pg_restore': MOCK_CMD + ['pg_restore'],
            'psql': MOCK_CMD + ['psql'],
            'pg_dumpall': MOCK_CMD + ['pg_dumpall'],
            'pg_basebackup': MOCK_CMD + ['pg_basebackup'],
            'pg_ctl': MOCK_CMD + ['pg_ctl'],
        },
        'mysql': {
            'mysqldump': MOCK_CMD + ['mysqldump'],
            'mysql': MOCK_CMD + ['mysql'],
        },
        'compress': {
            'pigz': MOCK_CMD + ['pigz'],
        },
        'self': {
            'command': [sys.executable, '-m', 'dbbak.scripts.dbbak'],
        },
        'backup': {
            'dir': None,
            'format': 'custom',
            'compression': 6,
        },
        'wal': {
            'archive_dir': None,
            'segment_size': 16 * 1024 * 1024,
        },
        'pitr': {
            'monitor_interval': 1,
            'monitor_timeout': 10,
        },
        'process': {
            'grace': 1,
        },
        'db': {
            'url': None,
        },
        'lockdir': None,
    }

    @pytest.fixture(autouse=True)
    def dbbak_mock_env(self, dbbak_tmp, dbbak_cap, monkeypatch):
        self.config = copy.deepcopy(self.config_base)

        self.backup_dir = self.mkftemp('backups', adir=True)
        self.archive_dir = self.mkftemp('wal_archive', adir=True)
        self.config['backup']['dir'] = self.backup_dir
        self.config['wal']['archive_dir'] = self.archive_dir
        self.config['lockdir'] = self.mkftemp('lockdir', adir=True)
        with self.mkftemp('db') as db_fh:
            self.config['db']['url'] = 'sqlite:///%s' % db_fh.name

        with self.mkftemp('mockstate') as state_fh:
            self.mock_state_path = state_fh.name
        self.set_mock_state(mock_state_base())

        monkeypatch.setenv(mocktools.STATE_ENV, self.mock_state_path)
        pypath = os.environ.get('PYTHONPATH')
        monkeypatch.setenv('PYTHONPATH', _SRC_DIR + (os.pathsep + pypath if pypath else ''))
        for var in ('DBBAK_DB_PASSWORD', 'DBBAK_ENCRYPTION_KEY', 'DBBAK_BACKUP_DIR'):
            monkeypatch.delenv(var, raising=False)

        yield

    @pytest.fixture(autouse=True)
    def db_url(self, raw_db_url, dbbak_mock_env):
        if raw_db_url is not None:
            # Drop all tables in given db
            def reset_db():
                engine = sa.create_engine(raw_db_url, poolclass=NullPool)
                with engine.begin() as conn:
                    meta = sa.MetaData()
                    meta.reflect(bind=conn)
                    meta.drop_all(bind=conn)
                return 0
            self.run_in_fork(reset_db)

            # Point our config to the given db
            self.config['db']['url'] = raw_db_url

        return self.config['db']['url']

    def set_mock_state(self, state):
        with open(self.mock_state_path, 'w') as fh:
            json.dump(state, fh, indent=1, sort_keys=True)

    def get_mock_state(self):
        with open(self.mock_state_path, 'r') as fh:
            return json.load(fh)

    def update_mock_state(self, **kwargs):
        state = self.get_mock_state()
        state.update(kwargs)
        self.set_mock_state(state)

    def mock_fail(self, tool, database, message):
        state = self.get_mock_state()
        state['fail'].setdefault(tool, {})[database or ''] = message
        self.set_mock_state(state)

    def mock_calls(self, tool=None):
        calls = self.get_mock_state()['calls']
        if tool is None:
            return calls
        return [call[1:] for call in calls if call[0] == tool]

    def key_file(self, key=b'k' * 32):
        path = self.tmp_path('keys', 'backup.key')
        return self.write_file(path, key, mode=0o600)

    def artifacts(self, directory=None):
        if directory is None:
            directory = self.backup_dir
        return sorted(name for name in os.listdir(directory)
                      if not name.endswith(('.sha256', '.info')))

    def do_db_init(self):
        self.dbbak_comment('db-init --exec')

# Kinda hack-y, but this turns off some consistency options in sqlite. We don't
# care about on-disk consistency just for the tests, and this makes the tests
# run a bit faster.
@sa.event.listens_for(sa.engine.Engine, 'connect')
def db_pragma(dbapi_conn, conn_record):
    if type(dbapi_conn).__module__ == 'sqlite3':
        # Only do this for sqlite3 conns. This check is a bit iffy, but there
        # doesn't seem to be a better way to check for the conn's dialect.
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA synchronous = OFF")
        cursor.execute("PRAGMA journal_mode = MEMORY")
        cursor.close()
