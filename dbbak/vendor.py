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
Knowledge about the database vendors we support: how to build the command
lines for their client tools, and how to ask the server simple questions.

We never link against a client library; everything goes through the vendor's
own tools (psql, pg_dump, mysql, mysqldump, ...) run under `dbbak.cmd`.
There is one class per vendor family, both with the same small set of
methods; use `get_vendor` to get the right one.
"""

import os

import dbbak.err as err
import dbbak.cmd as cmd
import dbbak.config as config
import dbbak.log
log = dbbak.log.getLogger(__name__)

SAMPLE_STRATEGIES = ('ratio', 'percent', 'count')

class ConnInfo:
    """
    How to reach a database server.

    Attributes:
        kind (str): 'postgresql', 'mysql', or 'mariadb'.
        host (str): Server hostname, or a socket directory. None means the
            client's default.
        port (int): Server port, or None for the default.
        user (str): User to connect as, or None for the default.
        password (str): Password, or None to rely on other authentication.
    """
    def __init__(self, kind='postgresql', host=None, port=None, user=None,
                 password=None):
        if kind not in ('postgresql', 'mysql', 'mariadb'):
            raise err.ConfigError("Unknown database kind '%s'" % kind)
        self.kind = kind
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    @classmethod
    def from_config(cls, kind=None, host=None, port=None, user=None,
                    environ=None):
        """
        Build a ConnInfo from our config, with the given values (e.g. from the
        command line) taking precedence. The password is read from the
        environment variable named by conn/password_env.
        """
        if environ is None:
            environ = os.environ
        if kind is None:
            kind = config.get('conn/kind')
        if host is None:
            host = config.get('conn/host')
        if port is None:
            port = config.get('conn/port')
        if user is None:
            user = config.get('conn/user')

        password = None
        password_env = config.get('conn/password_env')
        if password_env:
            password = environ.get(password_env) or None

        return cls(kind=kind, host=host, port=port, user=user, password=password)

    def __str__(self):
        ret = self.kind + '://'
        if self.user:
            ret += self.user + '@'
        ret += self.host or 'localhost'
        if self.port:
            ret += ':%d' % int(self.port)
        return ret

def pg_literal(val):
    return "'" + str(val).replace("'", "''") + "'"

def pg_ident(val):
    return '"' + str(val).replace('"', '""') + '"'

def my_literal(val):
    return "'" + str(val).replace('\\', '\\\\').replace("'", "''") + "'"

def my_ident(val):
    return '`' + str(val).replace('`', '``') + '`'

def _check_sample(strategy, value):
    if strategy not in SAMPLE_STRATEGIES:
        raise err.ArgumentError("Unknown sampling strategy '%s' (must be one of %s)" % (
                                strategy, ', '.join(SAMPLE_STRATEGIES)))
    if value is None or value <= 0:
        raise err.ArgumentError("Sampling value must be positive, not %r" % value)
    if strategy == 'percent' and value > 100:
        raise err.ArgumentError("Sampling percent must be at most 100, not %r" % value)

class Postgres:
    name = 'postgresql'

    def __init__(self, conn):
        self.conn = conn

    def _conn_args(self):
        args = []
        if self.conn.host:
            args += ['-h', self.conn.host]
        if self.conn.port:
            args += ['-p', str(self.conn.port)]
        if self.conn.user:
            args += ['-U', self.conn.user]
        # Never prompt; a prompt would hang us forever
        args.append('--no-password')
        return args

    def env(self):
        if self.conn.password:
            return {'PGPASSWORD': self.conn.password}
        return {}

    def auth_method(self):
        if self.conn.password:
            return 'password'
        if not self.conn.host or self.conn.host.startswith('/'):
            return 'peer'
        return 'pgpass'

    def query(self, sql, database='postgres', cancel=None, timeout=None):
        """
        Run a single SQL statement with psql, and return the output rows as a
        list of strings (fields separated by '|').
        """
        argv = config.get('pg/psql') + self._conn_args() + \
               ['-X', '-A', '-t', '-q', '-v', 'ON_ERROR_STOP=1',
                '--dbname=%s' % database, '-c', sql]
        cursor = cmd.Cursor(argv, parser=cmd.LinesParser(name='psql'),
                            extra_env=self.env(), cancel=cancel,
                            timeout=timeout, grace=config.get('process/grace'))
        return [line for line in cursor.run() if line != '']

    def connect_test(self, cancel=None):
        self.query('SELECT 1', cancel=cancel, timeout=60)

    def list_databases(self, cancel=None):
        return self.query("SELECT datname FROM pg_database "
                          "WHERE datistemplate = false ORDER BY datname",
                          cancel=cancel)

    def list_tables(self, database, cancel=None):
        return self.query("SELECT quote_ident(schemaname) || '.' || quote_ident(tablename) "
                          "FROM pg_tables WHERE schemaname NOT IN "
                          "('information_schema', 'pg_catalog', 'pg_toast') "
                          "ORDER BY 1",
                          database=database, cancel=cancel)

    def database_size(self, database, cancel=None):
        rows = self.query("SELECT pg_database_size(%s)" % pg_literal(database),
                          cancel=cancel)
        try:
            return int(rows[0])
        except (IndexError, ValueError):
            raise err.FatalIOError("Cannot parse size of database %s from %r" % (
                                   database, rows)) from None

    def database_exists(self, database, cancel=None):
        rows = self.query("SELECT 1 FROM pg_database WHERE datname = %s" % pg_literal(database),
                          cancel=cancel)
        return bool(rows)

    def server_version(self, cancel=None):
        rows = self.query('SHOW server_version', cancel=cancel)
        if not rows:
            return None
        return rows[0].strip()

    def dump_argv(self, database, fmt, compression=None, schema_only=False):
        """
        pg_dump command line writing to stdout. For the custom format, the
        dump tool compresses by itself at the given level.
        """
        argv = config.get('pg/pg_dump') + self._conn_args()
        argv.append('--format=%s' % fmt)
        if fmt == 'custom' and compression is not None:
            argv.append('--compress=%d' % compression)
        if schema_only:
            argv.append('--schema-only')
        argv.append('--dbname=%s' % database)
        return argv

    def restore_argv(self, database, fmt, jobs=None, clean=False, path=None):
        """
        Restore command line reading from stdin, or from 'path' when given
        (parallel pg_restore cannot read from a pipe).
        """
        if fmt == 'custom':
            argv = config.get('pg/pg_restore') + self._conn_args()
            if clean:
                argv += ['--clean', '--if-exists']
            if jobs and jobs > 1:
                if path is None:
                    raise err.InternalError("Parallel pg_restore needs a file")
                argv.append('--jobs=%d' % jobs)
            argv.append('--dbname=%s' % database)
            if path is not None:
                argv.append(path)
            return argv

        return self.sql_argv(database)

    def sql_argv(self, database='postgres', stop_on_error=True):
        # A plain SQL script interpreter reading stdin
        argv = config.get('pg/psql') + self._conn_args() + ['-X', '-q']
        if stop_on_error:
            argv += ['-v', 'ON_ERROR_STOP=1']
        return argv + ['--dbname=%s' % database]

    def globals_argv(self):
        return config.get('pg/pg_dumpall') + self._conn_args() + ['--globals-only']

    def basebackup_argv(self):
        return config.get('pg/pg_basebackup') + self._conn_args() + \
               ['-D', '-', '-Ft', '-X', 'none', '--checkpoint=fast', '-v']

    def terminate_sessions(self, database, cancel=None):
        rows = self.query("SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                          "WHERE datname = %s AND pid <> pg_backend_pid()" % pg_literal(database),
                          cancel=cancel)
        if rows:
            log.info('terminate_sessions', "Terminated %d session(s) to database %s" % (
                                           len(rows), database))
        return len(rows)

    def drop(self, database, cancel=None):
        self.query("DROP DATABASE IF EXISTS %s" % pg_ident(database), cancel=cancel)

    def create(self, database, cancel=None):
        self.query("CREATE DATABASE %s" % pg_ident(database), cancel=cancel)

    def sample_query(self, table, strategy, value):
        _check_sample(strategy, value)
        if strategy == 'count':
            return "SELECT * FROM %s LIMIT %d" % (table, int(value))
        if strategy == 'percent':
            pct = float(value)
        else:
            # ratio: one row in 'value'
            pct = 100.0 / float(value)
        return "SELECT * FROM %s TABLESAMPLE BERNOULLI (%s)" % (table, repr(pct))

    def sample_data_argv(self, database, table, strategy, value):
        """
        psql command line that writes a COPY data block for a sample of
        'table' to stdout.
        """
        sql = "COPY (%s) TO STDOUT" % self.sample_query(table, strategy, value)
        return config.get('pg/psql') + self._conn_args() + \
               ['-X', '-q', '-v', 'ON_ERROR_STOP=1', '--dbname=%s' % database,
                '-c', sql]

    def required_tools(self, operation):
        tools = {
            'backup': ['pg/pg_dump', 'pg/psql'],
            'sample': ['pg/pg_dump', 'pg/psql'],
            'cluster': ['pg/pg_dump', 'pg/pg_dumpall', 'pg/psql'],
            'restore': ['pg/pg_restore', 'pg/psql'],
            'base': ['pg/pg_basebackup'],
            'pitr': ['pg/pg_ctl'],
        }[operation]
        return [config.get(key)[0] for key in tools]

class MySQL:
    # System schemas we never back up on our own
    _system_dbs = ('information_schema', 'performance_schema', 'mysql', 'sys')

    def __init__(self, conn):
        self.conn = conn
        self.name = conn.kind

    def _conn_args(self):
        args = []
        if self.conn.host:
            if self.conn.host.startswith('/'):
                args.append('--socket=%s' % self.conn.host)
            else:
                args.append('--host=%s' % self.conn.host)
        if self.conn.port:
            args.append('--port=%d' % int(self.conn.port))
        if self.conn.user:
            args.append('--user=%s' % self.conn.user)
        return args

    def env(self):
        if self.conn.password:
            return {'MYSQL_PWD': self.conn.password}
        return {}

    def auth_method(self):
        if self.conn.password:
            return 'password'
        if not self.conn.host or self.conn.host.startswith('/'):
            return 'socket'
        return 'option-file'

    def query(self, sql, database=None, cancel=None, timeout=None):
        argv = config.get('mysql/mysql') + self._conn_args() + \
               ['--batch', '--skip-column-names', '-e', sql]
        if database is not None:
            argv.append(database)
        cursor = cmd.Cursor(argv, parser=cmd.LinesParser(name='mysql'),
                            extra_env=self.env(), cancel=cancel,
                            timeout=timeout, grace=config.get('process/grace'))
        return [line for line in cursor.run() if line != '']

    def connect_test(self, cancel=None):
        self.query('SELECT 1', cancel=cancel, timeout=60)

    def list_databases(self, cancel=None):
        rows = self.query('SHOW DATABASES', cancel=cancel)
        return sorted(row for row in rows if row not in self._system_dbs)

    def list_tables(self, database, cancel=None):
        return self.query("SELECT table_name FROM information_schema.tables "
                          "WHERE table_schema = %s AND table_type = 'BASE TABLE' "
                          "ORDER BY table_name" % my_literal(database),
                          cancel=cancel)

    def database_size(self, database, cancel=None):
        rows = self.query("SELECT COALESCE(SUM(data_length + index_length), 0) "
                          "FROM information_schema.tables WHERE table_schema = %s" % my_literal(database),
                          cancel=cancel)
        try:
            return int(rows[0])
        except (IndexError, ValueError):
            raise err.FatalIOError("Cannot parse size of database %s from %r" % (
                                   database, rows)) from None

    def database_exists(self, database, cancel=None):
        rows = self.query("SELECT SCHEMA_NAME FROM information_schema.SCHEMATA "
                          "WHERE SCHEMA_NAME = %s" % my_literal(database),
                          cancel=cancel)
        return bool(rows)

    def server_version(self, cancel=None):
        rows = self.query('SELECT VERSION()', cancel=cancel)
        if not rows:
            return None
        return rows[0].strip()

    def dump_argv(self, database, fmt='plain', compression=None, schema_only=False,
                  where=None):
        if fmt != 'plain':
            log.d("%s dumps are always plain SQL; ignoring format %s" % (self.name, fmt))
        argv = config.get('mysql/mysqldump') + self._conn_args() + \
               ['--single-transaction', '--routines', '--triggers', '--events']
        if schema_only:
            argv.append('--no-data')
        if where is not None:
            argv.append('--where=%s' % where)
        argv.append(database)
        return argv

    def restore_argv(self, database, fmt='plain', jobs=None, clean=False, path=None):
        if fmt != 'plain':
            raise err.UnsupportedError("Cannot restore a %s artifact into %s" % (fmt, self.name))
        return self.sql_argv(database)

    def sql_argv(self, database=None):
        argv = config.get('mysql/mysql') + self._conn_args()
        if database is not None:
            argv.append(database)
        return argv

    def globals_argv(self):
        raise err.UnsupportedError("Cluster-wide globals are only supported for PostgreSQL")

    def basebackup_argv(self):
        raise err.UnsupportedError("Base backups for PITR are only supported for PostgreSQL")

    def terminate_sessions(self, database, cancel=None):
        rows = self.query("SELECT id FROM information_schema.processlist "
                          "WHERE db = %s AND id <> CONNECTION_ID()" % my_literal(database),
                          cancel=cancel)
        for row in rows:
            try:
                self.query('KILL %d' % int(row), cancel=cancel)
            except cmd.ProcessError as exc:
                # The session may have gone away on its own
                log.d("Ignoring error killing session %s: %s" % (row, exc))
        if rows:
            log.info('terminate_sessions', "Terminated %d session(s) to database %s" % (
                                           len(rows), database))
        return len(rows)

    def drop(self, database, cancel=None):
        self.query("DROP DATABASE IF EXISTS %s" % my_ident(database), cancel=cancel)

    def create(self, database, cancel=None):
        self.query("CREATE DATABASE %s" % my_ident(database), cancel=cancel)

    def sample_where(self, strategy, value):
        """
        The mysqldump --where predicate for the given sampling policy.
        """
        _check_sample(strategy, value)
        if strategy == 'count':
            return "1 LIMIT %d" % int(value)
        if strategy == 'percent':
            return "RAND() < %s" % repr(float(value) / 100.0)
        return "RAND() < %s" % repr(1.0 / float(value))

    def required_tools(self, operation):
        tools = {
            'backup': ['mysql/mysqldump', 'mysql/mysql'],
            'sample': ['mysql/mysqldump', 'mysql/mysql'],
            'restore': ['mysql/mysql'],
        }.get(operation)
        if tools is None:
            raise err.UnsupportedError("'%s' is not supported for %s" % (operation, self.name))
        return [config.get(key)[0] for key in tools]

def get_vendor(conn):
    if conn.kind == 'postgresql':
        return Postgres(conn)
    return MySQL(conn)
