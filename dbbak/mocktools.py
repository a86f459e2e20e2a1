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
Stand-ins for the database client tools (psql, pg_dump, mysql, ...), for
running our tests without a database server.

The tests point our tool directives at this module:

    pg:
      psql: [/usr/bin/python3, -m, dbbak.mocktools, psql]

and every invocation then reads (and sometimes changes) the fake server
described in the JSON file named by $DBBAK_MOCK_STATE:

    {
      "version": "15.4",
      "databases": {
        "sales": {"size": 4096,
                  "tables": {"public.orders": ["1\\tbook", "2\\tpen"]}}
      },
      "globals": "CREATE ROLE app;\\n",
      "fail": {"pg_dump": {"sales": "connection lost"}},
      "sleep": {"pg_dump": {"sales": 30}},
      "calls": [["pg_dump", "--format=custom", ...], ...]
    }

Only the standard library may be used here; this runs as a separate process
without our build-time generated modules.
"""

import contextlib
import fcntl
import gzip
import io
import json
import os
import re
import sys
import tarfile
import time

STATE_ENV = 'DBBAK_MOCK_STATE'

SYSTEM_DBS = ('information_schema', 'mysql', 'performance_schema', 'sys')

class MockFailure(Exception):
    def __init__(self, message, code=1):
        super().__init__(message)
        self.code = code

@contextlib.contextmanager
def _state(write=False):
    path = os.environ[STATE_ENV]
    with open(path, 'r+') as fh:
        fcntl.flock(fh, fcntl.LOCK_EX if write else fcntl.LOCK_SH)
        state = json.load(fh)
        yield state
        if write:
            fh.seek(0)
            fh.truncate()
            json.dump(state, fh, indent=1, sort_keys=True)

def load_state():
    with _state() as state:
        return state

def _record(tool, argv):
    with _state(write=True) as state:
        state.setdefault('calls', []).append([tool] + argv)

def _maybe_fail(state, tool, database):
    sleep = state.get('sleep', {}).get(tool, {}).get(database or '')
    if sleep:
        time.sleep(sleep)
    msg = state.get('fail', {}).get(tool, {}).get(database or '')
    if msg:
        raise MockFailure(msg)

def _opt(argv, name, default=None):
    """
    Value of '--name=value' (or '--name value') in argv.
    """
    for idx, arg in enumerate(argv):
        if arg.startswith(name + '='):
            return arg[len(name) + 1:]
        if arg == name and idx + 1 < len(argv):
            return argv[idx + 1]
    return default

def _positional(argv):
    """
    The last argument that is not an option, or None.
    """
    args = []
    skip = False
    for arg in argv:
        if skip:
            skip = False
            continue
        if arg in ('-h', '-p', '-U', '-e', '-c', '-v', '-D', '-l'):
            skip = True
            continue
        if arg.startswith('-'):
            continue
        args.append(arg)
    return args[-1] if args else None

def _database(state, name):
    dbs = state.get('databases', {})
    if name not in dbs:
        raise MockFailure('database "%s" does not exist' % name)
    return dbs[name]

def _table_text(db):
    out = ''
    for table in sorted(db.get('tables', {})):
        out += "COPY %s FROM stdin;\n" % table
        for row in db['tables'][table]:
            out += row + "\n"
        out += "\\.\n"
    return out

def _sample(rows, sql):
    match = re.search(r'LIMIT (\d+)', sql)
    if match:
        return rows[:int(match.group(1))]
    match = re.search(r'BERNOULLI \(([0-9.]+)\)|RAND\(\) < ([0-9.]+)', sql)
    if match:
        if match.group(1) is not None:
            frac = float(match.group(1)) / 100.0
        else:
            frac = float(match.group(2))
        step = max(1, int(round(1.0 / frac))) if frac > 0 else len(rows) + 1
        return rows[::step]
    return rows

def _restore_into(name, data):
    with _state(write=True) as state:
        db = state.setdefault('databases', {}).setdefault(name, {'size': 0, 'tables': {}})
        db['restored'] = data

def _quoted(sql, quote):
    match = re.search(r"%s((?:[^%s]|%s%s)*)%s" % ((quote,) * 5), sql)
    if match is None:
        return None
    return match.group(1).replace(quote + quote, quote)

def _sql_common(state, sql, database):
    """
    Answer the queries both vendors send the same way. Returns a list of
    output lines, or None if the query is not one of them.
    """
    upper = sql.upper()
    if upper.strip() == 'SELECT 1':
        return ['1']
    if upper.startswith('DROP DATABASE'):
        name = _quoted(sql, '"') or _quoted(sql, '`')
        with _state(write=True) as wstate:
            wstate.get('databases', {}).pop(name, None)
        return []
    if upper.startswith('CREATE DATABASE'):
        name = _quoted(sql, '"') or _quoted(sql, '`')
        with _state(write=True) as wstate:
            dbs = wstate.setdefault('databases', {})
            if name in dbs:
                raise MockFailure('database "%s" already exists' % name)
            dbs[name] = {'size': 0, 'tables': {}}
        return []
    return None

def psql(argv, stdin, stdout):
    state = load_state()
    database = _opt(argv, '--dbname', 'postgres')
    sql = _opt(argv, '-c')
    _maybe_fail(state, 'psql', database)

    if sql is None:
        data = stdin.read().decode('utf-8')
        if database == 'postgres':
            with _state(write=True) as wstate:
                wstate['globals_restored'] = data
        else:
            _restore_into(database, data)
        return

    if database != 'postgres':
        _database(state, database)

    ret = _sql_common(state, sql, database)
    if ret is None:
        ret = []
        if 'FROM pg_database WHERE datistemplate' in sql:
            ret = sorted(state.get('databases', {}))
        elif 'pg_tables' in sql:
            ret = sorted(_database(state, database).get('tables', {}))
        elif 'pg_database_size' in sql:
            ret = [str(_database(state, _quoted(sql, "'")).get('size', 0))]
        elif 'FROM pg_database WHERE datname' in sql:
            if _quoted(sql, "'") in state.get('databases', {}):
                ret = ['1']
        elif sql == 'SHOW server_version':
            ret = [state.get('version', '15.4')]
        elif sql.startswith('COPY ('):
            table = re.search(r'FROM (\S+)', sql).group(1)
            rows = _database(state, database).get('tables', {}).get(table, [])
            ret = _sample(rows, sql)
        elif 'pg_terminate_backend' in sql:
            ret = []
        else:
            raise MockFailure('syntax error at or near "%s"' % sql.split()[0])

    for line in ret:
        stdout.write(line.encode('utf-8') + b'\n')

def pg_dump(argv, stdin, stdout):
    state = load_state()
    database = _opt(argv, '--dbname')
    _maybe_fail(state, 'pg_dump', database)
    db = _database(state, database)

    text = "-- PostgreSQL database dump of %s\n" % database
    if '--schema-only' in argv:
        for table in sorted(db.get('tables', {})):
            text += "CREATE TABLE %s ();\n" % table
        stdout.write(text.encode('utf-8'))
        return
    text += _table_text(db)

    if _opt(argv, '--format') == 'custom':
        stdout.write(b'PGDMP' + json.dumps({'database': database, 'sql': text}).encode('utf-8'))
    else:
        stdout.write(text.encode('utf-8'))

def pg_restore(argv, stdin, stdout):
    state = load_state()
    database = _opt(argv, '--dbname')
    _maybe_fail(state, 'pg_restore', database)

    path = _positional(argv)
    if path is not None:
        with open(path, 'rb') as fh:
            data = fh.read()
    else:
        data = stdin.read()
    if not data.startswith(b'PGDMP'):
        raise MockFailure('input file does not appear to be a valid archive')
    body = json.loads(data[5:].decode('utf-8'))
    _restore_into(database, body['sql'])

def pg_dumpall(argv, stdin, stdout):
    state = load_state()
    _maybe_fail(state, 'pg_dumpall', None)
    stdout.write(state.get('globals', '').encode('utf-8'))

def pg_basebackup(argv, stdin, stdout):
    state = load_state()
    _maybe_fail(state, 'pg_basebackup', None)
    base = state.get('basebackup', {})
    files = base.get('files', {'PG_VERSION': '15\n', 'global/pg_control': 'control',
                               'postgresql.conf': "#archive_mode = off\n"})

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tar:
        for name in sorted(files):
            data = files[name].encode('utf-8')
            member = tarfile.TarInfo(name)
            member.size = len(data)
            member.mode = 0o600
            member.mtime = int(time.time())
            tar.addfile(member, io.BytesIO(data))
    stdout.write(buf.getvalue())

    if base.get('wal_start', '0/2000028'):
        sys.stderr.write("pg_basebackup: write-ahead log start point: %s on timeline %d\n" % (
                         base.get('wal_start', '0/2000028'), base.get('timeline', 1)))
    sys.stderr.write("pg_basebackup: base backup completed\n")

def pg_ctl(argv, stdin, stdout):
    state = load_state()
    datadir = _opt(argv, '-D')
    log_path = _opt(argv, '-l')
    _maybe_fail(state, 'pg_ctl', None)

    lines = state.get('recovery_log', [
        "LOG:  starting PostgreSQL",
        "LOG:  starting point-in-time recovery",
        "LOG:  recovery stopping before commit of transaction 1234",
        "LOG:  database system is ready to accept connections",
    ])
    with open(log_path, 'a') as fh:
        for line in lines:
            fh.write(line + "\n")

    if state.get('recovery_finishes', True):
        for name in ('recovery.signal', 'recovery.conf'):
            try:
                os.unlink(os.path.join(datadir, name))
            except FileNotFoundError:
                pass
    # The "server" is our caller, which stays alive for the rest of the test
    with open(os.path.join(datadir, 'postmaster.pid'), 'w') as fh:
        fh.write("%d\n%s\n" % (os.getppid(), datadir))
    stdout.write(b"server started\n")

def mysql(argv, stdin, stdout):
    state = load_state()
    sql = _opt(argv, '-e')
    database = _positional(argv)
    _maybe_fail(state, 'mysql', database)

    if sql is None:
        _restore_into(database, stdin.read().decode('utf-8'))
        return

    ret = _sql_common(state, sql, database)
    if ret is None:
        if sql == 'SHOW DATABASES':
            ret = sorted(list(state.get('databases', {})) + list(SYSTEM_DBS))
        elif 'table_type' in sql:
            ret = sorted(_database(state, _quoted(sql, "'")).get('tables', {}))
        elif 'data_length' in sql:
            ret = [str(_database(state, _quoted(sql, "'")).get('size', 0))]
        elif 'SCHEMATA' in sql:
            name = _quoted(sql, "'")
            ret = [name] if name in state.get('databases', {}) else []
        elif sql == 'SELECT VERSION()':
            ret = [state.get('version', '8.0.36')]
        elif 'processlist' in sql:
            ret = []
        else:
            raise MockFailure("ERROR 1064 (42000): You have an error in your SQL syntax")

    for line in ret:
        stdout.write(line.encode('utf-8') + b'\n')

def mysqldump(argv, stdin, stdout):
    state = load_state()
    database = _positional(argv)
    _maybe_fail(state, 'mysqldump', database)
    db = _database(state, database)

    where = _opt(argv, '--where')
    text = "-- MySQL dump of %s\n" % database
    for table in sorted(db.get('tables', {})):
        rows = db['tables'][table]
        if where is not None:
            rows = _sample(rows, where)
        text += "INSERT INTO `%s` VALUES %s;\n" % (table, ','.join('(%s)' % row for row in rows))
    stdout.write(text.encode('utf-8'))

def pigz(argv, stdin, stdout):
    level = 6
    for arg in argv:
        if re.match(r'^-\d$', arg):
            level = int(arg[1:])
    if '-d' in argv:
        stdout.write(gzip.decompress(stdin.read()))
    else:
        stdout.write(gzip.compress(stdin.read(), compresslevel=level))

TOOLS = {
    'psql': psql,
    'pg_dump': pg_dump,
    'pg_restore': pg_restore,
    'pg_dumpall': pg_dumpall,
    'pg_basebackup': pg_basebackup,
    'pg_ctl': pg_ctl,
    'mysql': mysql,
    'mysqldump': mysqldump,
    'pigz': pigz,
}

def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    if not argv or argv[0] not in TOOLS:
        sys.stderr.write("usage: mocktools {%s} [args...]\n" % ','.join(sorted(TOOLS)))
        return 2

    tool = argv[0]
    args = argv[1:]
    if tool != 'pigz':
        _record(tool, args)
    try:
        TOOLS[tool](args, sys.stdin.buffer, sys.stdout.buffer)
    except MockFailure as exc:
        sys.stderr.write("%s: error: %s\n" % (tool, exc))
        return exc.code
    sys.stdout.flush()
    return 0

if __name__ == '__main__':
    sys.exit(main())
