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
The operation catalog: a small SQL database recording every operation we
run and every artifact we create, so 'dbbak status' can show what happened
without digging through logs.

The catalog is a convenience, never a requirement. Callers go through
`record_*` helpers, which log a warning and carry on if the catalog can't be
written.
"""

import contextlib
import fcntl
import json
import os
import os.path
import time

import sqlalchemy as sa
from sqlalchemy.dialects import sqlite

import dbbak.err as err
import dbbak.config as config
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

# The current version of our catalog schema.
VERSION = 1

STATES = ('NEW', 'RUNNING', 'DONE', 'FAILED', 'CANCELLED')

# Some special column types we use
class _Types:
    # sqlite will not autoincrement BigInteger columns; only Integer columns.
    Id = sa.BigInteger().with_variant(sqlite.INTEGER(), 'sqlite')

    Path = sa.UnicodeText()

    # Timestamps are integer UTC seconds since the epoch
    Timestamp = sa.BigInteger()

def _Table(name, metadata, *cols):
    return sa.Table(name, metadata, *cols,
                    mysql_charset='utf8mb4', mysql_engine='innodb',
                    mariadb_charset='utf8mb4', mariadb_engine='innodb')

# A simple wrapper around sa.Column. Just make 'nullable' default to False;
# everything else is the same
def _Column(*args, **kwargs):
    if 'nullable' not in kwargs:
        kwargs['nullable'] = False
    return sa.Column(*args, **kwargs)

# Our data 'model' (aka schema)
class _Model:
    def __init__(self):
        self.metadata = sa.MetaData(info={'dbbak_dbvers': VERSION})
        metadata = self.metadata

        self.versions = _Table('versions', metadata,
            _Column('version', sa.Integer),
        )

        # One row per orchestrated operation (backup-single, restore-cluster,
        # cleanup, ...)
        self.operations = _Table('operations', metadata,
            _Column('id', _Types.Id, primary_key=True, autoincrement=True),
            _Column('verb', sa.String(64)),

            # What the operation works on: a database name, an artifact path,
            # a directory. Null for whole-server operations.
            _Column('target', _Types.Path, nullable=True),

            _Column('state', sa.String(32)),

            # Human-readable description of what's going on
            _Column('state_descr', sa.UnicodeText),

            # Who last touched this row (hostname and pid)
            _Column('state_source', sa.UnicodeText),

            _Column('start', _Types.Timestamp),
            _Column('end', _Types.Timestamp, server_default='0'),

            _Column('errors', sa.Integer, server_default='0'),

            # The error kind (ConfigError, FatalIOError, ...) of a failed
            # operation
            _Column('error_kind', sa.String(64), nullable=True),

            # JSON document with the operation's result
            _Column('result', sa.UnicodeText, nullable=True),

            sa.Index('ix_operations_state', 'state'),
            sa.Index('ix_operations_start', 'start'),
        )

        # Artifacts created by successful operations
        self.artifacts = _Table('artifacts', metadata,
            _Column('id', _Types.Id, primary_key=True, autoincrement=True),
            _Column('op_id', _Types.Id, sa.ForeignKey('operations.id'), nullable=True),
            _Column('path', _Types.Path),
            _Column('database', sa.String(256), nullable=True),
            _Column('kind', sa.String(32), nullable=True),
            _Column('format', sa.String(32), nullable=True),
            _Column('size', sa.BigInteger),
            _Column('sha256', sa.String(64)),
            _Column('created', _Types.Timestamp),

            sa.Index('ix_artifacts_database', 'database'),
        )

class Db:
    def __init__(self):
        self._engine = None
        self._engine_driver = None
        self._checked = False
        self._lockfh = None
        self._cur_conn = None
        self.model = _Model()

    # Reset some values that should not be remembered across a fork
    def reset(self):
        log.d("resetting db")
        if self._cur_conn is not None:
            self._cur_conn.close()
            self._cur_conn = None

        if self._engine is not None:
            self._engine.dispose()

        if self._lockfh:
            self._lockfh.close()
            self._lockfh = None

        self._checked = False
        self._engine = None

    @contextlib.contextmanager
    def lock(self):
        if self._lockfh or self._engine_driver != 'sqlite':
            # Either we already hold the lock, or the db can handle concurrent
            # connections by itself.
            yield
            return

        lockdir = config.get('lockdir')
        os.makedirs(lockdir, exist_ok=True)
        with open(os.path.join(lockdir, 'dbbak-db.lock'), 'w+b') as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            self._lockfh = fh
            try:
                yield
            finally:
                self._lockfh = None

    def printable_url(self, url=None):
        if url is None:
            url = config.get('db/url')
        return sa.engine.url.make_url(url).render_as_string(hide_password=True)

    def _setup(self):
        if self._engine is not None:
            return

        url = config.get('db/url')
        url_obj = sa.engine.url.make_url(url)
        self._engine_driver = url_obj.get_backend_name()

        kwargs = {}
        if self._engine_driver == 'sqlite':
            # Wait for a busy db instead of failing right away
            kwargs['connect_args'] = {'timeout': 300}
            if url_obj.database:
                os.makedirs(os.path.dirname(os.path.abspath(url_obj.database)),
                            exist_ok=True)
        if self._engine_driver in ('mysql', 'mariadb') and 'charset' not in url_obj.query:
            url_obj = url_obj.update_query_dict({'charset': 'utf8mb4'})

        log.d("Creating db engine for %s" % self.printable_url(url))
        self._engine = sa.create_engine(url_obj, **kwargs)

    # Use this like so:
    # with db.connect() as conn:
    #     conn.execute(...)
    # Everything done inside the block is committed when the block exits.
    @contextlib.contextmanager
    def connect(self, check=True):
        self._setup()
        if check and not self._checked:
            log.d("Checking database structure")
            self._check()
            self._checked = True

        # Nested calls to connect() reuse the current connection
        if self._cur_conn is not None:
            yield self._cur_conn
            return

        with self.lock():
            with self._engine.begin() as conn:
                self._cur_conn = conn
                try:
                    yield conn
                finally:
                    self._cur_conn = None

    def _table_exists(self, conn, table):
        return sa.inspect(conn).has_table(table.name)

    def can_create(self):
        with self.connect(check=False) as conn:
            for table in self.model.metadata.tables.values():
                if self._table_exists(conn, table):
                    return False
        return True

    def _setver_exec(self, conn, vers):
        conn.execute(self.model.versions.delete())
        conn.execute(self.model.versions.insert(), dict(version=vers))

    def _setver_sql(self, vers):
        return "DELETE FROM versions;\nINSERT INTO versions (version) VALUES (%d);" % vers

    # Create our tables
    def create(self, force=False):
        with self.connect(check=False) as conn:
            if force:
                self.model.metadata.drop_all(bind=conn)
            self.model.metadata.create_all(bind=conn, checkfirst=not force)
            self._setver_exec(conn, VERSION)
        self._checked = False

    # Return the raw SQL code to create our tables as a string
    def create_sql(self, force=False):
        statements = []
        engine = None

        def dump(sql, *args, **kwargs):
            # pylint: disable=unused-argument
            statements.append(str(sql.compile(dialect=engine.dialect)).strip())

        engine = sa.create_mock_engine(config.get('db/url'), dump)
        if force:
            self.model.metadata.drop_all(engine, checkfirst=False)
        self.model.metadata.create_all(engine, checkfirst=False)
        statements.append(self._setver_sql(VERSION))

        return ';\n'.join(statements)

    def ensure_created(self):
        """
        Create our tables if the catalog is brand new.
        """
        if self.can_create():
            log.info('catalog_create', "Creating operation catalog at %s" % self.printable_url())
            self.create()

    # Check if our tables have been created, and our version of the schema
    # is compatible with what's in the actual db
    def _check(self):
        with self.connect(check=False) as conn:
            for table in self.model.metadata.tables.values():
                if not self._table_exists(conn, table):
                    raise err.VersionError(("Table '%s' does not exist. Perhaps you " +
                                            "need to run 'dbbak db-init --exec'?") % table.name)
            q = self.model.versions.select().where(self.model.versions.c.version == VERSION)
            row = conn.execute(q).fetchone()
            if row is None:
                raise err.VersionError("Catalog does not support catalog version '%d'" % VERSION)

        log.d("Database check succeeded")

def _clauses(table, **kwargs):
    clauses = []
    for attr, val in kwargs.items():
        if attr == 'start_after':
            clauses.append(table.c.start > val)
        elif isinstance(val, (list, tuple)):
            clauses.append(table.c[attr].in_(val))
        else:
            clauses.append(table.c[attr] == val)
    return clauses

class _OperationDb:
    def create(self, verb, target=None):
        # pylint: disable=no-value-for-parameter
        with db.connect() as conn:
            res = conn.execute(model.operations.insert(), dict(verb=verb,
                                                               target=target,
                                                               state='RUNNING',
                                                               state_descr="%s started" % verb,
                                                               state_source=util.state_source(),
                                                               start=int(time.time()),
                                                               end=0))
            return res.inserted_primary_key[0]

    def finish(self, op_id, state, descr, result=None, error_kind=None):
        if state not in STATES:
            raise err.InternalError("Unknown operation state '%s'" % state)

        values = dict(state=state, state_descr=descr, state_source=util.state_source(),
                      end=int(time.time()), error_kind=error_kind)
        if error_kind is not None:
            values['errors'] = model.operations.c.errors + 1
        if result is not None:
            values['result'] = json.dumps(result, sort_keys=True, default=str)

        # pylint: disable=no-value-for-parameter
        q = model.operations.update().where(model.operations.c.id == op_id).values(**values)
        with db.connect() as conn:
            res = conn.execute(q)
            if res.rowcount != 1:
                raise err.DbNoUpdateError("Updated %d rows when trying to update operation id %d" % (
                                          res.rowcount, op_id))

    def find(self, limit=None, **kwargs):
        table = model.operations
        q = table.select().where(sa.and_(*_clauses(table, **kwargs))).order_by(table.c.id.desc())
        if limit:
            q = q.limit(limit)
        with db.connect() as conn:
            return conn.execute(q).fetchall()

class _ArtifactDb:
    def add(self, op_id, path, info):
        # pylint: disable=no-value-for-parameter
        with db.connect() as conn:
            conn.execute(model.artifacts.insert(), dict(op_id=op_id,
                                                        path=os.path.abspath(path),
                                                        database=info.database,
                                                        kind=info.kind,
                                                        format=info.format,
                                                        size=info.size or 0,
                                                        sha256=info.sha256 or '',
                                                        created=int(info.created or time.time())))

    def find(self, **kwargs):
        table = model.artifacts
        q = table.select().where(sa.and_(*_clauses(table, **kwargs))).order_by(table.c.created)
        with db.connect() as conn:
            return conn.execute(q).fetchall()

db = Db()
model = db.model
operation = _OperationDb()
artifact = _ArtifactDb()

# Create some convenience shortcuts for users from other modules
connect = db.connect
can_create = db.can_create
create = db.create
create_sql = db.create_sql
ensure_created = db.ensure_created
printable_url = db.printable_url
reset = db.reset

def _best_effort(what, func, *args, **kwargs):
    if not config.get('db/enabled'):
        return None
    try:
        return func(*args, **kwargs)
    except (sa.exc.SQLAlchemyError, err.DbbakError, OSError) as exc:
        log.warn('catalog_fail', "Cannot %s in the operation catalog: %s" % (what, exc))
        return None

def record_start(verb, target=None):
    """
    Record the start of an operation.

    Returns:
        int: The operation id, or None if the catalog is unavailable.
    """
    def start():
        ensure_created()
        return operation.create(verb, target)
    return _best_effort("record operation %s" % verb, start)

def record_finish(op_id, state, descr, result=None, error_kind=None):
    if op_id is None:
        return
    _best_effort("record the end of operation %d" % op_id, operation.finish,
                 op_id, state, descr, result=result, error_kind=error_kind)

def record_artifact(op_id, path, info):
    _best_effort("record artifact %s" % path, artifact.add, op_id, path, info)

# Use like this:
# with db.ensure_reset():
#     foo()
# And we'll make sure db.reset() gets called after foo() is done.
@contextlib.contextmanager
def ensure_reset():
    try:
        yield
    finally:
        try:
            db.reset()
        except sa.exc.SQLAlchemyError as exc:
            log.d("Ignoring error while resetting db: %s" % exc)
