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
Backing up one database into one artifact, and restoring one database from
one artifact.

The dump tool always writes to its stdout; we stream that through a
`dbbak.pipeline.Pipeline` into a temporary file in the destination
directory, and only give the artifact its final name (and write its
sidecars) once everything succeeded. On any failure the temporary file is
removed, so a failed backup leaves nothing behind.
"""

import contextlib
import os
import os.path
import shutil
import tempfile
import time

import dbbak.err as err
import dbbak.cmd as cmd
import dbbak.config as config
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.pipeline as pipeline
import dbbak.store as store
import dbbak.util as util
import dbbak.vendor as vendor
import dbbak.log
log = dbbak.log.getLogger(__name__)

class _ByteProgress:
    """
    Turns a stream of byte counts into periodic log messages and progress
    events, like "Dumping db foo (1.00 GB / 3.00 GB dumped, 50.00 MB/s)".
    """
    # Log at most this often, in seconds
    log_interval = 60

    def __init__(self, what, total=None, progress=None):
        self._what = what
        self._pretty = util.PrettyBytes(total)
        self._progress = progress
        # Our first message shows up after about 10 seconds
        self._last_log = time.monotonic() - self.log_interval + 10

    def __call__(self, nbytes, total):
        now = time.monotonic()
        if now - self._last_log > self.log_interval:
            self._pretty.update_bytes(nbytes)
            log.info('progress', "%s (%s / %s done, %s)" % (
                                 self._what, self._pretty.bytes,
                                 self._pretty.total, self._pretty.rate))
            self._last_log = now
        if self._progress is not None:
            self._progress('bytes', what=self._what, bytes=nbytes, total=total)

class ArtifactWriter:
    """
    Writes a new artifact: compress, encrypt and hash on the way to a pending
    file, then `commit` it under its final name along with its sidecars.

        with ArtifactWriter(backup_dir, name, compress=pipeline.Gzip(6)) as aw:
            aw.out.write(data)
            path = aw.commit(info)

    Leaving the block without committing (e.g. because of an exception)
    removes everything we wrote.
    """
    def __init__(self, directory, name, compress=None, keysrc=None,
                 cancel=None, progress=None, total=None):
        self.directory = directory
        self.name = name
        self.encrypted = keysrc is not None
        self.path = None

        transforms = [compress]
        if keysrc is not None:
            transforms.append(crypt.Encrypt(keysrc))
        transforms.append(pipeline.HashTee())
        if progress is not None:
            transforms.append(pipeline.ProgressTee(progress, total=total))

        self.pending = store.PendingFile(directory, name)
        self.pipe = pipeline.Pipeline(transforms, cancel=cancel)
        self.out = self.pipe.writer(self.pending.fh)

    def commit(self, info):
        """
        Finish writing, give the artifact its final name, and write its
        sidecars.

        Returns:
            str: The path to the artifact.
        """
        self.out.close()
        info.sha256 = self.pipe.sha256()
        if self.encrypted:
            info.encrypted = True
            info.encryption_algorithm = crypt.ALGORITHM

        try:
            path = self.pending.commit(replace=False)
        except FileExistsError:
            raise err.FatalIOError("Artifact %s already exists" % self.pending.path) from None

        try:
            layout.finalize(path, info)
        except BaseException:
            layout.delete_artifact(path)
            raise
        self.path = path
        return path

    def abort(self):
        self.pipe.abort()
        self.pending.discard()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        if exc_type is not None:
            self.abort()
        else:
            self.pending.discard()

def copy_child(cursor, out, bufsize=None):
    """
    Copy all of a child's stdout into 'out'. The child is killed if writing
    fails, and its exit status is checked at EOF.
    """
    if bufsize is None:
        bufsize = config.get('bufsize')
    try:
        while True:
            buf = cursor.read_stdout(bufsize)
            if buf is None:
                break
            out.write(buf)
    except BaseException:
        cursor.abort()
        raise

def unique_ts(directory, namer, now):
    # Two backups of the same database within one second would share a name;
    # move the later one forward a second.
    while True:
        ts = util.timestamp_str(now)
        if not os.path.exists(os.path.join(directory, namer(ts))):
            return (ts, now)
        now += 1

def _pick_compressor(level, force_external, cancel, threads):
    if level == 0:
        return None
    if force_external:
        pigz = config.get('compress/pigz')
        if pigz and shutil.which(pigz[0]):
            return pipeline.ExternalGzip(pigz, level=level, threads=threads, cancel=cancel)
        log.warn('no_pigz', "Parallel gzip (%s) not found; compressing in-process" % (
                            pigz[0] if pigz else 'pigz'))
        return pipeline.Gzip(level)
    return pipeline.compressor(level, cancel=cancel, threads=threads)

def server_version(vend, cancel):
    try:
        return vend.server_version(cancel=cancel)
    except cmd.ProcessError as exc:
        log.warn('no_server_version', "Cannot get server version: %s" % exc)
        return None

def _dump_pg_sample(vend, database, strategy, value, out, cancel, timeout):
    """
    Write a plain SQL sample of a PostgreSQL database: the full schema, then
    a COPY block for a sample of each table's rows.
    """
    grace = config.get('process/grace')
    cursor = cmd.Cursor(vend.dump_argv(database, layout.FORMAT_PLAIN, schema_only=True),
                        parser=cmd.NullParser(name='pg_dump'), steal_stdout=True,
                        extra_env=vend.env(), cancel=cancel, timeout=timeout,
                        grace=grace)
    copy_child(cursor, out)

    tables = vend.list_tables(database, cancel=cancel)
    for table in tables:
        log.d("Sampling table %s.%s" % (database, table))
        out.write(b'\nCOPY %s FROM stdin;\n' % table.encode('utf-8'))
        cursor = cmd.Cursor(vend.sample_data_argv(database, table, strategy, value),
                            parser=cmd.NullParser(name='psql'), steal_stdout=True,
                            extra_env=vend.env(), cancel=cancel, timeout=timeout,
                            grace=grace)
        copy_child(cursor, out)
        out.write(b'\\.\n')
    return len(tables)

def backup_single(conn, database, backup_dir, fmt=None, compression=None,
                  keysrc=None, sample=None, cancel=None, timeout=None,
                  threads=None, progress=None):
    """
    Back up one database into a new artifact in 'backup_dir'.

    Args:
        conn (`dbbak.vendor.ConnInfo`): The server to back up from.
        database (str): Database to back up.
        backup_dir (str): Where the artifact goes.
        fmt (str, optional): 'custom' or 'plain'. Defaults to backup/format.
            Ignored for MySQL/MariaDB, which are always plain SQL.
        compression (int, optional): gzip level 0-9. Defaults to
            backup/compression.
        keysrc (`dbbak.crypt.KeySource`, optional): Encrypt with this key.
        sample (tuple, optional): (strategy, value) to dump only a sample of
            each table's rows.
        cancel (`dbbak.util.Cancellation`, optional): Cancellation signal.
        timeout (int, optional): Deadline for the dump, in seconds.
        threads (int, optional): Thread count for parallel gzip.
        progress (callable, optional): Called as progress(event, **data).

    Returns:
        (str, `dbbak.layout.ArtifactInfo`): The artifact path and its info.
    """
    vend = vendor.get_vendor(conn)
    if compression is None:
        compression = config.get('backup/compression')
    if compression < 0 or compression > 9:
        raise err.ConfigError("Compression level must be 0-9, not %d" % compression)
    if fmt is None:
        fmt = config.get('backup/format')
    if fmt not in (layout.FORMAT_CUSTOM, layout.FORMAT_PLAIN):
        raise err.ConfigError("Backup format must be custom or plain, not '%s'" % fmt)

    extra = {}
    force_external = False
    tag = None

    size = vend.database_size(database, cancel=cancel)
    extra['origin_size'] = size

    if conn.kind != 'postgresql':
        fmt = layout.FORMAT_PLAIN

    if sample is not None:
        (strategy, value) = sample
        tag = 'sample'
        fmt = layout.FORMAT_PLAIN
        extra['sample'] = {'strategy': strategy, 'value': value}
        log.warn('sample_integrity', ("Sampling database %s (%s %s): referential integrity " +
                                      "between tables is NOT preserved") % (
                                      database, strategy, value))

    elif fmt == layout.FORMAT_CUSTOM and size > config.get('backup/large_db_threshold'):
        log.info('large_db', ("Database %s is %s, over the large database threshold; " +
                              "using plain SQL with parallel compression instead of " +
                              "the custom format") % (database, util.PrettyBytes.pretty(size)))
        fmt = layout.FORMAT_PLAIN
        force_external = True
        extra['large_db'] = True

    if fmt == layout.FORMAT_CUSTOM:
        # pg_dump compresses custom dumps by itself
        compress = None
        compressed = False
        compression_tag = 'internal' if compression > 0 else 'none'
    else:
        compress = _pick_compressor(compression, force_external, cancel, threads)
        compressed = compress is not None
        compression_tag = 'gzip' if compressed else 'none'

    encrypted = keysrc is not None
    namer = lambda ts: layout.single_name(database, fmt, compressed, encrypted, ts=ts, tag=tag)
    (ts, created) = unique_ts(backup_dir, namer, int(time.time()))
    name = namer(ts)

    info = layout.ArtifactInfo(artifact_id=layout.artifact_id(database, ts, tag=tag),
                               database=database, kind=conn.kind, format=fmt,
                               compression=compression_tag, backup_type='full',
                               server_version=server_version(vend, cancel),
                               extra=extra)

    what = "Dumping database %s" % database
    log.info('backup_start', "%s to %s (format %s, compression %s%s)" % (
                             what, os.path.join(backup_dir, name), fmt, compression_tag,
                             ', encrypted' if encrypted else ''))
    if progress is not None:
        progress('db_started', database=database)

    with ArtifactWriter(backup_dir, name, compress=compress, keysrc=keysrc,
                        cancel=cancel, total=size,
                        progress=_ByteProgress(what, size, progress)) as aw:
        if sample is not None and conn.kind == 'postgresql':
            ntables = _dump_pg_sample(vend, database, sample[0], sample[1], aw.out,
                                      cancel, timeout)
            info.extra['sample']['tables'] = ntables
        else:
            if sample is not None:
                argv = vend.dump_argv(database, fmt,
                                      where=vend.sample_where(sample[0], sample[1]))
            else:
                argv = vend.dump_argv(database, fmt, compression=compression)
            cursor = cmd.Cursor(argv, parser=cmd.NullParser(name=os.path.basename(argv[0])),
                                steal_stdout=True, extra_env=vend.env(),
                                cancel=cancel, timeout=timeout,
                                idle_timeout=config.get('process/idle_timeout'),
                                grace=config.get('process/grace'))
            copy_child(cursor, aw.out)

        info.created = int(time.time())
        path = aw.commit(info)

    log.info('backup_done', "Backed up database %s to %s (%s, sha256 %s)" % (
                            database, path, util.PrettyBytes.pretty(info.size), info.sha256))
    if progress is not None:
        progress('db_completed', database=database, artifact=path, size=info.size)
    return (path, info)

def target_name(artifact, info=None):
    """
    The database an artifact was taken from, judging by its info sidecar or
    else its file name.
    """
    if info is not None and info.database:
        return info.database
    parsed = layout.parse_name(artifact)
    if parsed is None or parsed[0] in ('cluster', 'base'):
        return None
    return parsed[0]

def _stage_plain(reader, directory, cancel):
    # Write the logical content of an artifact to a temp file, for tools that
    # can't read from a pipe.
    fh = tempfile.NamedTemporaryFile(dir=directory, prefix='.dbbak_restore.',
                                     suffix='.tmp', delete=False)
    try:
        with fh:
            pipe = pipeline.Pipeline(cancel=cancel)
            pipe.pump(reader, fh)
    except BaseException:
        util.remove_quiet(fh.name)
        raise
    return fh.name

def restore_single(conn, artifact, target=None, create=False, clean=False,
                   jobs=None, keysrc=None, cancel=None, timeout=None,
                   workdir=None, verify=True):
    """
    Restore one database from one artifact.

    Args:
        conn (`dbbak.vendor.ConnInfo`): The server to restore into.
        artifact (str): Path to the artifact.
        target (str, optional): Database to restore into. Defaults to the
            database the artifact was taken from.
        create (bool): Create the target database if it does not exist.
        clean (bool): Drop (and recreate) the target first if it exists.
        jobs (int, optional): Parallel restore jobs (custom format only).
        keysrc (`dbbak.crypt.KeySource`, optional): Key for encrypted
            artifacts.
        workdir (str, optional): Where to stage data for a parallel restore.
            Defaults to the artifact's directory.
        verify (bool): Check the artifact against its checksum sidecar while
            streaming it.

    Returns:
        dict: What we did.
    """
    fmt = layout.detect_format(artifact, keysrc)
    if fmt.encrypted and keysrc is None:
        raise err.KeyRequiredError("Artifact '%s' is encrypted; an encryption key is required to restore it" %
                                   artifact)
    if fmt.format not in (layout.FORMAT_CUSTOM, layout.FORMAT_PLAIN) or fmt.incremental:
        raise err.UnsupportedError(("Artifact '%s' is a %s archive; use the cluster or " +
                                    "incremental restore instead") % (artifact, fmt.format))

    info = layout.read_info(artifact, missing_ok=True)
    if target is None:
        target = target_name(artifact, info)
    if not target:
        raise err.ArgumentError("Cannot tell which database '%s' belongs to; give a target name" %
                                artifact)
    if fmt.format == layout.FORMAT_CUSTOM and conn.kind != 'postgresql':
        raise err.UnsupportedError("Cannot restore custom-format artifact '%s' into %s" % (
                                   artifact, conn.kind))
    if info is not None and info.kind and info.kind != conn.kind and \
       'postgresql' in (info.kind, conn.kind):
        raise err.UnsupportedError("Artifact '%s' is from %s, but the target server is %s" % (
                                   artifact, info.kind, conn.kind))

    expected = None
    if verify and os.path.exists(layout.checksum_path(artifact)):
        expected = layout.read_checksum(artifact)

    vend = vendor.get_vendor(conn)
    result = {'database': target, 'artifact': artifact, 'format': fmt.format,
              'dropped': False, 'created': False}

    exists = vend.database_exists(target, cancel=cancel)
    if clean and exists:
        log.info('restore_clean', "Dropping database %s before restoring" % target)
        vend.terminate_sessions(target, cancel=cancel)
        vend.drop(target, cancel=cancel)
        result['dropped'] = True
        exists = False
        # We dropped it, so put back an empty one to restore into
        create = True

    if not exists:
        if not create:
            raise err.PreflightError("Target database %s does not exist (use create-if-missing to create it)" %
                                     target)
        log.info('restore_create', "Creating database %s" % target)
        vend.create(target, cancel=cancel)
        result['created'] = True

    log.info('restore_start', "Restoring %s into database %s" % (artifact, target))

    grace = config.get('process/grace')
    with contextlib.ExitStack() as stack:
        (reader, _, fh) = layout.open_artifact(artifact, keysrc=keysrc,
                                               verify_sha256=expected, cancel=cancel)
        stack.callback(fh.close)

        if fmt.format == layout.FORMAT_CUSTOM and jobs and jobs > 1:
            if workdir is None:
                workdir = os.path.dirname(os.path.abspath(artifact))
            staged = _stage_plain(reader, workdir, cancel)
            stack.callback(util.remove_quiet, staged)
            argv = vend.restore_argv(target, fmt.format, jobs=jobs, path=staged)
            cursor = cmd.Cursor(argv, parser=cmd.NullParser(name='pg_restore'),
                                extra_env=vend.env(), cancel=cancel,
                                timeout=timeout, grace=grace)
        else:
            argv = vend.restore_argv(target, fmt.format)
            cursor = cmd.Cursor(argv, parser=cmd.NullParser(name=os.path.basename(argv[0])),
                                extra_env=vend.env(), stdin=True, cancel=cancel,
                                timeout=timeout, grace=grace)
            cursor.feed(reader)
        cursor.run()

    log.info('restore_done', "Restored %s into database %s" % (artifact, target))
    return result
