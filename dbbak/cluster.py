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
Cluster backups: every database on a server, plus the cluster-wide globals
(roles, tablespaces), in one archive.

A cluster backup dumps each database with `dbbak.engine.backup_single` into a
private working directory, using a small pool of worker threads. One
database failing does not stop the others; its failure is recorded and shows
up in the manifest and the final report. Once all workers are done, the
manifest, the globals and every per-database artifact go into a single
gzipped tar.
"""

import contextlib
import json
import os
import os.path
import queue
import tempfile
import threading
import time

import dbbak.err as err
import dbbak.archive as archive
import dbbak.cmd as cmd
import dbbak.config as config
import dbbak.const
import dbbak.engine as engine
import dbbak.layout as layout
import dbbak.pipeline as pipeline
import dbbak.util as util
import dbbak.vendor as vendor
import dbbak.log
log = dbbak.log.getLogger(__name__)

MANIFEST_VERSION = 1
GLOBALS_FILE = layout.CLUSTER_GLOBALS

class ClusterResult:
    """
    The outcome of each database in a cluster backup. Workers record into
    this concurrently.
    """
    def __init__(self, databases):
        self._lock = threading.Lock()
        self.databases = list(databases)
        self.succeeded = {}
        self.failed = {}

    def record_success(self, database, path, info):
        with self._lock:
            self.succeeded[database] = (path, info)

    def record_failure(self, database, exc):
        with self._lock:
            self.failed[database] = {
                'database': database,
                'error': str(exc),
                'kind': err.kind_of(exc),
            }

    def failures(self):
        with self._lock:
            return [self.failed[name] for name in sorted(self.failed)]

    def as_dict(self):
        with self._lock:
            return {
                'total': len(self.databases),
                'succeeded': sorted(self.succeeded),
                'failed': [self.failed[name] for name in sorted(self.failed)],
            }

def _worker(conn, work, result, workdir, fmt, compression, cancel, db_timeout,
            threads, progress):
    while True:
        if cancel is not None and cancel.cancelled:
            return
        try:
            database = work.get_nowait()
        except queue.Empty:
            return

        try:
            (path, info) = engine.backup_single(conn, database, workdir, fmt=fmt,
                                                compression=compression,
                                                cancel=cancel, timeout=db_timeout,
                                                threads=threads, progress=progress)
            result.record_success(database, path, info)

        except err.CancelledError as exc:
            result.record_failure(database, exc)
            return

        except Exception as exc:
            log.error('cluster_db_failed', "Backup of database %s failed (%s): %s" % (
                                           database, err.kind_of(exc), exc))
            result.record_failure(database, exc)
            if progress is not None:
                progress('db_failed', database=database, error=str(exc),
                         kind=err.kind_of(exc))

def _dump_globals(vend, path, cancel, timeout):
    cursor = cmd.Cursor(vend.globals_argv(), parser=cmd.NullParser(name='pg_dumpall'),
                        steal_stdout=True, extra_env=vend.env(), cancel=cancel,
                        timeout=timeout, grace=config.get('process/grace'))
    with open(path, 'wb') as fh:
        engine.copy_child(cursor, fh)

def _file_entry(path):
    return {
        'file': os.path.basename(path),
        'size': os.path.getsize(path),
        'sha256': util.checksum('sha256', path),
    }

def build_manifest(conn, result, globals_path, server_version=None, created=None):
    if created is None:
        created = int(time.time())
    databases = []
    for name in sorted(result.succeeded):
        (path, info) = result.succeeded[name]
        entry = _file_entry(path)
        entry.update({
            'name': name,
            'format': info.format,
            'compression': info.compression,
            'origin_size': info.extra.get('origin_size'),
        })
        databases.append(entry)

    return {
        'manifest_version': MANIFEST_VERSION,
        'tool_version': dbbak.const.VERSION,
        'kind': conn.kind,
        'created': created,
        'created_iso': util.iso_utc(created),
        'server_version': server_version,
        'globals': _file_entry(globals_path),
        'databases': databases,
        'order': [entry['name'] for entry in databases],
        'failed': result.failures(),
    }

def backup_cluster(conn, backup_dir, workers=None, db_timeout=None, fmt=None,
                   compression=None, keysrc=None, cancel=None, threads=None,
                   progress=None, databases=None):
    """
    Back up every database on the server, plus the globals, into one cluster
    archive in 'backup_dir'.

    Returns:
        (str, `dbbak.layout.ArtifactInfo`, `ClusterResult`)
    """
    if conn.kind != 'postgresql':
        raise err.UnsupportedError("Cluster backups are only supported for PostgreSQL, not %s" %
                                   conn.kind)
    if workers is None:
        workers = config.get('cluster/workers')
    if db_timeout is None:
        db_timeout = config.get('cluster/db_timeout')
    if compression is None:
        compression = config.get('backup/compression')
    if workers < 1:
        raise err.ConfigError("Cluster worker count must be at least 1, not %d" % workers)

    vend = vendor.get_vendor(conn)
    (ts, _) = engine.unique_ts(backup_dir, lambda ts: layout.cluster_name(keysrc is not None, ts=ts),
                               int(time.time()))

    with contextlib.ExitStack() as stack:
        workdir = tempfile.mkdtemp(prefix='.cluster_%s_' % ts, dir=backup_dir)
        stack.callback(util.rmtree_logged, workdir)
        log.d("Using cluster working directory %s" % workdir)

        globals_path = os.path.join(workdir, GLOBALS_FILE)
        _dump_globals(vend, globals_path, cancel, db_timeout)

        if databases is None:
            databases = vend.list_databases(cancel=cancel)
        databases = sorted(databases)
        server_version = engine.server_version(vend, cancel)
        log.info('cluster_start', "Backing up %d database(s) with %d worker(s)" % (
                                  len(databases), workers))

        result = ClusterResult(databases)
        work = queue.Queue()
        for database in databases:
            work.put(database)

        pool = []
        for idx in range(min(workers, max(1, len(databases)))):
            thread = threading.Thread(target=_worker, name='cluster-worker-%d' % idx,
                                      args=(conn, work, result, workdir, fmt,
                                            compression, cancel, db_timeout,
                                            threads, progress))
            thread.start()
            pool.append(thread)
        for thread in pool:
            thread.join()

        if cancel is not None:
            cancel.check()

        manifest = build_manifest(conn, result, globals_path,
                                  server_version=server_version)
        name = layout.cluster_name(keysrc is not None, ts=ts)
        info = layout.ArtifactInfo(artifact_id=layout.artifact_id('cluster', ts),
                                   database='cluster', kind=conn.kind,
                                   format=layout.FORMAT_CLUSTER, compression='gzip',
                                   server_version=server_version,
                                   extra={'databases': manifest['order'],
                                          'failed': manifest['failed']})

        with engine.ArtifactWriter(backup_dir, name,
                                   compress=pipeline.compressor(max(compression, 1),
                                                                cancel=cancel,
                                                                threads=threads),
                                   keysrc=keysrc, cancel=cancel) as aw:
            tar = archive.open_writer(aw.out)
            # Globals first, then the databases by name, then the manifest
            with tar:
                archive.add_file(tar, globals_path, GLOBALS_FILE)
                for dbname in sorted(manifest['order']):
                    (path, _) = result.succeeded[dbname]
                    archive.add_file(tar, path, os.path.basename(path))
                archive.add_bytes(tar, layout.CLUSTER_MANIFEST,
                                  json.dumps(manifest, indent=2).encode('utf-8'))
            info.created = int(time.time())
            path = aw.commit(info)

    res = result.as_dict()
    log.info('cluster_done', "Cluster backup %s: %d database(s), %d succeeded, %d failed" % (
                             path, res['total'], len(res['succeeded']), len(res['failed'])))
    return (path, info, result)

def report_str(res):
    txt = "Cluster backup %s\n" % res.get('artifact')
    txt += "Databases: %d total, %d succeeded, %d failed\n" % (
           res['total'], len(res['succeeded']), len(res['failed']))
    if res['failed']:
        txt += "\nDatabases that failed:\n"
        for fail in res['failed']:
            txt += "  %s (%s): %s\n" % (fail['database'], fail['kind'], fail['error'])
    if res['succeeded']:
        txt += "\nDatabases backed up successfully:\n"
        for name in res['succeeded']:
            txt += "  %s\n" % name
    return txt

def read_manifest(extract_dir):
    path = os.path.join(extract_dir, layout.CLUSTER_MANIFEST)
    try:
        with open(path, 'r') as fh:
            manifest = json.load(fh)
    except FileNotFoundError:
        raise err.ManifestError("Cluster archive has no %s" % layout.CLUSTER_MANIFEST) from None
    except ValueError as exc:
        raise err.ManifestError("Cluster manifest is not valid JSON: %s" % exc) from None

    if not isinstance(manifest, dict):
        raise err.ManifestError("Cluster manifest is not a JSON object")
    version = manifest.get('manifest_version')
    if not isinstance(version, int) or version < 1:
        raise err.ManifestError("Cluster manifest has no valid manifest_version")
    if version > MANIFEST_VERSION:
        raise err.ManifestError("Cluster manifest version %d is newer than we understand (%d)" % (
                                version, MANIFEST_VERSION))
    return manifest

def check_manifest(manifest, extract_dir, files):
    """
    Compare the extracted files against the manifest: every file it lists
    must be there with the recorded size and SHA-256, and nothing else may
    be.
    """
    listed = [manifest['globals']] + list(manifest.get('databases', []))
    listed_names = set()
    for entry in listed:
        name = entry['file']
        listed_names.add(name)
        path = os.path.join(extract_dir, name)
        if not os.path.isfile(path):
            raise err.ManifestError("File %s is in the manifest, but not in the archive" % name)
        size = os.path.getsize(path)
        if size != entry['size']:
            raise err.ManifestError("File %s is %d bytes, but the manifest says %d" % (
                                    name, size, entry['size']))
        digest = util.checksum('sha256', path)
        if digest != entry['sha256']:
            raise err.ManifestError("File %s has SHA-256 %s, but the manifest says %s" % (
                                    name, digest, entry['sha256']))

    for name in files:
        if name != layout.CLUSTER_MANIFEST and name not in listed_names:
            raise err.ManifestError("Archive contains %s, which is not in the manifest" % name)

def restore_order(manifest):
    names = [entry['name'] for entry in manifest.get('databases', [])]
    order = manifest.get('order')
    if order:
        unknown = set(order) - set(names)
        if unknown:
            raise err.ManifestError("Manifest order names unknown database(s): %s" % (
                                    util.list2str(sorted(unknown))))
        return list(order)
    return sorted(names)

def restore_cluster(conn, artifact, keysrc=None, jobs=None, workdir=None,
                    clean=True, cancel=None, timeout=None, skip_globals=False):
    """
    Restore a cluster archive: replay the globals, then restore each database
    in manifest order. A database that fails to restore is recorded and the
    rest still get restored.

    Returns:
        dict: {'restored': [...], 'failed': [...], 'globals': bool}
    """
    fmt = layout.detect_format(artifact, keysrc)
    if fmt.encrypted and keysrc is None:
        raise err.KeyRequiredError("Cluster archive '%s' is encrypted; an encryption key is required" %
                                   artifact)
    if fmt.format != layout.FORMAT_CLUSTER:
        raise err.ArgumentError("'%s' is not a cluster archive (it looks like %s)" % (
                                artifact, fmt.format))

    if workdir is None:
        workdir = os.path.dirname(os.path.abspath(artifact))
    vend = vendor.get_vendor(conn)

    expected = None
    if os.path.exists(layout.checksum_path(artifact)):
        expected = layout.read_checksum(artifact)

    ret = {'artifact': artifact, 'restored': [], 'failed': [], 'globals': False}

    with contextlib.ExitStack() as stack:
        extract_dir = tempfile.mkdtemp(prefix='.restore_cluster_', dir=workdir)
        stack.callback(util.rmtree_logged, extract_dir)

        (reader, _, fh) = layout.open_artifact(artifact, keysrc=keysrc,
                                               verify_sha256=expected, cancel=cancel)
        with fh:
            files = archive.extract(reader, extract_dir, cancel=cancel)

        manifest = read_manifest(extract_dir)
        check_manifest(manifest, extract_dir, files)
        order = restore_order(manifest)

        if not skip_globals:
            log.info('restore_globals', "Replaying cluster globals")
            # Roles that already exist make some statements fail; those are
            # logged, and don't stop the replay.
            cursor = cmd.Cursor(vend.sql_argv('postgres', stop_on_error=False),
                                parser=cmd.NullParser(name='psql'), extra_env=vend.env(),
                                stdin=True, cancel=cancel, timeout=timeout,
                                grace=config.get('process/grace'))
            with open(os.path.join(extract_dir, manifest['globals']['file']), 'rb') as gfh:
                cursor.feed(gfh)
                cursor.run()
            ret['globals'] = True

        by_name = {entry['name']: entry for entry in manifest['databases']}
        for name in order:
            if cancel is not None:
                cancel.check()
            path = os.path.join(extract_dir, by_name[name]['file'])
            try:
                engine.restore_single(conn, path, target=name, create=True, clean=clean,
                                      jobs=jobs, cancel=cancel, timeout=timeout,
                                      workdir=extract_dir, verify=False)
                ret['restored'].append(name)
            except err.CancelledError:
                raise
            except Exception as exc:
                log.error('cluster_restore_failed', "Restore of database %s failed (%s): %s" % (
                                                    name, err.kind_of(exc), exc))
                ret['failed'].append({'database': name, 'error': str(exc),
                                      'kind': err.kind_of(exc)})

    return ret
