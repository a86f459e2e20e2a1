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
File-level incremental backups of a database server's data directory.

A chain starts with a full tar of the data directory (made here with
`backup_datadir`, or a PITR base backup from `dbbak.pitr.backup_base`).
Each incremental holds only the files modified after the artifact it is
based on was completed, plus an 'incremental_manifest.json' as its first
tar member. Restoring extracts the full backup and then every incremental in
order over it. Files deleted on the server after the full backup are not
tracked, and will still be present after a restore.
"""

import fnmatch
import json
import os
import os.path
import stat
import time

import dbbak.err as err
import dbbak.archive as archive
import dbbak.config as config
import dbbak.engine as engine
import dbbak.layout as layout
import dbbak.pipeline as pipeline
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

MANIFEST_VERSION = 1

# Names we never copy out of a data directory. Entries ending in '/' are
# directories whose contents we skip (the directory itself is kept in full
# backups, since the server expects it to exist).
PG_EXCLUDES = ('*.tmp', '*.lock', 'postmaster.pid', 'postmaster.opts',
               'pg_wal/', 'pg_xlog/', 'pg_replslot/')
MYSQL_EXCLUDES = ('*.tmp', '#sql*', '*.lock', '*.pid', '*.sock', '*relay-log*',
                  '*relay-bin*', 'mysql-bin.*', 'binlog.*', 'ib_logfile*',
                  'undo_*', '*.err', 'error.log', 'slow*.log', 'general.log',
                  'query.log', 'performance_schema/')

def default_excludes(kind):
    if kind == 'postgresql':
        return list(PG_EXCLUDES)
    return list(MYSQL_EXCLUDES)

class _Excluder:
    def __init__(self, patterns):
        self.file_pats = [p for p in patterns if not p.endswith('/')]
        self.dir_pats = [p.rstrip('/') for p in patterns if p.endswith('/')]

    def _match(self, relpath, pats):
        base = os.path.basename(relpath)
        for pat in pats:
            if fnmatch.fnmatch(base, pat) or fnmatch.fnmatch(relpath, pat):
                return True
        return False

    def skip_file(self, relpath):
        return self._match(relpath, self.file_pats)

    def skip_dir_contents(self, relpath):
        return self._match(relpath, self.dir_pats)

def scan(datadir, excludes, since=None, cancel=None):
    """
    Walk 'datadir', yielding (relpath, is_dir, st) for what a backup should
    contain. With 'since', only regular files modified strictly after that
    unix time are yielded, and no directories.
    """
    excluder = _Excluder(excludes)
    for dirpath, dirnames, filenames in os.walk(datadir):
        if cancel is not None:
            cancel.check()
        reldir = os.path.relpath(dirpath, datadir)
        if reldir == '.':
            reldir = ''
        dirnames.sort()

        keep = []
        for name in dirnames:
            relpath = os.path.join(reldir, name)
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except FileNotFoundError:
                continue
            if since is None:
                yield (relpath, True, st)
            if not excluder.skip_dir_contents(relpath):
                keep.append(name)
        dirnames[:] = keep

        for name in sorted(filenames):
            relpath = os.path.join(reldir, name)
            if excluder.skip_file(relpath):
                continue
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except FileNotFoundError:
                # Removed while we were looking; that's fine
                continue
            if not stat.S_ISREG(st.st_mode):
                # sockets, fifos, and links
                continue
            if since is not None and st.st_mtime <= since:
                continue
            yield (relpath, False, st)

def _write_tree(aw, datadir, entries, manifest=None, cancel=None):
    tar = archive.open_writer(aw.out)
    with tar:
        if manifest is not None:
            archive.add_bytes(tar, layout.INCREMENTAL_MANIFEST,
                              json.dumps(manifest, indent=2).encode('utf-8'))
        for (relpath, _, _) in entries:
            if cancel is not None:
                cancel.check()
            try:
                archive.add_file(tar, os.path.join(datadir, relpath), relpath)
            except FileNotFoundError:
                log.warn('file_vanished', "%s vanished during backup; skipping it" % relpath)

def backup_datadir(datadir, backup_dir, database, kind, excludes=None,
                   compression=None, keysrc=None, cancel=None):
    """
    Make a full tar of a data directory, usable as the start of an
    incremental chain.

    Returns:
        (str, `dbbak.layout.ArtifactInfo`)
    """
    if not os.path.isdir(datadir):
        raise err.PreflightError("Data directory '%s' does not exist" % datadir)
    if excludes is None:
        excludes = default_excludes(kind)
    if compression is None:
        compression = config.get('backup/compression')

    # Files modified during the walk must be picked up by the next
    # incremental, so the chain cutoff is when we started looking.
    started = int(time.time())
    entries = list(scan(datadir, excludes, cancel=cancel))
    nfiles = len([e for e in entries if not e[1]])
    nbytes = sum(e[2].st_size for e in entries if not e[1])

    namer = lambda ts: layout.single_name(database, layout.FORMAT_TAR, True,
                                          keysrc is not None, ts=ts)
    (ts, _) = engine.unique_ts(backup_dir, namer, started)
    name = namer(ts)
    info = layout.ArtifactInfo(artifact_id=layout.artifact_id(database, ts),
                               database=database, kind=kind, format=layout.FORMAT_TAR,
                               compression='gzip', backup_type='full',
                               extra={'file_count': nfiles, 'total_bytes': nbytes,
                                      'data_dir': os.path.abspath(datadir)})

    log.info('datadir_start', "Backing up data directory %s (%d files, %s)" % (
                              datadir, nfiles, util.PrettyBytes.pretty(nbytes)))
    with engine.ArtifactWriter(backup_dir, name,
                               compress=pipeline.Gzip(max(compression, 1)),
                               keysrc=keysrc, cancel=cancel) as aw:
        _write_tree(aw, datadir, entries, cancel=cancel)
        info.created = started
        path = aw.commit(info)

    log.info('datadir_done', "Backed up data directory %s to %s" % (datadir, path))
    return (path, info)

def backup_incremental(datadir, base_artifact, backup_dir, kind=None, excludes=None,
                       compression=None, keysrc=None, cancel=None):
    """
    Back up the files in 'datadir' modified after 'base_artifact' was
    completed.

    Returns:
        (str, `dbbak.layout.ArtifactInfo`)
    """
    if not os.path.isdir(datadir):
        raise err.PreflightError("Data directory '%s' does not exist" % datadir)

    chain = resolve_chain(base_artifact)
    base_info = layout.read_info(base_artifact)
    if kind is None:
        kind = base_info.kind
    if base_info.kind != kind:
        raise err.ChainError("Base backup %s is from %s, not %s" % (
                             base_artifact, base_info.kind, kind))
    if os.path.dirname(os.path.abspath(base_artifact)) != os.path.abspath(backup_dir):
        raise err.ChainError("Base backup %s must be in the backup directory %s" % (
                             base_artifact, backup_dir))
    if excludes is None:
        excludes = default_excludes(kind)
    if compression is None:
        compression = config.get('backup/compression')

    since = base_info.created
    started = int(time.time())
    entries = list(scan(datadir, excludes, since=since, cancel=cancel))
    nbytes = sum(e[2].st_size for e in entries)

    base_name = os.path.basename(base_artifact)
    backup_chain = [os.path.basename(path) for path in chain]
    database = base_info.database

    namer = lambda ts: layout.single_name(database, layout.FORMAT_TAR, True,
                                          keysrc is not None, ts=ts, tag='incr')
    (ts, _) = engine.unique_ts(backup_dir, namer, started)
    name = namer(ts)
    manifest = {
        'manifest_version': MANIFEST_VERSION,
        'base_artifact': base_name,
        'backup_chain': backup_chain,
        'since': since,
        'file_count': len(entries),
        'total_bytes': nbytes,
    }
    info = layout.ArtifactInfo(artifact_id=layout.artifact_id(database, ts, tag='incr'),
                               database=database, kind=kind, format=layout.FORMAT_TAR,
                               compression='gzip', backup_type='incremental',
                               base_artifact=base_name, backup_chain=backup_chain,
                               extra={'file_count': len(entries), 'total_bytes': nbytes,
                                      'data_dir': os.path.abspath(datadir)})

    log.info('incr_start', "Incremental backup of %s since %s: %d changed file(s), %s" % (
                           datadir, util.iso_utc(since), len(entries),
                           util.PrettyBytes.pretty(nbytes)))
    with engine.ArtifactWriter(backup_dir, name,
                               compress=pipeline.Gzip(max(compression, 1)),
                               keysrc=keysrc, cancel=cancel) as aw:
        _write_tree(aw, datadir, entries, manifest=manifest, cancel=cancel)
        info.created = started
        path = aw.commit(info)

    log.info('incr_done', "Wrote incremental backup %s" % path)
    return (path, info)

def resolve_chain(artifact):
    """
    Follow base references from 'artifact' back to a full backup.

    Returns:
        list of str: Artifact paths, the full backup first and 'artifact'
        last.

    Raises:
        `dbbak.err.ChainError`: A member is missing, unreadable, of a
        different kind, or the chain loops.
    """
    directory = os.path.dirname(os.path.abspath(artifact))
    chain = []
    seen = set()
    path = os.path.abspath(artifact)
    kind = None
    newest_info = None

    while True:
        name = os.path.basename(path)
        if name in seen:
            raise err.ChainError("Backup chain loops at %s" % name)
        seen.add(name)

        if not os.path.exists(path):
            raise err.ChainError("Backup chain member %s is missing" % path)
        try:
            info = layout.read_info(path)
        except (err.NotFoundError, err.DataError) as exc:
            raise err.ChainError("Cannot read info for chain member %s: %s" % (path, exc)) from None

        if newest_info is None:
            newest_info = info
        if kind is None:
            kind = info.kind
        elif info.kind != kind:
            raise err.ChainError("Chain member %s is from %s, but the chain is %s" % (
                                 name, info.kind, kind))
        chain.insert(0, path)

        if info.backup_type != 'incremental':
            if info.format != layout.FORMAT_TAR:
                raise err.ChainError("Chain starts at %s, which is not a data directory backup" % name)
            break
        if not info.base_artifact:
            raise err.ChainError("Incremental backup %s has no base reference" % name)
        path = os.path.join(directory, info.base_artifact)

    recorded = newest_info.backup_chain
    if recorded and newest_info.backup_type == 'incremental':
        actual = [os.path.basename(p) for p in chain[:-1]]
        if list(recorded) != actual:
            raise err.ChainError("Recorded chain %s for %s does not match the backups found (%s)" % (
                                 util.list2str(list(recorded)), os.path.basename(artifact),
                                 util.list2str(actual)))
    return chain

def _dir_is_empty(path):
    return not os.path.exists(path) or not os.listdir(path)

def restore_incremental(artifact, target_dir, keysrc=None, in_place=False,
                        cancel=None):
    """
    Restore the chain ending at 'artifact' into 'target_dir'. Every member's
    checksum is verified before anything is extracted, and if applying the
    chain fails partway, what we extracted is removed again.

    Returns:
        dict: The chain we applied and file counts.
    """
    chain = resolve_chain(artifact)

    for path in chain:
        fmt = layout.detect_format(path, keysrc)
        if fmt.encrypted and keysrc is None:
            raise err.KeyRequiredError("Chain member %s is encrypted; an encryption key is required" %
                                       path)
        if not os.path.exists(layout.checksum_path(path)):
            raise err.ChainError("Chain member %s has no checksum file" % path)

    if not in_place and not _dir_is_empty(target_dir):
        raise err.PreflightError("Target directory %s is not empty (use in-place extraction to restore over it)" %
                                 target_dir)

    digests = {}
    for path in chain:
        expected = layout.read_checksum(path)
        actual = util.checksum('sha256', path, cancel=cancel)
        if actual != expected:
            raise err.ChecksumError("Chain member %s is corrupt: SHA-256 %s, expected %s" % (
                                    path, actual, expected))
        digests[path] = expected

    applied = []
    with archive.ExtractGuard(target_dir) as guard:
        os.makedirs(target_dir, mode=0o700, exist_ok=True)
        for path in chain:
            if cancel is not None:
                cancel.check()
            log.info('incr_apply', "Extracting %s into %s" % (path, target_dir))
            (reader, _, fh) = layout.open_artifact(path, keysrc=keysrc,
                                                   verify_sha256=digests[path],
                                                   cancel=cancel)
            with fh:
                files = archive.extract(reader, target_dir, allow_links=True,
                                        skip=(layout.INCREMENTAL_MANIFEST,),
                                        cancel=cancel, created=guard.created)
            applied.append({'artifact': path, 'files': len(files)})

    return {'target_dir': target_dir, 'chain': applied}
