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
Deleting old artifacts.

An artifact may be deleted when it is older than the retention window, and
at least 'min_count' artifacts of its group remain afterwards. Without a
pattern the whole directory is one group; with a pattern, artifacts are
grouped per database (and per tag, so samples don't count as full
backups).
"""

import os
import os.path
import threading
import time

import dbbak.err as err
import dbbak.config as config
import dbbak.layout as layout
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

# Guards directory listings against concurrent cleanups in this process
_list_lock = threading.Lock()

class Candidate:
    """
    An artifact considered for deletion.

    Attributes:
        path (str): Path to the artifact.
        created (int): When the backup was taken: the info sidecar's
            'created' time, or else the file mtime.
        group (str): The group the artifact is counted in.
        info (`dbbak.layout.ArtifactInfo`): The info sidecar, or None.
    """
    def __init__(self, path, created, group, info=None):
        self.path = path
        self.created = created
        self.group = group
        self.info = info

    def sort_key(self):
        return (self.created, os.path.basename(self.path))

    def as_dict(self):
        return {'path': self.path, 'created': self.created,
                'created_iso': util.iso_utc(self.created), 'group': self.group}

    def __repr__(self):
        return "<Candidate %s created=%d>" % (self.path, self.created)

def _group_of(path, info, grouped):
    if not grouped:
        return '*'
    parsed = layout.parse_name(path)
    if parsed is not None:
        (database, tag, _, _) = parsed
        if tag:
            return '%s/%s' % (database, tag)
        return database
    if info is not None and info.database:
        return info.database
    return os.path.basename(path)

def candidates(directory, pattern=None):
    with _list_lock:
        paths = layout.list_artifacts(directory, pattern)

    ret = []
    for path in paths:
        try:
            info = layout.read_info(path, missing_ok=True)
        except err.DataError as exc:
            log.warn('bad_info', "Ignoring unreadable info for %s: %s" % (path, exc))
            info = None
        if info is not None and info.created:
            created = int(info.created)
        else:
            try:
                created = int(os.stat(path).st_mtime)
            except FileNotFoundError:
                # Removed while we were looking
                continue
        ret.append(Candidate(path, created, _group_of(path, info, pattern is not None), info))
    return ret

def _chain_members(cands):
    # Names that some artifact needs as the base of its incremental chain
    ret = set()
    for cand in cands:
        if cand.info is None:
            continue
        if cand.info.base_artifact:
            ret.add(os.path.basename(cand.info.base_artifact))
        for name in cand.info.backup_chain or ():
            ret.add(os.path.basename(name))
    return ret

def plan(directory, days=None, min_count=None, pattern=None, now=None):
    """
    Decide which artifacts to delete, without deleting anything.

    Returns:
        (list of Candidate, list of Candidate): What to delete and what to
        keep, oldest first.
    """
    if days is None:
        days = config.get('retention/days')
    if min_count is None:
        min_count = config.get('retention/min_backups')
    if days < 0:
        raise err.ConfigError("Retention days must not be negative, not %d" % days)
    if min_count < 0:
        raise err.ConfigError("Minimum backup count must not be negative, not %d" % min_count)
    if now is None:
        now = time.time()
    cutoff = now - days * 86400

    cands = candidates(directory, pattern)
    groups = {}
    for cand in cands:
        groups.setdefault(cand.group, []).append(cand)

    delete = []
    keep = []
    for group in sorted(groups):
        members = sorted(groups[group], key=Candidate.sort_key)
        # Everything but the youngest 'min_count' may go, if it's old enough
        nold = max(len(members) - min_count, 0)
        for idx, cand in enumerate(members):
            if idx < nold and cand.created < cutoff:
                delete.append(cand)
            else:
                keep.append(cand)

    needed = _chain_members(keep)
    if needed:
        for cand in list(delete):
            if os.path.basename(cand.path) in needed:
                log.info('retention_chain', "Keeping %s; a kept incremental backup depends on it" %
                                            cand.path)
                delete.remove(cand)
                keep.append(cand)
                needed |= _chain_members([cand])

    delete.sort(key=Candidate.sort_key)
    keep.sort(key=Candidate.sort_key)
    return (delete, keep)

def cleanup(directory, days=None, min_count=None, pattern=None, dry_run=False, now=None):
    """
    Delete old artifacts (and their sidecars) from 'directory'.

    Returns:
        dict: 'deleted' (or 'would_delete' for a dry run) and 'kept' lists
        of artifact paths, and 'freed' bytes.
    """
    (delete, keep) = plan(directory, days=days, min_count=min_count, pattern=pattern,
                          now=now)
    freed = 0
    done = []
    for cand in delete:
        try:
            size = os.path.getsize(cand.path)
        except FileNotFoundError:
            continue
        if dry_run:
            log.info('retention_would_delete', "Would delete %s (from %s)" % (
                                               cand.path, util.iso_utc(cand.created)))
        else:
            log.info('retention_delete', "Deleting %s (from %s)" % (
                                         cand.path, util.iso_utc(cand.created)))
            layout.delete_artifact(cand.path)
        freed += size
        done.append(cand.path)

    log.info('retention_done', "%s %d artifact(s) from %s, %s; kept %d" % (
                               'Would delete' if dry_run else 'Deleted', len(done), directory,
                               util.PrettyBytes.pretty(freed), len(keep)))
    return {
        'directory': directory,
        'dry_run': dry_run,
        ('would_delete' if dry_run else 'deleted'): done,
        'kept': [cand.path for cand in keep],
        'freed': freed,
    }
