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
The WAL archive: a flat directory of write-ahead log segments, written once
per segment by the database server's archive_command (`dbbak wal-archive`)
and read back by its restore_command (`dbbak wal-restore`).

Segments are named by 24 hex digits: timeline, log file, and segment
number, 8 digits each. A stored segment may carry a '.gz' and/or '.enc'
suffix. The archive may also hold timeline history files
('00000002.history'), backup label files
('000000010000000000000002.00000028.backup') and partial segments
('000000010000000000000002.partial'), which the server archives through the
same command.

Many processes use the archive directory at once, so a segment only becomes
visible under its final name once its bytes are on disk, and we never
replace an existing segment with different content.
"""

import os
import os.path
import re
import time

import dbbak.err as err
import dbbak.config as config
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.pipeline as pipeline
import dbbak.store as store
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

KIND_SEGMENT = 'segment'
KIND_PARTIAL = 'partial'
KIND_BACKUP = 'backup'
KIND_HISTORY = 'history'

GZ_EXT = '.gz'

_name_re = re.compile(r'^(?:(?P<seg>[0-9A-F]{24})(?:(?P<partial>\.partial)|'
                      r'\.(?P<offset>[0-9A-F]{8})\.backup)?|'
                      r'(?P<hist>[0-9A-F]{8})\.history)'
                      r'(?P<gz>\.gz)?(?P<enc>\.enc)?$')
_lsn_re = re.compile(r'^([0-9A-Fa-f]{1,8})/([0-9A-Fa-f]{1,8})$')

class WalName:
    """
    A parsed WAL archive file name.

    Attributes:
        name (str): The name without our storage suffixes, as the server
            knows it.
        kind (str): One of KIND_SEGMENT, KIND_PARTIAL, KIND_BACKUP,
            KIND_HISTORY.
        timeline (int): Timeline id.
        log (int): Logical log file number (None for history files).
        seg (int): Segment number within the log file (None for history
            files).
        compressed (bool): Stored with a '.gz' suffix.
        encrypted (bool): Stored with a '.enc' suffix.
    """
    def __init__(self, name, kind, timeline, log=None, seg=None,
                 compressed=False, encrypted=False):
        self.name = name
        self.kind = kind
        self.timeline = timeline
        self.log = log
        self.seg = seg
        self.compressed = compressed
        self.encrypted = encrypted

    @property
    def segment(self):
        """
        The 24-digit segment name this file belongs to (None for history
        files).
        """
        if self.log is None:
            return None
        return '%08X%08X%08X' % (self.timeline, self.log, self.seg)

    def stored_name(self, compressed=None, encrypted=None):
        if compressed is None:
            compressed = self.compressed
        if encrypted is None:
            encrypted = self.encrypted
        ret = self.name
        if compressed:
            ret += GZ_EXT
        if encrypted:
            ret += layout.ENC_EXT
        return ret

    def __repr__(self):
        return "<WalName %s>" % self.stored_name()

def parse_name(name):
    """
    Parse a WAL archive file name, with or without storage suffixes.

    Raises:
        `dbbak.err.ArgumentError`: If 'name' is not a WAL file name.
    """
    match = _name_re.match(name)
    if not match:
        raise err.ArgumentError("'%s' is not a valid WAL file name (expected 24 hex digits, " \
                                "optionally followed by .gz and/or .enc)" % name)

    compressed = match.group('gz') is not None
    encrypted = match.group('enc') is not None

    if match.group('hist'):
        tli = int(match.group('hist'), 16)
        if tli == 0:
            raise err.ArgumentError("'%s' refers to timeline 0" % name)
        return WalName(match.group('hist') + '.history', KIND_HISTORY, tli,
                       compressed=compressed, encrypted=encrypted)

    seg = match.group('seg')
    tli = int(seg[0:8], 16)
    logno = int(seg[8:16], 16)
    segno = int(seg[16:24], 16)
    if tli == 0:
        raise err.ArgumentError("'%s' refers to timeline 0" % name)

    if match.group('partial'):
        kind = KIND_PARTIAL
        base = seg + '.partial'
    elif match.group('offset'):
        kind = KIND_BACKUP
        base = '%s.%s.backup' % (seg, match.group('offset'))
    else:
        kind = KIND_SEGMENT
        base = seg
    return WalName(base, kind, tli, logno, segno, compressed=compressed,
                   encrypted=encrypted)

def try_parse_name(name):
    try:
        return parse_name(name)
    except err.ArgumentError:
        return None

def segments_per_log(segment_size=None):
    if segment_size is None:
        segment_size = config.get('wal/segment_size')
    return 0x100000000 // segment_size

def parse_lsn(lsn):
    """
    Turn a WAL position like '0/2000028' into an integer.
    """
    match = _lsn_re.match(lsn.strip())
    if not match:
        raise err.DataError("'%s' is not a valid WAL position" % lsn)
    return (int(match.group(1), 16) << 32) | int(match.group(2), 16)

def format_lsn(value):
    return '%X/%X' % (value >> 32, value & 0xFFFFFFFF)

def lsn_to_segment(lsn, timeline, segment_size=None):
    """
    The name of the segment holding the given WAL position, e.g.
    lsn_to_segment('0/2000028', 1) -> '000000010000000000000002'.
    """
    if segment_size is None:
        segment_size = config.get('wal/segment_size')
    if isinstance(lsn, str):
        lsn = parse_lsn(lsn)
    segno = lsn // segment_size
    per_log = segments_per_log(segment_size)
    return '%08X%08X%08X' % (timeline, segno // per_log, segno % per_log)

def _find_stored(archive_dir, walname):
    """
    Find the stored file for 'walname' in any of its storage variants.
    Returns the path, or None.
    """
    for compressed in (False, True):
        for encrypted in (False, True):
            path = os.path.join(archive_dir, walname.stored_name(compressed, encrypted))
            if os.path.exists(path):
                return path
    return None

def _decoded_reader(path, keysrc, cancel=None):
    """
    Open a stored WAL file and return (reader, fh), where 'reader' yields the
    original bytes.
    """
    walname = parse_name(os.path.basename(path))
    transforms = []
    if walname.encrypted:
        if keysrc is None:
            raise err.KeyRequiredError("WAL file '%s' is encrypted, but no key is available" % path)
        transforms.append(crypt.Decrypt(keysrc))
    if walname.compressed:
        transforms.append(pipeline.Gunzip())
    fh = open(path, 'rb')
    return (pipeline.Pipeline(transforms, cancel=cancel).reader(fh), fh)

def _content_sha256(path, keysrc, cancel=None):
    (reader, fh) = _decoded_reader(path, keysrc, cancel)
    with fh:
        hasher = pipeline.HashTee()
        pipe = pipeline.Pipeline([hasher], cancel=cancel)
        while True:
            buf = reader.read(pipe.bufsize)
            if not buf:
                break
            pipe.push(buf)
        pipe.finish()
        return hasher.hexdigest()

def _check_existing(existing, src_sha256, name, keysrc, cancel):
    try:
        old_sha256 = _content_sha256(existing, keysrc, cancel)
    except err.KeyRequiredError:
        raise err.WalConflictError(("WAL file %s is already archived (encrypted) and we have " +
                                    "no key to compare it with") % name) from None
    if old_sha256 != src_sha256:
        raise err.WalConflictError(("WAL file %s is already archived as %s with different " +
                                    "content; refusing to replace it") % (name, existing))
    log.info('wal_exists', "WAL file %s is already archived with identical content" % name)
    return existing

def archive_segment(src_path, name, archive_dir=None, compress=False,
                    keysrc=None, timeline=None, segment_size=None, cancel=None):
    """
    Copy one WAL file from the server into the archive.

    Args:
        src_path (str): Where the server has the file (%p).
        name (str): The file's name (%f).
        archive_dir (str, optional): Defaults to wal/archive_dir.
        compress (bool): Store the file gzipped.
        keysrc (`dbbak.crypt.KeySource`, optional): Store it encrypted.
        timeline (int, optional): If given, the timeline the server says
            this file is on; a mismatch with the name is an error.
        segment_size (int, optional): Defaults to wal/segment_size.

    Returns:
        str: Path of the archived file.
    """
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')
    if segment_size is None:
        segment_size = config.get('wal/segment_size')

    walname = parse_name(name)
    if walname.compressed or walname.encrypted:
        raise err.ArgumentError("WAL file name '%s' must not carry storage suffixes" % name)
    if timeline is not None and timeline != walname.timeline:
        raise err.DataError("WAL file %s is on timeline %d, but the server reports timeline %d" % (
                            name, walname.timeline, timeline))

    try:
        src_size = os.path.getsize(src_path)
    except FileNotFoundError:
        raise err.NotFoundError("WAL source file '%s' does not exist" % src_path) from None
    if walname.kind == KIND_SEGMENT and src_size != segment_size:
        raise err.DataError("WAL segment %s is %d bytes, but segments are %d bytes" % (
                            name, src_size, segment_size))

    if walname.kind == KIND_HISTORY:
        # History files stay readable as-is; they're tiny, and we parse them
        compress = False
        keysrc = None

    os.makedirs(archive_dir, exist_ok=True)
    src_sha256 = util.checksum('sha256', src_path, cancel)

    existing = _find_stored(archive_dir, walname)
    if existing is not None:
        return _check_existing(existing, src_sha256, name, keysrc, cancel)

    stored = walname.stored_name(compressed=compress, encrypted=keysrc is not None)
    transforms = []
    if compress:
        transforms.append(pipeline.Gzip(config.get('backup/compression')))
    if keysrc is not None:
        transforms.append(crypt.Encrypt(keysrc))

    with store.PendingFile(archive_dir, stored) as pending:
        hasher = pipeline.HashTee()
        pipe = pipeline.Pipeline([hasher] + transforms, cancel=cancel)
        with open(src_path, 'rb') as src:
            pipe.pump(src, pending.fh)
        if hasher.hexdigest() != src_sha256:
            raise err.DataError("WAL file %s changed while we were archiving it" % src_path)
        try:
            path = pending.commit(replace=False)
        except FileExistsError:
            # Somebody else archived the same file while we were copying it
            return _check_existing(pending.path, src_sha256, name, keysrc, cancel)

    log.info('wal_archived', "Archived WAL file %s as %s" % (name, path))
    return path

def restore_segment(name, dest, archive_dir=None, keysrc=None, cancel=None):
    """
    Copy one WAL file from the archive to 'dest', decoding it as needed
    (used as the server's restore_command).

    Raises:
        `dbbak.err.NotFoundError`: If the archive doesn't have the file.
    """
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')

    walname = parse_name(name)
    path = _find_stored(archive_dir, walname)
    if path is None:
        raise err.NotFoundError("WAL file %s is not in the archive %s" % (name, archive_dir))

    dest_dir = os.path.dirname(os.path.abspath(dest))
    (reader, fh) = _decoded_reader(path, keysrc, cancel)
    with fh, store.PendingFile(dest_dir, os.path.basename(dest)) as pending:
        pipe = pipeline.Pipeline(cancel=cancel)
        pipe.pump(reader, pending.fh)
        pending.commit()

    log.d("Restored WAL file %s from %s" % (name, path))
    return dest

class WalEntry:
    """
    A file in the WAL archive, as found by `list_archive`.
    """
    def __init__(self, path, walname, size, mtime):
        self.path = path
        self.walname = walname
        self.size = size
        self.mtime = mtime

    def as_dict(self):
        return {
            'name': os.path.basename(self.path),
            'kind': self.walname.kind,
            'timeline': self.walname.timeline,
            'log': self.walname.log,
            'segment': self.walname.seg,
            'size': self.size,
            'mtime': int(self.mtime),
            'compressed': self.walname.compressed,
            'encrypted': self.walname.encrypted,
        }

def list_archive(archive_dir=None, kinds=None):
    """
    Yield a `WalEntry` for every WAL file in the archive, in name order.
    Unrelated files are skipped, as are files that disappear while we look.
    """
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')
    try:
        names = sorted(os.listdir(archive_dir))
    except FileNotFoundError:
        raise err.NotFoundError("WAL archive directory '%s' does not exist" % archive_dir) from None

    for name in names:
        walname = try_parse_name(name)
        if walname is None:
            continue
        if kinds is not None and walname.kind not in kinds:
            continue
        path = os.path.join(archive_dir, name)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            continue
        yield WalEntry(path, walname, st.st_size, st.st_mtime)

def _position(walname):
    return (walname.timeline, walname.log, walname.seg)

def needed_by(walname, protect):
    """
    Whether WAL file 'walname' is still needed to replay from the segment
    'protect' (a `WalName`): every file of a later timeline, and files of the
    same timeline at or after the protected position.
    """
    if walname.timeline != protect.timeline:
        return walname.timeline > protect.timeline
    return (walname.log, walname.seg) >= (protect.log, protect.seg)

def oldest_needed_segment(backup_dir):
    """
    Find the oldest WAL segment any base backup in 'backup_dir' still needs,
    or None if there are no base backups with WAL metadata.
    """
    if backup_dir is None or not os.path.isdir(backup_dir):
        return None

    oldest = None
    for path in layout.list_artifacts(backup_dir):
        try:
            info = layout.read_info(path, missing_ok=True)
        except err.DataError as exc:
            log.warn('bad_info', "Ignoring unreadable info for %s: %s" % (path, exc))
            continue
        if info is None or not info.wal_start_segment:
            continue
        walname = try_parse_name(info.wal_start_segment)
        if walname is None or walname.kind != KIND_SEGMENT:
            log.warn('bad_info', "Ignoring bad WAL start segment '%s' recorded for %s" % (
                     info.wal_start_segment, path))
            continue
        if oldest is None or _position(walname) < _position(oldest):
            oldest = walname
    if oldest is None:
        return None
    return oldest.segment

def cleanup(archive_dir=None, retention_days=None, backup_dir=None,
            dry_run=False, now=None):
    """
    Remove WAL files older than 'retention_days', except any still needed by
    the oldest base backup in 'backup_dir' (see `needed_by`). History files
    are always kept.

    Returns:
        (list of `WalEntry`, str): The files removed (or that would be
        removed, for a dry run), and the protected segment name (or None).
    """
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')
    if retention_days is None:
        retention_days = config.get('wal/retention_days')
    if now is None:
        now = time.time()

    protect = oldest_needed_segment(backup_dir)
    protect_name = None
    if protect is not None:
        log.info('wal_protect', "Keeping WAL from %s onward, needed by base backups" % protect)
        protect_name = parse_name(protect)

    cutoff = now - retention_days * 86400
    removed = []
    for entry in list_archive(archive_dir, kinds=(KIND_SEGMENT, KIND_PARTIAL, KIND_BACKUP)):
        if entry.mtime >= cutoff:
            continue
        if protect_name is not None and needed_by(entry.walname, protect_name):
            continue
        if dry_run:
            log.info('wal_cleanup_dry', "Would remove WAL file %s" % entry.path)
        else:
            log.info('wal_cleanup', "Removing WAL file %s" % entry.path)
            util.remove_quiet(entry.path)
        removed.append(entry)
    return (removed, protect)
