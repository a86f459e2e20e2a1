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

import fnmatch
import json
import os
import os.path
import re
import tarfile

import dbbak.err as err
import dbbak.util as util
import dbbak.crypt as crypt
import dbbak.pipeline as pipeline
import dbbak.log
log = dbbak.log.getLogger(__name__)

CHECKSUM_EXT = '.sha256'
INFO_EXT = '.info'
ENC_EXT = '.enc'
SIDECAR_EXTS = (CHECKSUM_EXT, INFO_EXT)

# Sidecar names left behind by older tools; removed along with an artifact
LEGACY_SIDECAR_EXTS = ('.meta.json',)

FORMAT_CUSTOM = 'custom'
FORMAT_PLAIN = 'plain'
FORMAT_TAR = 'tar'
FORMAT_CLUSTER = 'cluster'
FORMATS = (FORMAT_CUSTOM, FORMAT_PLAIN, FORMAT_TAR, FORMAT_CLUSTER)

KINDS = ('postgresql', 'mysql', 'mariadb')

PGDMP_MAGIC = b'PGDMP'
GZIP_MAGIC = b'\x1f\x8b'

CLUSTER_MANIFEST = 'manifest.json'
CLUSTER_GLOBALS = 'globals.sql'
INCREMENTAL_MANIFEST = 'incremental_manifest.json'

_artifact_exts = ('.dump', '.sql', '.sql.gz', '.tar', '.tar.gz')

class ArtifactInfo:
    """
    The metadata we keep for an artifact, stored as JSON in its '.info'
    sidecar.

    Attributes:
        artifact_id (str): Stable id, derived from the database name and the
            creation time.
        database (str): Logical database name ('cluster' for cluster
            archives, 'datadir' or the db name for data directory tars).
        kind (str): One of 'postgresql', 'mysql', 'mariadb'.
        format (str): One of 'custom', 'plain', 'tar', 'cluster'.
        created (int): Unix time the backup completed.
        size (int): Size of the artifact file, in bytes.
        sha256 (str): Hex SHA-256 of the artifact file as stored.
        encrypted (bool): Whether the artifact is encrypted.
        encryption_algorithm (str): e.g. 'aes-256-gcm', or None.
        compression (str): 'gzip', 'internal' (compressed by the dump tool
            itself), or 'none'.
        backup_type (str): 'full' or 'incremental'.
        base_artifact (str): For incrementals, the file name of the artifact
            this one is based on (in the same directory).
        backup_chain (list of str): For incrementals, the file names of the
            whole chain, oldest first, not including this artifact.
        wal_start (str): WAL start position of a base backup (e.g. '0/2000028').
        timeline (int): Timeline of `wal_start`.
        wal_start_segment (str): The WAL segment name containing `wal_start`.
        server_version (str): Version of the server we backed up.
        extra (dict): Anything else worth recording (sampling policy, file
            counts, etc).
    """

    _fields = ('artifact_id', 'database', 'kind', 'format', 'created', 'size',
               'sha256', 'encrypted', 'encryption_algorithm', 'compression',
               'backup_type', 'base_artifact', 'backup_chain', 'wal_start',
               'timeline', 'wal_start_segment', 'server_version', 'extra')

    def __init__(self, **kwargs):
        self.artifact_id = None
        self.database = None
        self.kind = None
        self.format = None
        self.created = None
        self.size = None
        self.sha256 = None
        self.encrypted = False
        self.encryption_algorithm = None
        self.compression = 'none'
        self.backup_type = 'full'
        self.base_artifact = None
        self.backup_chain = []
        self.wal_start = None
        self.timeline = None
        self.wal_start_segment = None
        self.server_version = None
        self.extra = {}

        for key, val in kwargs.items():
            if key not in self._fields:
                raise err.InternalError("Unknown artifact info field '%s'" % key)
            setattr(self, key, val)

    def to_dict(self):
        ret = {}
        for key in self._fields:
            ret[key] = getattr(self, key)
        if self.created is not None:
            ret['created_iso'] = util.iso_utc(self.created)
        return ret

    @classmethod
    def from_dict(cls, data):
        kwargs = {}
        for key in cls._fields:
            if key in data:
                kwargs[key] = data[key]
        info = cls(**kwargs)
        if info.format is not None and info.format not in FORMATS:
            raise err.DataError("Unknown artifact format '%s'" % info.format)
        return info

    def __repr__(self):
        return "<ArtifactInfo %s: %s %s %s>" % (self.artifact_id, self.kind,
                                               self.format, self.database)

def checksum_path(artifact):
    return artifact + CHECKSUM_EXT

def info_path(artifact):
    return artifact + INFO_EXT

def sidecar_paths(artifact):
    return [artifact + ext for ext in SIDECAR_EXTS]

def is_sidecar(path):
    return path.endswith(SIDECAR_EXTS + LEGACY_SIDECAR_EXTS) or path.endswith('.tmp')

def _atomic_write(path, data):
    tmp = '%s.%d.tmp' % (path, os.getpid())
    try:
        with open(tmp, 'w') as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.rename(tmp, path)
    except BaseException:
        util.remove_quiet(tmp)
        raise

def write_checksum(artifact, digest):
    """
    Write the checksum sidecar in the usual 'sha256sum' format.
    """
    _atomic_write(checksum_path(artifact),
                  "%s  %s\n" % (digest, os.path.basename(artifact)))

def read_checksum(artifact):
    path = checksum_path(artifact)
    try:
        with open(path) as fh:
            line = fh.readline()
    except FileNotFoundError:
        raise err.NotFoundError("Checksum file '%s' does not exist" % path) from None

    parts = line.split()
    if not parts or not re.match(r'^[0-9a-fA-F]{64}$', parts[0]):
        raise err.DataError("Checksum file '%s' does not contain a SHA-256 digest" % path)
    return parts[0].lower()

def write_info(artifact, info):
    _atomic_write(info_path(artifact),
                  json.dumps(info.to_dict(), indent=2, sort_keys=True) + "\n")

def read_info(artifact, missing_ok=False):
    path = info_path(artifact)
    try:
        with open(path) as fh:
            data = json.load(fh)
    except FileNotFoundError:
        if missing_ok:
            return None
        raise err.NotFoundError("Info file '%s' does not exist" % path) from None
    except ValueError as exc:
        raise err.DataError("Info file '%s' is not valid JSON: %s" % (path, exc)) from None

    if not isinstance(data, dict):
        raise err.DataError("Info file '%s' does not contain a JSON object" % path)
    return ArtifactInfo.from_dict(data)

def finalize(artifact, info):
    """
    Write both sidecars for a freshly written artifact. 'info' must already
    have its sha256 set; the size is taken from the file itself.
    """
    info.size = os.path.getsize(artifact)
    write_info(artifact, info)
    write_checksum(artifact, info.sha256)

def delete_artifact(artifact):
    """
    Remove an artifact and all of its sidecars. Missing files are ignored.

    Returns:
        list of str: The paths we actually removed.
    """
    removed = []
    for path in [artifact] + sidecar_paths(artifact) + \
                [artifact + ext for ext in LEGACY_SIDECAR_EXTS]:
        if os.path.lexists(path):
            os.unlink(path)
            removed.append(path)
    return removed

def _safe_name(name):
    # Database names end up in file names
    return re.sub(r'[^A-Za-z0-9_.-]', '_', name)

def single_name(database, fmt, compressed, encrypted, ts=None, tag=None):
    """
    Compute the file name for a single-database artifact, e.g.
    'db_sales_20240101_120000.dump'.
    """
    if ts is None:
        ts = util.timestamp_str()
    if fmt == FORMAT_CUSTOM:
        ext = '.dump'
    elif fmt == FORMAT_PLAIN:
        ext = '.sql.gz' if compressed else '.sql'
    elif fmt == FORMAT_TAR:
        ext = '.tar.gz' if compressed else '.tar'
    else:
        raise err.InternalError("No single artifact name for format '%s'" % fmt)
    if encrypted:
        ext += ENC_EXT

    parts = ['db', _safe_name(database)]
    if tag:
        parts.append(tag)
    parts.append(ts)
    return '_'.join(parts) + ext

def cluster_name(encrypted, ts=None):
    if ts is None:
        ts = util.timestamp_str()
    name = 'cluster_%s.tar.gz' % ts
    if encrypted:
        name += ENC_EXT
    return name

def base_name(encrypted, ts=None):
    if ts is None:
        ts = util.timestamp_str()
    name = 'base_%s.tar.gz' % ts
    if encrypted:
        name += ENC_EXT
    return name

def artifact_id(database, ts, tag=None):
    if tag:
        return '%s_%s_%s' % (database, tag, ts)
    return '%s_%s' % (database, ts)

_name_re = re.compile(r'^(?:db_(?P<db>.+?)(?:_(?P<tag>sample|incr))?|(?P<special>cluster|base))'
                      r'_(?P<ts>\d{8}_\d{6})(?P<ext>(?:\.[a-z]+)+)$')

def parse_name(name):
    """
    Parse an artifact file name into (database, tag, timestamp, ext), or
    return None if it doesn't look like one of ours.
    """
    match = _name_re.match(os.path.basename(name))
    if not match:
        return None
    database = match.group('db') or match.group('special')
    return (database, match.group('tag'), match.group('ts'), match.group('ext'))

def list_artifacts(directory, pattern=None):
    """
    List the artifact files (not sidecars) directly inside 'directory',
    optionally restricted to names matching the glob 'pattern'.
    """
    ret = []
    try:
        entries = os.listdir(directory)
    except FileNotFoundError:
        raise err.NotFoundError("Backup directory '%s' does not exist" % directory) from None

    for name in sorted(entries):
        path = os.path.join(directory, name)
        if is_sidecar(name) or not os.path.isfile(path):
            continue
        if pattern is not None and not fnmatch.fnmatch(name, pattern):
            continue
        if pattern is None and parse_name(name) is None and \
           not os.path.exists(info_path(path)):
            continue
        ret.append(path)
    return ret

class FormatInfo:
    """
    What we could tell about an artifact by looking at its bytes.

    Attributes:
        encrypted (bool): Starts with the encryption magic.
        compressed (bool): The (decrypted) body is gzip data.
        format (str): One of FORMATS, or None if the body could not be
            inspected (e.g. encrypted and no key available).
        incremental (bool): A tar whose first member is an incremental
            manifest.
    """
    def __init__(self):
        self.encrypted = False
        self.compressed = False
        self.format = None
        self.incremental = False

    def __repr__(self):
        return "<FormatInfo format=%s encrypted=%s compressed=%s>" % (
               self.format, self.encrypted, self.compressed)

def _peek_plain(path, keysrc, encrypted, want=1024):
    transforms = []
    if encrypted:
        transforms.append(crypt.Decrypt(keysrc))
    pipe = pipeline.Pipeline(transforms, bufsize=64 * 1024)

    out = b''
    with open(path, 'rb') as fh:
        while len(out) < want:
            buf = fh.read(64 * 1024)
            if not buf:
                break
            out += pipe.push(buf)
    return out

def _gunzip_peek(data, want=1024):
    gunzip = pipeline.Gunzip()
    try:
        return gunzip.update(data)[:want]
    except err.DataError:
        # A short peek can cut a member in half; that's fine as long as we got
        # the leading bytes.
        return b''

def _tar_first_member(body):
    if len(body) < tarfile.BLOCKSIZE:
        return None
    try:
        tinfo = tarfile.TarInfo.frombuf(body[:tarfile.BLOCKSIZE], 'utf-8',
                                        'surrogateescape')
    except tarfile.HeaderError:
        return None
    name = tinfo.name
    if name.startswith('./'):
        name = name[2:]
    return name

def detect_format(path, keysrc=None):
    """
    Figure out what kind of artifact 'path' is by looking at its contents.

    1. The encryption magic marks it encrypted; we can only look further if
       we have key material.
    2. A gzip magic marks it compressed.
    3. In the (decompressed) body, 'PGDMP' means a custom-format dump, a tar
       header means a tar (a cluster archive if its first member is the
       globals dump or the manifest), and anything else is plain SQL.
    """
    ret = FormatInfo()
    try:
        with open(path, 'rb') as fh:
            head = fh.read(crypt.HEADER_LEN)
    except FileNotFoundError:
        raise err.NotFoundError("Artifact '%s' does not exist" % path) from None

    if crypt.is_encrypted(head):
        ret.encrypted = True
        if keysrc is None:
            return ret

    body = _peek_plain(path, keysrc, ret.encrypted, want=64 * 1024)
    if body[:2] == GZIP_MAGIC:
        ret.compressed = True
        body = _gunzip_peek(body)

    if body[:len(PGDMP_MAGIC)] == PGDMP_MAGIC:
        ret.format = FORMAT_CUSTOM
    elif body[257:262] == b'ustar':
        ret.format = FORMAT_TAR
        first = _tar_first_member(body)
        if first in (CLUSTER_GLOBALS, CLUSTER_MANIFEST):
            ret.format = FORMAT_CLUSTER
        elif first == INCREMENTAL_MANIFEST:
            ret.incremental = True
    else:
        ret.format = FORMAT_PLAIN
    return ret

def open_artifact(path, keysrc=None, verify_sha256=None, cancel=None):
    """
    Open an artifact for reading its logical content: the returned reader
    yields decrypted, decompressed bytes. If 'verify_sha256' is given, the
    stored bytes are hashed as they stream by and a mismatch raises
    ChecksumError when the reader hits EOF.

    Returns:
        (reader, FormatInfo, file handle). The caller closes the file handle.
    """
    fmt = detect_format(path, keysrc)
    if fmt.encrypted and keysrc is None:
        raise err.KeyRequiredError("Artifact '%s' is encrypted, but no key is available" % path)

    transforms = []
    if verify_sha256:
        transforms.append(pipeline.HashVerify(verify_sha256, what=path))
    if fmt.encrypted:
        transforms.append(crypt.Decrypt(keysrc))
    if fmt.compressed:
        transforms.append(pipeline.Gunzip())

    fh = open(path, 'rb')
    pipe = pipeline.Pipeline(transforms, cancel=cancel)
    return (pipe.reader(fh), fmt, fh)
