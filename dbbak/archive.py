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
Tar helpers shared by the cluster, incremental and PITR code. Tars are
always written and read as streams ('w|' and 'r|'), so they can go straight
through a pipeline without being seekable.
"""

import io
import os
import os.path
import stat
import tarfile
import time

import dbbak.err as err
import dbbak.config as config
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

def open_writer(out):
    return tarfile.open(fileobj=out, mode='w|', format=tarfile.PAX_FORMAT)

def add_bytes(tar, name, data, mtime=None):
    tinfo = tarfile.TarInfo(name)
    tinfo.size = len(data)
    tinfo.mode = 0o600
    tinfo.mtime = int(time.time()) if mtime is None else int(mtime)
    tar.addfile(tinfo, io.BytesIO(data))

def add_file(tar, path, arcname):
    tar.add(path, arcname=arcname, recursive=False)

def _clean_name(name):
    if name.startswith('./'):
        name = name[2:]
    name = name.rstrip('/')
    if name in ('', '.'):
        return None
    if os.path.isabs(name) or '..' in name.split('/'):
        raise err.DataError("Archive member '%s' would be extracted outside the target directory" % name)
    return name

def _inside(dest_real, path):
    real = os.path.realpath(path)
    return real == dest_real or real.startswith(dest_real + os.sep)

def drain(reader, bufsize=None):
    """
    Read 'reader' to EOF, so any checks that run at the end of the stream (like
    a checksum verification) get to run.
    """
    if bufsize is None:
        bufsize = config.get('bufsize')
    while reader.read(bufsize):
        pass

def _makedirs(path, dest, created):
    missing = []
    while path != dest and not os.path.lexists(path):
        missing.append(path)
        path = os.path.dirname(path)
    for path in reversed(missing):
        os.mkdir(path)
        if created is not None:
            created.append(path)

def extract(reader, dest, allow_links=False, skip=(), cancel=None, created=None):
    """
    Extract a tar stream into 'dest', replacing files that already exist
    there (overlay semantics). Member names that would land outside 'dest'
    are a DataError, as are links unless 'allow_links' is set. Members named
    in 'skip' are read past without being written. Modes and modification
    times are preserved.

    If 'created' is a list, every path we create that did not exist before
    is appended to it as soon as it appears.

    Returns:
        list of str: The names of the regular files we extracted.
    """
    os.makedirs(dest, exist_ok=True)
    dest_real = os.path.realpath(dest)
    files = []

    def _new(path):
        if created is not None and not os.path.lexists(path):
            created.append(path)

    try:
        tar = tarfile.open(fileobj=reader, mode='r|')
    except tarfile.TarError as exc:
        raise err.DataError("Cannot read archive: %s" % exc) from None

    with tar:
        try:
            for member in tar:
                if cancel is not None:
                    cancel.check()
                name = _clean_name(member.name)
                if name is None or name in skip:
                    continue
                path = os.path.join(dest, name)
                parent = os.path.dirname(path)
                _makedirs(parent, dest, created)
                if not _inside(dest_real, parent):
                    raise err.DataError("Archive member '%s' resolves outside the target directory" % name)

                if member.isdir():
                    _makedirs(path, dest, created)
                    os.chmod(path, stat.S_IMODE(member.mode) | 0o700)

                elif member.isfile():
                    _new(path)
                    if os.path.islink(path):
                        os.unlink(path)
                    src = tar.extractfile(member)
                    with open(path, 'wb') as fh:
                        while True:
                            buf = src.read(config.get('bufsize'))
                            if not buf:
                                break
                            fh.write(buf)
                    os.chmod(path, stat.S_IMODE(member.mode) | 0o600)
                    os.utime(path, (member.mtime, member.mtime))
                    files.append(name)

                elif member.issym() or member.islnk():
                    if not allow_links:
                        raise err.DataError("Archive member '%s' is a link, which is not allowed here" % name)
                    _new(path)
                    if os.path.lexists(path):
                        os.unlink(path)
                    if member.issym():
                        os.symlink(member.linkname, path)
                    else:
                        target = os.path.join(dest, _clean_name(member.linkname))
                        os.link(target, path)

                else:
                    log.d("Skipping special archive member %s" % name)

        except tarfile.TarError as exc:
            raise err.DataError("Corrupt archive: %s" % exc) from None

    drain(reader)
    return files

class ExtractGuard:
    """
    Context manager for restores that extract into 'dest'. If the block
    raises, what it extracted is removed again before the error propagates:
    all of 'dest' when it was absent or empty beforehand, otherwise only the
    paths recorded in 'created'. Files that already existed and were
    overwritten cannot be put back.
    """
    def __init__(self, dest):
        self.dest = dest
        self.existed = os.path.lexists(dest)
        self.was_empty = not self.existed or not os.listdir(dest)
        self.created = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        if exc_type is None:
            return False

        log.warn('extract_undo', "Removing partially restored data from %s after: %s" % (
                 self.dest, exc_value))
        if not self.existed:
            util.rmtree_logged(self.dest)
        elif self.was_empty:
            for name in os.listdir(self.dest):
                self._remove(os.path.join(self.dest, name))
        else:
            for path in reversed(self.created):
                self._remove(path)
        return False

    def _remove(self, path):
        if os.path.isdir(path) and not os.path.islink(path):
            util.rmtree_logged(path)
        else:
            util.remove_quiet(path)
