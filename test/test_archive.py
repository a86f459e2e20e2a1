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

import io
import os
import tarfile
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.archive as archive

# Tests for our tar stream helpers

class TestArchive(tu.DbbakTest):
    def _stream(self, build):
        buf = io.BytesIO()
        tar = archive.open_writer(buf)
        build(tar)
        tar.close()
        buf.seek(0)
        return buf

    def test_roundtrip(self):
        src = self.tmp_path('src.conf')
        self.write_file(src, 'shared_buffers = 128MB\n', mode=0o640)
        os.utime(src, (1600000000, 1600000000))

        def build(tar):
            archive.add_bytes(tar, 'PG_VERSION', b'15\n', mtime=1500000000)
            archive.add_file(tar, src, 'conf/postgresql.conf')

        dest = self.tmp_path('dest')
        files = archive.extract(self._stream(build), dest)

        assert files == ['PG_VERSION', 'conf/postgresql.conf']
        with open(os.path.join(dest, 'PG_VERSION'), 'rb') as fh:
            assert fh.read() == b'15\n'
        conf = os.path.join(dest, 'conf', 'postgresql.conf')
        assert os.stat(conf).st_mtime == 1600000000
        assert os.stat(conf).st_mode & 0o777 == 0o640

    def test_overlay(self):
        dest = self.tmp_path('dest')
        self.write_file(os.path.join(dest, 'base', '1', '1234'), 'old')
        self.write_file(os.path.join(dest, 'untouched'), 'keep me')

        def build(tar):
            archive.add_bytes(tar, 'base/1/1234', b'new')
        archive.extract(self._stream(build), dest)

        with open(os.path.join(dest, 'base', '1', '1234')) as fh:
            assert fh.read() == 'new'
        with open(os.path.join(dest, 'untouched')) as fh:
            assert fh.read() == 'keep me'

    def test_skip(self):
        def build(tar):
            archive.add_bytes(tar, 'manifest.json', b'{}')
            archive.add_bytes(tar, 'data', b'x')
        dest = self.tmp_path('dest')
        assert archive.extract(self._stream(build), dest, skip=('manifest.json',)) == ['data']
        assert not os.path.exists(os.path.join(dest, 'manifest.json'))

    @pytest.mark.parametrize('name', ['../escape', 'a/../../escape', '/etc/passwd'])
    def test_traversal(self, name):
        def build(tar):
            archive.add_bytes(tar, name, b'evil')
        with pytest.raises(err.DataError):
            archive.extract(self._stream(build), self.tmp_path('dest'))
        assert not os.path.exists(self.tmp_path('escape'))

    def test_links(self):
        def build(tar):
            tinfo = tarfile.TarInfo('pg_wal')
            tinfo.type = tarfile.SYMTYPE
            tinfo.linkname = '/somewhere/else'
            tar.addfile(tinfo)

        with pytest.raises(err.DataError, match='link'):
            archive.extract(self._stream(build), self.tmp_path('dest1'))

        dest = self.tmp_path('dest2')
        archive.extract(self._stream(build), dest, allow_links=True)
        assert os.readlink(os.path.join(dest, 'pg_wal')) == '/somewhere/else'

    def test_garbage(self):
        with pytest.raises(err.DataError):
            archive.extract(io.BytesIO(b'this is not a tar file' * 100), self.tmp_path('dest'))
