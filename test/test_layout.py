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

import gzip
import hashlib
import io
import json
import os
import tarfile
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.pipeline as pipeline

# Tests for artifact naming, sidecars, and format detection

def _tar_bytes(members):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tar:
        for name, data in members:
            tinfo = tarfile.TarInfo(name)
            tinfo.size = len(data)
            tar.addfile(tinfo, io.BytesIO(data))
    return buf.getvalue()

def _encrypt(data, keysrc):
    out = io.BytesIO()
    pipeline.Pipeline([crypt.Encrypt(keysrc)]).pump(io.BytesIO(data), out)
    return out.getvalue()

class TestNames(tu.DbbakTest):
    @pytest.mark.parametrize('fmt,compressed,encrypted,exp', [
        ('custom', False, False, 'db_sales_20240102_030405.dump'),
        ('custom', False, True,  'db_sales_20240102_030405.dump.enc'),
        ('plain',  False, False, 'db_sales_20240102_030405.sql'),
        ('plain',  True,  False, 'db_sales_20240102_030405.sql.gz'),
        ('plain',  True,  True,  'db_sales_20240102_030405.sql.gz.enc'),
        ('tar',    True,  False, 'db_sales_20240102_030405.tar.gz'),
        ('tar',    False, False, 'db_sales_20240102_030405.tar'),
    ])
    def test_single_name(self, fmt, compressed, encrypted, exp):
        assert exp == layout.single_name('sales', fmt, compressed, encrypted,
                                         ts='20240102_030405')

    def test_special_names(self):
        assert 'cluster_20240102_030405.tar.gz' == layout.cluster_name(False, ts='20240102_030405')
        assert 'cluster_20240102_030405.tar.gz.enc' == layout.cluster_name(True, ts='20240102_030405')
        assert 'base_20240102_030405.tar.gz' == layout.base_name(False, ts='20240102_030405')

    def test_unsafe_database(self):
        name = layout.single_name('../etc/x y', 'plain', False, False, ts='20240102_030405')
        assert '/' not in name
        assert name == 'db_.._etc_x_y_20240102_030405.sql'

    @pytest.mark.parametrize('name,exp', [
        ('db_sales_20240102_030405.dump', ('sales', None, '20240102_030405', '.dump')),
        ('db_my_db_20240102_030405.sql.gz', ('my_db', None, '20240102_030405', '.sql.gz')),
        ('db_sales_sample_20240102_030405.sql.gz', ('sales', 'sample', '20240102_030405', '.sql.gz')),
        ('db_datadir_incr_20240102_030405.tar.gz.enc', ('datadir', 'incr', '20240102_030405', '.tar.gz.enc')),
        ('cluster_20240102_030405.tar.gz', ('cluster', None, '20240102_030405', '.tar.gz')),
        ('base_20240102_030405.tar.gz', ('base', None, '20240102_030405', '.tar.gz')),
        ('/some/dir/db_hr_20240102_030405.dump', ('hr', None, '20240102_030405', '.dump')),
        ('notes.txt', None),
        ('db_sales.dump', None),
    ])
    def test_parse_name(self, name, exp):
        assert exp == layout.parse_name(name)

class TestSidecars(tu.DbbakTest):
    def _artifact(self, name='db_sales_20240102_030405.sql', data=b'SELECT 1;\n'):
        path = self.write_file(self.tmp_path('backups', name), data)
        info = layout.ArtifactInfo(artifact_id='sales_20240102_030405', database='sales',
                                   kind='postgresql', format='plain', created=1704164645,
                                   sha256=hashlib.sha256(data).hexdigest())
        layout.finalize(path, info)
        return path

    def test_finalize(self):
        path = self._artifact()

        assert layout.read_checksum(path) == hashlib.sha256(b'SELECT 1;\n').hexdigest()
        with open(layout.checksum_path(path)) as fh:
            assert fh.read().endswith("  db_sales_20240102_030405.sql\n")

        info = layout.read_info(path)
        assert info.size == len(b'SELECT 1;\n')
        assert info.database == 'sales'
        assert info.backup_type == 'full'

        with open(layout.info_path(path)) as fh:
            data = json.load(fh)
        assert data['created_iso'] == '2024-01-02T03:04:05Z'

    def test_read_missing(self):
        path = self.write_file(self.tmp_path('lonely.sql'), b'x')
        with pytest.raises(err.NotFoundError):
            layout.read_checksum(path)
        with pytest.raises(err.NotFoundError):
            layout.read_info(path)
        assert layout.read_info(path, missing_ok=True) is None

    def test_read_garbage(self):
        path = self.write_file(self.tmp_path('bad.sql'), b'x')
        self.write_file(layout.checksum_path(path), 'not a digest\n')
        self.write_file(layout.info_path(path), '[1, 2]')
        with pytest.raises(err.DataError):
            layout.read_checksum(path)
        with pytest.raises(err.DataError):
            layout.read_info(path)

    def test_bad_info_field(self):
        with pytest.raises(err.InternalError):
            layout.ArtifactInfo(colour='blue')
        with pytest.raises(err.DataError):
            layout.ArtifactInfo.from_dict({'format': 'zip'})

    def test_delete(self):
        path = self._artifact()
        removed = layout.delete_artifact(path)
        assert sorted(removed) == sorted([path] + layout.sidecar_paths(path))
        assert os.listdir(os.path.dirname(path)) == []
        assert layout.delete_artifact(path) == []

    def test_list_artifacts(self):
        path1 = self._artifact()
        path2 = self._artifact('db_hr_20240102_030405.dump', b'PGDMP...')
        self.write_file(self.tmp_path('backups', 'README'), 'hello')
        self.write_file(self.tmp_path('backups', '.db_x.dump.1234.tmp'), 'partial')
        os.mkdir(self.tmp_path('backups', 'db_dir_20240102_030405.dump'))
        backup_dir = self.tmp_path('backups')

        assert layout.list_artifacts(backup_dir) == sorted([path1, path2])
        assert layout.list_artifacts(backup_dir, pattern='db_hr_*') == [path2]
        assert layout.list_artifacts(backup_dir, pattern='READ*') == [
            self.tmp_path('backups', 'README')]

        with pytest.raises(err.NotFoundError):
            layout.list_artifacts(self.tmp_path('nowhere'))

class TestDetect(tu.DbbakTest):
    keysrc = crypt.KeySource(raw_key=b'k' * 32)

    def _detect(self, data, keysrc=None):
        path = self.write_file(self.tmp_path('artifact'), data)
        return layout.detect_format(path, keysrc)

    def test_custom(self):
        fmt = self._detect(b'PGDMP\x01\x0e\x00' + b'\0' * 100)
        assert (fmt.format, fmt.compressed, fmt.encrypted) == ('custom', False, False)

    def test_plain(self):
        fmt = self._detect(b'-- PostgreSQL database dump\nCREATE TABLE t ();\n')
        assert (fmt.format, fmt.compressed) == ('plain', False)

        fmt = self._detect(gzip.compress(b'-- MySQL dump\n'))
        assert (fmt.format, fmt.compressed) == ('plain', True)

    def test_tar(self):
        fmt = self._detect(_tar_bytes([('PG_VERSION', b'15\n')]))
        assert (fmt.format, fmt.incremental) == ('tar', False)

        fmt = self._detect(gzip.compress(_tar_bytes([(layout.INCREMENTAL_MANIFEST, b'{}'),
                                                     ('PG_VERSION', b'15\n')])))
        assert (fmt.format, fmt.compressed, fmt.incremental) == ('tar', True, True)

    def test_cluster(self):
        fmt = self._detect(gzip.compress(_tar_bytes([(layout.CLUSTER_MANIFEST, b'{}')])))
        assert fmt.format == 'cluster'

        fmt = self._detect(gzip.compress(_tar_bytes([(layout.CLUSTER_GLOBALS, b''),
                                                     (layout.CLUSTER_MANIFEST, b'{}')])))
        assert fmt.format == 'cluster'

        # Only the first member counts
        fmt = self._detect(gzip.compress(_tar_bytes([('PG_VERSION', b'15\n'),
                                                     (layout.CLUSTER_MANIFEST, b'{}')])))
        assert fmt.format == 'tar'

    def test_encrypted(self):
        blob = _encrypt(gzip.compress(b'-- dump\n'), self.keysrc)

        fmt = self._detect(blob)
        assert fmt.encrypted
        assert fmt.format is None

        fmt = self._detect(blob, self.keysrc)
        assert (fmt.format, fmt.compressed, fmt.encrypted) == ('plain', True, True)

    def test_missing(self):
        with pytest.raises(err.NotFoundError):
            layout.detect_format(self.tmp_path('nope'))

    def test_open_artifact(self):
        body = b'-- dump\n' * 1000
        blob = _encrypt(gzip.compress(body), self.keysrc)
        path = self.write_file(self.tmp_path('artifact.sql.gz.enc'), blob)

        with pytest.raises(err.KeyRequiredError):
            layout.open_artifact(path)

        (reader, fmt, fh) = layout.open_artifact(path, self.keysrc,
                                                 verify_sha256=hashlib.sha256(blob).hexdigest())
        with fh:
            assert reader.read() == body
        assert fmt.compressed

        (reader, fmt, fh) = layout.open_artifact(path, self.keysrc, verify_sha256='0' * 64)
        with fh:
            with pytest.raises(err.ChecksumError):
                reader.read()
