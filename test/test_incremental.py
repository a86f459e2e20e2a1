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

import json
import os
import tarfile
import time
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.crypt as crypt
import dbbak.incremental as incremental
import dbbak.layout as layout
import dbbak.util as util

# Tests for data directory backups and incremental chains

class TestIncremental(tu.DbbakTest):
    past = int(time.time()) - 3600
    future = int(time.time()) + 3600

    @pytest.fixture(autouse=True)
    def datadir(self, dbbak_tmp):
        self.datadir = self.tmp_path('pgdata')
        self.backup_dir = self.tmp_path('backups')
        os.makedirs(self.backup_dir)
        self._put('PG_VERSION', '15\n')
        self._put('base/1/1234', 'table data v1')
        self._put('base/1/5678', 'index data v1')
        self._put('global/pg_control', 'control v1')
        self._put('postmaster.pid', '4242\n')
        self._put('pg_wal/000000010000000000000001', 'wal')
        self._put('base/1/pgsql_tmp.tmp', 'scratch')

    def _put(self, relpath, data, mtime=None):
        path = os.path.join(self.datadir, relpath)
        self.write_file(path, data, mode=0o600)
        if mtime is None:
            mtime = self.past
        os.utime(path, (mtime, mtime))
        return path

    def _names(self, path):
        with tarfile.open(path, 'r:gz') as tar:
            return tar.getnames()

    def _full(self, **kwargs):
        return incremental.backup_datadir(self.datadir, self.backup_dir, 'datadir',
                                          'postgresql', **kwargs)

    def _read(self, *parts):
        with open(os.path.join(*parts)) as fh:
            return fh.read()

    def test_full(self):
        (path, info) = self._full()

        assert os.path.basename(path).startswith('db_datadir_')
        assert path.endswith('.tar.gz')
        assert info.backup_type == 'full'
        assert info.format == 'tar'
        assert info.extra['file_count'] == 4

        names = self._names(path)
        assert 'base/1/1234' in names
        assert 'global/pg_control' in names
        # Excluded files are not there, but the pg_wal directory itself is
        assert 'postmaster.pid' not in names
        assert 'base/1/pgsql_tmp.tmp' not in names
        assert 'pg_wal' in names
        assert 'pg_wal/000000010000000000000001' not in names

        fmt = layout.detect_format(path)
        assert (fmt.format, fmt.incremental) == ('tar', False)

    def test_missing_datadir(self):
        with pytest.raises(err.PreflightError):
            incremental.backup_datadir(self.tmp_path('nope'), self.backup_dir, 'datadir',
                                       'postgresql')

    def test_chain(self):
        (full, full_info) = self._full()

        self._put('base/1/1234', 'table data v2', mtime=self.future)
        self._put('base/1/9999', 'new table', mtime=self.future)
        (incr1, info1) = incremental.backup_incremental(self.datadir, full, self.backup_dir)

        assert info1.backup_type == 'incremental'
        assert info1.base_artifact == os.path.basename(full)
        assert info1.backup_chain == [os.path.basename(full)]
        assert layout.parse_name(incr1)[1] == 'incr'

        names = self._names(incr1)
        assert names[0] == layout.INCREMENTAL_MANIFEST
        assert sorted(names[1:]) == ['base/1/1234', 'base/1/9999']
        assert layout.detect_format(incr1).incremental

        with tarfile.open(incr1, 'r:gz') as tar:
            manifest = json.load(tar.extractfile(layout.INCREMENTAL_MANIFEST))
        assert manifest['base_artifact'] == os.path.basename(full)
        assert manifest['since'] == full_info.created

        # What the first incremental picked up is now older than it
        for relpath in ('base/1/1234', 'base/1/9999'):
            os.utime(os.path.join(self.datadir, relpath), (self.past, self.past))
        self._put('base/1/5678', 'index data v3', mtime=self.future)
        (incr2, info2) = incremental.backup_incremental(self.datadir, incr1, self.backup_dir)
        assert info2.backup_chain == [os.path.basename(full), os.path.basename(incr1)]
        assert sorted(self._names(incr2)[1:]) == ['base/1/5678']

        assert incremental.resolve_chain(incr2) == [full, incr1, incr2]

        target = self.tmp_path('restored')
        res = incremental.restore_incremental(incr2, target)
        assert [step['artifact'] for step in res['chain']] == [full, incr1, incr2]
        assert [step['files'] for step in res['chain']] == [4, 2, 1]

        assert self._read(target, 'base', '1', '1234') == 'table data v2'
        assert self._read(target, 'base', '1', '5678') == 'index data v3'
        assert self._read(target, 'base', '1', '9999') == 'new table'
        assert self._read(target, 'PG_VERSION') == '15\n'
        assert not os.path.exists(os.path.join(target, layout.INCREMENTAL_MANIFEST))
        assert not os.path.exists(os.path.join(target, 'postmaster.pid'))

    def test_restore_nonempty(self):
        (full, _) = self._full()
        target = self.tmp_path('restored')
        self.write_file(os.path.join(target, 'junk'), 'x')

        with pytest.raises(err.PreflightError, match='not empty'):
            incremental.restore_incremental(full, target)

        incremental.restore_incremental(full, target, in_place=True)
        assert self._read(target, 'junk') == 'x'
        assert self._read(target, 'global', 'pg_control') == 'control v1'

    def test_missing_base(self):
        (full, _) = self._full()
        self._put('base/1/1234', 'v2', mtime=self.future)
        (incr, _) = incremental.backup_incremental(self.datadir, full, self.backup_dir)

        layout.delete_artifact(full)
        with pytest.raises(err.ChainError, match='missing'):
            incremental.resolve_chain(incr)

        target = self.tmp_path('restored')
        with pytest.raises(err.ChainError):
            incremental.restore_incremental(incr, target)
        # Nothing was extracted
        assert not os.path.exists(target)

    def _truncate(self, path, nbytes=8):
        # Chop the gzip trailer, but keep the checksum file in step, so the
        # damage only shows up while the member is being extracted
        with open(path, 'rb') as fh:
            data = fh.read()
        with open(path, 'wb') as fh:
            fh.write(data[:-nbytes])
        layout.write_checksum(path, util.checksum('sha256', path))

    def _chain(self):
        (full, _) = self._full()
        self._put('base/1/1234', 'table data v2', mtime=self.future)
        self._put('base/1/9999', 'new table', mtime=self.future)
        (incr, _) = incremental.backup_incremental(self.datadir, full, self.backup_dir)
        return (full, incr)

    def test_corrupt_member(self):
        (full, incr) = self._chain()
        layout.write_checksum(incr, '0' * 64)

        target = self.tmp_path('restored')
        with pytest.raises(err.ChecksumError, match='corrupt'):
            incremental.restore_incremental(incr, target)
        assert not os.path.exists(target)

        self.write_file(os.path.join(target, 'junk'), 'x')
        with pytest.raises(err.ChecksumError):
            incremental.restore_incremental(incr, target, in_place=True)
        assert os.listdir(target) == ['junk']

    def test_failed_member_removed(self):
        (full, incr) = self._chain()
        self._truncate(incr)

        target = self.tmp_path('restored')
        with pytest.raises(err.DataError):
            incremental.restore_incremental(incr, target)
        assert not os.path.exists(target)

        # An existing empty directory stays, but stays empty
        os.makedirs(target)
        with pytest.raises(err.DataError):
            incremental.restore_incremental(incr, target)
        assert os.listdir(target) == []

        # In place, only what we added goes away
        self.write_file(os.path.join(target, 'junk'), 'x')
        with pytest.raises(err.DataError):
            incremental.restore_incremental(incr, target, in_place=True)
        assert os.listdir(target) == ['junk']
        assert self._read(target, 'junk') == 'x'

    def test_missing_checksum(self):
        (full, _) = self._full()
        os.unlink(layout.checksum_path(full))
        with pytest.raises(err.ChainError, match='checksum'):
            incremental.restore_incremental(full, self.tmp_path('restored'))

    def test_base_elsewhere(self):
        (full, _) = self._full()
        other = self.tmp_path('other')
        os.makedirs(other)
        with pytest.raises(err.ChainError, match='backup directory'):
            incremental.backup_incremental(self.datadir, full, other)

    def test_base_not_tar(self):
        path = self.write_file(os.path.join(self.backup_dir, 'db_sales_20240101_000000.dump'),
                               b'PGDMP')
        layout.finalize(path, layout.ArtifactInfo(database='sales', kind='postgresql',
                                                  format='custom', created=1704067200,
                                                  sha256='0' * 64))
        with pytest.raises(err.ChainError, match='not a data directory backup'):
            incremental.backup_incremental(self.datadir, path, self.backup_dir)

    def test_kind_mismatch(self):
        (full, _) = self._full()
        with pytest.raises(err.ChainError):
            incremental.backup_incremental(self.datadir, full, self.backup_dir, kind='mysql')

    def test_encrypted_chain(self):
        keysrc = crypt.KeySource(raw_key=b'i' * 32)
        (full, _) = self._full(keysrc=keysrc)
        self._put('base/1/1234', 'secret v2', mtime=self.future)
        (incr, _) = incremental.backup_incremental(self.datadir, full, self.backup_dir,
                                                   keysrc=keysrc)
        assert incr.endswith('.tar.gz.enc')

        target = self.tmp_path('restored')
        with pytest.raises(err.KeyRequiredError):
            incremental.restore_incremental(incr, target)
        incremental.restore_incremental(incr, target, keysrc=keysrc)
        assert self._read(target, 'base', '1', '1234') == 'secret v2'

    def test_mysql_excludes(self):
        self._put('ib_logfile0', 'redo')
        self._put('mysql-bin.000003', 'binlog')
        self._put('shop/orders.ibd', 'rows')
        (path, _) = incremental.backup_datadir(self.datadir, self.backup_dir, 'datadir', 'mysql')
        names = self._names(path)
        assert 'shop/orders.ibd' in names
        assert 'ib_logfile0' not in names
        assert 'mysql-bin.000003' not in names
