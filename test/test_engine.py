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
import json
import os
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.cmd as cmd
import dbbak.crypt as crypt
import dbbak.engine as engine
import dbbak.layout as layout
import dbbak.vendor as vendor

# Tests for single database backups and restores, run against the mock
# database tools.

def _read(path):
    with open(path, 'rb') as fh:
        return fh.read()

class TestBackupSingle(tu.DbbakMockEnvTest):
    def test_custom(self):
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir)

        name = os.path.basename(path)
        assert layout.parse_name(name)[0] == 'sales'
        assert name.endswith('.dump')
        assert self.artifacts() == [name]

        data = _read(path)
        assert data.startswith(b'PGDMP')
        body = json.loads(data[5:].decode('utf-8'))
        assert 'COPY public.orders FROM stdin;' in body['sql']

        assert info.format == 'custom'
        assert info.compression == 'internal'
        assert info.kind == 'postgresql'
        assert info.server_version == '15.4'
        assert info.extra['origin_size'] == 8192
        assert info.sha256 == hashlib.sha256(data).hexdigest()
        assert layout.read_checksum(path) == info.sha256
        assert layout.read_info(path).artifact_id == info.artifact_id

        (call,) = self.mock_calls('pg_dump')
        assert '--format=custom' in call
        assert '--compress=6' in call
        assert '--dbname=sales' in call

    @pytest.mark.parametrize('level,ext', [(6, '.sql.gz'), (0, '.sql')])
    def test_plain(self, level, ext):
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir, fmt='plain',
                                                compression=level)
        assert path.endswith(ext)
        data = _read(path)
        if level:
            assert info.compression == 'gzip'
            data = gzip.decompress(data)
        else:
            assert info.compression == 'none'
        assert b'1\tbook 1\n' in data

    def test_bad_args(self):
        with self.loaded_config():
            conn = vendor.ConnInfo.from_config()
            with pytest.raises(err.ConfigError):
                engine.backup_single(conn, 'sales', self.backup_dir, compression=10)
            with pytest.raises(err.ConfigError):
                engine.backup_single(conn, 'sales', self.backup_dir, fmt='directory')

    def test_encrypted(self):
        keysrc = crypt.KeySource(raw_key=b'k' * 32)
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir, fmt='plain', keysrc=keysrc)
        assert path.endswith('.sql.gz.enc')
        assert info.encrypted
        assert info.encryption_algorithm == 'aes-256-gcm'
        assert _read(path).startswith(crypt.MAGIC)

        fmt = layout.detect_format(path, keysrc)
        assert (fmt.format, fmt.compressed, fmt.encrypted) == ('plain', True, True)

    def test_mysql(self):
        self.config['conn']['kind'] = 'mysql'
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'hr',
                                                self.backup_dir, fmt='custom')
        # MySQL is always plain SQL
        assert info.format == 'plain'
        assert path.endswith('.sql.gz')
        assert b'INSERT INTO `public.staff` VALUES (1\tcarol);' in gzip.decompress(_read(path))

    def test_sample_pg(self):
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir, sample=('count', 3))
        assert layout.parse_name(path)[1] == 'sample'
        assert info.format == 'plain'
        assert info.extra['sample'] == {'strategy': 'count', 'value': 3, 'tables': 2}

        text = gzip.decompress(_read(path)).decode('utf-8')
        assert 'CREATE TABLE public.orders ();' in text
        assert 'book 3' in text
        assert 'book 4' not in text
        assert 'alice' in text

    def test_sample_mysql(self):
        self.config['conn']['kind'] = 'mariadb'
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir, sample=('percent', 50))
        text = gzip.decompress(_read(path)).decode('utf-8')
        assert 'book 1' in text
        assert 'book 2' not in text
        (call,) = self.mock_calls('mysqldump')
        assert '--where=RAND() < 0.5' in call

    def test_large_db(self):
        self.config['backup']['large_db_threshold'] = 1000
        with self.loaded_config():
            (path, info) = engine.backup_single(vendor.ConnInfo.from_config(), 'sales',
                                                self.backup_dir, fmt='custom')
        assert info.format == 'plain'
        assert info.extra['large_db'] is True
        assert path.endswith('.sql.gz')
        assert b'COPY public.orders' in gzip.decompress(_read(path))

    def test_fail(self):
        self.mock_fail('pg_dump', 'sales', 'server closed the connection unexpectedly')
        with self.loaded_config():
            with pytest.raises(cmd.ProcessError, match='closed the connection'):
                engine.backup_single(vendor.ConnInfo.from_config(), 'sales', self.backup_dir)
        # Nothing left behind, not even temp files
        assert os.listdir(self.backup_dir) == []

    def test_same_second(self):
        with self.loaded_config():
            conn = vendor.ConnInfo.from_config()
            (path1, _) = engine.backup_single(conn, 'hr', self.backup_dir)
            (path2, _) = engine.backup_single(conn, 'hr', self.backup_dir)
        assert path1 != path2
        assert len(self.artifacts()) == 2

    def test_missing_db(self):
        with self.loaded_config():
            with pytest.raises(cmd.ProcessError, match='does not exist'):
                engine.backup_single(vendor.ConnInfo.from_config(), 'nope', self.backup_dir)

class TestRestoreSingle(tu.DbbakMockEnvTest):
    def _backup(self, database='sales', **kwargs):
        with self.loaded_config():
            (path, _) = engine.backup_single(vendor.ConnInfo.from_config(), database,
                                             self.backup_dir, **kwargs)
        return path

    def _restore(self, artifact, **kwargs):
        with self.loaded_config():
            return engine.restore_single(vendor.ConnInfo.from_config(), artifact, **kwargs)

    @pytest.mark.parametrize('fmt', ['custom', 'plain'])
    def test_new_target(self, fmt):
        path = self._backup(fmt=fmt)
        res = self._restore(path, target='sales_copy', create=True)

        assert res == {'database': 'sales_copy', 'artifact': path, 'format': fmt,
                       'dropped': False, 'created': True}
        restored = self.get_mock_state()['databases']['sales_copy']['restored']
        assert 'COPY public.orders FROM stdin;' in restored
        assert '10\tbook 10' in restored

    def test_missing_target(self):
        path = self._backup()
        with pytest.raises(err.PreflightError, match='does not exist'):
            self._restore(path, target='sales_copy')

    def test_default_target(self):
        path = self._backup()
        res = self._restore(path)
        assert res['database'] == 'sales'
        assert not res['created']
        assert 'restored' in self.get_mock_state()['databases']['sales']

    def test_clean(self):
        path = self._backup()
        res = self._restore(path, clean=True)
        assert res['dropped'] and res['created']

        sqls = [call[call.index('-c') + 1] for call in self.mock_calls('psql') if '-c' in call]
        drops = [idx for idx, sql in enumerate(sqls) if sql.startswith('DROP DATABASE')]
        creates = [idx for idx, sql in enumerate(sqls) if sql.startswith('CREATE DATABASE')]
        terms = [idx for idx, sql in enumerate(sqls) if 'pg_terminate_backend' in sql]
        assert terms and drops and creates
        assert terms[0] < drops[0] < creates[0]

    def test_parallel(self):
        path = self._backup()
        self._restore(path, jobs=3)

        (call,) = self.mock_calls('pg_restore')
        assert '--jobs=3' in call
        # The staged copy is cleaned up afterwards
        assert not os.path.exists(call[-1])
        assert [name for name in os.listdir(self.backup_dir) if name.endswith('.tmp')] == []

    def test_checksum_mismatch(self):
        path = self._backup(fmt='plain', compression=0)
        with open(path, 'ab') as fh:
            fh.write(b'-- tampered\n')
        with pytest.raises(err.ChecksumError):
            self._restore(path)

        # Without verification we don't care
        self._restore(path, verify=False)

    def test_encrypted(self):
        keysrc = crypt.KeySource(passphrase='swordfish')
        path = self._backup(keysrc=keysrc)

        with pytest.raises(err.KeyRequiredError):
            self._restore(path)
        with pytest.raises(err.DataError):
            self._restore(path, keysrc=crypt.KeySource(passphrase='wrong'))

        self._restore(path, keysrc=keysrc, target='sales2', create=True)
        assert 'COPY public.orders' in self.get_mock_state()['databases']['sales2']['restored']

    def test_cross_vendor(self):
        path = self._backup()
        self.config['conn']['kind'] = 'mysql'
        with pytest.raises(err.UnsupportedError):
            self._restore(path)

    def test_unknown_target(self):
        path = self.write_file(os.path.join(self.backup_dir, 'mystery.sql'), 'SELECT 1;\n')
        with pytest.raises(err.ArgumentError):
            self._restore(path)
        self._restore(path, target='hr')
        assert self.get_mock_state()['databases']['hr']['restored'] == 'SELECT 1;\n'
