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
import dbbak.archive as archive
import dbbak.cluster as cluster
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.vendor as vendor

# Tests for whole-cluster backups and restores

def _members(path):
    with tarfile.open(path, mode='r:gz') as tar:
        return {member.name: tar.extractfile(member).read() for member in tar}

def _member_names(path):
    with tarfile.open(path, mode='r:gz') as tar:
        return tar.getnames()

class TestClusterBackup(tu.DbbakMockEnvTest):
    def _backup(self, **kwargs):
        with self.loaded_config():
            return cluster.backup_cluster(vendor.ConnInfo.from_config(), self.backup_dir,
                                          **kwargs)

    def test_backup(self):
        (path, info, result) = self._backup(workers=2)

        assert os.path.basename(path).startswith('cluster_')
        assert self.artifacts() == [os.path.basename(path)]
        # The per-database working directory is gone
        assert sorted(os.listdir(self.backup_dir)) == sorted([os.path.basename(path)] +
                                                             [os.path.basename(side) for side in
                                                              layout.sidecar_paths(path)])
        assert result.as_dict() == {'total': 2, 'succeeded': ['hr', 'sales'], 'failed': []}
        assert info.format == 'cluster'
        assert info.extra['databases'] == ['hr', 'sales']

        names = _member_names(path)
        assert names[0] == cluster.GLOBALS_FILE
        assert names[1].startswith('db_hr_')
        assert names[2].startswith('db_sales_')
        assert names[-1] == layout.CLUSTER_MANIFEST

        members = _members(path)
        manifest = json.loads(members[layout.CLUSTER_MANIFEST])
        assert manifest['manifest_version'] == cluster.MANIFEST_VERSION
        assert manifest['tool_version'] == '0.0.test'
        assert manifest['order'] == ['hr', 'sales']
        assert manifest['server_version'] == '15.4'
        assert manifest['failed'] == []
        assert members[cluster.GLOBALS_FILE] == b"CREATE ROLE app;\nALTER ROLE app WITH LOGIN;\n"

        for entry in manifest['databases']:
            data = members[entry['file']]
            assert entry['size'] == len(data)
            assert entry['sha256'] == hashlib.sha256(data).hexdigest()
            assert entry['format'] == 'custom'

        assert layout.detect_format(path).format == 'cluster'

    def test_partial_failure(self):
        self.mock_fail('pg_dump', 'hr', 'connection to server lost')
        (path, info, result) = self._backup(workers=1)

        res = result.as_dict()
        assert res['succeeded'] == ['sales']
        (fail,) = res['failed']
        assert fail['database'] == 'hr'
        assert fail['kind'] == 'FatalIOError'
        assert 'connection to server lost' in fail['error']

        manifest = json.loads(_members(path)[layout.CLUSTER_MANIFEST])
        assert manifest['order'] == ['sales']
        assert [entry['database'] for entry in manifest['failed']] == ['hr']

        txt = cluster.report_str(dict(res, artifact=path))
        assert 'hr (FatalIOError)' in txt
        assert '1 failed' in txt

    def test_globals_fail(self):
        self.mock_fail('pg_dumpall', None, 'permission denied for database')
        with pytest.raises(err.AuthError):
            self._backup()
        assert os.listdir(self.backup_dir) == []

    def test_some_databases(self):
        (path, info, result) = self._backup(databases=['sales'])
        assert result.as_dict()['succeeded'] == ['sales']
        assert [call for call in self.mock_calls('pg_dump') if '--dbname=hr' in call] == []

    def test_encrypted(self):
        keysrc = crypt.KeySource(raw_key=b'c' * 32)
        (path, info, result) = self._backup(keysrc=keysrc)
        assert path.endswith('.tar.gz.enc')
        assert info.encrypted
        assert layout.detect_format(path, keysrc).format == 'cluster'

    def test_not_postgres(self):
        self.config['conn']['kind'] = 'mysql'
        with pytest.raises(err.UnsupportedError):
            self._backup()

    def test_bad_workers(self):
        with pytest.raises(err.ConfigError):
            self._backup(workers=0)

class TestClusterRestore(tu.DbbakMockEnvTest):
    def _backup(self, **kwargs):
        with self.loaded_config():
            (path, _, _) = cluster.backup_cluster(vendor.ConnInfo.from_config(),
                                                  self.backup_dir, **kwargs)
        return path

    def _restore(self, path, **kwargs):
        with self.loaded_config():
            return cluster.restore_cluster(vendor.ConnInfo.from_config(), path, **kwargs)

    def test_restore(self):
        path = self._backup()
        res = self._restore(path)

        assert res == {'artifact': path, 'restored': ['hr', 'sales'], 'failed': [],
                       'globals': True}
        state = self.get_mock_state()
        assert state['globals_restored'] == state['globals']
        assert 'carol' in state['databases']['hr']['restored']
        assert 'book 7' in state['databases']['sales']['restored']

        # Globals are replayed without stopping on errors
        globals_call = [call for call in self.mock_calls('psql')
                        if '-c' not in call and '--dbname=postgres' in call]
        assert len(globals_call) == 1
        assert 'ON_ERROR_STOP=1' not in globals_call[0]

        # Nothing left in the work directory
        assert [name for name in os.listdir(self.backup_dir)
                if name.startswith('.restore_cluster_')] == []

    def test_skip_globals(self):
        path = self._backup()
        res = self._restore(path, skip_globals=True)
        assert res['globals'] is False
        assert 'globals_restored' not in self.get_mock_state()

    def test_partial_failure(self):
        path = self._backup()
        self.mock_fail('pg_restore', 'hr', 'could not execute query')
        res = self._restore(path)

        assert res['restored'] == ['sales']
        (fail,) = res['failed']
        assert fail['database'] == 'hr'
        assert 'could not execute query' in fail['error']

    def test_not_cluster(self):
        path = self.write_file(os.path.join(self.backup_dir, 'db_hr_20240101_000000.sql'),
                               'SELECT 1;\n')
        with pytest.raises(err.ArgumentError, match='not a cluster archive'):
            self._restore(path)

    def test_encrypted(self):
        keysrc = crypt.KeySource(raw_key=b'c' * 32)
        path = self._backup(keysrc=keysrc)
        with pytest.raises(err.KeyRequiredError):
            self._restore(path)
        res = self._restore(path, keysrc=keysrc)
        assert res['restored'] == ['hr', 'sales']

    def _handmade(self, manifest, files):
        path = os.path.join(self.backup_dir, 'cluster_20240101_000000.tar.gz')
        buf = io.BytesIO()
        tar = archive.open_writer(buf)
        archive.add_bytes(tar, layout.CLUSTER_MANIFEST, json.dumps(manifest).encode('utf-8'))
        for name, data in files:
            archive.add_bytes(tar, name, data)
        tar.close()
        return self.write_file(path, gzip.compress(buf.getvalue()))

    def _entry(self, name, data):
        return {'file': name, 'size': len(data), 'sha256': hashlib.sha256(data).hexdigest()}

    def test_manifest_mismatch(self):
        globals_sql = b'CREATE ROLE x;\n'
        dump = b'-- dump\n'
        manifest = {'manifest_version': 1,
                    'globals': self._entry('globals.sql', globals_sql),
                    'databases': [dict(self._entry('db_hr_20240101_000000.sql', b'other'),
                                       name='hr')]}
        path = self._handmade(manifest, [('globals.sql', globals_sql),
                                         ('db_hr_20240101_000000.sql', dump)])
        with pytest.raises(err.ManifestError):
            self._restore(path)
        assert 'globals_restored' not in self.get_mock_state()

    def test_manifest_extra_file(self):
        globals_sql = b'CREATE ROLE x;\n'
        manifest = {'manifest_version': 1,
                    'globals': self._entry('globals.sql', globals_sql),
                    'databases': []}
        path = self._handmade(manifest, [('globals.sql', globals_sql),
                                         ('stowaway.sql', b'DROP TABLE x;\n')])
        with pytest.raises(err.ManifestError, match='stowaway'):
            self._restore(path)

    def test_manifest_too_new(self):
        path = self._handmade({'manifest_version': 99, 'globals': {}, 'databases': []}, [])
        with pytest.raises(err.ManifestError, match='newer'):
            self._restore(path)

class TestRestoreOrder(tu.DbbakTest):
    def test_order(self):
        manifest = {'databases': [{'name': 'b'}, {'name': 'a'}, {'name': 'c'}],
                    'order': ['c', 'a', 'b']}
        assert cluster.restore_order(manifest) == ['c', 'a', 'b']

        del manifest['order']
        assert cluster.restore_order(manifest) == ['a', 'b', 'c']

        manifest['order'] = ['a', 'zzz']
        with pytest.raises(err.ManifestError, match='zzz'):
            cluster.restore_order(manifest)
