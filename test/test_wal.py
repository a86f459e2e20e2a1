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

import os
import time
import threading
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.wal as wal

SEGSIZE = 64 * 1024

class TestWalNames:
    @pytest.mark.parametrize('name, kind, tli, segment', [
        ('000000010000000000000002', wal.KIND_SEGMENT, 1, '000000010000000000000002'),
        ('00000003000000A1000000FE.gz', wal.KIND_SEGMENT, 3, '00000003000000A1000000FE'),
        ('000000010000000000000002.partial', wal.KIND_PARTIAL, 1, '000000010000000000000002'),
        ('000000010000000000000002.00000028.backup', wal.KIND_BACKUP, 1,
         '000000010000000000000002'),
        ('00000002.history', wal.KIND_HISTORY, 2, None),
        ('000000010000000000000002.gz.enc', wal.KIND_SEGMENT, 1, '000000010000000000000002'),
    ])
    def test_parse(self, name, kind, tli, segment):
        walname = wal.parse_name(name)
        assert walname.kind == kind
        assert walname.timeline == tli
        assert walname.segment == segment
        assert walname.stored_name() == name

    def test_parse_suffixes(self):
        walname = wal.parse_name('000000010000000000000002.gz.enc')
        assert walname.compressed
        assert walname.encrypted
        assert walname.name == '000000010000000000000002'
        assert walname.stored_name(compressed=False, encrypted=False) == walname.name

    @pytest.mark.parametrize('name', [
        '',
        '00000001000000000000002',
        '000000010000000000000002.enc.gz',
        '0000000100000000000000ag',
        '000000000000000000000002',
        '00000000.history',
        '000000010000000000000002.tmp',
        'db_sales_20240101_000000.dump',
    ])
    def test_parse_bad(self, name):
        with pytest.raises(err.ArgumentError):
            wal.parse_name(name)
        assert wal.try_parse_name(name) is None

    def test_lsn(self):
        assert wal.parse_lsn('0/2000028') == 0x2000028
        assert wal.parse_lsn(' 1/0 ') == 0x100000000
        assert wal.format_lsn(0x100002000) == '1/2000'
        with pytest.raises(err.DataError):
            wal.parse_lsn('2000028')

    @pytest.mark.parametrize('lsn, tli, segsize, segment', [
        ('0/2000028', 1, 16 * 1024 * 1024, '000000010000000000000002'),
        ('0/FFFFFFFF', 2, 16 * 1024 * 1024, '0000000200000000000000FF'),
        ('1/3000000', 1, 16 * 1024 * 1024, '000000010000000100000003'),
        ('0/4000000', 1, 64 * 1024 * 1024, '000000010000000000000001'),
    ])
    def test_lsn_to_segment(self, lsn, tli, segsize, segment):
        assert wal.lsn_to_segment(lsn, tli, segment_size=segsize) == segment

class TestWalArchive(tu.DbbakTest):
    @pytest.fixture(autouse=True)
    def dirs(self, dbbak_tmp):
        self.archive_dir = self.tmp_path('wal_archive')
        self.pg_wal = self.tmp_path('pg_wal')
        os.makedirs(self.pg_wal)

    def _segment(self, name, fill=b'w'):
        return self.write_file(os.path.join(self.pg_wal, name), fill * SEGSIZE)

    def _archive(self, name, **kwargs):
        return wal.archive_segment(os.path.join(self.pg_wal, name), name,
                                   archive_dir=self.archive_dir,
                                   segment_size=SEGSIZE, **kwargs)

    def _restore(self, name, **kwargs):
        dest = self.tmp_path('restore', 'RECOVERYXLOG')
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        wal.restore_segment(name, dest, archive_dir=self.archive_dir, **kwargs)
        with open(dest, 'rb') as fh:
            return fh.read()

    @pytest.mark.parametrize('compress', [False, True])
    def test_archive_restore(self, compress):
        name = '000000010000000000000002'
        self._segment(name)
        path = self._archive(name, compress=compress)

        expected = name + ('.gz' if compress else '')
        assert os.path.basename(path) == expected
        assert sorted(os.listdir(self.archive_dir)) == [expected]
        if compress:
            assert os.path.getsize(path) < SEGSIZE

        assert self._restore(name) == b'w' * SEGSIZE

    def test_archive_encrypted(self):
        keysrc = crypt.KeySource(raw_key=b'w' * 32)
        name = '000000010000000000000003'
        self._segment(name, fill=b'e')
        path = self._archive(name, compress=True, keysrc=keysrc)
        assert path.endswith('.gz.enc')

        with pytest.raises(err.KeyRequiredError):
            self._restore(name)
        assert self._restore(name, keysrc=keysrc) == b'e' * SEGSIZE

    def test_archive_history_plain(self):
        name = '00000002.history'
        self.write_file(os.path.join(self.pg_wal, name),
                        '1\t0/3000000\tno recovery target specified\n')
        keysrc = crypt.KeySource(raw_key=b'w' * 32)
        path = self._archive(name, compress=True, keysrc=keysrc)
        assert os.path.basename(path) == name

    def test_archive_wrong_size(self):
        name = '000000010000000000000002'
        self.write_file(os.path.join(self.pg_wal, name), b'short')
        with pytest.raises(err.DataError, match='bytes'):
            self._archive(name)
        assert not os.path.exists(os.path.join(self.archive_dir, name))

    def test_archive_partial_any_size(self):
        name = '000000010000000000000002.partial'
        self.write_file(os.path.join(self.pg_wal, name), b'partial')
        self._archive(name)
        assert self._restore(name) == b'partial'

    def test_archive_bad_args(self):
        name = '000000010000000000000002'
        self._segment(name)
        with pytest.raises(err.DataError, match='timeline'):
            self._archive(name, timeline=2)
        with pytest.raises(err.NotFoundError):
            wal.archive_segment(self.tmp_path('nope'), name, archive_dir=self.archive_dir,
                                segment_size=SEGSIZE)
        with pytest.raises(err.ArgumentError):
            wal.archive_segment(os.path.join(self.pg_wal, name), name + '.gz',
                                archive_dir=self.archive_dir, segment_size=SEGSIZE)

    def test_archive_identical(self):
        name = '000000010000000000000002'
        self._segment(name)
        first = self._archive(name)
        mtime = os.path.getmtime(first)

        # Archiving the same content again is fine, even compressed
        assert self._archive(name) == first
        assert self._archive(name, compress=True) == first
        assert os.path.getmtime(first) == mtime
        assert os.listdir(self.archive_dir) == [name]

    def test_archive_conflict(self):
        name = '000000010000000000000002'
        self._segment(name)
        self._archive(name, compress=True)

        self._segment(name, fill=b'x')
        with pytest.raises(err.WalConflictError, match='different content'):
            self._archive(name)
        assert self._restore(name) == b'w' * SEGSIZE

    def test_archive_conflict_encrypted(self):
        keysrc = crypt.KeySource(raw_key=b'w' * 32)
        name = '000000010000000000000002'
        self._segment(name)
        self._archive(name, keysrc=keysrc)
        with pytest.raises(err.WalConflictError, match='no key'):
            self._archive(name)
        self._archive(name, keysrc=keysrc)

    def test_archive_concurrent(self):
        names = ['0000000100000000000000%02X' % num for num in range(1, 9)]
        for name in names:
            self._segment(name, fill=name[-1].encode())

        errors = []
        def worker():
            try:
                for name in names:
                    self._archive(name, compress=True)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(os.listdir(self.archive_dir)) == [name + '.gz' for name in names]
        for name in names:
            assert self._restore(name) == name[-1].encode() * SEGSIZE

    def test_restore_missing(self):
        os.makedirs(self.archive_dir)
        with pytest.raises(err.NotFoundError):
            self._restore('000000010000000000000009')
        assert not os.path.exists(self.tmp_path('restore', 'RECOVERYXLOG'))

    def test_list_archive(self):
        for name in ('000000010000000000000002', '000000010000000000000001'):
            self._segment(name)
            self._archive(name)
        self.write_file(os.path.join(self.archive_dir, '00000002.history'), b'1\t0/1\tx\n')
        self.write_file(os.path.join(self.archive_dir, 'README'), b'unrelated')

        entries = list(wal.list_archive(self.archive_dir))
        assert [os.path.basename(ent.path) for ent in entries] == [
            '000000010000000000000001',
            '000000010000000000000002',
            '00000002.history',
        ]
        info = entries[0].as_dict()
        assert info['kind'] == 'segment'
        assert info['size'] == SEGSIZE
        assert info['timeline'] == 1

        kinds = [ent.walname.kind for ent in
                 wal.list_archive(self.archive_dir, kinds=[wal.KIND_HISTORY])]
        assert kinds == [wal.KIND_HISTORY]

        with pytest.raises(err.NotFoundError):
            list(wal.list_archive(self.tmp_path('nope')))

class TestWalCleanup(tu.DbbakTest):
    now = 1700000000

    @pytest.fixture(autouse=True)
    def archive(self, dbbak_tmp):
        self.archive_dir = self.tmp_path('wal_archive')
        self.backup_dir = self.tmp_path('backups')
        os.makedirs(self.backup_dir)
        old = self.now - 10 * 86400
        for num in range(1, 7):
            self._put('0000000100000000000000%02X' % num, old)
        self._put('000000010000000000000003.00000028.backup', old)
        self._put('00000002.history', old)
        self._put('000000010000000000000007', self.now - 3600)

    def _put(self, name, mtime):
        path = self.write_file(os.path.join(self.archive_dir, name), b'x')
        os.utime(path, (mtime, mtime))

    def _left(self):
        return sorted(os.listdir(self.archive_dir))

    def test_cleanup(self):
        (removed, protect) = wal.cleanup(self.archive_dir, retention_days=7,
                                         backup_dir=self.backup_dir, now=self.now)
        assert protect is None
        assert len(removed) == 7
        assert self._left() == ['000000010000000000000007', '00000002.history']

    def test_cleanup_protected(self):
        path = self.write_file(os.path.join(self.backup_dir, 'base_20231101_000000.tar.gz'), b'b')
        layout.finalize(path, layout.ArtifactInfo(database='base', kind='postgresql',
                                                  format='tar', created=self.now - 9 * 86400,
                                                  sha256='0' * 64, wal_start='0/4000028',
                                                  timeline=1,
                                                  wal_start_segment='000000010000000000000004'))

        (removed, protect) = wal.cleanup(self.archive_dir, retention_days=7,
                                         backup_dir=self.backup_dir, now=self.now)
        assert protect == '000000010000000000000004'
        assert sorted(os.path.basename(ent.path) for ent in removed) == [
            '000000010000000000000001',
            '000000010000000000000002',
            '000000010000000000000003',
            '000000010000000000000003.00000028.backup',
        ]
        assert self._left() == [
            '000000010000000000000004',
            '000000010000000000000005',
            '000000010000000000000006',
            '000000010000000000000007',
            '00000002.history',
        ]

    def _base(self, name, segment, created):
        path = self.write_file(os.path.join(self.backup_dir, name), b'b')
        layout.finalize(path, layout.ArtifactInfo(database='base', kind='postgresql',
                                                  format='tar', created=created,
                                                  sha256='0' * 64,
                                                  timeline=int(segment[:8], 16),
                                                  wal_start_segment=segment))

    def test_cleanup_timelines(self):
        old = self.now - 10 * 86400
        for name in ('000000010000000000000009',
                     '000000020000000000000004',
                     '000000020000000000000005',
                     '000000030000000000000002'):
            self._put(name, old)
        self._base('base_20231101_000000.tar.gz', '000000020000000000000005',
                   self.now - 9 * 86400)
        self._base('base_20231105_000000.tar.gz', '000000030000000000000008',
                   self.now - 5 * 86400)

        (removed, protect) = wal.cleanup(self.archive_dir, retention_days=7,
                                         backup_dir=self.backup_dir, now=self.now)
        assert protect == '000000020000000000000005'
        assert self._left() == [
            '000000010000000000000007',
            '00000002.history',
            '000000020000000000000005',
            '000000030000000000000002',
        ]
        removed = [os.path.basename(ent.path) for ent in removed]
        # Earlier timelines go, even past the protected position
        assert '000000010000000000000009' in removed
        assert '000000020000000000000004' in removed

    def test_needed_by(self):
        protect = wal.parse_name('000000020000000A00000010')
        needed = lambda name: wal.needed_by(wal.parse_name(name), protect)

        assert needed('000000020000000A00000010')
        assert needed('000000020000000B00000001')
        assert needed('000000030000000100000000')
        assert needed('000000020000000A00000011.partial')
        assert not needed('000000020000000A0000000F')
        assert not needed('000000020000000900000FFF')
        assert not needed('000000010000000F00000000')

    def test_cleanup_dry_run(self):
        before = self._left()
        (removed, _) = wal.cleanup(self.archive_dir, retention_days=7,
                                   backup_dir=self.backup_dir, dry_run=True, now=self.now)
        assert len(removed) == 7
        assert self._left() == before

    def test_cleanup_retention(self):
        (removed, _) = wal.cleanup(self.archive_dir, retention_days=30,
                                   backup_dir=None, now=self.now)
        assert removed == []

    def test_cleanup_default_now(self):
        (removed, _) = wal.cleanup(self.archive_dir, retention_days=1, backup_dir=None)
        assert len(removed) == 8
        assert self._left() == ['00000002.history']
