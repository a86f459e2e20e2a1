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
import pytest

import dbbak.testutil as tu
import dbbak.err as err
import dbbak.layout as layout
import dbbak.retention as retention

DAY = 86400
NOW = 1700000000

class TestRetention(tu.DbbakTest):
    @pytest.fixture(autouse=True)
    def backups(self, dbbak_tmp):
        self.backup_dir = self.tmp_path('backups')
        os.makedirs(self.backup_dir)

    def _artifact(self, database, age_days, tag=None, info=True, **info_kwargs):
        created = NOW - age_days * DAY
        ts = '20231114_%06d' % (age_days * 10 + (1 if tag else 0))
        if tag:
            name = 'db_%s_%s_%s.dump' % (database, tag, ts)
        else:
            name = 'db_%s_%s.dump' % (database, ts)
        path = self.write_file(os.path.join(self.backup_dir, name), b'PGDMP' + name.encode())
        if info:
            layout.finalize(path, layout.ArtifactInfo(database=database, kind='postgresql',
                                                      format='custom', created=created,
                                                      sha256='0' * 64, **info_kwargs))
        else:
            os.utime(path, (created, created))
        return name

    def _left(self):
        return sorted(os.path.basename(path) for path in
                      layout.list_artifacts(self.backup_dir))

    def test_basic(self):
        names = [self._artifact('sales', age) for age in (1, 10, 40, 50, 60)]

        res = retention.cleanup(self.backup_dir, days=30, min_count=2, now=NOW)
        assert sorted(os.path.basename(path) for path in res['deleted']) == sorted(names[2:])
        assert res['freed'] > 0
        assert self._left() == sorted(names[:2])
        # Sidecars go with their artifacts
        assert sorted(os.listdir(self.backup_dir)) == sorted(
            [name + ext for name in names[:2] for ext in ('', '.info', '.sha256')])

    def test_min_count(self):
        names = [self._artifact('sales', age) for age in (40, 50, 60)]
        (delete, keep) = retention.plan(self.backup_dir, days=30, min_count=2, now=NOW)
        # Everything is old, but the two youngest stay
        assert [os.path.basename(c.path) for c in delete] == [names[2]]
        assert [os.path.basename(c.path) for c in keep] == [names[1], names[0]]

    def test_min_count_zero(self):
        for age in (40, 50):
            self._artifact('sales', age)
        (delete, keep) = retention.plan(self.backup_dir, days=30, min_count=0, now=NOW)
        assert len(delete) == 2
        assert keep == []

    def test_dry_run(self):
        names = [self._artifact('sales', age) for age in (40, 50, 60)]
        res = retention.cleanup(self.backup_dir, days=30, min_count=1, dry_run=True, now=NOW)
        assert 'deleted' not in res
        assert len(res['would_delete']) == 2
        assert self._left() == sorted(names)

    def test_mtime_fallback(self):
        old = self._artifact('sales', 90, info=False)
        new = self._artifact('sales', 2, info=False)
        (delete, _) = retention.plan(self.backup_dir, days=30, min_count=1, now=NOW)
        assert [os.path.basename(c.path) for c in delete] == [old]
        assert new in self._left()

    def test_pattern_groups(self):
        sales = [self._artifact('sales', age) for age in (40, 50)]
        hr = [self._artifact('hr', age) for age in (45, 55)]
        sample = self._artifact('sales', 60, tag='sample')

        (delete, keep) = retention.plan(self.backup_dir, days=30, min_count=1,
                                        pattern='db_*', now=NOW)
        groups = {c.group for c in keep}
        assert groups == {'sales', 'hr', 'sales/sample'}
        assert sorted(os.path.basename(c.path) for c in delete) == sorted([sales[1], hr[1]])
        # The sample is the only one of its group
        assert sample in [os.path.basename(c.path) for c in keep]

    def test_pattern_filter(self):
        self._artifact('sales', 40)
        self._artifact('sales', 50)
        hr = self._artifact('hr', 60)
        res = retention.cleanup(self.backup_dir, days=30, min_count=0, pattern='db_sales_*',
                                now=NOW)
        assert len(res['deleted']) == 2
        assert self._left() == [hr]

    def test_chain_protected(self):
        full = self._artifact('datadir', 60)
        incr = self._artifact('datadir', 50, tag='incr', backup_type='incremental',
                              base_artifact=full, backup_chain=[full])
        newer = self._artifact('datadir', 1, tag='incr', backup_type='incremental',
                               base_artifact=incr, backup_chain=[full, incr])

        (delete, keep) = retention.plan(self.backup_dir, days=30, min_count=1, now=NOW)
        assert delete == []
        assert [os.path.basename(c.path) for c in keep] == [full, incr, newer]

    def test_chain_unprotected(self):
        full = self._artifact('datadir', 60)
        incr = self._artifact('datadir', 50, tag='incr', backup_type='incremental',
                              base_artifact=full, backup_chain=[full])
        self._artifact('other', 1)
        self._artifact('other', 2)
        (delete, _) = retention.plan(self.backup_dir, days=30, min_count=2, now=NOW)
        # Once the incremental goes, its base may go too
        assert sorted(os.path.basename(c.path) for c in delete) == sorted([full, incr])

    def test_bad_info(self):
        name = self._artifact('sales', 40)
        with open(os.path.join(self.backup_dir, name + '.info'), 'w') as fh:
            fh.write('{not json')
        path = os.path.join(self.backup_dir, name)
        os.utime(path, (NOW - 90 * DAY, NOW - 90 * DAY))
        (delete, _) = retention.plan(self.backup_dir, days=30, min_count=0, now=NOW)
        assert [c.path for c in delete] == [path]

    def test_bad_args(self):
        with pytest.raises(err.ConfigError):
            retention.plan(self.backup_dir, days=-1, min_count=1)
        with pytest.raises(err.ConfigError):
            retention.plan(self.backup_dir, days=1, min_count=-1)
        with pytest.raises(err.NotFoundError):
            retention.plan(self.tmp_path('nope'), days=1, min_count=1)

    def test_empty(self):
        res = retention.cleanup(self.backup_dir, days=30, min_count=1, now=NOW)
        assert res['deleted'] == []
        assert res['kept'] == []
        assert res['freed'] == 0
