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
import dbbak.timeline as timeline

HIST3 = ("1\t0/3000060\tno recovery target specified\n"
         "\n"
         "# promoted again\n"
         "2\t0/5000000\tbefore 2024-01-01 00:00:00+00\n")

class TestParseHistory:
    def test_parse(self):
        entries = timeline.parse_history(HIST3, timeline=3)
        assert [e.as_dict() for e in entries] == [
            {'parent': 1, 'lsn': '0/3000060', 'reason': 'no recovery target specified'},
            {'parent': 2, 'lsn': '0/5000000', 'reason': 'before 2024-01-01 00:00:00+00'},
        ]

    def test_no_reason(self):
        entries = timeline.parse_history("1 0/3000060\n")
        assert entries[0].reason == ''

    @pytest.mark.parametrize('text, match', [
        ("1\n", 'expected'),
        ("x\t0/1\tfoo\n", 'bad timeline id'),
        ("0\t0/1\tfoo\n", 'bad timeline id'),
        ("1\tnowhere\tfoo\n", 'not a valid WAL position'),
        ("2\t0/3000000\ta\n1\t0/4000000\tb\n", 'does not follow'),
        ("1\t0/5000000\ta\n2\t0/4000000\tb\n", 'is before'),
        ("1\t0/3000000\ta\n3\t0/4000000\tb\n", 'not older'),
    ])
    def test_parse_bad(self, text, match):
        with pytest.raises(err.DataError, match=match):
            timeline.parse_history(text, timeline=3)

    def test_history_name(self):
        assert timeline.history_name(10) == '0000000A.history'

class TestTimelineArchive(tu.DbbakTest):
    @pytest.fixture(autouse=True)
    def archive(self, dbbak_tmp):
        self.archive_dir = self.tmp_path('wal_archive')
        os.makedirs(self.archive_dir)

    def _put(self, name, data=b'x'):
        return self.write_file(os.path.join(self.archive_dir, name), data)

    def test_read_history(self):
        self._put('00000003.history', HIST3)
        assert timeline.read_history(self.archive_dir, 1) == []
        assert [e.parent for e in timeline.read_history(self.archive_dir, 3)] == [1, 2]
        with pytest.raises(err.NotFoundError):
            timeline.read_history(self.archive_dir, 2)

    def test_latest(self):
        assert timeline.latest_timeline(self.archive_dir) is None
        self._put('000000010000000000000001')
        self._put('000000020000000000000004.partial')
        assert timeline.timelines_in(self.archive_dir) == [1, 2]
        assert timeline.latest_timeline(self.archive_dir) == 2

    def test_check_ok(self):
        self._put('000000010000000000000001')
        self._put('00000002.history', "1\t0/3000060\tpromoted\n")
        self._put('000000020000000000000003')
        self._put('00000003.history', HIST3)

        res = timeline.check_archive(self.archive_dir)
        assert res['problems'] == []
        assert res['latest'] == 3
        assert sorted(res['timelines']) == [1, 2, 3]
        assert res['timelines'][1] == []
        assert res['timelines'][2][0]['lsn'] == '0/3000060'

    def test_check_problems(self):
        self._put('000000010000000000000001')
        # Timeline 3 names 2 as parent, but there's no history for 2, and
        # timeline 4 has a broken history
        self._put('00000003.history', HIST3)
        self._put('000000040000000000000007')
        self._put('00000004.history', "bogus\n")

        res = timeline.check_archive(self.archive_dir)
        assert res['latest'] == 4
        assert len(res['problems']) == 2
        assert any('parent timeline 2' in problem for problem in res['problems'])
        assert any('00000004.history' in problem for problem in res['problems'])
