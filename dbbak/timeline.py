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
import os.path

import dbbak.err as err
import dbbak.wal as wal
import dbbak.log
log = dbbak.log.getLogger(__name__)

class HistoryEntry:
    """
    One switchpoint in a timeline history file: we left 'parent' at WAL
    position 'lsn', for 'reason'.
    """
    def __init__(self, parent, lsn, reason):
        self.parent = parent
        self.lsn = lsn
        self.reason = reason

    def as_dict(self):
        return {'parent': self.parent, 'lsn': self.lsn, 'reason': self.reason}

    def __repr__(self):
        return "<HistoryEntry %d %s>" % (self.parent, self.lsn)

def history_name(timeline):
    return '%08X.history' % timeline

def parse_history(text, timeline=None, source='history file'):
    """
    Parse the contents of a timeline history file. Each line looks like

        1	0/3000060	no recovery target specified

    and blank lines and '#' comments are ignored. Parent timelines must
    increase from line to line, and so must the switch positions.

    Returns:
        list of `HistoryEntry`
    """
    entries = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        parts = line.split(None, 2)
        if len(parts) < 2:
            raise err.DataError("%s line %d: expected 'timeline position [reason]', got %r" % (
                                source, lineno, line))
        try:
            parent = int(parts[0])
        except ValueError:
            raise err.DataError("%s line %d: bad timeline id %r" % (
                                source, lineno, parts[0])) from None
        lsn = parts[1]
        lsn_val = wal.parse_lsn(lsn)
        reason = parts[2] if len(parts) > 2 else ''

        if parent < 1:
            raise err.DataError("%s line %d: bad timeline id %d" % (source, lineno, parent))
        if entries:
            prev = entries[-1]
            if parent <= prev.parent:
                raise err.DataError("%s line %d: timeline %d does not follow timeline %d" % (
                                    source, lineno, parent, prev.parent))
            if lsn_val < wal.parse_lsn(prev.lsn):
                raise err.DataError("%s line %d: switch position %s is before %s" % (
                                    source, lineno, lsn, prev.lsn))
        if timeline is not None and parent >= timeline:
            raise err.DataError("%s line %d: parent timeline %d is not older than timeline %d" % (
                                source, lineno, parent, timeline))
        entries.append(HistoryEntry(parent, lsn, reason))
    return entries

def read_history(archive_dir, timeline):
    """
    Read the history of 'timeline' from the archive. Timeline 1 has no
    history file and an empty history.

    Raises:
        `dbbak.err.NotFoundError`: The history file is missing.
    """
    if timeline == 1:
        return []
    path = os.path.join(archive_dir, history_name(timeline))
    try:
        with open(path, 'r') as fh:
            text = fh.read()
    except FileNotFoundError:
        raise err.NotFoundError("Timeline history %s is not in %s" % (
                                history_name(timeline), archive_dir)) from None
    return parse_history(text, timeline=timeline, source=path)

def timelines_in(archive_dir):
    """
    Every timeline referenced by a file in the WAL archive.
    """
    ret = set()
    for entry in wal.list_archive(archive_dir):
        ret.add(entry.walname.timeline)
    return sorted(ret)

def latest_timeline(archive_dir):
    tlis = timelines_in(archive_dir)
    if not tlis:
        return None
    return tlis[-1]

def check_archive(archive_dir):
    """
    Check the timeline histories in the archive: every timeline that shows
    up must be timeline 1 or have a history file, every parent named in a
    history must exist, and histories must parse.

    Returns:
        dict: {'timelines': {tli: [entries...]}, 'problems': [str...],
        'latest': tli}
    """
    histories = {}
    problems = []
    tlis = timelines_in(archive_dir)
    for tli in tlis:
        try:
            histories[tli] = read_history(archive_dir, tli)
        except (err.NotFoundError, err.DataError) as exc:
            problems.append(str(exc))

    for tli, entries in sorted(histories.items()):
        for entry in entries:
            if entry.parent != 1 and entry.parent not in histories and \
               not os.path.exists(os.path.join(archive_dir, history_name(entry.parent))):
                problems.append("Timeline %d names parent timeline %d, which has no history" % (
                                tli, entry.parent))

    for problem in problems:
        log.warn('timeline_problem', problem)

    return {
        'timelines': {tli: [e.as_dict() for e in entries]
                      for (tli, entries) in sorted(histories.items())},
        'problems': problems,
        'latest': tlis[-1] if tlis else None,
    }
