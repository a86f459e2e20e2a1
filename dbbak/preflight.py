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
Checks we run before any restore touches anything.

Each check adds a line to a `Report`; once all checks have run,
`Report.raise_if_failed` raises PreflightError carrying the whole report, so
the user sees every problem at once instead of just the first.
"""

import os
import os.path
import shutil

import dbbak.err as err
import dbbak.config as config
import dbbak.incremental as incremental
import dbbak.layout as layout
import dbbak.pitr as pitr
import dbbak.util as util
import dbbak.vendor as vendor
import dbbak.log
log = dbbak.log.getLogger(__name__)

# Free space needed on the extraction filesystem, as a multiple of the
# artifact size
SPACE_FACTOR_CLUSTER = 4
SPACE_FACTOR_SINGLE = 3

class Check:
    def __init__(self, name, ok, detail):
        self.name = name
        self.ok = ok
        self.detail = detail

    def as_dict(self):
        return {'check': self.name, 'ok': self.ok, 'detail': self.detail}

class Report:
    """
    The outcome of a set of preflight checks.
    """
    def __init__(self, operation, artifact=None):
        self.operation = operation
        self.artifact = artifact
        self.checks = []
        self.format = None

    def add(self, name, ok, detail):
        if ok:
            log.d("preflight %s ok: %s" % (name, detail))
        else:
            log.warn('preflight_fail', "Preflight check %s failed: %s" % (name, detail))
        self.checks.append(Check(name, ok, detail))
        return ok

    @property
    def ok(self):
        return all(check.ok for check in self.checks)

    def failures(self):
        return [check for check in self.checks if not check.ok]

    def as_dict(self):
        return {'operation': self.operation, 'artifact': self.artifact, 'ok': self.ok,
                'format': self.format,
                'checks': [check.as_dict() for check in self.checks]}

    def report_str(self):
        lines = ["Preflight for %s%s:" % (self.operation,
                                          ' of %s' % self.artifact if self.artifact else '')]
        for check in self.checks:
            lines.append("  [%s] %s: %s" % ('ok' if check.ok else 'FAIL', check.name, check.detail))
        return "\n".join(lines) + "\n"

    def raise_if_failed(self):
        if self.ok:
            return
        names = ', '.join(check.name for check in self.failures())
        raise err.PreflightError("Preflight checks failed (%s)" % names, report=self)

def check_artifact(report, artifact, keysrc=None, want=None):
    """
    Check that 'artifact' exists and that we can tell what it is. 'want' is a
    tuple of acceptable formats.
    """
    if not os.path.isfile(artifact):
        report.add('artifact', False, "%s does not exist" % artifact)
        return None
    try:
        fmt = layout.detect_format(artifact, keysrc)
    except err.DbbakError as exc:
        report.add('artifact', False, "Cannot read %s: %s" % (artifact, exc))
        return None

    if fmt.encrypted and keysrc is None:
        report.add('artifact', False, "%s is encrypted, and no key was given" % artifact)
        return fmt
    if want is not None and fmt.format not in want:
        report.add('artifact', False, "%s is a %s artifact, expected %s" % (
                                      artifact, fmt.format, ' or '.join(want)))
        return fmt
    report.format = fmt.format
    report.add('artifact', True, "%s (%s%s%s)" % (artifact, fmt.format,
                                                  ', compressed' if fmt.compressed else '',
                                                  ', encrypted' if fmt.encrypted else ''))
    return fmt

def check_checksum(report, artifact):
    if not os.path.exists(layout.checksum_path(artifact)):
        return report.add('checksum', False, "%s has no checksum file" % artifact)
    try:
        layout.read_checksum(artifact)
    except err.DbbakError as exc:
        return report.add('checksum', False, str(exc))
    return report.add('checksum', True, "checksum file present")

def check_space(report, artifacts, directory, factor):
    need = 0
    for path in artifacts:
        try:
            need += os.path.getsize(path) * factor
        except FileNotFoundError:
            # Reported by the artifact check
            return False
    have = util.free_bytes(directory)
    detail = "%s free on %s, need %s (%dx artifact size)" % (
             util.PrettyBytes.pretty(have), directory, util.PrettyBytes.pretty(need), factor)
    return report.add('disk_space', have >= need, detail)

def check_tools(report, tools):
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        return report.add('tools', False, "not found in PATH: %s" % ', '.join(missing))
    return report.add('tools', True, ', '.join(tools))

def check_reachable(report, conn, cancel=None):
    vend = vendor.get_vendor(conn)
    try:
        vend.connect_test(cancel=cancel)
    except err.CancelledError:
        raise
    except err.DbbakError as exc:
        return report.add('connect', False, "Cannot connect to %s (%s auth): %s" % (
                                            conn, vend.auth_method(), exc))
    return report.add('connect', True, "connected to %s" % conn)

def check_target_dir(report, target_dir, in_place=False):
    if os.path.exists(target_dir) and not os.path.isdir(target_dir):
        return report.add('target_dir', False, "%s is not a directory" % target_dir)
    if os.path.isdir(target_dir) and os.listdir(target_dir) and not in_place:
        return report.add('target_dir', False,
                          "%s is not empty (in-place extraction was not requested)" % target_dir)
    if pitr.server_running(target_dir):
        return report.add('target_dir', False, "a server is running on %s" % target_dir)
    return report.add('target_dir', True, "%s is usable" % target_dir)

def restore_single(conn, artifact, keysrc=None, workdir=None, cancel=None):
    report = Report('restore-single', artifact)
    fmt = check_artifact(report, artifact, keysrc,
                         want=(layout.FORMAT_CUSTOM, layout.FORMAT_PLAIN))
    check_checksum(report, artifact)
    check_space(report, [artifact], workdir or os.path.dirname(os.path.abspath(artifact)),
                SPACE_FACTOR_SINGLE)
    try:
        tools = vendor.get_vendor(conn).required_tools('restore')
    except err.UnsupportedError as exc:
        report.add('tools', False, str(exc))
    else:
        if fmt is not None and fmt.format == layout.FORMAT_PLAIN and conn.kind == 'postgresql':
            tools = [tool for tool in tools if 'pg_restore' not in tool]
        check_tools(report, tools)
    check_reachable(report, conn, cancel=cancel)
    return report

def restore_cluster(conn, artifact, keysrc=None, workdir=None, cancel=None):
    report = Report('restore-cluster', artifact)
    check_artifact(report, artifact, keysrc, want=(layout.FORMAT_CLUSTER,))
    check_checksum(report, artifact)
    check_space(report, [artifact], workdir or os.path.dirname(os.path.abspath(artifact)),
                SPACE_FACTOR_CLUSTER)
    try:
        check_tools(report, vendor.get_vendor(conn).required_tools('cluster'))
    except err.UnsupportedError as exc:
        report.add('tools', False, str(exc))
    check_reachable(report, conn, cancel=cancel)
    return report

def restore_incremental(artifact, target_dir, keysrc=None, in_place=False):
    report = Report('restore-incremental', artifact)
    check_artifact(report, artifact, keysrc, want=(layout.FORMAT_TAR,))
    try:
        chain = incremental.resolve_chain(artifact)
    except err.DbbakError as exc:
        report.add('chain', False, str(exc))
        chain = [artifact] if os.path.exists(artifact) else []
    else:
        report.add('chain', True, ' -> '.join(os.path.basename(path) for path in chain))
    for path in chain:
        check_checksum(report, path)
    check_target_dir(report, target_dir, in_place)
    check_space(report, chain, target_dir, SPACE_FACTOR_SINGLE)
    return report

def restore_pitr(base, archive_dir, target_dir, keysrc=None, in_place=False,
                 auto_start=False):
    report = Report('restore-pitr', base)
    check_artifact(report, base, keysrc, want=(layout.FORMAT_TAR,))
    check_checksum(report, base)
    if os.path.isdir(archive_dir):
        report.add('wal_archive', True, archive_dir)
    else:
        report.add('wal_archive', False, "%s does not exist" % archive_dir)
    check_target_dir(report, target_dir, in_place)
    check_space(report, [base], target_dir, SPACE_FACTOR_SINGLE)
    # The server runs us as its restore_command
    tools = [config.get('self/command')[0]]
    if auto_start:
        tools += vendor.Postgres(vendor.ConnInfo()).required_tools('pitr')
    check_tools(report, tools)
    return report
