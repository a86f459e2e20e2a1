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
Point-in-time recovery: base backups, turning WAL archiving on and off in
a server's configuration, and restoring a base backup plus the WAL archive
up to a recovery target.
"""

import os
import os.path
import re
import shlex
import shutil
import time

import dbbak.err as err
import dbbak.archive as archive
import dbbak.cmd as cmd
import dbbak.config as config
import dbbak.engine as engine
import dbbak.layout as layout
import dbbak.pipeline as pipeline
import dbbak.util as util
import dbbak.vendor as vendor
import dbbak.wal as wal
import dbbak.log
log = dbbak.log.getLogger(__name__)

TARGET_KINDS = ('none', 'time', 'xid', 'lsn', 'name', 'immediate')
ACTIONS = ('promote', 'pause', 'shutdown')

SIGNAL_FILE = 'recovery.signal'
STANDBY_SIGNAL_FILE = 'standby.signal'
LEGACY_CONF = 'recovery.conf'
AUTO_CONF = 'postgresql.auto.conf'
MAIN_CONF = 'postgresql.conf'

_time_re = re.compile(r'^\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?'
                      r'(?:\s*(?:Z|[+-]\d{2}(?::?\d{2})?|[A-Za-z]{2,5}))?$')
_lsn_re = re.compile(r'^[0-9A-Fa-f]+/[0-9A-Fa-f]+$')
_name_re = re.compile(r'^[A-Za-z0-9_-]{1,63}$')

def backup_base(conn, backup_dir, compression=None, keysrc=None, cancel=None,
                timeout=None, segment_size=None):
    """
    Take a base backup of the whole server with pg_basebackup, as a starting
    point for PITR. The WAL start position it reports is recorded in the
    info sidecar, which keeps the WAL it needs safe from WAL cleanup.

    Returns:
        (str, `dbbak.layout.ArtifactInfo`)
    """
    if conn.kind != 'postgresql':
        raise err.UnsupportedError("Base backups are only supported for PostgreSQL")
    if compression is None:
        compression = config.get('backup/compression')
    vend = vendor.get_vendor(conn)

    namer = lambda ts: layout.base_name(keysrc is not None, ts=ts)
    (ts, _) = engine.unique_ts(backup_dir, namer, int(time.time()))
    name = namer(ts)
    parser = cmd.BaseBackupParser(name='pg_basebackup')
    info = layout.ArtifactInfo(artifact_id=layout.artifact_id('base', ts),
                               database='base', kind=conn.kind,
                               format=layout.FORMAT_TAR, compression='gzip',
                               backup_type='full',
                               server_version=engine.server_version(vend, cancel))

    log.info('base_start', "Starting base backup to %s" % os.path.join(backup_dir, name))
    with engine.ArtifactWriter(backup_dir, name,
                               compress=pipeline.compressor(max(compression, 1), cancel=cancel),
                               keysrc=keysrc, cancel=cancel) as aw:
        cursor = cmd.Cursor(vend.basebackup_argv(), parser=parser, steal_stdout=True,
                            extra_env=vend.env(), cancel=cancel, timeout=timeout,
                            grace=config.get('process/grace'))
        engine.copy_child(cursor, aw.out)

        if parser.wal_start is None:
            raise err.DataError("pg_basebackup did not report its WAL start position")
        info.wal_start = parser.wal_start
        info.timeline = parser.timeline
        info.wal_start_segment = wal.lsn_to_segment(parser.wal_start, parser.timeline,
                                                    segment_size)
        info.created = int(time.time())
        path = aw.commit(info)

    log.info('base_done', "Base backup %s done; WAL starts at %s on timeline %d (segment %s)" % (
                          path, info.wal_start, info.timeline, info.wal_start_segment))
    return (path, info)

def quote_value(value):
    return "'%s'" % str(value).replace("'", "''")

def self_command():
    return ' '.join(shlex.quote(arg) for arg in config.get('self/command'))

def archive_command(archive_dir, compress=False, encrypt=False):
    ret = '%s wal-archive %%p %%f --archive-dir %s' % (self_command(),
                                                      shlex.quote(archive_dir))
    if compress:
        ret += ' --compress'
    if encrypt:
        ret += ' --encrypt'
    return ret

def restore_command(archive_dir):
    return '%s wal-restore %%f %%p --archive-dir %s' % (self_command(),
                                                       shlex.quote(archive_dir))

class RecoveryTarget:
    """
    Where WAL replay stops, and what the server does once it gets there.

    Attributes:
        kind (str): One of TARGET_KINDS. 'none' replays all available WAL.
        value (str): The target time, xid, lsn, or restore point name.
        inclusive (bool): Whether to stop just after (True) or just before
            the target. Only meaningful for time, xid and lsn targets.
        action (str): One of ACTIONS.
        timeline (str): 'latest', or a timeline number.
    """
    def __init__(self, kind='none', value=None, inclusive=True, action='promote',
                 timeline='latest'):
        self.kind = kind
        self.value = value
        self.inclusive = inclusive
        self.action = action
        self.timeline = str(timeline) if timeline is not None else 'latest'
        self.validate()

    def validate(self):
        if self.kind not in TARGET_KINDS:
            raise err.BadTargetError("Unknown recovery target type '%s'" % self.kind)
        if self.action not in ACTIONS:
            raise err.BadTargetError("Recovery target action must be one of %s, not '%s'" % (
                                     ', '.join(ACTIONS), self.action))

        if self.timeline != 'latest':
            try:
                tli = int(self.timeline)
            except ValueError:
                raise err.BadTargetError("Recovery timeline must be 'latest' or a number, not '%s'" %
                                         self.timeline) from None
            if tli < 1:
                raise err.BadTargetError("Recovery timeline must be positive, not %d" % tli)

        if self.kind in ('none', 'immediate'):
            if self.value:
                raise err.BadTargetError("Recovery target '%s' takes no value" % self.kind)
            return

        if not self.value:
            raise err.BadTargetError("Recovery target '%s' needs a value" % self.kind)
        value = str(self.value).strip()

        if self.kind == 'time':
            if not _time_re.match(value):
                raise err.BadTargetError(("Invalid recovery target time '%s' (expected e.g. " +
                                          "'2024-01-15 14:30:00' or '2024-01-15T14:30:00.123+00:00')") % value)
            try:
                util.time_str2unix(value)
            except (ValueError, OverflowError):
                raise err.BadTargetError("Invalid recovery target time '%s'" % value) from None

        elif self.kind == 'xid':
            if not value.isdigit() or int(value) <= 0:
                raise err.BadTargetError("Recovery target xid must be a positive integer, not '%s'" % value)

        elif self.kind == 'lsn':
            if not _lsn_re.match(value):
                raise err.BadTargetError("Invalid recovery target lsn '%s' (expected e.g. '0/3000000')" % value)

        elif self.kind == 'name':
            if not _name_re.match(value):
                raise err.BadTargetError(("Invalid restore point name '%s' (1-63 letters, digits, " +
                                          "underscores, or hyphens)") % value)
        self.value = value

    def settings(self):
        """
        The recovery_target* settings for this target, as (key, value) pairs.
        """
        ret = []
        if self.kind == 'immediate':
            ret.append(('recovery_target', 'immediate'))
        elif self.kind != 'none':
            ret.append(('recovery_target_%s' % self.kind, self.value))

        if self.kind in ('time', 'xid', 'lsn'):
            ret.append(('recovery_target_inclusive', 'true' if self.inclusive else 'false'))
        if self.kind != 'none':
            ret.append(('recovery_target_action', self.action))
        ret.append(('recovery_target_timeline', self.timeline))
        return ret

    def summary(self):
        if self.kind == 'none':
            return "replay all available WAL"
        if self.kind == 'immediate':
            return "stop at the earliest consistent point"
        return "stop at %s %s (%s), then %s" % (
               self.kind, self.value,
               'inclusive' if self.inclusive else 'exclusive', self.action)

    def as_dict(self):
        return {'kind': self.kind, 'value': self.value, 'inclusive': self.inclusive,
                'action': self.action, 'timeline': self.timeline}

def major_version(datadir):
    """
    The server major version a data directory belongs to, from its PG_VERSION
    file ('9.6' is 9, '16' is 16).
    """
    path = os.path.join(datadir, 'PG_VERSION')
    try:
        with open(path, 'r') as fh:
            text = fh.read().strip()
    except FileNotFoundError:
        raise err.PreflightError("%s has no PG_VERSION file; is it a PostgreSQL data directory?" %
                                 datadir) from None
    try:
        return int(text.split('.')[0])
    except ValueError:
        raise err.DataError("Cannot parse server version '%s' from %s" % (text, path)) from None

def recovery_lines(target, restore_cmd):
    lines = ["restore_command = %s" % quote_value(restore_cmd)]
    for (key, val) in target.settings():
        lines.append("%s = %s" % (key, quote_value(val)))
    return lines

def write_recovery_config(datadir, target, archive_dir, version=None):
    """
    Configure 'datadir' to replay WAL from the archive up to 'target'. For
    servers 12 and newer, the settings go into postgresql.auto.conf along
    with a recovery.signal file; older servers get a recovery.conf.

    Returns:
        list of str: The files we wrote.
    """
    if version is None:
        version = major_version(datadir)
    header = "# Recovery settings written by dbbak %s" % util.iso_utc(time.time())
    lines = recovery_lines(target, restore_command(archive_dir))

    if version >= 12:
        path = os.path.join(datadir, AUTO_CONF)
        with open(path, 'a') as fh:
            fh.write("\n%s\n" % header)
            for line in lines:
                fh.write(line + "\n")
        signal_path = os.path.join(datadir, SIGNAL_FILE)
        with open(signal_path, 'w'):
            pass
        written = [path, signal_path]
    else:
        path = os.path.join(datadir, LEGACY_CONF)
        with open(path, 'w') as fh:
            fh.write(header + "\n")
            for line in lines:
                fh.write(line + "\n")
        written = [path]

    log.info('recovery_config', "Wrote recovery configuration (%s) to %s" % (
                                target.summary(), util.list2str(written)))
    return written

def _setting_re(key):
    return re.compile(r'^\s*#?\s*%s\s*=' % re.escape(key))

def edit_conf(path, settings, backup=True):
    """
    Set the given (key, value) settings in a postgresql.conf-style file. The
    first line setting each key (even commented out) is replaced, later
    active lines for it are commented out, and keys not present at all are
    appended.

    Returns:
        str: The path of the backup copy, or None.
    """
    try:
        with open(path, 'r') as fh:
            lines = fh.read().splitlines()
    except FileNotFoundError:
        raise err.PreflightError("Configuration file %s does not exist" % path) from None

    backup_path = None
    if backup:
        backup_path = '%s.backup.%s' % (path, util.timestamp_str())
        shutil.copy2(path, backup_path)

    for (key, value) in settings:
        regex = _setting_re(key)
        newline = "%s = %s" % (key, value)
        found = False
        for idx, line in enumerate(lines):
            if not regex.match(line):
                continue
            if not found:
                lines[idx] = newline
                found = True
            elif not line.lstrip().startswith('#'):
                lines[idx] = '#' + line
        if not found:
            lines.append(newline)

    tmp = '%s.%d.tmp' % (path, os.getpid())
    with open(tmp, 'w') as fh:
        fh.write('\n'.join(lines) + '\n')
    os.rename(tmp, path)
    return backup_path

def read_conf(path, keys):
    """
    The effective (last active) values of 'keys' in a config file.
    """
    ret = {key: None for key in keys}
    try:
        with open(path, 'r') as fh:
            lines = fh.read().splitlines()
    except FileNotFoundError:
        return ret
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith('#') or '=' not in stripped:
            continue
        (key, val) = stripped.split('=', 1)
        key = key.strip()
        if key not in ret:
            continue
        val = val.strip()
        if val.startswith("'"):
            end = val.rfind("'")
            val = val[1:end].replace("''", "'") if end > 0 else val[1:]
        else:
            val = val.split('#', 1)[0].strip()
        ret[key] = val
    return ret

_pitr_keys = ('wal_level', 'archive_mode', 'archive_command', 'max_wal_senders',
              'wal_keep_size')

def enable(datadir, archive_dir=None, compress=False, encrypt=False, conf_path=None):
    """
    Turn on WAL archiving into 'archive_dir' in the server config of
    'datadir'. The server must be restarted to pick it up.
    """
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')
    if conf_path is None:
        conf_path = os.path.join(datadir, MAIN_CONF)
    os.makedirs(archive_dir, exist_ok=True)

    settings = [
        ('wal_level', 'replica'),
        ('archive_mode', 'on'),
        ('archive_command', quote_value(archive_command(archive_dir, compress, encrypt))),
        ('max_wal_senders', '3'),
        ('wal_keep_size', quote_value('1GB')),
    ]
    backup_path = edit_conf(conf_path, settings)
    log.info('pitr_enabled', ("Enabled WAL archiving to %s in %s (previous config saved as %s); " +
                              "restart the server to apply") % (archive_dir, conf_path, backup_path))
    return {'config_file': conf_path, 'config_backup': backup_path,
            'archive_dir': archive_dir, 'restart_required': True}

def disable(datadir, conf_path=None):
    if conf_path is None:
        conf_path = os.path.join(datadir, MAIN_CONF)
    backup_path = edit_conf(conf_path, [('archive_mode', 'off')])
    log.info('pitr_disabled', "Disabled WAL archiving in %s; restart the server to apply" % conf_path)
    return {'config_file': conf_path, 'config_backup': backup_path,
            'restart_required': True}

def status(datadir, archive_dir=None, conf_path=None):
    if archive_dir is None:
        archive_dir = config.get('wal/archive_dir')
    if conf_path is None:
        conf_path = os.path.join(datadir, MAIN_CONF)

    settings = read_conf(conf_path, _pitr_keys)
    auto = read_conf(os.path.join(datadir, AUTO_CONF), _pitr_keys)
    for key, val in auto.items():
        if val is not None:
            settings[key] = val

    nsegs = 0
    latest = None
    if os.path.isdir(archive_dir):
        for entry in wal.list_archive(archive_dir, kinds=(wal.KIND_SEGMENT,)):
            nsegs += 1
            latest = entry.walname.name

    enabled = settings.get('archive_mode') in ('on', 'always') and \
              settings.get('wal_level') in ('replica', 'logical', 'hot_standby', 'archive')
    return {
        'enabled': enabled,
        'settings': settings,
        'archive_dir': archive_dir,
        'segments': nsegs,
        'latest_segment': latest,
    }

def server_running(datadir):
    """
    Whether a server is running on 'datadir', judging by its postmaster.pid.
    """
    path = os.path.join(datadir, 'postmaster.pid')
    try:
        with open(path, 'r') as fh:
            first = fh.readline().strip()
    except FileNotFoundError:
        return False
    try:
        pid = int(first)
    except ValueError:
        # Can't tell; assume the worst
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    return True

def recovery_status(datadir):
    """
    One of 'recovering', 'completed', or 'stopped'.
    """
    signals = [os.path.exists(os.path.join(datadir, name))
               for name in (SIGNAL_FILE, STANDBY_SIGNAL_FILE, LEGACY_CONF)]
    if not os.path.exists(os.path.join(datadir, 'postmaster.pid')):
        return 'stopped'
    if any(signals):
        return 'recovering'
    return 'completed'

_fatal_re = re.compile(r'\b(?:FATAL|PANIC):')
_stop_re = re.compile(r'recovery stopping (?:before|after|at)|'
                      r'database system is ready to accept connections')
_paused_re = re.compile(r'recovery has paused|pausing at the end of recovery')

def monitor_recovery(datadir, log_path, interval=None, timeout=None, cancel=None):
    """
    Watch a recovering server until it reaches its target, fails, or we run
    out of time.

    Returns:
        str: The final recovery status.
    """
    if interval is None:
        interval = config.get('pitr/monitor_interval')
    if timeout is None:
        timeout = config.get('pitr/monitor_timeout')

    deadline = time.monotonic() + timeout
    offset = 0
    reached = False
    paused = False
    while True:
        if cancel is not None:
            cancel.check()

        if log_path and os.path.exists(log_path):
            with open(log_path, 'r', errors='replace') as fh:
                fh.seek(offset)
                text = fh.read()
                offset = fh.tell()
            for line in text.splitlines():
                if _fatal_re.search(line):
                    raise err.FatalIOError("Server reported an error during recovery: %s" % line.strip())
                if _stop_re.search(line):
                    log.info('recovery_progress', "Server: %s" % line.strip())
                    reached = True
                if _paused_re.search(line):
                    log.info('recovery_paused', "Server: %s" % line.strip())
                    paused = True

        state = recovery_status(datadir)
        if state == 'completed':
            return state
        if paused:
            return 'paused'
        if state == 'stopped':
            if reached:
                # recovery_target_action = shutdown
                return state
            raise err.FatalIOError("Server on %s stopped before recovery finished; see %s" % (
                                   datadir, log_path))

        if time.monotonic() > deadline:
            raise err.DeadlineError("Recovery did not finish within %d seconds (status: %s)" % (
                                    timeout, state))
        if cancel is not None:
            cancel.wait(interval)
        else:
            time.sleep(interval)

def check_base(base_artifact, keysrc=None):
    """
    Check a base backup before restoring from it: it exists, its checksum
    matches, and it is a tar of a data directory.
    """
    if not os.path.exists(base_artifact):
        raise err.PreflightError("Base backup %s does not exist" % base_artifact)
    fmt = layout.detect_format(base_artifact, keysrc)
    if fmt.encrypted and keysrc is None:
        raise err.KeyRequiredError("Base backup %s is encrypted; an encryption key is required" %
                                   base_artifact)
    if fmt.format != layout.FORMAT_TAR:
        raise err.PreflightError("Base backup %s is not a data directory tar (it looks like %s)" % (
                                 base_artifact, fmt.format))
    expected = layout.read_checksum(base_artifact)
    actual = util.checksum('sha256', base_artifact)
    if actual != expected:
        raise err.ChecksumError("Base backup %s is corrupt: SHA-256 %s, expected %s" % (
                                base_artifact, actual, expected))
    return fmt

def restore_pitr(base_artifact, archive_dir, target_dir, target, keysrc=None,
                 in_place=False, auto_start=False, monitor=False, cancel=None,
                 timeout=None):
    """
    Restore a base backup into 'target_dir' and set it up to replay WAL from
    'archive_dir' up to 'target'. With 'auto_start', also start the server
    (and with 'monitor', wait for recovery to finish).

    Returns:
        dict: What we did.
    """
    check_base(base_artifact, keysrc)
    if not os.path.isdir(archive_dir):
        raise err.PreflightError("WAL archive directory %s does not exist" % archive_dir)
    if os.path.exists(target_dir) and os.listdir(target_dir) and not in_place:
        raise err.PreflightError("Target directory %s is not empty (use in-place extraction to restore over it)" %
                                 target_dir)
    if server_running(target_dir):
        raise err.PreflightError("A server is running on %s; stop it first" % target_dir)

    with archive.ExtractGuard(target_dir) as guard:
        os.makedirs(target_dir, mode=0o700, exist_ok=True)
        os.chmod(target_dir, 0o700)

        log.info('pitr_extract', "Extracting base backup %s into %s" % (base_artifact, target_dir))
        (reader, _, fh) = layout.open_artifact(base_artifact, keysrc=keysrc, cancel=cancel)
        with fh:
            archive.extract(reader, target_dir, allow_links=True, cancel=cancel,
                            created=guard.created)

        # A stale pid file from the backed up server would stop ours from starting
        util.remove_quiet(os.path.join(target_dir, 'postmaster.pid'))
        written = write_recovery_config(target_dir, target, archive_dir)

    ret = {'target_dir': target_dir, 'base': base_artifact, 'archive_dir': archive_dir,
           'target': target.as_dict(), 'config_files': written, 'started': False,
           'status': recovery_status(target_dir)}

    if auto_start:
        log_path = os.path.join(target_dir, 'pitr_recovery.log')
        argv = config.get('pg/pg_ctl') + ['-D', target_dir, '-l', log_path, '-w', 'start']
        cmd.Cursor(argv, parser=cmd.NullParser(name='pg_ctl'), cancel=cancel,
                   timeout=timeout, grace=config.get('process/grace')).run()
        ret['started'] = True
        if monitor:
            ret['status'] = monitor_recovery(target_dir, log_path, cancel=cancel)
        else:
            ret['status'] = recovery_status(target_dir)
    return ret
