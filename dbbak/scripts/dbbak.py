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
import os.path
import sys
import yaml

import dbbak.err as err
import dbbak.util as util
import dbbak.config as config
import dbbak.const as const
import dbbak.scripts.base as base
import dbbak.db as db

import dbbak.cluster
import dbbak.crypt
import dbbak.engine
import dbbak.incremental
import dbbak.layout
import dbbak.orchestrator
import dbbak.pitr
import dbbak.preflight
import dbbak.retention
import dbbak.store
import dbbak.timeline
import dbbak.vendor
import dbbak.verify
import dbbak.wal
import dbbak.log
log = dbbak.log.getLogger(__name__)

_cmdlist = []

# Exit code for an operation that ran, but failed for some of its items
# (e.g. some databases of a cluster backup)
_PARTIAL_FAILURE = 2

def _conn_opts(parser):
    parser.add_argument('--kind', dest='db_kind', default=None,
                        choices=['postgresql', 'mysql', 'mariadb'],
                        help="database server kind (default: conn/kind)")
    parser.add_argument('--host', default=None, help="database server host")
    parser.add_argument('--port', default=None, type=int, help="database server port")
    parser.add_argument('--user', default=None, help="database user")
    parser.add_argument('--password-env', default=None, metavar='VAR',
                        help="environment variable holding the database password")

_conn_config = {
    'db_kind': 'conn/kind',
    'host': 'conn/host',
    'port': 'conn/port',
    'user': 'conn/user',
    'password_env': 'conn/password_env',
}

def _key_opts(parser, encrypt=True):
    if encrypt:
        parser.add_argument('--encrypt', action='store_true',
                            help="encrypt the artifact")
    parser.add_argument('--key-file', default=None,
                        help="file holding a 32-byte encryption key (raw, hex or base64)")
    parser.add_argument('--passphrase-file', default=None,
                        help="file holding an encryption passphrase")
    parser.add_argument('--key-env', default=None, metavar='VAR',
                        help="environment variable holding the key or passphrase")

_key_config = {
    'key_file': 'crypt/key_file',
    'passphrase_file': 'crypt/passphrase_file',
    'key_env': 'crypt/key_env',
}

def _keysrc(args, for_writing=False):
    """
    Key material for this command. When writing, we only encrypt if asked
    to; when reading, we use whatever key material is configured.
    """
    if for_writing and not getattr(args, 'encrypt', False):
        return None
    return dbbak.crypt.KeySource.load(required=for_writing)

def _conn():
    return dbbak.vendor.ConnInfo.from_config()

def _confirm_opts(parser):
    parser.add_argument('--confirm', action='store_true',
                        help="actually perform the restore (otherwise only show the preflight report)")
    parser.add_argument('--dry-run', action='store_true',
                        help="only show what would be done")

def _preview(args, report):
    """
    Raise if the preflight report has failures; otherwise, if the caller did
    not confirm, return the output for a preview.
    """
    report.raise_if_failed()
    if args.confirm and not args.dry_run:
        return None
    info = {'dbbak_preflight': report.as_dict(), 'executed': False}
    txt = report.report_str()
    txt += "\nPreflight passed. Nothing was changed; run again with --confirm to restore."
    return (info, txt)

def _upload(op, uri, path):
    if not uri:
        return None
    keys = dbbak.store.push_artifact(path, uri, cancel=op.cancel)
    return keys

@base.append(_cmdlist)
class VarsCmd(base.SubCommand):
    command = "vars"
    help_txt = "View dbbak compile-time variables"
    # We don't need to load the config to run this command
    config = False

    def run(self, args):
        _vars = const.consts
        txt = ""
        for key in sorted(_vars):
            txt += "%s = %s\n" % (key, _vars[key])

        return ({'dbbak_vars': _vars}, txt)

@base.append(_cmdlist)
class ConfigCmd(base.SubCommand):
    command = "config"
    help_txt = "Query information about the local config"

    def parse(self, parser):
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument('--check', action='store_true',
                           help="check if current config is valid")

        group.add_argument('--dump', action='store_true',
                           help="dump current config")

        group.add_argument('--dump-all', action='store_true',
                           help="dump current config, including default values")

        group.add_argument('key', nargs='?', metavar='KEY',
                           help="get the value of a specific config directive")

    def run(self, args):
        if args.check:
            config.check()
            return ({'dbbak_config_check': {'ok': True}}, "Configuration is OK")

        elif args.dump:
            cfg = config.dump()
            return ({'dbbak_config': cfg},
                    yaml.safe_dump(cfg, default_flow_style=False))

        elif args.dump_all:
            cfg = config.dump(include_defaults=True)
            return ({'dbbak_config': cfg}, yaml.safe_dump(cfg, default_flow_style=False))

        else:
            assert args.key
            val_raw = config.get(args.key)
            val_str = str(val_raw)

            if not isinstance(val_raw, (bool, int, float, bytes, str)):
                # Lists and such come back as JSON, which is also valid YAML
                # for our config files.
                val_str = json.dumps(val_raw)

            return ({'dbbak_config': {args.key: val_raw}},
                    val_str)

@base.append(_cmdlist)
class DbInitCmd(base.SubCommand):
    command = "db-init"
    help_txt = "Generate/execute the relevant SQL to initialize the operation catalog"

    def parse(self, parser):
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument('--exec', action='store_true', dest='do_exec',
                           help="execute the relevant SQL directly, instead of printing it")
        group.add_argument('--sql', action='store_true',
                           help="print the SQL statements needed to create the catalog")

        parser.add_argument('--force', action='store_true',
                            help="force creating the catalog, deleting existing tables as needed")

    def run_txt(self, args):
        if args.do_exec:
            if not args.force:
                if not db.can_create():
                    raise err.ConfigError("Catalog already exists. Use " +
                                          "--force to overwrite it.")

            print("Initializing catalog in %s..." % db.printable_url())
            db.create(force=args.force)
            print("Finished creating catalog")

        elif args.sql:
            print("%s" % db.create_sql(force=args.force))

        else:
            raise err.InternalError("No --exec and no --sql?")

@base.append(_cmdlist)
class StatusCmd(base.SubCommand):
    command = "status"
    help_txt = "Show recent operations"

    def parse(self, parser):
        parser.add_argument('--limit', type=int, default=20,
                            help="how many operations to show")
        parser.add_argument('--state', default=None, choices=db.STATES,
                            help="only show operations in this state")

    def run(self, args):
        kwargs = {}
        if args.state:
            kwargs['state'] = args.state
        db.ensure_created()
        rows = db.operation.find(limit=args.limit, **kwargs)

        ops = []
        txt = ""
        for row in rows:
            op = {
                'id': row.id,
                'verb': row.verb,
                'target': row.target,
                'state': row.state,
                'state_descr': row.state_descr,
                'start': row.start,
                'end': row.end,
                'error_kind': row.error_kind,
            }
            ops.append(op)
            txt += "%5d %-20s %-10s %s  %s\n" % (row.id, row.verb, row.state,
                                                 util.iso_utc(row.start),
                                                 row.target or '')
        if not ops:
            txt = "No operations recorded"
        return ({'dbbak_status': ops}, txt.rstrip("\n"))

class _BackupCmd(base.SubCommand):
    config_opts = dict(_conn_config, backup_dir='backup/dir',
                       compression='backup/compression', **_key_config)

    def parse(self, parser):
        _conn_opts(parser)
        parser.add_argument('--backup-dir', default=None,
                            help="directory to write the artifact to")
        parser.add_argument('--compression', type=int, default=None, choices=range(10),
                            metavar='0-9', help="gzip compression level")
        parser.add_argument('--upload', default=None, metavar='URI',
                            help="also upload the artifact to this object store URI")
        _key_opts(parser)

    def _finish(self, op, args, path, info):
        op.add_artifact(path, info)
        res = {'artifact': path, 'info': info.to_dict()}
        keys = _upload(op, args.upload, path)
        if keys:
            res['uploaded'] = keys
        op.succeed(res)
        return res

@base.append(_cmdlist)
class BackupSingleCmd(_BackupCmd):
    command = "backup-single"
    help_txt = "Back up one database"
    config_opts = dict(_BackupCmd.config_opts, dump_format='backup/format')

    def parse(self, parser):
        super().parse(parser)
        parser.add_argument('database', metavar='DB', help="database to back up")
        parser.add_argument('--dump-format', dest='dump_format', default=None,
                            choices=['custom', 'plain'],
                            help="dump format (PostgreSQL only; default backup/format)")
        parser.add_argument('--type', dest='backup_type', default='full',
                            choices=['full', 'incremental'],
                            help="backup type; incremental backups need --datadir and --base")
        parser.add_argument('--datadir', default=None,
                            help="back up the files of this data directory instead of dumping")
        parser.add_argument('--base', default=None, metavar='ARTIFACT',
                            help="the previous backup an incremental backup builds on")

    def post_parse(self, args):
        if args.backup_type == 'incremental' and (args.datadir is None or args.base is None):
            raise err.ArgumentError("Incremental backups need --datadir and --base")

    def run(self, args):
        keysrc = _keysrc(args, for_writing=True)
        backup_dir = config.get('backup/dir')
        os.makedirs(backup_dir, exist_ok=True)

        with dbbak.orchestrator.Operation(self.command, target=args.database) as op:
            if args.datadir is None:
                (path, info) = dbbak.engine.backup_single(_conn(), args.database, backup_dir,
                                                          fmt=args.dump_format,
                                                          keysrc=keysrc, cancel=op.cancel,
                                                          progress=op.progress)
            elif args.backup_type == 'incremental':
                (path, info) = dbbak.incremental.backup_incremental(args.datadir, args.base,
                                                                    backup_dir,
                                                                    kind=config.get('conn/kind'),
                                                                    keysrc=keysrc,
                                                                    cancel=op.cancel)
            else:
                (path, info) = dbbak.incremental.backup_datadir(args.datadir, backup_dir,
                                                                args.database,
                                                                config.get('conn/kind'),
                                                                keysrc=keysrc,
                                                                cancel=op.cancel)
            res = self._finish(op, args, path, info)

        txt = "Backed up %s to %s (%s, sha256 %s)" % (
              args.database, path, util.PrettyBytes.pretty(info.size), info.sha256)
        return ({'dbbak_backup': res}, txt)

@base.append(_cmdlist)
class BackupSampleCmd(_BackupCmd):
    command = "backup-sample"
    help_txt = "Back up a sample of each table of one database"

    def parse(self, parser):
        super().parse(parser)
        parser.add_argument('database', metavar='DB', help="database to sample")
        parser.add_argument('--strategy', required=True,
                            choices=dbbak.vendor.SAMPLE_STRATEGIES,
                            help="ratio: 1 row in N; percent: N percent of rows; count: N rows")
        parser.add_argument('--value', required=True, type=float,
                            help="the N for the sampling strategy")

    def run(self, args):
        keysrc = _keysrc(args, for_writing=True)
        backup_dir = config.get('backup/dir')
        os.makedirs(backup_dir, exist_ok=True)
        value = args.value
        if args.strategy == 'count' or value == int(value):
            value = int(value)

        with dbbak.orchestrator.Operation(self.command, target=args.database) as op:
            (path, info) = dbbak.engine.backup_single(_conn(), args.database, backup_dir,
                                                      keysrc=keysrc,
                                                      sample=(args.strategy, value),
                                                      cancel=op.cancel, progress=op.progress)
            res = self._finish(op, args, path, info)

        txt = "Backed up a %s %s sample of %s to %s" % (args.strategy, value,
                                                        args.database, path)
        return ({'dbbak_backup': res}, txt)

def _cluster_workers(args):
    cores = os.cpu_count() or 1
    if args.max_cores:
        cores = min(cores, args.max_cores)
    if args.workers is not None:
        return args.workers
    if args.profile == 'cpu-intensive':
        return max(1, cores // 2)
    if args.profile == 'io-intensive':
        return min(cores * 2, 8)
    return config.get('cluster/workers')

@base.append(_cmdlist)
class BackupClusterCmd(_BackupCmd):
    command = "backup-cluster"
    help_txt = "Back up every database on the server into one archive"
    config_opts = dict(_BackupCmd.config_opts, db_timeout='cluster/db_timeout')

    def parse(self, parser):
        super().parse(parser)
        parser.add_argument('--workers', type=int, default=None,
                            help="how many databases to dump at once")
        parser.add_argument('--max-cores', type=int, default=None,
                            help="limit on CPU cores to use (also caps parallel gzip threads)")
        parser.add_argument('--profile', default='balanced',
                            choices=['balanced', 'cpu-intensive', 'io-intensive'],
                            help="workload profile used to pick the worker count")
        parser.add_argument('--db-timeout', type=int, default=None,
                            help="per-database deadline, in seconds")
        parser.add_argument('--databases', nargs='+', default=None, metavar='DB',
                            help="only back up these databases")

    def run(self, args):
        keysrc = _keysrc(args, for_writing=True)
        backup_dir = config.get('backup/dir')
        os.makedirs(backup_dir, exist_ok=True)
        workers = _cluster_workers(args)

        with dbbak.orchestrator.Operation(self.command) as op:
            (path, info, result) = dbbak.cluster.backup_cluster(_conn(), backup_dir,
                                                                workers=workers,
                                                                keysrc=keysrc,
                                                                cancel=op.cancel,
                                                                threads=args.max_cores,
                                                                progress=op.progress,
                                                                databases=args.databases)
            res = result.as_dict()
            res['artifact'] = path
            res['workers'] = workers
            res.update(self._finish(op, args, path, info))

        retcode = 0
        if res['failed']:
            retcode = _PARTIAL_FAILURE
        return ({'dbbak_backup_cluster': res}, dbbak.cluster.report_str(res), retcode)

@base.append(_cmdlist)
class BackupBaseCmd(_BackupCmd):
    command = "backup-base"
    help_txt = "Take a PostgreSQL base backup for point-in-time recovery"

    def run(self, args):
        keysrc = _keysrc(args, for_writing=True)
        backup_dir = config.get('backup/dir')
        os.makedirs(backup_dir, exist_ok=True)

        with dbbak.orchestrator.Operation(self.command) as op:
            (path, info) = dbbak.pitr.backup_base(_conn(), backup_dir, keysrc=keysrc,
                                                  cancel=op.cancel)
            res = self._finish(op, args, path, info)

        txt = "Base backup %s: WAL starts at %s (timeline %s, segment %s)" % (
              path, info.wal_start, info.timeline, info.wal_start_segment)
        return ({'dbbak_backup': res}, txt)

@base.append(_cmdlist)
class RestoreSingleCmd(base.SubCommand):
    command = "restore-single"
    help_txt = "Restore one database from an artifact"
    config_opts = dict(_conn_config, **_key_config)

    def parse(self, parser):
        _conn_opts(parser)
        _key_opts(parser, encrypt=False)
        _confirm_opts(parser)
        parser.add_argument('artifact', metavar='ARTIFACT', help="artifact to restore")
        parser.add_argument('--target', default=None,
                            help="database to restore into (default: the original database)")
        parser.add_argument('--create', action='store_true',
                            help="create the target database if it does not exist")
        parser.add_argument('--clean', action='store_true',
                            help="drop and recreate the target database first")
        parser.add_argument('--jobs', type=int, default=None,
                            help="parallel restore jobs (custom format only)")
        parser.add_argument('--workdir', default=None,
                            help="where to stage data for a parallel restore")

    def run(self, args):
        keysrc = _keysrc(args)
        conn = _conn()
        report = dbbak.preflight.restore_single(conn, args.artifact, keysrc=keysrc,
                                                workdir=args.workdir)
        ret = _preview(args, report)
        if ret is not None:
            return ret

        with dbbak.orchestrator.Operation(self.command, target=args.artifact,
                                          destructive=True) as op:
            if args.clean:
                op.note_change("target database may have been dropped and recreated")
            res = dbbak.engine.restore_single(conn, args.artifact, target=args.target,
                                              create=args.create, clean=args.clean,
                                              jobs=args.jobs, keysrc=keysrc,
                                              cancel=op.cancel, workdir=args.workdir)
            op.succeed(res)

        txt = "Restored %s into database %s" % (args.artifact, res['database'])
        return ({'dbbak_restore': res}, txt)

@base.append(_cmdlist)
class RestoreClusterCmd(base.SubCommand):
    command = "restore-cluster"
    help_txt = "Restore every database from a cluster archive"
    config_opts = dict(_conn_config, **_key_config)

    def parse(self, parser):
        _conn_opts(parser)
        _key_opts(parser, encrypt=False)
        _confirm_opts(parser)
        parser.add_argument('artifact', metavar='ARCHIVE', help="cluster archive to restore")
        parser.add_argument('--jobs', type=int, default=None,
                            help="parallel restore jobs per database")
        parser.add_argument('--workdir', default=None,
                            help="where to extract the archive (default: next to it)")
        parser.add_argument('--skip-globals', action='store_true',
                            help="don't replay roles and tablespaces")

    def run(self, args):
        keysrc = _keysrc(args)
        conn = _conn()
        report = dbbak.preflight.restore_cluster(conn, args.artifact, keysrc=keysrc,
                                                 workdir=args.workdir)
        ret = _preview(args, report)
        if ret is not None:
            return ret

        with dbbak.orchestrator.Operation(self.command, target=args.artifact,
                                          destructive=True) as op:
            op.note_change("databases in the archive may have been dropped and recreated")
            res = dbbak.cluster.restore_cluster(conn, args.artifact, keysrc=keysrc,
                                                jobs=args.jobs, workdir=args.workdir,
                                                cancel=op.cancel,
                                                skip_globals=args.skip_globals)
            op.succeed(res)

        txt = "Restored %d database(s) from %s" % (len(res['restored']), args.artifact)
        retcode = 0
        if res['failed']:
            txt += "\nFailed to restore:\n"
            for fail in res['failed']:
                txt += "  %s (%s): %s\n" % (fail['database'], fail['kind'], fail['error'])
            retcode = _PARTIAL_FAILURE
        return ({'dbbak_restore_cluster': res}, txt.rstrip("\n"), retcode)

@base.append(_cmdlist)
class RestoreIncrementalCmd(base.SubCommand):
    command = "restore-incremental"
    help_txt = "Restore a data directory from a full backup and its incrementals"
    config_opts = dict(_key_config)

    def parse(self, parser):
        _key_opts(parser, encrypt=False)
        _confirm_opts(parser)
        parser.add_argument('artifact', metavar='ARTIFACT',
                            help="the last backup of the chain to restore")
        parser.add_argument('--target-dir', required=True,
                            help="directory to restore the files into")
        parser.add_argument('--in-place', action='store_true',
                            help="allow restoring over a non-empty directory")

    def run(self, args):
        keysrc = _keysrc(args)
        report = dbbak.preflight.restore_incremental(args.artifact, args.target_dir,
                                                     keysrc=keysrc, in_place=args.in_place)
        ret = _preview(args, report)
        if ret is not None:
            return ret

        with dbbak.orchestrator.Operation(self.command, target=args.artifact,
                                          destructive=True) as op:
            op.note_change("files may have been written into %s" % args.target_dir)
            res = dbbak.incremental.restore_incremental(args.artifact, args.target_dir,
                                                        keysrc=keysrc, in_place=args.in_place,
                                                        cancel=op.cancel)
            op.succeed(res)

        txt = "Restored %s into %s" % (args.artifact, args.target_dir)
        return ({'dbbak_restore_incremental': res}, txt)

@base.append(_cmdlist)
class RestorePitrCmd(base.SubCommand):
    command = "restore-pitr"
    help_txt = "Restore a base backup and replay WAL up to a point in time"
    config_opts = dict(_key_config, archive_dir='wal/archive_dir')

    def parse(self, parser):
        _key_opts(parser, encrypt=False)
        _confirm_opts(parser)
        parser.add_argument('--base', required=True, metavar='ARTIFACT',
                            help="base backup to start from")
        parser.add_argument('--archive-dir', default=None,
                            help="WAL archive directory (default: wal/archive_dir)")
        parser.add_argument('--target-dir', required=True,
                            help="data directory to restore into")
        target = parser.add_mutually_exclusive_group()
        target.add_argument('--target-time', default=None,
                            help="stop at this time, e.g. '2024-01-15 14:30:00+00'")
        target.add_argument('--target-xid', default=None,
                            help="stop at this transaction id")
        target.add_argument('--target-lsn', default=None,
                            help="stop at this WAL position, e.g. '0/3000000'")
        target.add_argument('--target-name', default=None,
                            help="stop at this named restore point")
        target.add_argument('--target-immediate', action='store_true',
                            help="stop as soon as a consistent state is reached")
        parser.add_argument('--target-action', default='promote',
                            choices=dbbak.pitr.ACTIONS,
                            help="what the server does once it reaches the target")
        parser.add_argument('--timeline', default='latest',
                            help="timeline to recover along ('latest' or a number)")
        parser.add_argument('--exclusive', action='store_true',
                            help="stop just before the target instead of just after it")
        parser.add_argument('--in-place', action='store_true',
                            help="allow restoring over a non-empty directory")
        parser.add_argument('--auto-start', action='store_true',
                            help="start the server once the recovery config is written")
        parser.add_argument('--monitor', action='store_true',
                            help="with --auto-start, wait for recovery to finish")

    @staticmethod
    def target(args):
        for kind in ('time', 'xid', 'lsn', 'name'):
            value = getattr(args, 'target_' + kind)
            if value is not None:
                break
        else:
            kind = 'immediate' if args.target_immediate else 'none'
            value = None
        return dbbak.pitr.RecoveryTarget(kind, value, inclusive=not args.exclusive,
                                         action=args.target_action, timeline=args.timeline)

    def run(self, args):
        keysrc = _keysrc(args)
        target = self.target(args)
        archive_dir = config.get('wal/archive_dir')
        report = dbbak.preflight.restore_pitr(args.base, archive_dir, args.target_dir,
                                              keysrc=keysrc, in_place=args.in_place,
                                              auto_start=args.auto_start)
        ret = _preview(args, report)
        if ret is not None:
            ret[0]['target'] = target.as_dict()
            return (ret[0], "%s\nRecovery target: %s" % (ret[1], target.summary()))

        with dbbak.orchestrator.Operation(self.command, target=args.target_dir,
                                          destructive=True) as op:
            op.note_change("files may have been written into %s" % args.target_dir)
            res = dbbak.pitr.restore_pitr(args.base, archive_dir, args.target_dir, target,
                                          keysrc=keysrc, in_place=args.in_place,
                                          auto_start=args.auto_start,
                                          monitor=args.monitor, cancel=op.cancel)
            op.succeed(res)

        txt = "Restored %s into %s; recovery target: %s\nStatus: %s" % (
              args.base, args.target_dir, target.summary(), res['status'])
        if not res['started']:
            txt += "\nStart the server with: pg_ctl -D %s start" % args.target_dir
        return ({'dbbak_restore_pitr': res}, txt)

@base.append(_cmdlist)
class VerifyCmd(base.SubCommand):
    command = "verify"
    help_txt = "Check an artifact against its checksum and info files"
    config_opts = dict(_key_config)

    def parse(self, parser):
        _key_opts(parser, encrypt=False)
        parser.add_argument('artifact', metavar='ARTIFACT',
                            help="artifact (or directory of artifacts) to verify")
        parser.add_argument('--quick', action='store_true',
                            help="only check sizes and sidecars, without hashing")

    def run(self, args):
        if os.path.isdir(args.artifact):
            res = dbbak.verify.verify_dir(args.artifact, quick=args.quick, keysrc=_keysrc(args))
            txt = "Verified %d artifact(s), %d failed" % (len(res['verified']),
                                                          len(res['failed']))
            for fail in res['failed']:
                txt += "\n  %s: %s" % (fail['artifact'], fail['error'])
            retcode = _PARTIAL_FAILURE if res['failed'] else 0
            return ({'dbbak_verify': res}, txt, retcode)

        res = dbbak.verify.verify(args.artifact, quick=args.quick, keysrc=_keysrc(args))
        return ({'dbbak_verify': res}, "%s: OK" % args.artifact)

@base.append(_cmdlist)
class CleanupCmd(base.SubCommand):
    command = "cleanup"
    help_txt = "Delete artifacts past their retention"
    config_opts = {'retention_days': 'retention/days', 'min_backups': 'retention/min_backups'}

    def parse(self, parser):
        parser.add_argument('directory', metavar='DIR', help="backup directory to clean")
        parser.add_argument('--retention-days', type=int, default=None,
                            help="delete artifacts older than this many days")
        parser.add_argument('--min-backups', type=int, default=None,
                            help="always keep at least this many artifacts")
        parser.add_argument('--pattern', default=None,
                            help="only consider artifacts matching this glob, per database")
        parser.add_argument('--dry-run', action='store_true',
                            help="only show what would be deleted")

    def run(self, args):
        with dbbak.orchestrator.Operation(self.command, target=args.directory,
                                          destructive=not args.dry_run) as op:
            res = dbbak.retention.cleanup(args.directory, pattern=args.pattern,
                                          dry_run=args.dry_run)
            op.succeed(res)

        paths = res['would_delete'] if args.dry_run else res['deleted']
        verb = "Would delete" if args.dry_run else "Deleted"
        txt = "%s %d artifact(s), %s" % (verb, len(paths), util.PrettyBytes.pretty(res['freed']))
        for path in paths:
            txt += "\n  %s" % path
        return ({'dbbak_cleanup': res}, txt)

class _PitrCmd(base.SubCommand):
    config_opts = {'archive_dir': 'wal/archive_dir'}

    def parse(self, parser):
        parser.add_argument('--datadir', required=True, help="the server's data directory")
        parser.add_argument('--archive-dir', default=None,
                            help="WAL archive directory (default: wal/archive_dir)")
        parser.add_argument('--conf', default=None,
                            help="server config file (default: DATADIR/postgresql.conf)")

@base.append(_cmdlist)
class PitrEnableCmd(_PitrCmd):
    command = "pitr-enable"
    help_txt = "Turn on WAL archiving in a server's config"

    def parse(self, parser):
        super().parse(parser)
        parser.add_argument('--compress', action='store_true',
                            help="archive WAL gzipped")
        parser.add_argument('--encrypt', action='store_true',
                            help="archive WAL encrypted (the server needs the key, too)")

    def run(self, args):
        res = dbbak.pitr.enable(args.datadir, config.get('wal/archive_dir'),
                                compress=args.compress, encrypt=args.encrypt,
                                conf_path=args.conf)
        txt = ("WAL archiving to %s enabled in %s (previous config saved as %s).\n" +
               "Restart the server to apply.") % (res['archive_dir'], res['config_file'],
                                                   res['config_backup'])
        return ({'dbbak_pitr': res}, txt)

@base.append(_cmdlist)
class PitrDisableCmd(_PitrCmd):
    command = "pitr-disable"
    help_txt = "Turn off WAL archiving in a server's config"

    def run(self, args):
        res = dbbak.pitr.disable(args.datadir, conf_path=args.conf)
        txt = "WAL archiving disabled in %s. Restart the server to apply." % res['config_file']
        return ({'dbbak_pitr': res}, txt)

@base.append(_cmdlist)
class PitrStatusCmd(_PitrCmd):
    command = "pitr-status"
    help_txt = "Show the WAL archiving setup"

    def run(self, args):
        res = dbbak.pitr.status(args.datadir, config.get('wal/archive_dir'),
                                conf_path=args.conf)
        txt = "WAL archiving: %s\n" % ('enabled' if res['enabled'] else 'disabled')
        for key in sorted(res['settings']):
            txt += "  %s = %s\n" % (key, res['settings'][key])
        txt += "Archive: %s (%d segments, latest %s)" % (res['archive_dir'], res['segments'],
                                                         res['latest_segment'])
        return ({'dbbak_pitr': res}, txt)

@base.append(_cmdlist)
class WalArchiveCmd(base.SubCommand):
    command = "wal-archive"
    help_txt = "Archive one WAL file (for the server's archive_command)"
    daemon = True
    config_opts = dict(_key_config, archive_dir='wal/archive_dir')

    def parse(self, parser):
        parser.add_argument('path', metavar='PATH', help="path to the WAL file (%%p)")
        parser.add_argument('name', metavar='NAME', help="name of the WAL file (%%f)")
        parser.add_argument('--archive-dir', default=None, help="WAL archive directory")
        parser.add_argument('--compress', action='store_true', help="store gzipped")
        parser.add_argument('--timeline', type=int, default=None,
                            help="timeline the segment must belong to")
        _key_opts(parser)

    def run(self, args):
        keysrc = _keysrc(args, for_writing=True)
        path = dbbak.wal.archive_segment(args.path, args.name, compress=args.compress,
                                         keysrc=keysrc, timeline=args.timeline)
        return ({'dbbak_wal_archive': {'name': args.name, 'path': path}}, None)

@base.append(_cmdlist)
class WalRestoreCmd(base.SubCommand):
    command = "wal-restore"
    help_txt = "Fetch one WAL file from the archive (for the server's restore_command)"
    daemon = True
    config_opts = dict(_key_config, archive_dir='wal/archive_dir')

    def parse(self, parser):
        parser.add_argument('name', metavar='NAME', help="name of the WAL file (%%f)")
        parser.add_argument('dest', metavar='DEST', help="where to put it (%%p)")
        parser.add_argument('--archive-dir', default=None, help="WAL archive directory")
        _key_opts(parser, encrypt=False)

    def run(self, args):
        path = dbbak.wal.restore_segment(args.name, args.dest, keysrc=_keysrc(args))
        return ({'dbbak_wal_restore': {'name': args.name, 'path': path}}, None)

@base.append(_cmdlist)
class WalListCmd(base.SubCommand):
    command = "wal-list"
    help_txt = "List the WAL archive"
    config_opts = {'archive_dir': 'wal/archive_dir'}

    def parse(self, parser):
        parser.add_argument('--archive-dir', default=None, help="WAL archive directory")

    def run(self, args):
        archive_dir = config.get('wal/archive_dir')
        if args.format == 'json':
            entries = util.json_generator(entry.as_dict() for entry in
                                          dbbak.wal.list_archive(archive_dir))
            return ({'dbbak_wal': entries}, None)

        for entry in dbbak.wal.list_archive(archive_dir):
            print("%s  %-8s tli %-3d %10s  %s" % (util.iso_utc(entry.mtime), entry.walname.kind,
                                                  entry.walname.timeline,
                                                  util.PrettyBytes.pretty(entry.size),
                                                  os.path.basename(entry.path)))
        return None

@base.append(_cmdlist)
class WalCleanupCmd(base.SubCommand):
    command = "wal-cleanup"
    help_txt = "Delete archived WAL past its retention"
    config_opts = {'archive_dir': 'wal/archive_dir', 'retention_days': 'wal/retention_days',
                   'backup_dir': 'backup/dir'}

    def parse(self, parser):
        parser.add_argument('--archive-dir', default=None, help="WAL archive directory")
        parser.add_argument('--retention-days', type=int, default=None,
                            help="delete WAL older than this many days")
        parser.add_argument('--backup-dir', default=None,
                            help="where the base backups are, to keep the WAL they need")
        parser.add_argument('--dry-run', action='store_true',
                            help="only show what would be deleted")

    def run(self, args):
        with dbbak.orchestrator.Operation(self.command, target=config.get('wal/archive_dir'),
                                          destructive=not args.dry_run) as op:
            (removed, protect) = dbbak.wal.cleanup(backup_dir=config.get('backup/dir'),
                                                   dry_run=args.dry_run)
            res = {'removed': [entry.as_dict() for entry in removed],
                   'protected_from': protect, 'dry_run': args.dry_run}
            op.succeed(res)

        txt = "%s %d WAL file(s)" % ("Would delete" if args.dry_run else "Deleted", len(removed))
        if protect:
            txt += "; keeping everything from %s onward for base backups" % protect
        return ({'dbbak_wal_cleanup': res}, txt)

@base.append(_cmdlist)
class WalTimelineCmd(base.SubCommand):
    command = "wal-timeline"
    help_txt = "Show and check the timeline histories in the WAL archive"
    config_opts = {'archive_dir': 'wal/archive_dir'}

    def parse(self, parser):
        parser.add_argument('--archive-dir', default=None, help="WAL archive directory")

    def run(self, args):
        res = dbbak.timeline.check_archive(config.get('wal/archive_dir'))

        txt = "Latest timeline: %s\n" % res['latest']
        for tli in sorted(res['timelines']):
            txt += "Timeline %d\n" % tli
            for entry in res['timelines'][tli]:
                txt += "  from timeline %d at %s: %s\n" % (entry['parent'], entry['lsn'],
                                                            entry['reason'])
        for problem in res['problems']:
            txt += "PROBLEM: %s\n" % problem

        data = dict(res, timelines={str(tli): entries
                                    for (tli, entries) in res['timelines'].items()})
        retcode = _PARTIAL_FAILURE if res['problems'] else 0
        return ({'dbbak_wal_timeline': data}, txt.rstrip("\n"), retcode)

@base.append(_cmdlist)
class UploadCmd(base.SubCommand):
    command = "upload"
    help_txt = "Upload an artifact and its sidecars to an object store"

    def parse(self, parser):
        parser.add_argument('artifact', metavar='ARTIFACT', help="artifact to upload")
        parser.add_argument('uri', metavar='URI', help="e.g. s3://bucket/prefix")

    def run(self, args):
        with dbbak.orchestrator.Operation(self.command, target=args.artifact) as op:
            keys = dbbak.store.push_artifact(args.artifact, args.uri, cancel=op.cancel)
            op.succeed({'keys': keys})
        return ({'dbbak_upload': {'uri': args.uri, 'keys': keys}},
                "Uploaded %s to %s" % (args.artifact, args.uri))

@base.append(_cmdlist)
class DownloadCmd(base.SubCommand):
    command = "download"
    help_txt = "Download an artifact and its sidecars from an object store"

    def parse(self, parser):
        parser.add_argument('uri', metavar='URI', help="e.g. s3://bucket/prefix")
        parser.add_argument('name', metavar='NAME', help="artifact file name")
        parser.add_argument('dest', metavar='DEST', help="directory to download into")

    def run(self, args):
        with dbbak.orchestrator.Operation(self.command, target=args.name) as op:
            path = dbbak.store.fetch_artifact(args.uri, args.name, args.dest, cancel=op.cancel)
            op.succeed({'artifact': path})
        return ({'dbbak_download': {'artifact': path}},
                "Downloaded %s to %s" % (args.name, path))

class Dbbak(base.Command):
    description = "Database backup and restore for PostgreSQL, MySQL and MariaDB"
    subcommands = _cmdlist

def main(argv=None):
    dbbak_cmd = Dbbak()
    return dbbak_cmd.main(argv)

if __name__ == '__main__':
    sys.exit(main())
