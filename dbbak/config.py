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
import collections.abc
import glob

import yaml

import dbbak.err as err
import dbbak.const as const
import dbbak.log

log = dbbak.log.getLogger(__name__)

# This just contains a bunch of _Directive objects
class _DirectiveSet:
    def __init__(self, *dirs):
        self._dirs = dirs
        self._dirmap = {}
        for directive in dirs:
            self._dirmap[directive.full_key] = directive

    def find_dir(self, full_key):
        directive = self._dirmap.get(full_key, None)
        if directive is None:
            raise ValueError("Unknown configuration directive '%s'" % full_key)
        return directive

    def __iter__(self):
        for directive in self._dirs:
            yield directive

# An object that represents a single configuration directive
class _DirectiveBase:
    ok_types = None

    def __init__(self, full_key, default, example, choices=None, env=None,
                 env_scale=None, minval=None, maxval=None):
        self.full_key = full_key
        self.default = default
        self.example = example
        self.choices = choices
        self.env = env
        self.env_scale = env_scale
        self.minval = minval
        self.maxval = maxval

        assert example is not None

    def _val_isok(self, val):
        if val is self.default:
            return True

        ok_types = self.ok_types
        if ok_types is None:
            ok_types = type(self.example)
        return isinstance(val, ok_types)

    def _convert_val(self, val):
        return val

    def _check_range(self, val):
        pass

    def check_val(self, val):
        if not self._val_isok(val):
            raise err.ConfigError("Config directive '%s' is type '%s', but should be type '%s' (for example: %r)" % (
                                  self.full_key, type(val).__name__,
                                  type(self.example).__name__, self.example))

        val = self._convert_val(val)

        if self.choices is not None and val not in self.choices:
            choices_str = ','.join([repr(item) for item in self.choices])
            raise err.ConfigError("Config directive '%s' set to invalid value %r (valid choices are: %s)" % (
                                  self.full_key, val, choices_str))

        self._check_range(val)
        return val

    def get_default(self, cfg):
        if isinstance(self.default, collections.abc.Callable):
            return self.default(cfg)
        return self.default

    def env_val(self, environ):
        """
        Get the value for this directive from the environment, if an
        environment variable is associated with this directive and is set.
        Returns None otherwise.
        """
        if self.env is None:
            return None
        val = environ.get(self.env, None)
        if val is None or val == '':
            return None
        if self.env_scale is not None:
            try:
                val = int(val) * self.env_scale
            except ValueError:
                raise err.ConfigError("Environment variable %s must be an integer, not %r" % (
                                      self.env, val)) from None
        return val

class _StrDirective(_DirectiveBase):
    ok_types = (str, bytes)

    def _convert_val(self, val):
        if isinstance(val, bytes):
            val = val.decode('utf-8')
        return val

class _ListDirective(_DirectiveBase):
    ok_types = (type(None), str, bytes, list, tuple)

    def _convert_val(self, val):
        if isinstance(val, bytes):
            val = val.decode('utf-8')
        if isinstance(val, str):
            val = [val]
        return val

class _BoolDirective(_DirectiveBase):
    def _conv_bool(self, val):
        if val is True or val is False:
            return val
        if isinstance(val, str):
            val = val.lower()
            if val == "true" or val == "1":
                return True
            if val == "false" or val == "0":
                return False
        return None

    def _val_isok(self, val):
        if self._conv_bool(val) is not None:
            return True
        return False

    def _convert_val(self, val):
        val = self._conv_bool(val)
        if val is None:
            raise err.InternalError("Directive %s not true or false?" % self.full_key)
        return val

class _IntDirective(_DirectiveBase):
    def _val_isok(self, val):
        if val is None and self.default is None:
            return True
        try:
            int(val)
        except (ValueError, TypeError):
            return False
        return True

    def _convert_val(self, val):
        if val is None:
            return val
        return int(val)

    def _check_range(self, val):
        if val is None:
            return
        if self.minval is not None and val < self.minval:
            raise err.ConfigError("Config directive '%s' is %d, but must be at least %d" % (
                                  self.full_key, val, self.minval))
        if self.maxval is not None and val > self.maxval:
            raise err.ConfigError("Config directive '%s' is %d, but must be at most %d" % (
                                  self.full_key, val, self.maxval))

def _Directive(full_key, default, example=None, **kwargs):
    if example is None:
        example = default

    if isinstance(example, (str, bytes)):
        klass = _StrDirective
    elif isinstance(example, (list, tuple)):
        klass = _ListDirective
    elif isinstance(example, bool):
        klass = _BoolDirective
    elif isinstance(example, int):
        klass = _IntDirective
    else:
        raise err.InternalError("Unhandled config type for key %s (example %r)" % (
                                full_key, example))

    return klass(full_key, default, example, **kwargs)

def _default_backup_dir(cfg):
    return os.path.join(const.STORAGE_DIR, 'backups')

def _default_archive_dir(cfg):
    return os.path.join(cfg.get('backup/dir'), 'wal_archive')

def _default_self_cmd(cfg):
    return ['dbbak']

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

class _Config:
    """
    Represents all of our configuration directives.

    Primarily you should use `get` to get the values of configured items.
    Configuration can be loaded from disk via `load`, and all items can be
    retrieved at once with `dump`.

    Values are resolved with the precedence: command line (-x and verb
    options) > environment > config files > defaults.
    """

    _dirs = _DirectiveSet(
        _Directive('conn/kind', default='postgresql',
                   choices=['postgresql', 'mysql', 'mariadb']),
        _Directive('conn/host', default='localhost'),
        _Directive('conn/port', default=None, example=5432),
        _Directive('conn/user', default=None, example='postgres'),
        _Directive('conn/password_env', default='DBBAK_DB_PASSWORD'),

        _Directive('pg/pg_dump', default=['pg_dump']),
        _Directive('pg/pg_restore', default=['pg_restore']),
        _Directive('pg/psql', default=['psql']),
        _Directive('pg/pg_dumpall', default=['pg_dumpall']),
        _Directive('pg/pg_basebackup', default=['pg_basebackup']),
        _Directive('pg/pg_ctl', default=['pg_ctl']),
        _Directive('mysql/mysqldump', default=['mysqldump']),
        _Directive('mysql/mysql', default=['mysql']),
        _Directive('compress/pigz', default=['pigz']),
        _Directive('compress/external', default=True),

        _Directive('self/command', default=_default_self_cmd, example=['dbbak']),

        _Directive('backup/dir', default=_default_backup_dir,
                   example='/var/lib/dbbak/backups', env='DBBAK_BACKUP_DIR'),
        _Directive('backup/compression', default=6, env='DBBAK_COMPRESSION',
                   minval=0, maxval=9),
        _Directive('backup/format', default='custom',
                   choices=['custom', 'plain']),
        _Directive('backup/large_db_threshold', default=5 * GiB),

        _Directive('cluster/workers', default=2, env='DBBAK_CLUSTER_WORKERS',
                   minval=1),
        # Per-database deadline, in seconds
        _Directive('cluster/db_timeout', default=4 * 60 * 60,
                   env='DBBAK_CLUSTER_TIMEOUT', env_scale=60, minval=1),

        _Directive('process/grace', default=5),
        _Directive('process/idle_timeout', default=0),

        _Directive('cloud/retries', default=3, minval=1),
        _Directive('cloud/request_timeout', default=120),
        _Directive('cloud/multipart_threshold', default=100 * MiB),
        _Directive('cloud/part_size', default=10 * MiB, minval=5 * MiB),
        _Directive('cloud/max_concurrency', default=10, minval=1),

        _Directive('crypt/key_env', default='DBBAK_ENCRYPTION_KEY',
                   env='DBBAK_ENCRYPTION_KEY_ENV'),
        _Directive('crypt/key_file', default=None, example='/etc/dbbak/backup.key'),
        _Directive('crypt/passphrase_file', default=None,
                   example='/etc/dbbak/passphrase'),

        _Directive('wal/segment_size', default=16 * MiB),
        _Directive('wal/archive_dir', default=_default_archive_dir,
                   example='/var/lib/dbbak/wal_archive'),
        _Directive('wal/retention_days', default=7),

        _Directive('pitr/monitor_interval', default=10),
        _Directive('pitr/monitor_timeout', default=5 * 60),

        _Directive('retention/days', default=30),
        _Directive('retention/min_backups', default=5, minval=0),

        _Directive('log/level', default=None, example='info'),
        _Directive('log/config_file',
                   default=dbbak.log.resource_path('log_daemon.conf')),
        _Directive('log/debug_format',
                   default='%(name)s.%(mid)s %(levelname)s: %(message)s'),

        _Directive('db/url',
                   default='sqlite:///%s' % os.path.join(const.STORAGE_DIR,
                                                         'dbbak.sqlite')),
        _Directive('db/enabled', default=True),

        _Directive('lockdir', default=const.LOCKDIR),
        _Directive('bufsize', default=1024*1024, minval=64*1024, maxval=1024*1024),
    )

    _conf_file = os.path.join(const.CONF_DIR, 'dbbak.yaml.d', '*.yaml')
    _daemon = False

    def __init__(self):
        self._data = {}
        self._overrides = {}

    @staticmethod
    def _key_str(*keys):
        return '/'.join(keys)

    @staticmethod
    def _key_list(full_key):
        return full_key.split('/')

    def set_val(self, full_key, val):
        """
        Set a config directive to the given value.

        Args:
            full_key (str): Config directive to set.
            val: The value to set the config directive to.
        """
        self._data[full_key] = val

    def check_internal(self, source=None):
        """
        Check if this config is valid.
        """
        try:
            for full_key in self._data.keys():
                directive = self._dirs.find_dir(full_key)
                val = directive.check_val(self.get(full_key))
                self.set_val(full_key, val)
        except Exception as e:
            if source:
                raise err.ConfigError("Error in configuration from %s: %s" % (
                                      source, e)) from None
            else:
                raise err.ConfigError("Error in configuration: %s" % e) from None

    # Get a list of all full (key,val) pairs for the specified nested dict
    @classmethod
    def _iteritems(cls, root):
        for (key, val) in root.items():
            if isinstance(val, collections.abc.Mapping):
                for (subkey, subval) in cls._iteritems(val):
                    yield (cls._key_str(key, subkey), subval)
            else:
                yield (key, val)

    @classmethod
    def _merge_dict(cls, old_root, new_root):
        for (key, new_val) in new_root.items():
            if key not in old_root:
                old_root[key] = new_val

            elif isinstance(old_root[key], collections.abc.Mapping) and \
                 isinstance(new_val, collections.abc.Mapping):

                cls._merge_dict(old_root[key], new_val)

            else:
                old_root[key] = new_val

    # Merge the data in the 'data' dict into our current config
    def merge_data(self, data):
        if data is None:
            return
        if not isinstance(data, collections.abc.Mapping):
            raise err.ConfigError("Configuration data must be a mapping, not %s" %
                                  type(data).__name__)
        for (key, val) in self._iteritems(data):
            self._data[key] = val

    def merge_env(self, environ=None):
        """
        Merge in values from the environment variables associated with our
        directives (e.g. DBBAK_BACKUP_DIR).
        """
        if environ is None:
            environ = os.environ
        for directive in self._dirs:
            val = directive.env_val(environ)
            if val is not None:
                log.d("Using %s from environment variable %s" % (
                      directive.full_key, directive.env))
                self._data[directive.full_key] = val

    def _get_default(self, full_key):
        directive = self._dirs.find_dir(full_key)
        return directive.get_default(self)

    def get(self, full_key):
        """
        Get a directive from the loaded config.

        Args:
            full_key (str): The config directive to get (e.g. 'foo/bar/baz').

        Returns:
            The config value.
        """
        if full_key == '_daemon':
            val = self._daemon
        elif full_key in self._data:
            val = self._data[full_key]
        else:
            val = self._get_default(full_key)

        return val

    def _to_dict(self, full_key, val):
        ret = val
        for key in reversed(self._key_list(full_key)):
            ret = {key: ret}
        return ret

    def dump(self, include_defaults=False):
        """
        Get all of the config directives.

        Args:
            include_defaults (bool, optional): If True, include default values.
                Otherwise, only include values actually set in the config.

        Returns:
            dict: A dict of all config directives (e.g.
            {'cluster':{'workers':2}}).
        """

        ret = {}

        if include_defaults:
            for directive in self._dirs:
                self._merge_dict(ret, self._to_dict(directive.full_key,
                                                    self.get(directive.full_key)))

        for full_key in self._data:
            self._merge_dict(ret, self._to_dict(full_key,
                                                self.get(full_key)))
        return ret

    def load(self, cli_overrides=None, cli_conf_file=None,
             no_disk_config=False, environ=None):
        """
        Load config data from disk and the environment.

        Args:
            cli_overrides (dict, optional): Config directive overrides
                specified by the command line (-x), if any.
            cli_conf_file (str, optional): Config file specified by the command
                line, if any.
            no_disk_config (bool, optional): If True, don't load the config
                data from disk (just initialize things and set defaults).
            environ (dict, optional): Environment to read overrides from.
                Defaults to os.environ.
        """
        if cli_overrides:
            self._overrides.update(cli_overrides)

        if cli_conf_file:
            self._conf_file = cli_conf_file

        if no_disk_config:
            self._conf_file = None

        log.d("Loading config with overrides %r, config file %r" %
              (self._overrides, self._conf_file))
        new_cfg = _Config()

        if self._conf_file is not None:
            for filename in sorted(glob.glob(self._conf_file)):
                log.d("Loading config file %s" % filename)

                try:
                    fh = open(filename, 'r')
                except OSError as e:
                    log.d("Error opening config file %s (%s):, skipping" % (filename, e))
                    continue

                with fh:
                    try:
                        for data in yaml.safe_load_all(fh):
                            new_cfg.merge_data(data)
                    except (yaml.YAMLError, err.ConfigError) as e:
                        raise err.ConfigError("Error while processing '%s': %s" % (filename, e))

                new_cfg.check_internal("file '%s'" % filename)

        new_cfg.merge_env(environ)
        new_cfg.check_internal('the environment')

        for (full_key, val) in self._overrides.items():
            new_cfg.set_val(full_key, val)

        new_cfg.check_internal()

        self._data = new_cfg.get_data()

        # Our logging configuration may have changed, so reinitialize the
        # logging stuff.
        log_level = self.get('log/level')
        if self.get('_daemon'):
            log_config = self.get('log/config_file')
            debug_fmt = self.get('log/debug_format')
            dbbak.log.init(config_file=log_config,
                           log_level=log_level,
                           debug_fmt=debug_fmt)
        else:
            dbbak.log.init(log_level=log_level)

    def set_daemon(self, daemon=True):
        self._daemon = daemon

    def get_data(self):
        return self._data

    def reset(self):
        """
        Forget everything loaded so far (used between test runs).
        """
        self._data = {}
        self._overrides = {}
        self._conf_file = _Config._conf_file
        self._daemon = False

    def check(self):
        errors = []

        for directive in self._dirs:
            try:
                directive.check_val(self.get(directive.full_key))
            except Exception as e:
                errors.append("  %s: %s" % (directive.full_key, e))

        if errors:
            raise err.ConfigError("The following configuration errors were found:\n%s" %
                                  '\n'.join(errors))

config = _Config()

# Set some shortcuts for method available to other callers. This makes it so
# calling e.g. dbbak.config.get() is the same as dbbak.config.config.get().
get        = config.get
set_val    = config.set_val
load       = config.load
set_daemon = config.set_daemon
dump       = config.dump
check      = config.check
reset      = config.reset
