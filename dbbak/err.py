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

# Our custom exceptions. The 'dbbak_mid' field is used by our logging as the
# MID to use when we log an exception. The 'kind' field is the error kind
# reported to the user, and 'exit_code' is what the command line tool exits
# with when the error reaches the top level.

class DbbakError(Exception):
    dbbak_mid = 'error'
    kind = 'Error'
    exit_code = 2

class InternalError(DbbakError): dbbak_mid = 'int_err'

class ConfigError(DbbakError):
    dbbak_mid = 'cfg_err'
    kind = 'ConfigError'
    exit_code = 1

class ArgumentError(ConfigError): dbbak_mid = 'arg_err'
class KeyRequiredError(ConfigError): dbbak_mid = 'key_required'
class BadTargetError(ConfigError): dbbak_mid = 'bad_recovery_target'
class UnsupportedError(ConfigError): dbbak_mid = 'unsupported'

class AuthError(DbbakError):
    dbbak_mid = 'auth_err'
    kind = 'AuthError'

class PreflightError(DbbakError):
    dbbak_mid = 'preflight_err'
    kind = 'PreflightError'
    exit_code = 3

    def __init__(self, message, report=None):
        super().__init__(message)
        self.report = report

class ChainError(PreflightError): dbbak_mid = 'chain_err'

class TransientIOError(DbbakError):
    dbbak_mid = 'transient_io'
    kind = 'TransientIOError'

class FatalIOError(DbbakError):
    dbbak_mid = 'fatal_io'
    kind = 'FatalIOError'

class StorageError(FatalIOError): dbbak_mid = 'storage_error'
class NotFoundError(FatalIOError): dbbak_mid = 'not_found'
class WalConflictError(FatalIOError): dbbak_mid = 'wal_conflict'

class DeadlineError(DbbakError):
    dbbak_mid = 'deadline'
    kind = 'TimeoutError'

class CancelledError(DbbakError):
    dbbak_mid = 'cancelled'
    kind = 'CancelledError'
    exit_code = 130

class DataError(DbbakError):
    dbbak_mid = 'data_err'
    kind = 'DataError'

class ChecksumError(DataError): dbbak_mid = 'checksum_mismatch'
class ManifestError(DataError): dbbak_mid = 'bad_manifest'

class VersionError(DbbakError): dbbak_mid = 'db_version'
class DbNoUpdateError(DbbakError): dbbak_mid = 'db_noupdate'

def kind_of(exc):
    """
    Return the error kind string for the given exception. Exceptions that are
    not ours are reported as operational failures.
    """
    if isinstance(exc, DbbakError):
        return exc.kind
    return 'FatalIOError'

def exit_code_of(exc):
    if isinstance(exc, DbbakError):
        return exc.exit_code
    if isinstance(exc, KeyboardInterrupt):
        return CancelledError.exit_code
    return 2
