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
Checking artifacts against their sidecars.
"""

import os
import os.path

import dbbak.err as err
import dbbak.crypt as crypt
import dbbak.layout as layout
import dbbak.util as util
import dbbak.log
log = dbbak.log.getLogger(__name__)

def check_header(artifact, info=None, keysrc=None):
    """
    Look at the leading bytes of an artifact: an encryption header must parse
    and name an algorithm we support, and what the bytes say about encryption,
    compression and format must agree with the info sidecar, if there is
    one. The format can only be seen through encryption when 'keysrc' is
    given.

    Returns:
        `dbbak.layout.FormatInfo`

    Raises:
        DataError: The header is damaged or doesn't match the info file.
    """
    fmt = layout.detect_format(artifact, keysrc)
    if fmt.encrypted:
        with open(artifact, 'rb') as fh:
            crypt.Header.parse(fh.read(crypt.HEADER_LEN))

    if info is None:
        return fmt

    if bool(info.encrypted) != fmt.encrypted:
        raise err.DataError("Artifact '%s' is %s, but its info file says it is %s" % (
                            artifact, _enc_str(fmt.encrypted), _enc_str(info.encrypted)))
    if fmt.format is None:
        return fmt

    # 'internal' means the dump tool compressed inside its own format
    compressed = info.compression not in (None, 'none', 'internal')
    if compressed != fmt.compressed:
        raise err.DataError("Artifact '%s' is %scompressed, but its info file records compression '%s'" % (
                            artifact, '' if fmt.compressed else 'not ', info.compression))
    if info.format is not None and info.format != fmt.format:
        raise err.DataError("Artifact '%s' looks like %s data, but its info file records format '%s'" % (
                            artifact, fmt.format, info.format))
    return fmt

def _enc_str(encrypted):
    return 'encrypted' if encrypted else 'not encrypted'

def verify(artifact, quick=False, keysrc=None, cancel=None):
    """
    Check that an artifact is intact.

    A full check hashes every byte of the artifact and compares the result
    to the checksum sidecar. A quick check only makes sure the sidecars are
    there and the size matches what the info sidecar recorded. Both check
    the artifact's header (see `check_header`).

    Returns:
        dict: What we checked.

    Raises:
        NotFoundError: The artifact or its checksum sidecar is missing.
        ChecksumError: The artifact's bytes don't match the sidecar.
        DataError: The recorded size doesn't match, or the header is bad.
    """
    try:
        size = os.path.getsize(artifact)
    except FileNotFoundError:
        raise err.NotFoundError("Artifact '%s' does not exist" % artifact) from None

    expected = layout.read_checksum(artifact)
    info = layout.read_info(artifact, missing_ok=True)
    ret = {'artifact': artifact, 'size': size, 'sha256': expected, 'quick': quick,
           'info': info is not None, 'ok': False}

    if info is not None:
        if info.size is not None and int(info.size) != size:
            raise err.DataError("Artifact '%s' is %d bytes, but its info file records %d bytes" % (
                                artifact, size, info.size))
        if info.sha256 and info.sha256.lower() != expected:
            raise err.DataError("Artifact '%s': checksum file and info file disagree (%s vs %s)" % (
                                artifact, expected, info.sha256))
    else:
        log.d("No info file for %s; skipping size check" % artifact)

    if not quick:
        log.d("Hashing %s (%s)" % (artifact, util.PrettyBytes.pretty(size)))
        actual = util.checksum('sha256', artifact, cancel=cancel)
        if actual != expected:
            raise err.ChecksumError("Artifact '%s' is corrupt: SHA-256 is %s, expected %s" % (
                                    artifact, actual, expected))

    fmt = check_header(artifact, info, keysrc=keysrc)
    ret['encrypted'] = fmt.encrypted
    ret['format'] = fmt.format

    ret['ok'] = True
    log.info('verify_ok', "Artifact %s verified (%s%s)" % (
                          artifact, util.PrettyBytes.pretty(size),
                          ', quick check' if quick else ', sha256 ok'))
    return ret

def verify_dir(directory, pattern=None, quick=False, keysrc=None, cancel=None):
    """
    Verify every artifact in 'directory'. A failure for one artifact is
    recorded and does not stop the others.

    Returns:
        dict: 'verified' and 'failed' lists.
    """
    verified = []
    failed = []
    for path in layout.list_artifacts(directory, pattern):
        if cancel is not None:
            cancel.check()
        try:
            verify(path, quick=quick, keysrc=keysrc, cancel=cancel)
            verified.append(path)
        except (err.DataError, err.NotFoundError) as exc:
            log.error('verify_failed', "%s" % exc)
            failed.append({'artifact': path, 'error': str(exc), 'error_kind': err.kind_of(exc)})
    return {'verified': verified, 'failed': failed}
