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
Streaming byte pipelines.

A `Pipeline` is an ordered list of `Transform` objects. Bytes are pushed
through each transform in turn with `update`, and `finish` flushes each
transform (in order) once the source is exhausted. Nothing here ever holds
more than a few buffers' worth of data.

For a backup the chain is typically:

    Gzip (or ExternalGzip) -> Encrypt -> HashTee -> CountTee

and for a restore:

    HashVerify -> Decrypt -> Gunzip

A pipeline can be driven three ways: `pump(source, sink)` copies a reader into
a writer, `writer(sink)` gives a file-like object whose writes are transformed
into 'sink' (used for writing tar streams), and `reader(source)` gives a
file-like object that reads transformed data out of 'source' (used for
reading tar streams, and for feeding a child's stdin).
"""

import hashlib
import queue
import shutil
import threading
import time
import zlib

import dbbak.err as err
import dbbak.config as config
import dbbak.cmd as cmd
import dbbak.log
log = dbbak.log.getLogger(__name__)

class Transform:
    """
    Base class for pipeline stages; also the identity transform.
    """
    name = 'identity'

    def update(self, data):
        return data

    def finish(self):
        return b''

    def close(self):
        """
        Release any resources (child processes, etc) held by this transform.
        Called when the pipeline is aborted; must be safe to call at any time.
        """
        pass

class Gzip(Transform):
    name = 'gzip'

    def __init__(self, level=6):
        if level < 0 or level > 9:
            raise err.ConfigError("Compression level must be 0-9, not %d" % level)
        # wbits 31 gives us a gzip header and trailer
        self._comp = zlib.compressobj(level, zlib.DEFLATED, 31)

    def update(self, data):
        return self._comp.compress(data)

    def finish(self):
        return self._comp.flush(zlib.Z_FINISH)

class Gunzip(Transform):
    """
    Decompress gzip data, including several concatenated gzip members (which
    is what parallel gzip implementations may produce).
    """
    name = 'gunzip'

    def __init__(self):
        self._decomp = zlib.decompressobj(31)
        self._seen_data = False

    def update(self, data):
        out = []
        try:
            while data:
                self._seen_data = True
                out.append(self._decomp.decompress(data))
                if self._decomp.eof:
                    data = self._decomp.unused_data
                    self._decomp = zlib.decompressobj(31)
                    if not data:
                        self._seen_data = False
                else:
                    data = b''
        except zlib.error as exc:
            raise err.DataError("Decompression failed: %s" % exc) from None
        return b''.join(out)

    def finish(self):
        if self._seen_data and not self._decomp.eof:
            raise err.DataError("Decompression failed: compressed stream is truncated")
        return b''

class ExternalGzip(Transform):
    """
    Compress by running a parallel gzip program (pigz) as a child process.
    We write into its stdin from the pipeline thread, and a helper thread
    collects its stdout.
    """
    name = 'pigz'

    def __init__(self, argv, level=6, threads=None, cancel=None):
        argv = list(argv) + ['-%d' % level, '-c']
        if threads:
            argv += ['-p', str(threads)]
        self._cursor = cmd.Cursor(argv, parser=cmd.NullParser(name='pigz'),
                                  steal_stdout=True, stdin=True,
                                  cancel=cancel)
        self._queue = queue.Queue()
        self._exc = None
        self._done = False
        self._thread = threading.Thread(target=self._drain, name='pigz-drain')
        self._thread.daemon = True
        self._thread.start()

    def _drain(self):
        try:
            while True:
                buf = self._cursor.read_stdout(256 * 1024)
                if buf is None:
                    break
                self._queue.put(buf)
        except BaseException as exc:
            self._exc = exc
        finally:
            self._queue.put(None)

    def _collect(self, block):
        out = []
        while True:
            try:
                buf = self._queue.get(block=block)
            except queue.Empty:
                break
            if buf is None:
                self._done = True
                break
            out.append(buf)
        return b''.join(out)

    def _raise_child_err(self):
        self._thread.join()
        if self._exc is not None:
            raise self._exc
        raise cmd.ProcessError("Compressor exited unexpectedly", argv=self._cursor.argv)

    def update(self, data):
        if self._exc is not None or self._done:
            self._raise_child_err()
        try:
            self._cursor.write_stdin(data)
        except cmd.ProcessError:
            self._raise_child_err()
        return self._collect(block=False)

    def finish(self):
        self._cursor.close_stdin()
        out = self._collect(block=True)
        self._thread.join()
        if self._exc is not None:
            raise self._exc
        return out

    def close(self):
        self._cursor.abort()

class HashTee(Transform):
    name = 'sha256'

    def __init__(self, algo='sha256'):
        self._hash = hashlib.new(algo)

    def update(self, data):
        self._hash.update(data)
        return data

    def hexdigest(self):
        return self._hash.hexdigest()

class HashVerify(HashTee):
    """
    Like HashTee, but compare the digest to an expected value when the stream
    ends.
    """
    name = 'sha256-verify'

    def __init__(self, expected, what='data', algo='sha256'):
        super().__init__(algo)
        self._expected = expected.lower()
        self._what = what

    def finish(self):
        digest = self.hexdigest()
        if digest != self._expected:
            raise err.ChecksumError("Checksum mismatch for %s: expected %s, got %s" % (
                                    self._what, self._expected, digest))
        return b''

class CountTee(Transform):
    name = 'count'

    def __init__(self):
        self.count = 0

    def update(self, data):
        self.count += len(data)
        return data

class ProgressTee(Transform):
    """
    Report progress to a callback as (bytes so far, total bytes or None), at
    most once per 'interval' seconds, and once more at the end.
    """
    name = 'progress'

    def __init__(self, callback, total=None, interval=1.0):
        self._cb = callback
        self._total = total
        self._interval = interval
        self._count = 0
        self._last = 0

    def update(self, data):
        self._count += len(data)
        now = time.monotonic()
        if now - self._last >= self._interval:
            self._last = now
            self._cb(self._count, self._total)
        return data

    def finish(self):
        self._cb(self._count, self._total)
        return b''

def compressor(level, cancel=None, threads=None):
    """
    Get a compressing transform for the given level. We use an external
    parallel gzip if one is configured and can be found, and in-process gzip
    otherwise.
    """
    pigz = config.get('compress/pigz')
    if config.get('compress/external') and pigz and shutil.which(pigz[0]):
        log.d("Using external compressor %s" % pigz[0])
        return ExternalGzip(pigz, level=level, threads=threads, cancel=cancel)
    log.d("Using in-process gzip")
    return Gzip(level)

class PipelineResult:
    def __init__(self, bytes_in, bytes_out, sha256):
        self.bytes_in = bytes_in
        self.bytes_out = bytes_out
        self.sha256 = sha256

class Pipeline:
    def __init__(self, transforms=None, cancel=None, bufsize=None):
        if transforms is None:
            transforms = []
        self.transforms = [t for t in transforms if t is not None]
        self._cancel = cancel
        if bufsize is None:
            bufsize = config.get('bufsize')
        self.bufsize = bufsize
        self.bytes_in = 0
        self.bytes_out = 0
        self._finished = False
        self._closed = False

    def _push_from(self, idx, data):
        for trans in self.transforms[idx:]:
            if not data:
                return b''
            data = trans.update(data)
        return data

    def push(self, data):
        if self._cancel is not None:
            self._cancel.check()
        self.bytes_in += len(data)
        out = self._push_from(0, data)
        self.bytes_out += len(out)
        return out

    def finish(self):
        assert not self._finished
        self._finished = True
        out = []
        for idx, trans in enumerate(self.transforms):
            tail = trans.finish()
            out.append(self._push_from(idx + 1, tail))
        ret = b''.join(out)
        self.bytes_out += len(ret)
        return ret

    def abort(self):
        """
        Release every transform's resources, last stage first.
        """
        if self._closed:
            return
        self._closed = True
        for trans in reversed(self.transforms):
            try:
                trans.close()
            except Exception:
                log.exception('pipeline_close_err', "Error closing pipeline stage %s" % trans.name)

    def sha256(self):
        for trans in self.transforms:
            if isinstance(trans, HashTee):
                return trans.hexdigest()
        return None

    def result(self):
        return PipelineResult(self.bytes_in, self.bytes_out, self.sha256())

    def pump(self, source, sink):
        """
        Copy everything from 'source' to 'sink' through our transforms.

        Returns:
            `PipelineResult`
        """
        try:
            while True:
                buf = source.read(self.bufsize)
                if not buf:
                    break
                out = self.push(buf)
                if out:
                    sink.write(out)
            out = self.finish()
            if out:
                sink.write(out)
        except BaseException:
            self.abort()
            raise
        return self.result()

    def writer(self, sink):
        return _PipelineWriter(self, sink)

    def reader(self, source):
        return _PipelineReader(self, source)

class _PipelineWriter:
    def __init__(self, pipeline, sink):
        self._pipeline = pipeline
        self._sink = sink
        self.closed = False

    def write(self, data):
        try:
            out = self._pipeline.push(bytes(data))
            if out:
                self._sink.write(out)
        except BaseException:
            self._pipeline.abort()
            raise
        return len(data)

    def flush(self):
        pass

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            out = self._pipeline.finish()
            if out:
                self._sink.write(out)
        except BaseException:
            self._pipeline.abort()
            raise

class _PipelineReader:
    def __init__(self, pipeline, source):
        self._pipeline = pipeline
        self._source = source
        self._buf = bytearray()
        self._eof = False
        self.closed = False

    def _fill(self, want):
        try:
            while not self._eof and (want < 0 or len(self._buf) < want):
                chunk = self._source.read(self._pipeline.bufsize)
                if not chunk:
                    self._buf += self._pipeline.finish()
                    self._eof = True
                else:
                    self._buf += self._pipeline.push(chunk)
        except BaseException:
            self._pipeline.abort()
            raise

    def read(self, size=-1):
        if size is None:
            size = -1
        self._fill(size)
        if size < 0:
            size = len(self._buf)
        ret = bytes(self._buf[:size])
        del self._buf[:size]
        return ret

    def close(self):
        self.closed = True
