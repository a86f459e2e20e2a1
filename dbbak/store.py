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

import contextlib
import datetime
import os
import os.path
import random
import tempfile
import time
import urllib.parse

import boto3
import boto3.s3.transfer
import botocore.config
import botocore.exceptions

import dbbak.err as err
import dbbak.config as config
import dbbak.util as util
import dbbak.pipeline as pipeline
import dbbak.layout as layout
import dbbak.log
log = dbbak.log.getLogger(__name__)

# Schemes we know about, but for which we don't ship a backend
_unbundled_schemes = ('gs', 'gcs', 'azure', 'b2')

class StoreEntry:
    """
    Attributes:
        key (str): Object key (path relative to the store root).
        size (int): Object size, in bytes.
        mtime (float): Modification time, in unix time.
        sha256 (str): Content SHA-256 recorded as object metadata, if any.
    """
    def __init__(self, key, size, mtime, sha256=None):
        self.key = key
        self.size = size
        self.mtime = mtime
        self.sha256 = sha256

    def __repr__(self):
        return "<StoreEntry %s size %d>" % (self.key, self.size)

class PendingFile:
    """
    A file being written into 'directory' that only appears under its final
    name once `commit` is called. Until then it lives under a temporary name
    in the same directory, and `discard` removes it.

        with PendingFile(backup_dir, 'db_foo_20240101_000000.dump') as pending:
            pending.fh.write(data)
            pending.commit()
    """
    def __init__(self, directory, name, mode=0o600):
        self.directory = directory
        self.name = name
        self.path = os.path.join(directory, name)
        self.fh = tempfile.NamedTemporaryFile(dir=directory,
                                              prefix='.%s.' % name,
                                              suffix='.tmp', delete=False)
        os.chmod(self.fh.name, mode)
        self.tmp_path = self.fh.name
        self.committed = False

    def commit(self, replace=True):
        if not self.fh.closed:
            self.fh.flush()
            os.fsync(self.fh.fileno())
            self.fh.close()
        if replace:
            os.rename(self.tmp_path, self.path)
        else:
            # link() fails if the target exists, unlike rename()
            os.link(self.tmp_path, self.path)
            os.unlink(self.tmp_path)
        util.fsync_dir(self.directory)
        self.committed = True
        return self.path

    def discard(self):
        if not self.fh.closed:
            self.fh.close()
        if not self.committed:
            util.remove_quiet(self.tmp_path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.discard()

def clean_tmp(directory, max_age):
    """
    Remove temporary files (from PendingFile) in 'directory' older than
    'max_age' seconds, left behind by operations that were killed.
    """
    now = int(time.time())
    for name in os.listdir(directory):
        path = os.path.join(directory, name)
        if not (name.startswith('.') and name.endswith('.tmp')) or not os.path.isfile(path):
            continue
        mtime = os.path.getmtime(path)
        if now > mtime and now - mtime > max_age:
            log.warn('stale_tmp', ("Temp file %s looks stale; a previous operation has " +
                                   "possibly left it behind. Removing it (mtime %d, now %d)") % (
                                   path, mtime, now))
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)

class StoreURI:
    """
    A parsed object store URI, like 's3://bucket/some/prefix?region=eu-west-1'
    or 'file:///var/backups'.
    """
    def __init__(self, uri):
        self.uri = uri
        parsed = urllib.parse.urlsplit(uri)
        self.scheme = parsed.scheme.lower()
        self.params = dict(urllib.parse.parse_qsl(parsed.query))

        if self.scheme == '' or self.scheme == 'file':
            self.scheme = 'file'
            self.bucket = None
            self.prefix = parsed.path if parsed.scheme else uri
            if parsed.netloc:
                # file://relative/path
                self.prefix = parsed.netloc + parsed.path
        else:
            self.bucket = parsed.netloc
            self.prefix = parsed.path.lstrip('/')
            if not self.bucket:
                raise err.ConfigError("URI '%s' has no bucket name" % uri)

    def key(self, name):
        if not self.prefix:
            return name
        return self.prefix.rstrip('/') + '/' + name

    def __str__(self):
        return self.uri

class LocalStore:
    """
    Object store backed by a local directory; keys are relative paths.
    """
    name = 'file'

    def __init__(self, uri):
        self.uri = uri
        self.root = uri.prefix

    def _path(self, key):
        path = os.path.normpath(os.path.join(self.root, key))
        if os.path.commonpath([os.path.abspath(path), os.path.abspath(self.root)]) != os.path.abspath(self.root):
            raise err.ConfigError("Key '%s' escapes the store root" % key)
        return path

    def upload(self, key, reader, size=None, sha256=None, cancel=None):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with PendingFile(os.path.dirname(path), os.path.basename(path)) as pending:
            pipe = pipeline.Pipeline([pipeline.HashTee()], cancel=cancel)
            res = pipe.pump(reader, pending.fh)
            if sha256 is not None and res.sha256 != sha256:
                raise err.ChecksumError("Upload of %s: expected SHA-256 %s, wrote %s" % (
                                        key, sha256, res.sha256))
            pending.commit()
        return StoreEntry(key, res.bytes_in, time.time(), res.sha256)

    def download(self, key):
        try:
            return open(self._path(key), 'rb')
        except FileNotFoundError:
            raise err.NotFoundError("'%s' does not exist in %s" % (key, self.uri)) from None

    def list(self, prefix=''):
        base = self._path(prefix) if prefix else self.root
        if os.path.isfile(base):
            st = os.stat(base)
            yield StoreEntry(prefix, st.st_size, st.st_mtime)
            return
        if not os.path.isdir(base):
            return
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                try:
                    st = os.stat(path)
                except FileNotFoundError:
                    continue
                yield StoreEntry(os.path.relpath(path, self.root), st.st_size, st.st_mtime)

    def delete(self, key):
        util.remove_quiet(self._path(key))

    def stat(self, key):
        try:
            st = os.stat(self._path(key))
        except FileNotFoundError:
            return None
        return StoreEntry(key, st.st_size, st.st_mtime)

_auth_codes = ('AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch',
               'ExpiredToken', 'InvalidToken', 'AllAccessDisabled', '403', '401')
_notfound_codes = ('NoSuchKey', 'NoSuchBucket', 'NotFound', '404')

def _classify(exc, what):
    """
    Turn a boto exception into one of our errors. Returns the error to raise,
    which is a TransientIOError if retrying may help.
    """
    if isinstance(exc, err.DbbakError):
        return exc
    if isinstance(exc, (botocore.exceptions.NoCredentialsError,
                        botocore.exceptions.PartialCredentialsError)):
        return err.AuthError("%s: %s" % (what, exc))
    if isinstance(exc, botocore.exceptions.ClientError):
        code = str(exc.response.get('Error', {}).get('Code', ''))
        if code in _auth_codes:
            return err.AuthError("%s: %s" % (what, exc))
        if code in _notfound_codes:
            return err.NotFoundError("%s: %s" % (what, exc))
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        if status >= 500 or code in ('SlowDown', 'Throttling', 'RequestTimeout',
                                     'RequestTimeTooSkewed', 'InternalError'):
            return err.TransientIOError("%s: %s" % (what, exc))
        return err.StorageError("%s: %s" % (what, exc))
    if isinstance(exc, (botocore.exceptions.EndpointConnectionError,
                        botocore.exceptions.ConnectionClosedError,
                        botocore.exceptions.ReadTimeoutError,
                        botocore.exceptions.ConnectTimeoutError,
                        ConnectionError, TimeoutError)):
        return err.TransientIOError("%s: %s" % (what, exc))
    if isinstance(exc, boto3.exceptions.S3UploadFailedError):
        # s3transfer wraps the real ClientError text into this
        msg = str(exc)
        for code in _auth_codes:
            if code in msg:
                return err.AuthError("%s: %s" % (what, exc))
        return err.TransientIOError("%s: %s" % (what, exc))
    if isinstance(exc, botocore.exceptions.BotoCoreError):
        return err.TransientIOError("%s: %s" % (what, exc))
    return None

class S3Store:
    """
    Object store on S3, or anything speaking the S3 protocol (minio).

    Recognized URI parameters: region, endpoint, create_bucket.
    """
    name = 's3'

    def __init__(self, uri, client=None, cancel=None):
        self.uri = uri
        self.bucket = uri.bucket
        self._cancel = cancel
        self._retries = config.get('cloud/retries')
        self._create_bucket = uri.params.get('create_bucket', '').lower() in ('1', 'true', 'yes')
        self._bucket_checked = False

        self._transfer_config = boto3.s3.transfer.TransferConfig(
            multipart_threshold=config.get('cloud/multipart_threshold'),
            multipart_chunksize=config.get('cloud/part_size'),
            max_concurrency=config.get('cloud/max_concurrency'),
        )

        if client is None:
            client = self._make_client(uri)
        self._client = client

    @staticmethod
    def _make_client(uri):
        timeout = config.get('cloud/request_timeout')
        s3_opts = {}
        endpoint = uri.params.get('endpoint')
        if uri.scheme == 'minio':
            s3_opts['addressing_style'] = 'path'
            if endpoint is None:
                endpoint = 'http://localhost:9000'

        bconfig = botocore.config.Config(connect_timeout=timeout,
                                         read_timeout=timeout,
                                         # We do our own retries
                                         retries={'total_max_attempts': 1},
                                         s3=s3_opts)

        kwargs = {}
        if uri.scheme == 'minio' and 'AWS_ACCESS_KEY_ID' not in os.environ:
            if os.environ.get('MINIO_ACCESS_KEY'):
                kwargs['aws_access_key_id'] = os.environ['MINIO_ACCESS_KEY']
                kwargs['aws_secret_access_key'] = os.environ.get('MINIO_SECRET_KEY')

        session = boto3.session.Session(region_name=uri.params.get('region'), **kwargs)
        return session.client('s3', endpoint_url=endpoint, config=bconfig)

    def _sleep(self, attempt):
        delay = min(30.0, 2 ** attempt) * (0.5 + random.random() / 2)
        log.d("Sleeping %.1f seconds before retrying" % delay)
        if self._cancel is not None:
            if self._cancel.wait(delay):
                self._cancel.check()
        else:
            time.sleep(delay)

    def _retry(self, what, func, retryable=True):
        attempts = self._retries if retryable else 1
        for attempt in range(attempts):
            if self._cancel is not None:
                self._cancel.check()
            try:
                return func()
            except Exception as exc:
                mapped = _classify(exc, what)
                if mapped is None:
                    raise
                if not isinstance(mapped, err.TransientIOError) or attempt + 1 >= attempts:
                    if mapped is exc:
                        raise
                    raise mapped from exc
                log.warn('cloud_retry', "%s failed (attempt %d/%d): %s" % (
                                        what, attempt + 1, attempts, exc))
            self._sleep(attempt)
        raise err.InternalError("retry loop fell through")

    def _ensure_bucket(self):
        if self._bucket_checked or not self._create_bucket:
            return
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except botocore.exceptions.ClientError as exc:
            mapped = _classify(exc, "Checking bucket %s" % self.bucket)
            if not isinstance(mapped, err.NotFoundError):
                raise mapped from exc
            log.info('bucket_create', "Creating bucket %s" % self.bucket)
            self._retry("Creating bucket %s" % self.bucket,
                        lambda: self._client.create_bucket(Bucket=self.bucket))
        self._bucket_checked = True

    def upload(self, key, reader, size=None, sha256=None, cancel=None):
        """
        Upload from 'reader'. Objects larger than cloud/multipart_threshold
        go up as a multipart upload, with parts of cloud/part_size bytes sent
        by up to cloud/max_concurrency threads. Cancelling aborts the upload.
        """
        if cancel is None:
            cancel = self._cancel
        self._ensure_bucket()

        extra = {}
        if sha256 is not None:
            extra['Metadata'] = {'sha256': sha256}

        def progress(nbytes):
            # Runs in the transfer threads; raising here makes s3transfer
            # abort the (multipart) upload.
            if cancel is not None:
                cancel.check()

        seekable = hasattr(reader, 'seekable') and reader.seekable()

        def do_upload():
            if seekable:
                reader.seek(0)
            self._client.upload_fileobj(reader, self.bucket, key,
                                        ExtraArgs=extra,
                                        Config=self._transfer_config,
                                        Callback=progress)

        self._retry("Uploading %s to %s" % (key, self.uri), do_upload,
                    retryable=seekable)
        return self.stat(key)

    def download(self, key):
        resp = self._retry("Downloading %s from %s" % (key, self.uri),
                           lambda: self._client.get_object(Bucket=self.bucket, Key=key))
        return resp['Body']

    def list(self, prefix=''):
        paginator = self._client.get_paginator('list_objects_v2')
        pages = paginator.paginate(Bucket=self.bucket, Prefix=prefix)
        try:
            for page in pages:
                for obj in page.get('Contents', []):
                    yield StoreEntry(obj['Key'], obj['Size'],
                                     _to_unix(obj['LastModified']))
        except Exception as exc:
            mapped = _classify(exc, "Listing %s in %s" % (prefix, self.uri))
            if mapped is None or mapped is exc:
                raise
            raise mapped from exc

    def delete(self, key):
        self._retry("Deleting %s from %s" % (key, self.uri),
                    lambda: self._client.delete_object(Bucket=self.bucket, Key=key))

    def stat(self, key):
        try:
            resp = self._retry("Getting info for %s in %s" % (key, self.uri),
                               lambda: self._client.head_object(Bucket=self.bucket, Key=key))
        except err.NotFoundError:
            return None
        return StoreEntry(key, resp['ContentLength'],
                          _to_unix(resp['LastModified']),
                          resp.get('Metadata', {}).get('sha256'))

def _to_unix(value):
    if isinstance(value, datetime.datetime):
        return value.timestamp()
    return float(value)

def open_store(uri, client=None, cancel=None):
    """
    Get the store object for the given URI string.
    """
    if not isinstance(uri, StoreURI):
        uri = StoreURI(uri)
    if uri.scheme == 'file':
        return LocalStore(uri)
    if uri.scheme in ('s3', 'minio'):
        return S3Store(uri, client=client, cancel=cancel)
    if uri.scheme in _unbundled_schemes:
        raise err.UnsupportedError("Object store scheme '%s' is recognized, but no backend for it is installed" %
                                   uri.scheme)
    raise err.ConfigError("Unknown object store scheme '%s' in '%s'" % (uri.scheme, uri))

def push_artifact(artifact, uri, client=None, cancel=None):
    """
    Upload an artifact and its sidecars to the given store URI, under the
    artifact's file name. The checksum sidecar goes last, so a reader that
    sees it can trust the artifact is complete.

    Returns:
        list of str: The keys we uploaded.
    """
    store = open_store(uri, client=client, cancel=cancel)
    base = os.path.basename(artifact)
    digest = layout.read_checksum(artifact)
    keys = []

    log.info('upload_start', "Uploading %s to %s" % (artifact, uri))
    with open(artifact, 'rb') as fh:
        store.upload(store.uri.key(base), fh, size=os.path.getsize(artifact),
                     sha256=digest, cancel=cancel)
    keys.append(store.uri.key(base))

    for side in (layout.info_path(artifact), layout.checksum_path(artifact)):
        if not os.path.exists(side):
            continue
        key = store.uri.key(os.path.basename(side))
        with open(side, 'rb') as fh:
            store.upload(key, fh, size=os.path.getsize(side), cancel=cancel)
        keys.append(key)

    log.info('upload_done', "Uploaded %s to %s" % (util.list2str(keys), uri))
    return keys

def _fetch_small(store, key):
    body = store.download(key)
    try:
        return body.read()
    finally:
        body.close()

def fetch_artifact(uri, name, dest_dir, client=None, cancel=None):
    """
    Download the artifact 'name' and its sidecars from the store into
    'dest_dir'. The artifact's SHA-256 is computed while streaming and
    compared to the downloaded checksum sidecar; on a mismatch nothing is left
    behind in 'dest_dir'.

    Returns:
        str: Path to the downloaded artifact.
    """
    store = open_store(uri, client=client, cancel=cancel)
    dest = os.path.join(dest_dir, name)

    checksum_data = _fetch_small(store, store.uri.key(name + layout.CHECKSUM_EXT))
    parts = checksum_data.decode('utf-8', 'replace').split()
    if not parts:
        raise err.DataError("Checksum sidecar for %s in %s is empty" % (name, uri))
    expected = parts[0].lower()

    body = store.download(store.uri.key(name))
    try:
        with PendingFile(dest_dir, name) as pending:
            pipe = pipeline.Pipeline([pipeline.HashVerify(expected, what=name)],
                                     cancel=cancel)
            pipe.pump(body, pending.fh)
            pending.commit()
    finally:
        body.close()

    with open(layout.checksum_path(dest), 'wb') as fh:
        fh.write(checksum_data)

    stat = store.stat(store.uri.key(name + layout.INFO_EXT))
    if stat is not None:
        with open(layout.info_path(dest), 'wb') as fh:
            fh.write(_fetch_small(store, store.uri.key(name + layout.INFO_EXT)))

    log.info('download_done', "Downloaded %s from %s to %s" % (name, uri, dest))
    return dest
