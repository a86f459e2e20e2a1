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
AES-256-GCM encryption of artifacts.

An encrypted artifact is laid out as:

    magic (16) | algorithm tag (16) | nonce (12) | salt (32) | ciphertext | GCM tag (16)

The 76-byte header is authenticated as GCM associated data, so flipping any
bit in either the header or the ciphertext makes decryption fail. One random
nonce is used for the whole artifact. The salt is only meaningful when the key
is derived from a passphrase, but is always present.
"""

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

import dbbak.err as err
import dbbak.config as config
from dbbak.pipeline import Transform
import dbbak.log
log = dbbak.log.getLogger(__name__)

MAGIC = b'DBBAKENCRYPTED01'
ALGORITHM = 'aes-256-gcm'
MAGIC_LEN = 16
ALGO_LEN = 16
NONCE_LEN = 12
SALT_LEN = 32
HEADER_LEN = MAGIC_LEN + ALGO_LEN + NONCE_LEN + SALT_LEN
TAG_LEN = 16
KEY_LEN = 32
PBKDF2_ITERATIONS = 600000

assert len(MAGIC) == MAGIC_LEN

class Header:
    def __init__(self, nonce, salt, algorithm=ALGORITHM):
        self.nonce = nonce
        self.salt = salt
        self.algorithm = algorithm

    @classmethod
    def new(cls):
        return cls(os.urandom(NONCE_LEN), os.urandom(SALT_LEN))

    def pack(self):
        algo = self.algorithm.encode('ascii').ljust(ALGO_LEN, b'\0')
        return MAGIC + algo + self.nonce + self.salt

    @classmethod
    def parse(cls, data):
        if len(data) < HEADER_LEN:
            raise err.DataError("Encrypted data is truncated (%d bytes, header needs %d)" % (
                                len(data), HEADER_LEN))
        if data[:MAGIC_LEN] != MAGIC:
            raise err.DataError("Data does not start with the encryption magic")

        pos = MAGIC_LEN
        algo = data[pos:pos+ALGO_LEN].rstrip(b'\0')
        pos += ALGO_LEN
        try:
            algo = algo.decode('ascii')
        except UnicodeDecodeError:
            raise err.DataError("Garbled algorithm tag in encryption header") from None
        if algo != ALGORITHM:
            raise err.DataError("Unsupported encryption algorithm '%s'" % algo)

        nonce = data[pos:pos+NONCE_LEN]
        pos += NONCE_LEN
        salt = data[pos:pos+SALT_LEN]
        return cls(nonce, salt, algorithm=algo)

def is_encrypted(head):
    """
    Check if the given leading bytes of a file look like an encrypted
    artifact.
    """
    return head[:MAGIC_LEN] == MAGIC

def derive_key(passphrase, salt):
    if isinstance(passphrase, str):
        passphrase = passphrase.encode('utf-8')
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt,
                     iterations=PBKDF2_ITERATIONS)
    return kdf.derive(passphrase)

_hex_key_re = re.compile(r'^[0-9a-fA-F]{%d}$' % (KEY_LEN * 2))

def _decode_text_key(text):
    """
    Decode a key written as text: hex digits, or base64. Returns None if
    'text' is neither, in which case it's a passphrase.
    """
    text = text.strip()
    if _hex_key_re.match(text):
        return bytes.fromhex(text)
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(decoded) != KEY_LEN:
        return None
    return decoded

class KeySource:
    """
    Key material for encrypting or decrypting artifacts.

    Either holds a raw 32-byte key, or a passphrase that gets turned into a
    key (per salt) with PBKDF2-SHA256.
    """
    def __init__(self, raw_key=None, passphrase=None, origin=None):
        if (raw_key is None) == (passphrase is None):
            raise err.InternalError("KeySource needs exactly one of raw_key or passphrase")
        if raw_key is not None and len(raw_key) != KEY_LEN:
            raise err.ConfigError("Encryption key must be %d bytes, not %d" % (
                                  KEY_LEN, len(raw_key)))
        if passphrase is not None and not passphrase:
            raise err.ConfigError("Encryption passphrase is empty")
        self._raw_key = raw_key
        self._passphrase = passphrase
        self._derived = {}
        self.origin = origin

    def key_for(self, salt):
        if self._raw_key is not None:
            return self._raw_key
        key = self._derived.get(salt)
        if key is None:
            log.d("Deriving key from passphrase (%d iterations)" % PBKDF2_ITERATIONS)
            key = derive_key(self._passphrase, salt)
            self._derived[salt] = key
        return key

    @classmethod
    def from_key_file(cls, path):
        try:
            with open(path, 'rb') as fh:
                data = fh.read()
        except OSError as exc:
            raise err.ConfigError("Cannot read encryption key file '%s': %s" % (
                                  path, exc)) from None

        if len(data) == KEY_LEN:
            return cls(raw_key=data, origin=path)

        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError:
            raise err.ConfigError("Encryption key file '%s' is neither a %d-byte key nor text" % (
                                  path, KEY_LEN)) from None

        key = _decode_text_key(text)
        if key is not None:
            return cls(raw_key=key, origin=path)
        return cls(passphrase=text.strip(), origin=path)

    @classmethod
    def from_passphrase_file(cls, path):
        try:
            with open(path, 'r') as fh:
                text = fh.read()
        except OSError as exc:
            raise err.ConfigError("Cannot read passphrase file '%s': %s" % (
                                  path, exc)) from None
        return cls(passphrase=text.rstrip('\r\n'), origin=path)

    @classmethod
    def from_env(cls, env_name, environ=None):
        if environ is None:
            environ = os.environ
        text = environ.get(env_name)
        if not text:
            return None
        key = _decode_text_key(text)
        if key is not None:
            return cls(raw_key=key, origin='$%s' % env_name)
        return cls(passphrase=text, origin='$%s' % env_name)

    @classmethod
    def load(cls, key_file=None, passphrase_file=None, env_name=None,
             environ=None, required=False):
        """
        Find our key material. A key file wins over a passphrase file, which
        wins over the environment variable.

        Returns:
            `KeySource`, or None if no key source is configured and
            'required' is False.
        """
        if key_file is None:
            key_file = config.get('crypt/key_file')
        if passphrase_file is None:
            passphrase_file = config.get('crypt/passphrase_file')
        if env_name is None:
            env_name = config.get('crypt/key_env')

        if key_file:
            return cls.from_key_file(key_file)
        if passphrase_file:
            return cls.from_passphrase_file(passphrase_file)
        if env_name:
            ret = cls.from_env(env_name, environ)
            if ret is not None:
                return ret

        if required:
            raise err.KeyRequiredError(("No encryption key available: give a key file, a " +
                                        "passphrase file, or set $%s") % env_name)
        return None

class Encrypt(Transform):
    name = 'encrypt'

    def __init__(self, keysrc, header=None):
        self._keysrc = keysrc
        self._header = header
        self._encryptor = None

    def _start(self):
        if self._header is None:
            self._header = Header.new()
        header_bytes = self._header.pack()
        key = self._keysrc.key_for(self._header.salt)
        self._encryptor = Cipher(algorithms.AES(key),
                                 modes.GCM(self._header.nonce)).encryptor()
        self._encryptor.authenticate_additional_data(header_bytes)
        return header_bytes

    def update(self, data):
        prefix = b''
        if self._encryptor is None:
            prefix = self._start()
        return prefix + self._encryptor.update(data)

    def finish(self):
        prefix = b''
        if self._encryptor is None:
            prefix = self._start()
        tail = self._encryptor.finalize()
        return prefix + tail + self._encryptor.tag

class Decrypt(Transform):
    name = 'decrypt'

    def __init__(self, keysrc):
        self._keysrc = keysrc
        self._decryptor = None
        self._buf = b''
        self.header = None

    def _start(self):
        header_bytes = self._buf[:HEADER_LEN]
        self.header = Header.parse(header_bytes)
        key = self._keysrc.key_for(self.header.salt)
        self._decryptor = Cipher(algorithms.AES(key),
                                 modes.GCM(self.header.nonce)).decryptor()
        self._decryptor.authenticate_additional_data(header_bytes)
        self._buf = self._buf[HEADER_LEN:]

    def update(self, data):
        self._buf += data
        if self._decryptor is None:
            if len(self._buf) < HEADER_LEN:
                return b''
            self._start()

        # Hold back what might be the GCM tag at the very end
        if len(self._buf) <= TAG_LEN:
            return b''
        body = self._buf[:-TAG_LEN]
        self._buf = self._buf[-TAG_LEN:]
        return self._decryptor.update(body)

    def finish(self):
        if self._decryptor is None:
            if len(self._buf) < HEADER_LEN:
                raise err.DataError("Encrypted data is truncated (no complete header)")
            self._start()
        if len(self._buf) != TAG_LEN:
            raise err.DataError("Encrypted data is truncated (no authentication tag)")
        try:
            return self._decryptor.finalize_with_tag(self._buf)
        except InvalidTag:
            raise err.DataError("Decryption failed: authentication tag mismatch " +
                                "(wrong key, or the data is corrupted)") from None
