# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/key_material.py

Ephemeral AES-256 key + 128-bit IV that seed the keystream.

- never written to the device
- optionally exported to an operator-chosen side file (mode 0600)
- passphrase mode stretches the passphrase with PBKDF2-HMAC-SHA256 over
  a random salt; the salt is exported with the key so the material can
  be re-derived from the passphrase later
- held in bytearrays so wipe() can zero them after use
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from keystick_core.errors import OutputWriteFailure

log = logging.getLogger(__name__)

KEY_LEN = 32
IV_LEN = 16
SALT_LEN = 16
PBKDF2_ITERATIONS = 600_000


def derive_from_passphrase(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> tuple[bytes, bytes]:
    """
    PBKDF2-HMAC-SHA256 -> (key, iv); one 48-byte derivation split in two.
    """
    if not isinstance(passphrase, str) or not passphrase:
        raise ValueError("passphrase must be a non-empty str")
    if not isinstance(salt, (bytes, bytearray)) or len(salt) < SALT_LEN:
        raise ValueError(f"salt must be at least {SALT_LEN} bytes")
    if not isinstance(iterations, int) or iterations <= 0:
        raise ValueError("iterations must be a positive int")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN + IV_LEN, salt=bytes(salt), iterations=iterations)
    okm = kdf.derive(passphrase.encode("utf-8"))
    return okm[:KEY_LEN], okm[KEY_LEN:]


class KeyMaterial:
    def __init__(
        self,
        key: bytes,
        iv: bytes,
        *,
        salt: Optional[bytes] = None,
        iterations: Optional[int] = None,
    ) -> None:
        if not isinstance(key, (bytes, bytearray)) or not isinstance(iv, (bytes, bytearray)):
            raise TypeError("key and iv must be bytes")
        if len(key) != KEY_LEN:
            raise ValueError(f"key must be {KEY_LEN} bytes, got {len(key)}")
        if len(iv) != IV_LEN:
            raise ValueError(f"iv must be {IV_LEN} bytes, got {len(iv)}")
        self._key = bytearray(key)
        self._iv = bytearray(iv)
        self.salt = None if salt is None else bytes(salt)
        self.iterations = iterations
        self._wiped = False

    @classmethod
    def generate(cls) -> "KeyMaterial":
        return cls(os.urandom(KEY_LEN), os.urandom(IV_LEN))

    @classmethod
    def from_passphrase(
        cls,
        passphrase: str,
        salt: Optional[bytes] = None,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> "KeyMaterial":
        if salt is None:
            salt = os.urandom(SALT_LEN)
        key, iv = derive_from_passphrase(passphrase, salt, iterations)
        return cls(key, iv, salt=salt, iterations=iterations)

    @property
    def key(self) -> bytes:
        self._check()
        return bytes(self._key)

    @property
    def iv(self) -> bytes:
        self._check()
        return bytes(self._iv)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def _check(self) -> None:
        if self._wiped:
            raise RuntimeError("key material has been wiped")

    def export(self, path: str) -> None:
        """
        Write "Key: <hex>\\nIV: <hex>\\n" to `path`, readable by the owner only.
        Passphrase-derived material also records "Salt:" and "Iterations:".
        """
        self._check()
        text = f"Key: {self._key.hex()}\nIV: {self._iv.hex()}\n"
        if self.salt is not None:
            text += f"Salt: {self.salt.hex()}\nIterations: {self.iterations}\n"
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        except OSError as e:
            raise OutputWriteFailure(path, e) from e
        try:
            os.fchmod(fd, 0o600)
            os.write(fd, text.encode("ascii"))
        except OSError as e:
            raise OutputWriteFailure(path, e) from e
        finally:
            os.close(fd)
        log.info("key material exported to %s", path)

    @classmethod
    def load(cls, path: str) -> "KeyMaterial":
        fields: dict[str, str] = {}
        with open(path, "r", encoding="ascii") as f:
            for line in f:
                name, sep, value = line.partition(":")
                if sep:
                    fields[name.strip().lower()] = value.strip()
        try:
            salt = bytes.fromhex(fields["salt"]) if "salt" in fields else None
            iterations = int(fields["iterations"]) if "iterations" in fields else None
            return cls(bytes.fromhex(fields["key"]), bytes.fromhex(fields["iv"]), salt=salt, iterations=iterations)
        except (KeyError, ValueError) as e:
            raise ValueError(f"{path}: not a key export file") from e

    def wipe(self) -> None:
        for buf in (self._key, self._iv):
            for i in range(len(buf)):
                buf[i] = 0
        self._wiped = True

    def __enter__(self) -> "KeyMaterial":
        return self

    def __exit__(self, *exc: object) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "live"
        return f"KeyMaterial(<{state}>)"


def make_key_material(passphrase: Optional[str] = None) -> KeyMaterial:
    if passphrase is None:
        return KeyMaterial.generate()
    return KeyMaterial.from_passphrase(passphrase)
