"""
Machine-bound encrypted snapshot of the active license.

The AES-GCM key is derived from the machine identity, so a cache file copied
to another host fails tag verification there and reads back as absent.
"""
import json
import logging
import os
import secrets
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ValidationError

from machine_identity import normalize_machine_id

logger = logging.getLogger(__name__)

CACHE_FILENAME = "license.json.enc"
KDF_SALT = b"hostelpro-license-cache"  # fixed build constant, not a secret
KDF_ITERATIONS = 100_000
NONCE_SIZE = 12
TAG_SIZE = 16


class LicenseCacheEntry(BaseModel):
    license_key: str
    hostel_name: str
    customer_name: str
    activated_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    machine_id_hash: str


class LicenseCache:
    def __init__(self, path: Union[str, Path], iterations: int = KDF_ITERATIONS):
        self.path = Path(path)
        self.iterations = iterations

    @classmethod
    def in_dir(cls, directory: Union[str, Path], **kwargs) -> "LicenseCache":
        return cls(Path(directory) / CACHE_FILENAME, **kwargs)

    def _derive_key(self, machine_identity: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=self.iterations,
        )
        return kdf.derive(normalize_machine_id(machine_identity).encode("utf-8"))

    def write(self, entry: LicenseCacheEntry, machine_identity: str) -> None:
        key = self._derive_key(machine_identity)
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, entry.model_dump_json().encode("utf-8"), None)
        payload = {
            "nonce": nonce.hex(),
            "auth_tag": sealed[-TAG_SIZE:].hex(),
            "ciphertext": sealed[:-TAG_SIZE].hex(),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".license-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("license cache written for %s", entry.license_key)

    def read(self, machine_identity: str) -> Optional[LicenseCacheEntry]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            nonce = bytes.fromhex(payload["nonce"])
            sealed = bytes.fromhex(payload["ciphertext"]) + bytes.fromhex(payload["auth_tag"])
            plaintext = AESGCM(self._derive_key(machine_identity)).decrypt(nonce, sealed, None)
            return LicenseCacheEntry.model_validate_json(plaintext)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, InvalidTag, ValidationError) as e:
            # wrong machine, corruption and tampering all read as "no cache"
            logger.debug("license cache unreadable: %r", e)
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.exists()
