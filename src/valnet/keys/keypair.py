# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/keys/keypair.py

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..errors import ProvisionError

_RAW = serialization.Encoding.Raw


@dataclass(frozen=True)
class Keypair:
    """
    Ed25519 keypair in the validator's on-disk format: a JSON array of 64
    integers, the 32-byte secret seed followed by the 32-byte public key.
    """
    secret: bytes
    public: bytes

    @classmethod
    def generate(cls) -> "Keypair":
        return cls.from_seed(
            Ed25519PrivateKey.generate().private_bytes(
                _RAW, serialization.PrivateFormat.Raw, serialization.NoEncryption()
            )
        )

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise ProvisionError(f"ed25519 seed must be 32 bytes, got {len(seed)}")
        public = Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes(
            _RAW, serialization.PublicFormat.Raw
        )
        return cls(secret=seed, public=public)

    @classmethod
    def read(cls, path: Path) -> "Keypair":
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            raise ProvisionError(f"cannot read keypair {path}: {e}") from e
        if not isinstance(data, list) or len(data) != 64:
            raise ProvisionError(f"{path} is not a 64-byte keypair file")
        try:
            raw = bytes(data)
        except (TypeError, ValueError) as e:
            raise ProvisionError(f"{path} holds a value that is not a byte: {e}") from e
        pair = cls.from_seed(raw[:32])
        if pair.public != raw[32:]:
            raise ProvisionError(f"{path}: public key does not match secret")
        return pair

    @property
    def pubkey(self) -> str:
        return base58.b58encode(self.public).decode("ascii")

    def to_json(self) -> str:
        return json.dumps(list(self.secret + self.public))

    def write(self, path: Path) -> None:
        write_private(path, self.to_json().encode("ascii"))


def write_private(path: Path, data: bytes) -> None:
    """Atomic write with mode 0600; the file is created already restricted."""
    path = Path(path)
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    except OSError as e:
        raise ProvisionError(f"cannot write keypair {path}: {e}") from e
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise ProvisionError(f"cannot write keypair {path}: {e}") from e


def read_pubkey(path: Path) -> str:
    return Keypair.read(path).pubkey
