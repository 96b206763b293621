"""
Node Identity

Generates, persists and loads the Ed25519 key pair that identifies a mirra
instance, signs protocol messages and verifies peer signatures. Also keeps
the trust store of pinned peer keys.
"""

import base64
import hashlib
import json
import os
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from mirra.errors import AuthenticationFailed, IdentityCorrupt
from mirra.logging import get_logger

logger = get_logger("identity")

PRIVATE_KEY_FILE = "private.key"
PUBLIC_KEY_FILE = "public.key"
KNOWN_PEERS_FILE = "known_peers.json"


def encode_public_key(public_key: Ed25519PublicKey) -> str:
    """Encode a public key for the wire (base64 of the raw 32 bytes)."""
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


def decode_public_key(encoded: str) -> Ed25519PublicKey:
    """Decode a wire-encoded public key. Raises ValueError on bad input."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid public key encoding: {e}") from e
    return Ed25519PublicKey.from_public_bytes(raw)


def key_id(encoded_public_key: str) -> str:
    """Short, log-friendly identifier for a wire-encoded public key."""
    return hashlib.sha256(encoded_public_key.encode("ascii")).hexdigest()[:16]


def canonical_payload(payload: dict[str, Any]) -> bytes:
    """Deterministic byte form of a message payload, minus its signature."""
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


class IdentityManager:
    """
    Owns this instance's key pair.

    The private key never leaves this object; peers only ever see the
    encoded public key and signatures.
    """

    def __init__(self, key_dir: Path, name: str = "no name"):
        self.key_dir = Path(key_dir)
        self.name = name
        self._private_key: Ed25519PrivateKey | None = None
        self._public_key: Ed25519PublicKey | None = None

    @property
    def private_key_path(self) -> Path:
        return self.key_dir / PRIVATE_KEY_FILE

    @property
    def public_key_path(self) -> Path:
        return self.key_dir / PUBLIC_KEY_FILE

    def generate(self) -> "IdentityManager":
        """
        Create the key pair if none exists, otherwise load it.

        Raises:
            IdentityCorrupt: if only one key file exists or a key is unreadable
        """
        if self._private_key is not None:
            return self

        has_private = self.private_key_path.exists()
        has_public = self.public_key_path.exists()

        if not has_private and not has_public:
            self._create()
        elif has_private and has_public:
            self._load()
        else:
            missing = PUBLIC_KEY_FILE if has_private else PRIVATE_KEY_FILE
            raise IdentityCorrupt(
                f"{missing} is missing from {self.key_dir}; "
                "restore it or remove both key files to re-key"
            )
        return self

    def _create(self) -> None:
        self.key_dir.mkdir(parents=True, exist_ok=True)
        private_key = Ed25519PrivateKey.generate()
        public_key = private_key.public_key()

        encoded_priv = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        encoded_pub = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

        # O_EXCL: a concurrent first run must not overwrite another's key
        fd = os.open(self.private_key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(encoded_priv)
            f.flush()
            os.fsync(f.fileno())

        tmp = self.public_key_path.with_suffix(".tmp")
        tmp.write_bytes(encoded_pub)
        os.replace(tmp, self.public_key_path)

        self._private_key = private_key
        self._public_key = public_key
        logger.info(f"Generated new identity {key_id(self.public_key_b64)}")

    def _load(self) -> None:
        try:
            private_key = serialization.load_pem_private_key(
                self.private_key_path.read_bytes(), password=None
            )
            public_key = serialization.load_pem_public_key(self.public_key_path.read_bytes())
        except (OSError, ValueError, TypeError) as e:
            raise IdentityCorrupt(f"failed to load a key from {self.key_dir}: {e}") from e

        if not isinstance(private_key, Ed25519PrivateKey) or not isinstance(
            public_key, Ed25519PublicKey
        ):
            raise IdentityCorrupt(f"keys in {self.key_dir} are not Ed25519 keys")

        if encode_public_key(private_key.public_key()) != encode_public_key(public_key):
            raise IdentityCorrupt(f"public key in {self.key_dir} does not match the private key")

        self._private_key = private_key
        self._public_key = public_key
        logger.debug(f"Loaded identity {key_id(self.public_key_b64)}")

    def _require(self) -> Ed25519PrivateKey:
        if self._private_key is None:
            self.generate()
        assert self._private_key is not None
        return self._private_key

    @property
    def public_key(self) -> Ed25519PublicKey:
        self._require()
        assert self._public_key is not None
        return self._public_key

    @property
    def public_key_b64(self) -> str:
        """Public key as sent in Handshake frames."""
        return encode_public_key(self.public_key)

    @property
    def key_id(self) -> str:
        return key_id(self.public_key_b64)

    def sign(self, data: bytes) -> bytes:
        """Sign raw bytes with the private key."""
        return self._require().sign(data)

    @staticmethod
    def verify(peer_public_key: str | Ed25519PublicKey, data: bytes, signature: bytes) -> bool:
        """Check a peer's signature. Never raises on bad keys or signatures."""
        try:
            if isinstance(peer_public_key, str):
                peer_public_key = decode_public_key(peer_public_key)
            peer_public_key.verify(signature, data)
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False

    def sign_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of a message payload with a ``signature`` field."""
        signature = self.sign(canonical_payload(payload))
        signed = dict(payload)
        signed["signature"] = base64.b64encode(signature).decode("ascii")
        return signed

    @classmethod
    def verify_payload(cls, peer_public_key: str, payload: dict[str, Any]) -> bool:
        """Verify a payload signed with :meth:`sign_payload`."""
        encoded = payload.get("signature")
        if not isinstance(encoded, str):
            return False
        try:
            signature = base64.b64decode(encoded, validate=True)
        except ValueError:
            return False
        return cls.verify(peer_public_key, canonical_payload(payload), signature)


class TrustStore:
    """
    Pinned public keys of remote roots, keyed by ``host:port``.

    Policy: a configured expected key always wins; without one the first
    key seen for an endpoint is pinned (trust on first use).
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._pins: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        if self.path and self.path.exists():
            try:
                data = json.loads(self.path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Ignoring unreadable trust store {self.path}: {e}")
                return {}
            if isinstance(data, dict):
                return {str(k): str(v) for k, v in data.items()}
        return {}

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._pins, indent=2, sort_keys=True))
        os.replace(tmp, self.path)

    def pins(self) -> dict[str, str]:
        return dict(self._pins)

    def pinned(self, endpoint: str) -> str | None:
        return self._pins.get(endpoint)

    def pin(self, endpoint: str, public_key: str) -> None:
        self._pins[endpoint] = public_key
        self._save()

    def forget(self, endpoint: str) -> bool:
        if self._pins.pop(endpoint, None) is None:
            return False
        self._save()
        return True

    def check(self, endpoint: str, presented: str, expected: str | None = None) -> None:
        """
        Decide whether ``presented`` is acceptable for ``endpoint``.

        Raises:
            AuthenticationFailed: if the key differs from the expected or pinned one
        """
        if expected:
            if presented != expected:
                raise AuthenticationFailed(
                    f"{endpoint} presented key {key_id(presented)}, "
                    f"expected {key_id(expected)}",
                    endpoint=endpoint,
                )
            return

        pinned = self._pins.get(endpoint)
        if pinned is None:
            logger.warning(
                f"Trusting {endpoint} on first use with key {key_id(presented)}"
            )
            self.pin(endpoint, presented)
            return

        if pinned != presented:
            raise AuthenticationFailed(
                f"{endpoint} presented key {key_id(presented)}, "
                f"pinned {key_id(pinned)}",
                endpoint=endpoint,
            )
