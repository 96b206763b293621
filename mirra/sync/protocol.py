"""
Sync Protocol

Defines the frame format and message kinds exchanged between mirras.

Every websocket binary message carries exactly one frame:

    magic "MIRA" | version u8 | kind u8 | meta length u32 | blob length u32
    meta (UTF-8 JSON object) | blob (raw bytes, content chunks only)

All integers are big-endian.
"""

import json
import struct
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from mirra.errors import MirraError, ProtocolError, error_from_code
from mirra.logging import get_logger
from mirra.models import ChangeBatch, ModuleIndex

logger = get_logger("sync.protocol")

MAGIC = b"MIRA"
PROTOCOL_VERSION = 1
HEADER = struct.Struct(">4sBBII")
MAX_META_SIZE = 64 * 1024 * 1024
MAX_BLOB_SIZE = 16 * 1024 * 1024


class MessageKind(IntEnum):
    """Types of sync frames."""

    # Connection
    HANDSHAKE = 0x01
    HANDSHAKE_PROOF = 0x02
    OK = 0x03
    CLOSE = 0x04

    # Subscriptions
    SUBSCRIBE = 0x10
    UNSUBSCRIBE = 0x11

    # Sync operations
    INDEX_REQUEST = 0x20
    INDEX_RESPONSE = 0x21
    CONTENT_REQUEST = 0x22
    CONTENT_RESPONSE = 0x23
    CHANGE_BATCH = 0x24

    # Status
    HEARTBEAT = 0x30
    ERROR = 0x3F


@dataclass
class Frame:
    """A single protocol frame."""

    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)
    blob: bytes = b""
    version: int = PROTOCOL_VERSION

    @property
    def request_id(self) -> str | None:
        return self.payload.get("request_id")

    @property
    def module(self) -> str | None:
        return self.payload.get("module")

    def encode(self) -> bytes:
        """Serialize to the length-prefixed wire form."""
        meta = json.dumps(self.payload, separators=(",", ":")).encode("utf-8")
        header = HEADER.pack(MAGIC, self.version, int(self.kind), len(meta), len(self.blob))
        return header + meta + self.blob

    @classmethod
    def decode(cls, data: bytes) -> "Frame":
        """
        Parse one frame.

        Raises:
            ProtocolError: on bad magic, unsupported version, unknown kind
                or inconsistent lengths
        """
        if isinstance(data, str):
            raise ProtocolError("text message received, expected a binary frame")
        if len(data) < HEADER.size:
            raise ProtocolError(f"frame too short ({len(data)} bytes)")

        magic, version, kind, meta_len, blob_len = HEADER.unpack_from(data)
        if magic != MAGIC:
            raise ProtocolError("bad frame magic")
        if version != PROTOCOL_VERSION:
            raise ProtocolError(f"unsupported protocol version {version}")
        if meta_len > MAX_META_SIZE or blob_len > MAX_BLOB_SIZE:
            raise ProtocolError("frame exceeds size limits")
        if HEADER.size + meta_len + blob_len != len(data):
            raise ProtocolError("frame length mismatch")
        try:
            message_kind = MessageKind(kind)
        except ValueError as e:
            raise ProtocolError(f"unknown frame kind {kind:#x}") from e

        meta = data[HEADER.size : HEADER.size + meta_len]
        try:
            payload = json.loads(meta.decode("utf-8")) if meta_len else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"malformed frame metadata: {e}") from e
        if not isinstance(payload, dict):
            raise ProtocolError("frame metadata is not an object")

        blob = bytes(data[HEADER.size + meta_len :])
        return cls(kind=message_kind, payload=payload, blob=blob, version=version)

    def expect(self, *kinds: MessageKind) -> "Frame":
        """Return self if of one of ``kinds``; re-raise Error frames."""
        if self.kind == MessageKind.ERROR and MessageKind.ERROR not in kinds:
            raise self.to_exception()
        if self.kind not in kinds:
            expected = ", ".join(k.name for k in kinds)
            raise ProtocolError(f"unexpected {self.kind.name} frame, expected {expected}")
        return self

    def to_exception(self) -> MirraError:
        """Local exception equivalent of an Error frame."""
        return error_from_code(
            self.payload.get("code", ""), self.payload.get("message", "remote error")
        )


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


# Frame factory functions for common operations


def create_handshake(public_key: str, name: str, nonce: str, signature: str = "") -> Frame:
    """Handshake frame. A root's reply also signs the node's nonce."""
    payload = {"public_key": public_key, "name": name, "nonce": nonce}
    if signature:
        payload["signature"] = signature
    return Frame(MessageKind.HANDSHAKE, payload)


def create_handshake_proof(signature: str) -> Frame:
    return Frame(MessageKind.HANDSHAKE_PROOF, {"signature": signature})


def create_ok(request_id: str | None = None, **fields: Any) -> Frame:
    payload = dict(fields)
    if request_id:
        payload["request_id"] = request_id
    return Frame(MessageKind.OK, payload)


def create_close(reason: str = "") -> Frame:
    return Frame(MessageKind.CLOSE, {"reason": reason})


def create_subscribe(module: str, request_id: str) -> Frame:
    return Frame(MessageKind.SUBSCRIBE, {"module": module, "request_id": request_id})


def create_unsubscribe(module: str) -> Frame:
    return Frame(MessageKind.UNSUBSCRIBE, {"module": module})


def create_index_request(module: str, request_id: str) -> Frame:
    return Frame(MessageKind.INDEX_REQUEST, {"module": module, "request_id": request_id})


def create_index_response(index: ModuleIndex, request_id: str) -> Frame:
    payload = index.to_dict()
    payload["request_id"] = request_id
    return Frame(MessageKind.INDEX_RESPONSE, payload)


def create_content_request(module: str, path: str, request_id: str) -> Frame:
    return Frame(
        MessageKind.CONTENT_REQUEST,
        {"module": module, "path": path, "request_id": request_id},
    )


def create_content_chunk(request_id: str, offset: int, chunk: bytes) -> Frame:
    """Intermediate content frame; more frames follow."""
    return Frame(
        MessageKind.CONTENT_RESPONSE,
        {"request_id": request_id, "offset": offset, "final": False},
        blob=chunk,
    )


def create_content_final(
    request_id: str,
    module: str,
    path: str,
    offset: int,
    chunk: bytes,
    fingerprint: str,
    size: int,
) -> Frame:
    """Closing content frame carrying the digest of all bytes sent."""
    return Frame(
        MessageKind.CONTENT_RESPONSE,
        {
            "request_id": request_id,
            "module": module,
            "path": path,
            "offset": offset,
            "final": True,
            "fingerprint": fingerprint,
            "size": size,
        },
        blob=chunk,
    )


def create_change_batch(batch: ChangeBatch) -> Frame:
    return Frame(MessageKind.CHANGE_BATCH, batch.to_dict())


def create_heartbeat(module: str, sequence: int) -> Frame:
    return Frame(MessageKind.HEARTBEAT, {"module": module, "sequence": sequence})


def create_error(
    error: MirraError, request_id: str | None = None, module: str | None = None
) -> Frame:
    """Error frame from a local exception."""
    payload: dict[str, Any] = {"code": error.code, "message": error.message}
    if request_id:
        payload["request_id"] = request_id
    if module:
        payload["module"] = module
    return Frame(MessageKind.ERROR, payload)
