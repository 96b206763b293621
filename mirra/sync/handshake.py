"""
Handshake

Mutual authentication of a node and a root. Each side proves possession of
its private key by signing a fresh nonce chosen by the other side:

    node -> root   HANDSHAKE {public_key, name, nonce_n}
    root -> node   HANDSHAKE {public_key, name, nonce_r, sign(root | nonce_n)}
    node -> root   HANDSHAKE_PROOF {sign(node | nonce_r)}
    root -> node   OK

The node additionally checks the root's key against the expected or pinned
key for the endpoint.
"""

import asyncio
import base64
import secrets
from dataclasses import dataclass

from mirra.errors import AuthenticationFailed, HandshakeTimeout, ProtocolError
from mirra.identity import IdentityManager, TrustStore, decode_public_key, key_id
from mirra.logging import get_logger
from mirra.registry import PeerEndpoint
from mirra.sync.protocol import (
    MessageKind,
    create_error,
    create_handshake,
    create_handshake_proof,
    create_ok,
)
from mirra.sync.transport import FramedConnection

logger = get_logger("sync.handshake")

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


@dataclass
class PeerInfo:
    """The authenticated remote side of a connection."""

    name: str
    public_key: str

    @property
    def key_id(self) -> str:
        return key_id(self.public_key)


def _transcript(role: str, nonce: str, public_key: str) -> bytes:
    return f"mirra-handshake:{role}:{nonce}:{public_key}".encode()


def _encode_sig(signature: bytes) -> str:
    return base64.b64encode(signature).decode("ascii")


def _decode_sig(encoded: object) -> bytes:
    if not isinstance(encoded, str):
        return b""
    try:
        return base64.b64decode(encoded, validate=True)
    except ValueError:
        return b""


def _check_hello(payload: dict) -> tuple[str, str, str]:
    public_key = payload.get("public_key")
    nonce = payload.get("nonce")
    if not isinstance(public_key, str) or not isinstance(nonce, str) or not nonce:
        raise ProtocolError("handshake is missing a public key or nonce")
    try:
        decode_public_key(public_key)
    except ValueError as e:
        raise ProtocolError(f"handshake carries an invalid public key: {e}") from e
    return public_key, nonce, str(payload.get("name", "no name"))


async def client_handshake(
    conn: FramedConnection,
    identity: IdentityManager,
    trust: TrustStore,
    endpoint: PeerEndpoint,
    timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
) -> PeerInfo:
    """
    Authenticate to a root as a node.

    Raises:
        HandshakeTimeout: if the root does not answer within ``timeout``
        AuthenticationFailed: if the root's key is untrusted or its proof invalid
    """
    try:
        return await asyncio.wait_for(
            _client_exchange(conn, identity, trust, endpoint), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise HandshakeTimeout(f"no handshake from {endpoint.endpoint_id} within {timeout}s") from e


async def _client_exchange(
    conn: FramedConnection,
    identity: IdentityManager,
    trust: TrustStore,
    endpoint: PeerEndpoint,
) -> PeerInfo:
    nonce = secrets.token_hex(16)
    await conn.send(create_handshake(identity.public_key_b64, identity.name, nonce))

    reply = (await conn.recv()).expect(MessageKind.HANDSHAKE)
    root_key, root_nonce, root_name = _check_hello(reply.payload)

    signature = _decode_sig(reply.payload.get("signature"))
    if not IdentityManager.verify(root_key, _transcript("root", nonce, root_key), signature):
        raise AuthenticationFailed(
            f"{endpoint.endpoint_id} failed to prove ownership of key {key_id(root_key)}",
            endpoint=endpoint.endpoint_id,
        )
    trust.check(endpoint.endpoint_id, root_key, endpoint.public_key)

    proof = identity.sign(_transcript("node", root_nonce, identity.public_key_b64))
    await conn.send(create_handshake_proof(_encode_sig(proof)))
    (await conn.recv()).expect(MessageKind.OK)

    logger.info(f"Authenticated root {root_name} ({key_id(root_key)}) at {endpoint.endpoint_id}")
    return PeerInfo(name=root_name, public_key=root_key)


async def server_handshake(
    conn: FramedConnection,
    identity: IdentityManager,
    timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
) -> PeerInfo:
    """
    Authenticate an incoming node.

    Any node holding the private key of the key it presents is accepted.

    Raises:
        HandshakeTimeout: if the node stalls
        AuthenticationFailed: if the node's proof does not verify
    """
    try:
        return await asyncio.wait_for(_server_exchange(conn, identity), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise HandshakeTimeout(f"no handshake from {conn.peer} within {timeout}s") from e


async def _server_exchange(conn: FramedConnection, identity: IdentityManager) -> PeerInfo:
    hello = (await conn.recv()).expect(MessageKind.HANDSHAKE)
    node_key, node_nonce, node_name = _check_hello(hello.payload)

    nonce = secrets.token_hex(16)
    signature = identity.sign(_transcript("root", node_nonce, identity.public_key_b64))
    await conn.send(
        create_handshake(identity.public_key_b64, identity.name, nonce, _encode_sig(signature))
    )

    proof = (await conn.recv()).expect(MessageKind.HANDSHAKE_PROOF)
    proof_sig = _decode_sig(proof.payload.get("signature"))
    if not IdentityManager.verify(node_key, _transcript("node", nonce, node_key), proof_sig):
        error = AuthenticationFailed(
            f"{conn.peer} failed to prove ownership of key {key_id(node_key)}",
            endpoint=conn.peer,
        )
        await conn.send(create_error(error))
        raise error

    await conn.send(create_ok())
    logger.info(f"Authenticated node {node_name} ({key_id(node_key)}) from {conn.peer}")
    return PeerInfo(name=node_name, public_key=node_key)
