"""Client and worker signatures over queries and query results.

Network identities are libp2p peer ids: base58btc text of an identity multihash wrapping the
protobuf encoded Ed25519 public key.

Signed bytes come from `signing_payload`, the only place that knows the message layout. The
layout there is this service's own RLP encoding, not the network's message codec, so live
network signatures do not verify against it until `signing_payload` is replaced with the
network encoding:

    query:  [b"sqd-query", query_id, request_id, dataset, query, from_block, to_block,
             chunk_id, timestamp_ms, worker_peer_id_bytes]      signed by the client
    result: [b"sqd-result", query_id, worker_peer_id_bytes, data_hash, last_block]
                                                                  signed by the worker

Binding the worker peer id into the query payload is what ties the client signature to the
worker that was asked to execute the query.
"""

import base58
import rlp
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from snoopy.common.errors import VerificationError
from snoopy.common.models import QueryFinished, SignedQuery

_MULTIHASH_IDENTITY = 0x00
_KEY_TYPE_ED25519 = 0x01
# Protobuf PublicKey{Type=Ed25519, Data=<32 bytes>}.
_ED25519_KEY_PREFIX = bytes([0x08, _KEY_TYPE_ED25519, 0x12, 0x20])
_ED25519_KEY_LEN = 32

_QUERY_DOMAIN = b"sqd-query"
_RESULT_DOMAIN = b"sqd-result"


def peer_id_bytes(peer_id: str) -> bytes:
    try:
        raw = base58.b58decode(peer_id)
    except ValueError as exc:
        raise VerificationError("Malformed peer id", context={"peer_id": peer_id}) from exc
    if not raw:
        raise VerificationError("Empty peer id")
    return raw


def peer_id_from_public_key(public_key: bytes | Ed25519PublicKey) -> str:
    if isinstance(public_key, Ed25519PublicKey):
        public_key = public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)
    if len(public_key) != _ED25519_KEY_LEN:
        raise VerificationError(f"Ed25519 public key must be {_ED25519_KEY_LEN} bytes, got {len(public_key)}")
    encoded_key = _ED25519_KEY_PREFIX + public_key
    multihash = bytes([_MULTIHASH_IDENTITY, len(encoded_key)]) + encoded_key
    return base58.b58encode(multihash).decode()


def peer_id_to_public_key(peer_id: str) -> Ed25519PublicKey:
    """Recover the Ed25519 key embedded in an identity-multihash peer id."""
    raw = peer_id_bytes(peer_id)
    expected_len = len(_ED25519_KEY_PREFIX) + _ED25519_KEY_LEN
    if len(raw) != 2 + expected_len or raw[0] != _MULTIHASH_IDENTITY or raw[1] != expected_len:
        raise VerificationError("Peer id does not embed a public key", context={"peer_id": peer_id})
    if not raw[2:].startswith(_ED25519_KEY_PREFIX):
        raise VerificationError("Peer id key type is not Ed25519", context={"peer_id": peer_id})
    return Ed25519PublicKey.from_public_bytes(raw[2 + len(_ED25519_KEY_PREFIX) :])


def signing_payload(message: SignedQuery | QueryFinished, worker_id: str | None = None) -> bytes:
    """Bytes signed for `message`.

    Queries are signed for a specific worker, so `worker_id` is required for a `SignedQuery`.
    """
    if isinstance(message, SignedQuery):
        if worker_id is None:
            raise VerificationError("Query payload needs the executing worker", context={"query_id": message.query_id})
        fields = [
            _QUERY_DOMAIN,
            message.query_id.encode(),
            message.request_id.encode(),
            message.dataset.encode(),
            message.query.encode(),
            message.from_block,
            message.to_block,
            message.chunk_id.encode(),
            message.timestamp_ms,
            peer_id_bytes(worker_id),
        ]
    else:
        fields = [
            _RESULT_DOMAIN,
            message.query_id.encode(),
            peer_id_bytes(message.worker_id),
            message.data_hash,
            message.last_block,
        ]
    return rlp.encode(fields)


def _verify(peer_id: str, signature: bytes, payload: bytes) -> bool:
    public_key = peer_id_to_public_key(peer_id)
    try:
        public_key.verify(signature, payload)
    except InvalidSignature:
        return False
    return True


def verify_query(query: SignedQuery, client_id: str, worker_id: str) -> bool:
    """True if `client_id` signed this query for execution by `worker_id`."""
    return _verify(client_id, query.signature, signing_payload(query, worker_id))


def verify_result(result: QueryFinished) -> bool:
    """True if the declared worker signed the declared result."""
    return _verify(result.worker_id, result.worker_signature, signing_payload(result))


def sign_query(query: SignedQuery, worker_id: str, client_key: Ed25519PrivateKey) -> bytes:
    return client_key.sign(signing_payload(query, worker_id))


def sign_result(result: QueryFinished, worker_key: Ed25519PrivateKey) -> bytes:
    return worker_key.sign(signing_payload(result))
