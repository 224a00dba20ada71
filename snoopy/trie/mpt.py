"""Hexary Merkle-Patricia trie with Ethereum node encoding.

Nodes are RLP lists:
    leaf      [hex_prefix(path, leaf=True), value]
    extension [hex_prefix(path, leaf=False), child_ref]
    branch    [ref_0, ..., ref_15, value]

A child whose encoding is shorter than 32 bytes is embedded in its parent, otherwise the
parent stores keccak(encoding). The root hash is always keccak(rlp(root)). The node layout is
a pure function of the key set, so the trie is rebuilt from the full entry map on commit
instead of being mutated node by node.
"""

from collections.abc import Iterable
from typing import Any

import rlp
from rlp.exceptions import DecodingError

from snoopy.common.errors import DecodeError, TrieInsertError
from snoopy.common.hashing import keccak256

_HASH_LEN = 32
EMPTY_ROOT: bytes = keccak256(rlp.encode(b""))

Nibbles = tuple[int, ...]


def bytes_to_nibbles(data: bytes) -> Nibbles:
    nibbles: list[int] = []
    for byte in data:
        nibbles.append(byte >> 4)
        nibbles.append(byte & 0x0F)
    return tuple(nibbles)


def hex_prefix(nibbles: Nibbles, is_leaf: bool) -> bytes:
    flag = 2 if is_leaf else 0
    if len(nibbles) % 2:
        prefixed = (flag + 1,) + nibbles
    else:
        prefixed = (flag, 0) + nibbles
    return bytes((prefixed[i] << 4) | prefixed[i + 1] for i in range(0, len(prefixed), 2))


def decode_hex_prefix(data: bytes) -> tuple[Nibbles, bool]:
    if not data:
        raise DecodeError("Empty hex-prefix path")
    nibbles = bytes_to_nibbles(data)
    flag = nibbles[0]
    if flag > 3:
        raise DecodeError(f"Invalid hex-prefix flag: {flag}")
    is_leaf = flag >= 2
    # Odd paths carry the first nibble next to the flag.
    return (nibbles[1:] if flag % 2 else nibbles[2:]), is_leaf


class _Node:
    raw: Any
    encoded: bytes

    def _seal(self, raw: Any) -> None:
        self.raw = raw
        self.encoded = rlp.encode(raw)

    @property
    def is_hashed(self) -> bool:
        return len(self.encoded) >= _HASH_LEN

    @property
    def reference(self) -> Any:
        return keccak256(self.encoded) if self.is_hashed else self.raw


class _Leaf(_Node):
    def __init__(self, path: Nibbles, value: bytes):
        self.path = path
        self.value = value
        self._seal([hex_prefix(path, is_leaf=True), value])


class _Extension(_Node):
    def __init__(self, path: Nibbles, child: _Node):
        self.path = path
        self.child = child
        self._seal([hex_prefix(path, is_leaf=False), child.reference])


class _Branch(_Node):
    def __init__(self, children: tuple[_Node | None, ...], value: bytes = b""):
        self.children = children
        self.value = value
        self._seal([child.reference if child is not None else b"" for child in children] + [value])


def _common_prefix_len(paths: Iterable[Nibbles]) -> int:
    paths = list(paths)
    shortest = min(len(path) for path in paths)
    for idx in range(shortest):
        nibble = paths[0][idx]
        if any(path[idx] != nibble for path in paths):
            return idx
    return shortest


class MerklePatriciaTrie:
    def __init__(self) -> None:
        self._entries: dict[bytes, bytes] = {}
        self._root: _Node | None = None
        self._dirty = False

    def __len__(self) -> int:
        return len(self._entries)

    def insert(self, key: bytes, value: bytes) -> None:
        if not isinstance(key, bytes | bytearray) or not key:
            raise TrieInsertError("Trie key must be non-empty bytes", context={"key": repr(key)})
        if not isinstance(value, bytes | bytearray) or not value:
            raise TrieInsertError("Trie value must be non-empty bytes", context={"key": bytes(key).hex()})
        self._entries[bytes(key)] = bytes(value)
        self._dirty = True

    def get(self, key: bytes) -> bytes | None:
        return self._entries.get(bytes(key))

    def root_hash(self) -> bytes:
        root = self._commit()
        return EMPTY_ROOT if root is None else keccak256(root.encoded)

    def get_proof(self, key: bytes) -> list[bytes]:
        """Root-first encodings of the nodes along `key`'s nibble path.

        The walk follows branches and matching extensions and stops at the first leaf, missing
        child or exhausted path. The remaining path of the final leaf is not compared with the
        key, so a key prefix is enough to reach a leaf once its branch is unambiguous.
        """
        root = self._commit()
        if root is None:
            return []

        proof = [root.encoded]
        node: _Node = root
        path = bytes_to_nibbles(key)
        while not isinstance(node, _Leaf):
            if isinstance(node, _Branch):
                if not path:
                    break
                child = node.children[path[0]]
                path = path[1:]
            else:
                assert isinstance(node, _Extension)
                if path[: len(node.path)] != node.path:
                    break
                child = node.child
                path = path[len(node.path) :]

            if child is None:
                break
            if child.is_hashed:
                proof.append(child.encoded)
            node = child
        return proof

    def _commit(self) -> _Node | None:
        if not self._dirty:
            return self._root

        items = sorted((bytes_to_nibbles(key), value) for key, value in self._entries.items())
        self._root = self._build(items, depth=0)
        self._dirty = False
        return self._root

    def _build(self, items: list[tuple[Nibbles, bytes]], depth: int) -> _Node | None:
        if not items:
            return None

        if len(items) == 1:
            path, value = items[0]
            return _Leaf(path[depth:], value)

        prefix_len = _common_prefix_len(path[depth:] for path, _ in items)
        if prefix_len:
            prefix = items[0][0][depth : depth + prefix_len]
            child = self._build(items, depth + prefix_len)
            if child is None:
                raise TrieInsertError("Extension without child", context={"depth": depth})
            return _Extension(prefix, child)

        groups: list[list[tuple[Nibbles, bytes]]] = [[] for _ in range(16)]
        branch_value = b""
        for path, value in items:
            if len(path) == depth:
                branch_value = value
            else:
                groups[path[depth]].append((path, value))
        children = tuple(self._build(group, depth + 1) for group in groups)
        return _Branch(children, branch_value)


def decode_node(encoded: bytes) -> list[Any]:
    try:
        decoded = rlp.decode(encoded)
    except DecodingError as exc:
        raise DecodeError("Malformed trie node") from exc
    if not isinstance(decoded, list) or len(decoded) not in (2, 17):
        raise DecodeError("Trie node must be a 2 or 17 item list")
    return decoded


def leaf_value(encoded: bytes) -> bytes:
    """Value of an encoded leaf node."""
    decoded = decode_node(encoded)
    if len(decoded) != 2 or not isinstance(decoded[0], bytes):
        raise DecodeError("Proof does not terminate in a leaf")
    _, is_leaf = decode_hex_prefix(decoded[0])
    if not is_leaf or not isinstance(decoded[1], bytes):
        raise DecodeError("Proof does not terminate in a leaf")
    return decoded[1]


def _hash_references(raw: Any) -> set[bytes]:
    refs: set[bytes] = set()
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, bytes) and len(item) == _HASH_LEN:
                refs.add(item)
            elif isinstance(item, list):
                refs |= _hash_references(item)
    return refs


def verify_proof_chain(root_hash: bytes, proof: list[bytes]) -> bool:
    """Check the proof starts at `root_hash` and each node is referenced by its predecessor."""
    if not proof:
        return root_hash == EMPTY_ROOT
    if keccak256(proof[0]) != root_hash:
        return False
    for parent, child in zip(proof, proof[1:], strict=False):
        try:
            parent_refs = _hash_references(decode_node(parent))
        except DecodeError:
            return False
        if keccak256(child) not in parent_refs:
            return False
    return True
