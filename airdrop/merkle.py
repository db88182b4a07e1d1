"""
Sorted-pairs Merkle commitment over (account, balance) leaves

Leaves are keccak256(keccak256(abi.encode(address, uint256))); internal nodes
hash the two children ordered by byte value, and an unpaired node is carried
up to the next level unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Union

from eth_abi import encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from web3 import Web3

from .errors import EmptyTreeError, EncodingError, LeafNotFoundError
from .records import normalize_address

logger = logging.getLogger(__name__)

HashFunction = Callable[[bytes], bytes]
HashLike = Union[bytes, str]

UINT256_MAX = 2 ** 256 - 1
SUSPICIOUS_PREFIX = b"\x00\x00\x00"


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def to_bytes32(value: HashLike) -> bytes:
    """Accept raw 32 bytes or a 0x-prefixed hex string"""
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        value = bytes.fromhex(text)
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValueError(f"expected a 32-byte hash, got {value!r}")
    return bytes(value)


def to_hex(value: bytes) -> str:
    return Web3.to_hex(value)


def compute_leaf(account: str, balance: int, hash_fn: HashFunction = keccak) -> bytes:
    """
    Leaf hash for an account balance

    Args:
        account: 20-byte hex address
        balance: Unsigned 256-bit balance
        hash_fn: Hash function, keccak256 by default

    Returns:
        32-byte leaf hash H(H(abi.encode(account, balance)))

    Raises:
        EncodingError: invalid address or balance outside uint256
    """
    try:
        address = normalize_address(account)
    except ValueError as e:
        raise EncodingError(str(e), metadata={"account": account}, cause=e) from e
    if isinstance(balance, bool) or not isinstance(balance, int):
        raise EncodingError(f"balance must be an integer, got {balance!r}", metadata={"account": address})
    if balance < 0 or balance > UINT256_MAX:
        raise EncodingError(f"balance {balance} does not fit in uint256", metadata={"account": address})
    try:
        encoded = encode(["address", "uint256"], [bytes.fromhex(address[2:]), balance])
    except AbiEncodingError as e:
        raise EncodingError(f"could not encode leaf for {address}: {e}", cause=e) from e
    return hash_fn(hash_fn(encoded))


def hash_pair(a: bytes, b: bytes, hash_fn: HashFunction = keccak) -> bytes:
    """Parent of two nodes, children ordered by byte value"""
    return hash_fn(a + b) if a <= b else hash_fn(b + a)


@dataclass
class MerkleTree:
    """Tree levels from leaves (level 0) up to the root"""
    levels: List[List[bytes]]
    hash_fn: HashFunction = keccak
    _positions: Dict[bytes, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self._positions = {leaf: i for i, leaf in enumerate(self.levels[0])}

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def hex_root(self) -> str:
        return to_hex(self.root)

    @property
    def leaves(self) -> List[bytes]:
        return self.levels[0]

    def __len__(self) -> int:
        return len(self.levels[0])

    def __contains__(self, leaf: HashLike) -> bool:
        try:
            return to_bytes32(leaf) in self._positions
        except ValueError:
            return False

    def position(self, leaf: HashLike) -> Optional[int]:
        try:
            return self._positions.get(to_bytes32(leaf))
        except ValueError:
            return None


def build_tree(leaves: Iterable[HashLike], hash_fn: HashFunction = keccak) -> MerkleTree:
    """
    Build a sorted-pairs Merkle tree

    Leaves are de-duplicated and sorted by byte value first, so the root only
    depends on the leaf set and never on the order the caller produced it.

    Args:
        leaves: 32-byte leaf hashes (bytes or 0x hex)
        hash_fn: Hash function used for internal nodes

    Returns:
        MerkleTree with every level kept for proof generation

    Raises:
        EmptyTreeError: no leaves were given
    """
    level = sorted({to_bytes32(leaf) for leaf in leaves})
    if not level:
        raise EmptyTreeError("cannot build a Merkle tree without leaves")

    levels = [level]
    while len(level) > 1:
        parents = []
        for i in range(0, len(level) - 1, 2):
            parents.append(hash_pair(level[i], level[i + 1], hash_fn))
        if len(level) % 2 == 1:
            parents.append(level[-1])
        level = parents
        levels.append(level)
    return MerkleTree(levels=levels, hash_fn=hash_fn)


def get_proof(tree: MerkleTree, leaf: HashLike) -> List[bytes]:
    """
    Sibling hashes from the leaf up to the root

    Raises:
        LeafNotFoundError: the leaf is not part of the tree
    """
    index = tree.position(leaf)
    if index is None:
        shown = leaf if isinstance(leaf, str) else to_hex(bytes(leaf))
        raise LeafNotFoundError(f"leaf {shown} is not in the tree", leaf=shown)

    proof = []
    for level in tree.levels[:-1]:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append(level[sibling])
        index //= 2
    return proof


def verify(leaf: HashLike, proof: Iterable[HashLike], root: HashLike,
           hash_fn: HashFunction = keccak) -> bool:
    """Recompute the root from a leaf and its proof and compare"""
    try:
        current = to_bytes32(leaf)
        for sibling in proof:
            current = hash_pair(current, to_bytes32(sibling), hash_fn)
        return current == to_bytes32(root)
    except ValueError:
        return False


def leaf_index(tree: MerkleTree, leaf: HashLike) -> Optional[int]:
    """1-based position of a leaf in the canonical leaf order, None if absent"""
    index = tree.position(leaf)
    return None if index is None else index + 1


def find_suspicious_nodes(tree: MerkleTree) -> List[str]:
    """Internal nodes that look like a zero-padded address word"""
    suspicious = []
    for level in tree.levels[1:]:
        for node in level:
            if node.startswith(SUSPICIOUS_PREFIX) and node not in tree._positions:
                suspicious.append(to_hex(node))
    return suspicious
