"""
Taproot script-tree hashing for swap outputs (BIP-341, plus the Elements
variant with '/elements' tags and leaf version 0xC4).
"""

from __future__ import annotations

from swapcore.chains import ChainParams
from swapcore.constants import P2TR_PREFIX
from swapcore.crypto import tagged_hash
from swapcore.errors import ProtocolViolation
from swapcore.models import SwapTree, SwapTreeLeaf
from swapcore.musig import SigningSession
from swapcore.transaction import encode_varint

# A tree node is either a leaf or a pair of subtrees
TreeNode = SwapTreeLeaf | tuple


def leaf_hash(leaf: SwapTreeLeaf, chain: ChainParams) -> bytes:
    script = leaf.script
    return tagged_hash(
        chain.tag("TapLeaf"), bytes([leaf.version]) + encode_varint(len(script)) + script
    )


def branch_hash(left: bytes, right: bytes, chain: ChainParams) -> bytes:
    if right < left:
        left, right = right, left
    return tagged_hash(chain.tag("TapBranch"), left + right)


def tree_layout(tree: SwapTree) -> TreeNode:
    """Claim and refund leaves side by side; a covenant leaf pairs with the claim leaf."""
    if tree.covenant_claim_leaf is not None:
        return ((tree.claim_leaf, tree.covenant_claim_leaf), tree.refund_leaf)
    return (tree.claim_leaf, tree.refund_leaf)


def _node_hash(node: TreeNode, chain: ChainParams) -> bytes:
    if isinstance(node, SwapTreeLeaf):
        return leaf_hash(node, chain)
    left, right = node
    return branch_hash(_node_hash(left, chain), _node_hash(right, chain), chain)


def merkle_root(tree: SwapTree, chain: ChainParams) -> bytes:
    for leaf in (tree.claim_leaf, tree.refund_leaf, tree.covenant_claim_leaf):
        if leaf is not None and leaf.version != chain.leaf_version:
            raise ProtocolViolation(
                f"Leaf version 0x{leaf.version:02x} does not match {chain.symbol} "
                f"(expected 0x{chain.leaf_version:02x})"
            )
    return _node_hash(tree_layout(tree), chain)


def tweak_session(session: SigningSession, tree: SwapTree, chain: ChainParams) -> bytes:
    """Tweak a signing session with a swap tree and return the output key."""
    return session.tweak(merkle_root(tree, chain), tag=chain.tag("TapTweak"))


def p2tr_script(output_key: bytes) -> bytes:
    if len(output_key) != 32:
        raise ValueError(f"Taproot output key must be 32 bytes, got {len(output_key)}")
    return P2TR_PREFIX + output_key


def output_key_from_script(script: bytes) -> bytes | None:
    """Return the x-only key of a witness v1 output, or None for any other script."""
    if len(script) == 34 and script[:2] == P2TR_PREFIX:
        return script[2:]
    return None
