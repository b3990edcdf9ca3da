"""Node packs: the core node set, optional built-in packs and custom subflow packs."""

from flowforge.packs.core import CORE_NODE_TYPES, create_default_registries, register_core_pack
from flowforge.packs.math_pack import create_math_pack, evaluate_expression
from flowforge.packs.registry import (
    BuiltinPack,
    CustomPackNode,
    PackManifest,
    PackRegistry,
    PackState,
    SerializedCustomPack,
)

BUILTIN_PACKS = {
    "math": create_math_pack,
}

__all__ = [
    "CORE_NODE_TYPES",
    "create_default_registries",
    "register_core_pack",
    "create_math_pack",
    "evaluate_expression",
    "BuiltinPack",
    "CustomPackNode",
    "PackManifest",
    "PackRegistry",
    "PackState",
    "SerializedCustomPack",
    "BUILTIN_PACKS",
]
