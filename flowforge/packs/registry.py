"""
Pack Registry - installs, enables and persists node packs.

A pack is a named bundle of node types. Built-in packs ship their
executors as Python callables; custom packs are serialized subflow
definitions, each turned into an executor by the Subflow Composer.

Enabling a pack registers its node types and executors in the registries
the registry was created with; disabling unregisters them again. Enabled
states (and the serialized custom packs) are persisted as JSON.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from flowforge.graph.errors import ConfigurationError
from flowforge.graph.node import NodeTypeRegistry, NodeTypeSpec
from flowforge.graph.registry import ExecutorRegistry, NodeExecutor
from flowforge.graph.subflow import MAX_SUBFLOW_DEPTH, SubflowDefinition, create_subflow_executor

logger = logging.getLogger(__name__)

PackListener = Callable[[], None]


class PackManifest(BaseModel):
    """Identity and display metadata of a pack."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    category: str = "General"
    kind: Literal["builtin", "custom"] = "custom"


class CustomPackNode(BaseModel):
    """One node of a custom pack: its type metadata plus the subflow behind it."""

    node_type: NodeTypeSpec
    default_data: dict[str, Any] = Field(default_factory=dict)
    subflow: SubflowDefinition

    @field_validator("node_type")
    @classmethod
    def _namespaced(cls, value: NodeTypeSpec) -> NodeTypeSpec:
        if ":" not in value.type:
            raise ValueError(f"Custom node type '{value.type}' must be namespaced as 'pack:Name'")
        return value


class SerializedCustomPack(BaseModel):
    """JSON form of a custom pack, as exported and installed."""

    manifest: PackManifest
    nodes: list[CustomPackNode] = Field(default_factory=list)

    @field_validator("manifest")
    @classmethod
    def _custom_kind(cls, value: PackManifest) -> PackManifest:
        if value.kind != "custom":
            raise ValueError("Only custom packs can be serialized")
        return value


class PackState(BaseModel):
    """Persisted state of one pack."""

    pack_id: str
    enabled: bool = False
    installed_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    serialized_pack: SerializedCustomPack | None = None


@dataclass
class BuiltinPack:
    """A pack whose executors are Python callables."""

    manifest: PackManifest
    node_types: list[NodeTypeSpec] = field(default_factory=list)
    executors: dict[str, NodeExecutor] = field(default_factory=dict)


class PackRegistry:
    """
    Manages the packs available to one pair of registries.

    Example:
        executors, node_types = create_default_registries()
        packs = PackRegistry(executors, node_types, state_path=get_packs_state_path())
        packs.register_builtin_pack(create_math_pack())
        packs.load()              # restores custom packs and enabled states
        packs.enable_pack("math")
    """

    def __init__(
        self,
        executors: ExecutorRegistry,
        node_types: NodeTypeRegistry,
        state_path: Path | None = None,
        max_subflow_depth: int = MAX_SUBFLOW_DEPTH,
    ):
        self.executors = executors
        self.node_types = node_types
        self.state_path = state_path
        self.max_subflow_depth = max_subflow_depth
        self._builtin: dict[str, BuiltinPack] = {}
        self._custom: dict[str, SerializedCustomPack] = {}
        self._states: dict[str, PackState] = {}
        self._listeners: list[PackListener] = []

    # === REGISTRATION ===

    def register_builtin_pack(self, pack: BuiltinPack) -> None:
        """Make a built-in pack available (disabled until enabled)."""
        pack_id = pack.manifest.id
        self._builtin[pack_id] = pack
        if pack_id not in self._states:
            self._states[pack_id] = PackState(pack_id=pack_id)
        elif self._states[pack_id].enabled:
            # State restored by load() before the pack was registered
            self._register_types(pack_id)
        self._notify()

    def install_custom_pack(self, pack: SerializedCustomPack | dict[str, Any]) -> SerializedCustomPack:
        """
        Install (or reinstall) a custom pack. It starts disabled.

        Raises:
            ConfigurationError: If the pack does not validate
        """
        pack = self._parse_custom(pack)
        pack_id = pack.manifest.id
        if pack_id in self._builtin:
            raise ConfigurationError(f"Pack id '{pack_id}' is taken by a built-in pack")

        if self.is_enabled(pack_id):
            self.disable_pack(pack_id)

        self._custom[pack_id] = pack
        self._states[pack_id] = PackState(pack_id=pack_id, serialized_pack=pack)
        logger.info(f"Installed custom pack '{pack_id}' ({len(pack.nodes)} node type(s))")

        self.save()
        self._notify()
        return pack

    def uninstall_pack(self, pack_id: str) -> bool:
        """Disable and forget a pack. Returns False if it was unknown."""
        if pack_id not in self._states:
            return False
        if self.is_enabled(pack_id):
            self.disable_pack(pack_id)

        self._custom.pop(pack_id, None)
        self._builtin.pop(pack_id, None)
        del self._states[pack_id]

        self.save()
        self._notify()
        return True

    # === ENABLE / DISABLE ===

    def enable_pack(self, pack_id: str, persist: bool = True) -> None:
        """
        Register a pack's node types and executors.

        Args:
            pack_id: Installed pack
            persist: Save the enabled state; False enables for this process only

        Raises:
            KeyError: If no such pack is installed
        """
        if pack_id not in self._builtin and pack_id not in self._custom:
            raise KeyError(f"Unknown pack: {pack_id}")

        self._register_types(pack_id)
        self._states[pack_id].enabled = True
        logger.info(f"Enabled pack '{pack_id}'")
        if persist:
            self.save()
        self._notify()

    def disable_pack(self, pack_id: str) -> None:
        """Unregister a pack's node types and executors."""
        for node_type in self._pack_types(pack_id):
            self.node_types.unregister(node_type)
            self.executors.unregister(node_type)

        state = self._states.get(pack_id)
        if state:
            state.enabled = False
            logger.info(f"Disabled pack '{pack_id}'")
            self.save()
        self._notify()

    def is_enabled(self, pack_id: str) -> bool:
        state = self._states.get(pack_id)
        return bool(state and state.enabled)

    # === QUERIES ===

    def list_packs(self) -> list[tuple[PackManifest, PackState]]:
        """Manifests and states of all known packs, built-ins first."""
        packs = [(p.manifest, self._states[pid]) for pid, p in self._builtin.items()]
        packs.extend((p.manifest, self._states[pid]) for pid, p in self._custom.items())
        return packs

    def get_manifest(self, pack_id: str) -> PackManifest | None:
        if pack_id in self._builtin:
            return self._builtin[pack_id].manifest
        if pack_id in self._custom:
            return self._custom[pack_id].manifest
        return None

    def enabled_pack_ids(self) -> list[str]:
        return [pid for pid, state in self._states.items() if state.enabled]

    def export_pack(self, pack_id: str) -> dict[str, Any] | None:
        """JSON-ready form of a custom pack, or None for built-in/unknown packs."""
        pack = self._custom.get(pack_id)
        if pack is None:
            return None
        return pack.model_dump(mode="json")

    def preview_import(self, raw: str) -> SerializedCustomPack | None:
        """Parse and validate pack JSON without installing it."""
        try:
            return self._parse_custom(json.loads(raw))
        except (json.JSONDecodeError, ConfigurationError) as e:
            logger.debug(f"Rejected pack import: {e}")
            return None

    # === LISTENERS ===

    def add_listener(self, listener: PackListener) -> Callable[[], None]:
        """Call ``listener`` after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # === PERSISTENCE ===

    def load(self) -> None:
        """
        Restore persisted states: custom packs are reinstalled and every
        enabled pack whose definition is available is registered again.
        Unreadable state files are ignored.
        """
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            with open(self.state_path, encoding="utf-8") as f:
                raw_states = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read pack states from {self.state_path}: {e}")
            return

        for raw in raw_states if isinstance(raw_states, list) else []:
            try:
                state = PackState.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid pack state: {e}")
                continue

            self._states[state.pack_id] = state
            if state.serialized_pack is not None:
                self._custom[state.pack_id] = state.serialized_pack
            if state.enabled and state.pack_id in (*self._builtin, *self._custom):
                self._register_types(state.pack_id)

        self._notify()

    def save(self) -> None:
        if self.state_path is None:
            return
        states = [state.model_dump(mode="json") for state in self._states.values()]
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_path, "w", encoding="utf-8") as f:
                json.dump(states, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save pack states to {self.state_path}: {e}")

    # === INTERNALS ===

    def _parse_custom(self, pack: SerializedCustomPack | dict[str, Any]) -> SerializedCustomPack:
        if not isinstance(pack, SerializedCustomPack):
            try:
                pack = SerializedCustomPack.model_validate(pack)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid custom pack: {e}") from e

        for node in pack.nodes:
            problems = node.subflow.validate_mappings()
            if problems:
                raise ConfigurationError(
                    f"Invalid custom node '{node.node_type.type}': {'; '.join(problems)}"
                )
        return pack

    def _pack_types(self, pack_id: str) -> list[str]:
        if pack_id in self._builtin:
            return [spec.type for spec in self._builtin[pack_id].node_types]
        if pack_id in self._custom:
            return [node.node_type.type for node in self._custom[pack_id].nodes]
        return []

    def _register_types(self, pack_id: str) -> None:
        builtin = self._builtin.get(pack_id)
        if builtin is not None:
            for spec in builtin.node_types:
                self.node_types.register(spec)
                executor = builtin.executors.get(spec.type)
                if executor is not None:
                    self.executors.register(spec.type, executor)
            return

        custom = self._custom.get(pack_id)
        if custom is not None:
            for node in custom.nodes:
                self.node_types.register(node.node_type)
                self.executors.register(
                    node.node_type.type,
                    create_subflow_executor(
                        node.subflow,
                        self.executors,
                        self.node_types,
                        max_depth=self.max_subflow_depth,
                    ),
                )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Pack listener error: {e}")
