"""Build the navigation forest from a flat module list."""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable

from permgate.types import Module

logger = logging.getLogger(__name__)


def _sort_key(module: Module) -> tuple[int, str]:
    return (module.sort_order, module.name)


def build_module_tree(modules: Iterable[Module]) -> list[Module]:
    """Return the root modules with ``children`` populated.

    Inputs are not mutated; every node is a copy.  Inactive modules are
    skipped.  A module whose parent is missing or inactive becomes a root.
    Parent cycles are broken by promoting one node of the cycle to root,
    so every input module is reachable from exactly one root.
    """
    nodes: dict[str, Module] = {}
    for module in modules:
        if module.is_active:
            nodes[module.id] = dataclasses.replace(module, children=[])

    # child id -> parent id, only for links to a present (active) parent
    parent_of: dict[str, str] = {}
    for node in nodes.values():
        if node.parent_id is not None and node.parent_id in nodes:
            if node.parent_id == node.id:
                logger.warning("Module %s is its own parent; treating as root", node.id)
                continue
            parent_of[node.id] = node.parent_id

    _break_cycles(nodes, parent_of)

    roots: list[Module] = []
    for node in nodes.values():
        parent_id = parent_of.get(node.id)
        if parent_id is None:
            roots.append(node)
        else:
            nodes[parent_id].children.append(node)

    for node in nodes.values():
        node.children.sort(key=_sort_key)
    roots.sort(key=_sort_key)
    return roots


def _break_cycles(nodes: dict[str, Module], parent_of: dict[str, str]) -> None:
    """Walk every parent chain; detach the node that closes a loop."""
    settled: set[str] = set()
    for start in nodes:
        path: list[str] = []
        on_path: set[str] = set()
        current: str | None = start
        while current is not None and current not in settled:
            if current in on_path:
                # ``current`` was reached again: its link back into the
                # chain closes the cycle.
                offender = path[-1]
                logger.warning(
                    "Module hierarchy cycle through %s; promoting %s to root",
                    current,
                    offender,
                )
                del parent_of[offender]
                break
            path.append(current)
            on_path.add(current)
            current = parent_of.get(current)
        settled.update(path)
