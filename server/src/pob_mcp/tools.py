"""MCP tool implementations.

Exposes the PoB Lua bridge as MCP tools:
- lua_start / lua_stop: Bridge lifecycle
- lua_load_build: Load a saved build file or inline XML
- lua_get_stats: Calculated stats of the loaded build
- lua_get_tree / lua_set_tree: Read or replace the passive allocation
- lua_get_build_info: Summary of the loaded build
- lua_calc_with: Stats under hypothetical node changes (TCP mode only)
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pob_bridge import BridgeError, SocketBridgeClient
from pob_bridge.models import CalcWithParams, TreeSpec
from pydantic import ValidationError

from pob_mcp.session import BridgeSession

# Node ids listed individually in tree summaries
TREE_NODE_PREVIEW = 20


class ToolError(Exception):
    """Exception raised when a tool operation fails.

    The message is reported back to the MCP client as the tool error.
    """

    pass


@contextmanager
def bridge_action(action: str) -> Iterator[None]:
    """Translate bridge failures into ToolError with the attempted action.

    Args:
        action: What was being attempted, e.g. "get stats"

    Raises:
        ToolError: Wrapping any BridgeError raised inside the block
    """
    try:
        yield
    except BridgeError as e:
        raise ToolError(f"Failed to {action}: {e}") from e


async def lua_start(session: BridgeSession) -> dict[str, Any]:
    """Start the bridge (or confirm it is already running).

    Returns:
        Dictionary with success status, mode and a human-readable message
    """
    try:
        await session.ensure_client()
    except BridgeError as e:
        # Session errors already say what failed
        raise ToolError(str(e)) from e

    config = session.config
    if session.tcp_mode:
        message = (
            "PoB Lua Bridge started successfully in TCP mode. "
            f"Connected to PoB GUI at {config.api_tcp_host}:{config.api_tcp_port}"
        )
    else:
        message = (
            "PoB Lua Bridge started successfully in headless mode. "
            "The PoB calculation engine is now ready to load builds and compute stats."
        )
    return {
        "success": True,
        "mode": "tcp" if session.tcp_mode else "headless",
        "message": message,
    }


async def lua_stop(session: BridgeSession) -> dict[str, Any]:
    """Stop the bridge. Always succeeds."""
    await session.stop_client()
    return {"success": True, "message": "PoB Lua Bridge stopped successfully."}


def _read_build_file(build_dir: Path, build_name: str) -> str:
    path = build_dir / build_name
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ToolError(f"Failed to load build: cannot read {path}: {e}") from e


async def lua_load_build(
    session: BridgeSession,
    build_name: str | None = None,
    build_xml: str | None = None,
    name: str | None = None,
) -> dict[str, Any]:
    """Load a build into the engine.

    Args:
        session: The bridge session
        build_name: File name of a saved build under the configured directory
        build_xml: Inline build XML, used when build_name is not given
        name: Display name for the build (defaults to the file name)

    Raises:
        ToolError: If neither source is given, the file is unreadable, or
            the engine rejects the build
    """
    if build_name:
        xml = _read_build_file(Path(session.config.directory), build_name)
        if not name:
            name = build_name[:-4] if build_name.lower().endswith(".xml") else build_name
    elif build_xml:
        xml = build_xml
    else:
        raise ToolError("Either build_name or build_xml must be provided")

    display_name = name or "MCP Build"
    with bridge_action("load build"):
        async with session.acquire() as client:
            await client.load_build_xml(xml, display_name)

    return {
        "success": True,
        "message": f'Build "{display_name}" loaded successfully into PoB.',
    }


async def lua_get_stats(
    session: BridgeSession,
    fields: list[str] | None = None,
) -> dict[str, Any]:
    """Calculated stats of the loaded build."""
    with bridge_action("get stats"):
        async with session.acquire() as client:
            stats = await client.get_stats(fields)
    return {"success": True, "stats": stats or {}}


def summarize_tree(tree: dict[str, Any] | None) -> dict[str, Any]:
    """Condense a tree payload for display.

    Lists at most TREE_NODE_PREVIEW node ids and counts mastery selections.
    """
    if not isinstance(tree, dict):
        return {}

    nodes = tree.get("nodes") if isinstance(tree.get("nodes"), list) else []
    mastery = tree.get("masteryEffects")
    summary: dict[str, Any] = {
        "tree_version": tree.get("treeVersion"),
        "class_id": tree.get("classId"),
        "ascend_class_id": tree.get("ascendClassId"),
        "node_count": len(nodes),
        "nodes": nodes[:TREE_NODE_PREVIEW],
        "more_nodes": max(len(nodes) - TREE_NODE_PREVIEW, 0),
        "mastery_effect_count": len(mastery) if isinstance(mastery, dict) else 0,
    }
    if tree.get("secondaryAscendClassId"):
        summary["secondary_ascend_class_id"] = tree["secondaryAscendClassId"]
    return summary


async def lua_get_tree(session: BridgeSession) -> dict[str, Any]:
    """Passive allocation of the loaded build."""
    with bridge_action("get tree"):
        async with session.acquire() as client:
            tree = await client.get_tree()
    return {"success": True, "tree": summarize_tree(tree)}


async def lua_set_tree(
    session: BridgeSession,
    class_id: int,
    ascend_class_id: int,
    nodes: list[int],
    secondary_ascend_class_id: int | None = None,
    mastery_effects: dict[int, int] | None = None,
    tree_version: str | None = None,
) -> dict[str, Any]:
    """Replace the passive allocation; stats are recalculated by the engine."""
    try:
        spec = TreeSpec(
            class_id=class_id,
            ascend_class_id=ascend_class_id,
            secondary_ascend_class_id=secondary_ascend_class_id,
            nodes=nodes,
            mastery_effects=mastery_effects,
            tree_version=tree_version,
        )
    except ValidationError as e:
        raise ToolError(f"Invalid tree: {e}") from e

    with bridge_action("set tree"):
        async with session.acquire() as client:
            tree = await client.set_tree(spec)
    return {
        "success": True,
        "allocated": len(spec.nodes),
        "tree": summarize_tree(tree),
    }


async def lua_get_build_info(session: BridgeSession) -> dict[str, Any]:
    with bridge_action("get build info"):
        async with session.acquire() as client:
            info = await client.get_build_info()
    return {"success": True, "info": info}


async def lua_calc_with(
    session: BridgeSession,
    add_nodes: list[int] | None = None,
    remove_nodes: list[int] | None = None,
    use_full_dps: bool | None = None,
) -> dict[str, Any]:
    """Stats the build would have after the given node changes.

    Only a live GUI instance keeps the incremental state this needs.

    Raises:
        ToolError: If the bridge is not in TCP mode
    """
    if not session.tcp_mode:
        raise ToolError("lua_calc_with requires TCP mode (set POB_API_TCP=true)")

    params = CalcWithParams(
        add_nodes=add_nodes,
        remove_nodes=remove_nodes,
        use_full_dps=use_full_dps,
    )
    with bridge_action("calculate"):
        async with session.acquire() as client:
            if not isinstance(client, SocketBridgeClient):
                raise ToolError("lua_calc_with requires a TCP bridge client")
            output = await client.calc_with(params)
    return {"success": True, "output": output}
