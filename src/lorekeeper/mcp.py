"""MCP server for the Lorekeeper memory engine.

Exposes conversation-tree navigation, world state, lorebook scanning and the
context preview through Model Context Protocol tools.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from lorekeeper.engine import MemoryEngine
from lorekeeper.lorebook import get_active_lorebook_entries
from lorekeeper.models import (
    Character,
    EngineConfig,
    GenerationSettings,
    Lorebook,
    LorebookEntry,
    LorebookScanConfig,
    Message,
    Persona,
)
from lorekeeper.quality import score_message_quality

logger = logging.getLogger(__name__)

# Global engine instance (initialized on first connection)
_engine: MemoryEngine | None = None


def get_engine() -> MemoryEngine:
    """Get or initialize the engine instance."""
    global _engine
    if _engine is None:
        config = EngineConfig(
            db_path=os.getenv("LOREKEEPER_DB_PATH", "lorekeeper.db"),
            embedding_backend=os.getenv("LOREKEEPER_EMBEDDING_BACKEND", "local"),
            embedding_model=os.getenv("LOREKEEPER_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("LOREKEEPER_OPENAI_MODEL", "text-embedding-3-small"),
            vector_dimensions=int(os.getenv("LOREKEEPER_VECTOR_DIMENSIONS", "384")),
        )
        _engine = MemoryEngine(config)
    return _engine


server = Server("lorekeeper")


def _message_dict(message: Message) -> dict:
    data = dataclasses.asdict(message)
    if message.world_state_snapshot is not None:
        data["world_state_snapshot"] = message.world_state_snapshot.to_dict()
    return data


def _json(result: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]


# -------------------------------------------------------------------------
# Tool Definitions
# -------------------------------------------------------------------------

_CONVERSATION_ID = {"type": "string", "description": "Conversation id"}
_MESSAGE_ID = {"type": "string", "description": "Message id"}

TOOLS = [
    Tool(
        name="register_character",
        description="Register a character card and its lorebook",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Unique character identifier"},
                "name": {"type": "string", "description": "Display name"},
                "description": {"type": "string"},
                "personality": {"type": "string"},
                "scenario": {"type": "string"},
                "first_mes": {"type": "string", "description": "Opening message"},
                "system_prompt": {"type": "string", "description": "Card system prompt override"},
                "lorebook": {
                    "type": "array",
                    "description": "Lorebook entries ({keys, content, priority, enabled})",
                    "items": {"type": "object"},
                },
            },
            "required": ["id", "name"],
        },
    ),
    Tool(
        name="create_conversation",
        description="Start a conversation with a registered character",
        inputSchema={
            "type": "object",
            "properties": {
                "character_id": {"type": "string", "description": "Character id"},
                "title": {"type": "string", "description": "Conversation title"},
            },
            "required": ["character_id"],
        },
    ),
    Tool(
        name="add_message",
        description="Append a message under a parent (default: the active leaf)",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "role": {"type": "string", "enum": ["user", "assistant", "system"]},
                "content": {"type": "string"},
                "parent_id": {"type": "string", "description": "Parent message id"},
            },
            "required": ["conversation_id", "role", "content"],
        },
    ),
    Tool(
        name="delete_message",
        description="Delete a message and its replies",
        inputSchema={
            "type": "object",
            "properties": {"message_id": _MESSAGE_ID},
            "required": ["message_id"],
        },
    ),
    Tool(
        name="navigate_to_sibling",
        description="Switch to the previous or next alternative of a message",
        inputSchema={
            "type": "object",
            "properties": {
                "message_id": _MESSAGE_ID,
                "direction": {"type": "string", "enum": ["prev", "next"]},
            },
            "required": ["message_id", "direction"],
        },
    ),
    Tool(
        name="get_active_branch",
        description="Get the currently displayed messages from root to leaf",
        inputSchema={
            "type": "object",
            "properties": {"conversation_id": _CONVERSATION_ID},
            "required": ["conversation_id"],
        },
    ),
    Tool(
        name="get_sibling_info",
        description="Get a message's 1-based position among its alternatives",
        inputSchema={
            "type": "object",
            "properties": {"message_id": _MESSAGE_ID},
            "required": ["message_id"],
        },
    ),
    Tool(
        name="get_world_state",
        description="Get the conversation's current world state",
        inputSchema={
            "type": "object",
            "properties": {"conversation_id": _CONVERSATION_ID},
            "required": ["conversation_id"],
        },
    ),
    Tool(
        name="update_world_state",
        description="Overwrite world state fields (inventory, location, relationships)",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "changes": {"type": "object", "description": "Fields to overwrite"},
            },
            "required": ["conversation_id", "changes"],
        },
    ),
    Tool(
        name="score_message",
        description="Rate a message's narrative density (0-10)",
        inputSchema={
            "type": "object",
            "properties": {
                "role": {"type": "string", "enum": ["user", "assistant", "system"]},
                "content": {"type": "string"},
            },
            "required": ["content"],
        },
    ),
    Tool(
        name="scan_lorebook",
        description="List lorebook entries triggered by the active branch",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "scan_depth": {"type": "integer", "default": 2},
                "token_budget": {"type": "integer", "default": 500},
                "match_whole_words": {"type": "boolean", "default": False},
                "recursive": {"type": "boolean", "default": False},
            },
            "required": ["conversation_id"],
        },
    ),
    Tool(
        name="preview_context",
        description="Show how the next request would be assembled within the token budget",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "max_context_tokens": {"type": "integer", "default": 8192},
                "max_output_tokens": {"type": "integer", "default": 2048},
                "provider": {"type": "string", "default": "openrouter"},
                "persona_name": {"type": "string"},
                "persona_bio": {"type": "string"},
            },
            "required": ["conversation_id"],
        },
    ),
    Tool(
        name="list_facts",
        description="List extracted facts for a conversation",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "active_only": {"type": "boolean", "default": True},
            },
            "required": ["conversation_id"],
        },
    ),
    Tool(
        name="search_facts",
        description="Find the facts nearest to a query",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION_ID,
                "query": {"type": "string"},
                "limit": {"type": "integer", "default": 5},
            },
            "required": ["conversation_id", "query"],
        },
    ),
    Tool(
        name="merge_facts",
        description="Merge semantically related facts of a conversation",
        inputSchema={
            "type": "object",
            "properties": {"conversation_id": _CONVERSATION_ID},
            "required": ["conversation_id"],
        },
    ),
]


# -------------------------------------------------------------------------
# MCP Handlers
# -------------------------------------------------------------------------


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return TOOLS


async def dispatch(engine: MemoryEngine, name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Run one tool against an engine."""
    if name == "register_character":
        character = Character(
            id=arguments["id"],
            name=arguments["name"],
            description=arguments.get("description", ""),
            personality=arguments.get("personality", ""),
            scenario=arguments.get("scenario", ""),
            first_mes=arguments.get("first_mes", ""),
            system_prompt=arguments.get("system_prompt"),
            lorebook=Lorebook(
                entries=[LorebookEntry.from_dict(e) for e in arguments.get("lorebook", [])]
            ),
        )
        engine.register_character(character)
        return [TextContent(type="text", text=f"Registered character: {character.id}")]

    elif name == "create_conversation":
        conversation = engine.create_conversation(
            arguments["character_id"], title=arguments.get("title")
        )
        return [TextContent(type="text", text=f"Created conversation: {conversation.id}")]

    elif name == "add_message":
        message = engine.add_message(
            arguments["conversation_id"],
            arguments["role"],
            arguments["content"],
            parent_id=arguments.get("parent_id"),
        )
        if message is None:
            return [TextContent(type="text", text="Message not added: unknown parent")]
        return [TextContent(type="text", text=f"Added message: {message.id}")]

    elif name == "delete_message":
        return _json({"deleted": engine.delete_message(arguments["message_id"])})

    elif name == "navigate_to_sibling":
        target = engine.navigate_to_sibling(arguments["message_id"], arguments["direction"])
        return _json({"active": target.id if target else None})

    elif name == "get_active_branch":
        return _json([_message_dict(m) for m in engine.get_active_branch(arguments["conversation_id"])])

    elif name == "get_sibling_info":
        index, total = engine.get_sibling_info(arguments["message_id"])
        return _json({"index": index, "total": total})

    elif name == "get_world_state":
        return _json(engine.get_world_state(arguments["conversation_id"]).to_dict())

    elif name == "update_world_state":
        state = engine.update_world_state(arguments["conversation_id"], arguments["changes"])
        return _json(state.to_dict() if state else None)

    elif name == "score_message":
        score = score_message_quality(arguments.get("role", "assistant"), arguments["content"])
        return _json(dataclasses.asdict(score))

    elif name == "scan_lorebook":
        conversation = engine.load_conversation(arguments["conversation_id"])
        config = LorebookScanConfig(
            scan_depth=arguments.get("scan_depth", 2),
            token_budget=arguments.get("token_budget", 500),
            match_whole_words=arguments.get("match_whole_words", False),
            recursive=arguments.get("recursive", False),
        )
        entries = get_active_lorebook_entries(
            engine.get_active_branch(conversation.id),
            engine.lorebook(conversation.character_id).lorebook,
            config,
            engine.count_tokens,
        )
        return _json([e.to_dict() for e in entries])

    elif name == "preview_context":
        settings = GenerationSettings(
            provider=arguments.get("provider", "openrouter"),
            max_context_tokens=arguments.get("max_context_tokens", 8192),
            max_output_tokens=arguments.get("max_output_tokens", 2048),
        )
        persona = None
        if arguments.get("persona_name"):
            persona = Persona(arguments["persona_name"], arguments.get("persona_bio", ""))
        allocation = engine.build_context(arguments["conversation_id"], settings, persona)
        preview = dataclasses.asdict(allocation.preview())
        preview["included_message_count"] = allocation.included_message_count
        preview["dropped_message_count"] = allocation.dropped_message_count
        preview["token_breakdown"] = allocation.token_breakdown
        return _json(preview)

    elif name == "list_facts":
        facts = engine.facts(arguments["conversation_id"]).facts(
            active_only=arguments.get("active_only", True)
        )
        return _json(
            [
                {
                    "id": f.id,
                    "fact": f.fact,
                    "category": f.category,
                    "importance": f.importance,
                    "entities": f.related_entities,
                    "access_count": f.access_count,
                }
                for f in facts
            ]
        )

    elif name == "search_facts":
        results = engine.facts(arguments["conversation_id"]).search(
            arguments["query"], arguments.get("limit", 5)
        )
        return _json([{"id": f.id, "fact": f.fact, "distance": d} for f, d in results])

    elif name == "merge_facts":
        merged = engine.maintain_facts(arguments["conversation_id"])
        return [TextContent(type="text", text=f"Merged {merged} fact clusters")]

    return [TextContent(type="text", text=f"Unknown tool: {name}")]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    engine = get_engine()
    try:
        result = await dispatch(engine, name, arguments)
        await engine.flush()
        return result
    except (KeyError, ValueError) as e:
        logger.info("Tool %s rejected: %s", name, e)
        return [TextContent(type="text", text=f"Error: {e}")]


# -------------------------------------------------------------------------
# Main Entry Point
# -------------------------------------------------------------------------


async def main():
    """Run the MCP server."""
    logging.basicConfig(level=os.getenv("LOREKEEPER_LOG_LEVEL", "INFO"))
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def run() -> None:
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run()
