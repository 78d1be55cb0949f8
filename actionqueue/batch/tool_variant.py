"""Batch variants of exported tool definitions.

A tool here is a plain dict ``{"name", "description", "parameters", ...}``.
The batch variant takes a list of items instead of a single input, plus an
optional ``config`` object with concurrency and delay overrides.
"""
from typing import Any, Dict, Iterable, List, Optional

from .interfaces import ActionDefinition
from .service import parse_batch_config


def tool_name_for(action: ActionDefinition) -> str:
    return f"{action.integration_slug}_{action.slug}".lower().replace("-", "_")


def build_batch_description(tool_name: str, original_description: str) -> str:
    readable = tool_name.replace("_", " ")
    return (
        f"Batch version of {readable}. Submit multiple items for background processing. "
        f"Use this instead of calling {tool_name} individually when processing more than ~5 items. "
        f"Returns a job ID for progress tracking.\n\n"
        f"Original tool: {original_description}"
    )


def batch_tool_variant(tool: Dict[str, Any], action: ActionDefinition) -> Optional[Dict[str, Any]]:
    """The ``batch_<name>`` tool for a batch-enabled action, else None."""
    if not action.batch_enabled:
        return None

    batch_config = parse_batch_config(action.batch_config)
    description = batch_config.tool_description or build_batch_description(
        tool["name"], tool.get("description", "")
    )

    variant = {
        "name": f"batch_{tool['name']}",
        "description": description,
        "parameters": {
            "type": "object",
            "properties": {
                "items": {
                    "type": "array",
                    "description": (
                        "Array of items to process in batch. "
                        "Each item contains the same parameters as the individual tool."
                    ),
                    "items": {
                        "type": "object",
                        "description": "A single batch item with input parameters",
                    },
                },
                "config": {
                    "type": "object",
                    "description": "Optional configuration overrides for this batch operation",
                    "properties": {
                        "concurrency": {
                            "type": "integer",
                            "description": (
                                "Number of parallel items to process "
                                f"(1-20, default {batch_config.default_concurrency})"
                            ),
                        },
                        "delay_ms": {
                            "type": "integer",
                            "description": (
                                "Delay between items in milliseconds "
                                f"(0-5000, default {batch_config.default_delay_ms})"
                            ),
                        },
                    },
                },
            },
            "required": ["items"],
        },
    }
    if "context_types" in tool:
        variant["context_types"] = tool["context_types"]
    return variant


def batch_tool_variants(tools: Iterable[Dict[str, Any]], actions: Iterable[ActionDefinition]) -> List[Dict[str, Any]]:
    """Variants for every tool whose action is batch-enabled; originals are not included."""
    by_name = {tool_name_for(action): action for action in actions}
    variants = []
    for tool in tools:
        action = by_name.get(tool["name"])
        if action is None:
            continue
        variant = batch_tool_variant(tool, action)
        if variant is not None:
            variants.append(variant)
    return variants
