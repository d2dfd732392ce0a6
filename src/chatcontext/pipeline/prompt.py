"""Provider prompt construction from the assembled context window.

Separate module because the prompt layout evolves independently of the
handlers that send it.
"""

from __future__ import annotations

import json
from typing import Any

from chatcontext.pipeline.context import ProcessingContext

_PROVIDER_ROLES = {"system", "user", "assistant"}


def _format_state(snapshot: dict[str, dict[str, Any]]) -> str:
    """Render non-empty state scopes as ``scope.key = value`` lines."""
    lines = []
    for scope, values in snapshot.items():
        for key, value in values.items():
            lines.append(f"- {scope}.{key} = {json.dumps(value, default=str)}")
    if not lines:
        return ""
    return "## Session state\n" + "\n".join(lines)


def fixed_system_text(ctx: ProcessingContext) -> str:
    """System text that does not come from the context window."""
    parts = []
    if ctx.agent is not None and ctx.agent.system_prompt:
        parts.append(ctx.agent.system_prompt)
    state = _format_state(ctx.state_snapshot)
    if state:
        parts.append(state)
    return "\n\n".join(parts)


def build_prompt(
    ctx: ProcessingContext,
    *,
    instructions: str | None = None,
) -> list[dict[str, Any]]:
    """Build the chat message list for the provider call.

    Layout: one system message (agent prompt, handler instructions,
    reference sections, state), then history oldest first, then the
    current message.
    """
    # 1. System block
    system_parts: list[str] = []
    if ctx.agent is not None and ctx.agent.system_prompt:
        system_parts.append(ctx.agent.system_prompt)
    if instructions:
        system_parts.append(instructions)

    history: list[dict[str, Any]] = []
    if ctx.context is not None:
        for block in ctx.context.render("messages"):
            if block["role"] == "system":
                system_parts.append(block["content"])
            else:
                role = block["role"] if block["role"] in _PROVIDER_ROLES else "user"
                history.append({"role": role, "content": block["content"]})

    state = _format_state(ctx.state_snapshot)
    if state:
        system_parts.append(state)

    messages: list[dict[str, Any]] = []
    if system_parts:
        messages.append({"role": "system", "content": "\n\n".join(system_parts)})

    # 2. History, then 3. the current turn
    messages.extend(history)
    if ctx.message is not None:
        messages.append({"role": "user", "content": ctx.message.text})
    return messages
