"""Message history helpers for assistant conversations."""
from __future__ import annotations

import json
from typing import Any, Dict, List

from marketing_gateway.models import utcnow

REPLY_KEYS = ("output", "response", "content")
ERROR_REPLY_PREFIX = "I'm sorry, I encountered an error while processing your request."


def message(role: str, content: str) -> Dict[str, Any]:
    return {"role": role, "content": content, "timestamp": utcnow().isoformat()}


def user_message(content: str) -> Dict[str, Any]:
    return message("user", content)


def assistant_message(content: str) -> Dict[str, Any]:
    return message("assistant", content)


def error_reply(reason: str) -> Dict[str, Any]:
    return assistant_message(f"{ERROR_REPLY_PREFIX} {reason}")


def history_for_upstream(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Role and content only; timestamps stay in the store."""
    return [{"role": m["role"], "content": m["content"]} for m in messages]


def reply_text(result: Dict[str, Any]) -> str:
    """Pick the assistant's answer out of a normalized webhook result."""
    for key in REPLY_KEYS:
        value = result.get(key)
        if value:
            return value if isinstance(value, str) else json.dumps(value)
    return json.dumps(result)
