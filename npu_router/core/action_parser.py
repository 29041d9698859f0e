"""
npu-router :: Action Parser

Extracts the structured action from Action-intent model output.
The executor contract is exactly {"action": <string>, "params": {...}}.

Extraction strategies, in order:
  1. the whole output is the JSON object
  2. <action>...</action> tags (common in fine-tuned models)
  3. the first balanced {...} object carrying an "action" key

INL - 2025
"""

import json
import re
from typing import Any, Dict, Iterator, Optional
from dataclasses import dataclass, field

from npu_router.core.exceptions import ActionParseError


_TAG_PATTERN = re.compile(r"<action>\s*(.*?)\s*</action>", re.DOTALL)


@dataclass
class ActionDescriptor:
    """A parsed action: name plus string-keyed params."""
    action: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "params": dict(self.params)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _from_json(text: str) -> Optional[ActionDescriptor]:
    """Try to build a descriptor from one JSON object string."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        return None

    params = data.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return None

    return ActionDescriptor(action=action.strip(), params={str(k): v for k, v in params.items()})


def _balanced_objects(text: str) -> Iterator[str]:
    """Yield every top-level {...} span, honoring JSON string quoting."""
    depth = 0
    start = -1
    in_string = False
    escape_next = False
    for i, ch in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = depth > 0
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:i + 1]


def parse_action(text: str) -> ActionDescriptor:
    """
    Extract the action descriptor from generated text.

    Raises ActionParseError if no usable object is found.
    """
    stripped = text.strip()
    if not stripped:
        raise ActionParseError("empty model output")

    # Strategy 1: the output is the object
    descriptor = _from_json(stripped)
    if descriptor:
        return descriptor

    # Strategy 2: <action>...</action> tags
    for match in _TAG_PATTERN.finditer(stripped):
        descriptor = _from_json(match.group(1))
        if descriptor:
            return descriptor

    # Strategy 3: first balanced object with an "action" key
    for candidate in _balanced_objects(stripped):
        descriptor = _from_json(candidate)
        if descriptor:
            return descriptor

    preview = stripped if len(stripped) <= 80 else stripped[:77] + "..."
    raise ActionParseError(f"no action JSON in model output: {preview!r}")
