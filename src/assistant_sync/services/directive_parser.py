"""Extraction of action directives from assistant replies.

Assistant replies either are a JSON directive, or embed one somewhere in
prose (often inside a fenced ``json`` block). Anything that cannot be decoded
into a known directive is treated as "no directive"; parsing never raises.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Union

from pydantic import ValidationError

from ..domain.directives import (
    ACTION_KINDS,
    CreateProjectDirective,
    CreateTaskDirective,
    directive_adapter,
)
from ..domain.errors import MalformedDirectiveError


logger = logging.getLogger("assistant.directives")

AnyDirective = Union[CreateProjectDirective, CreateTaskDirective]

_FENCED_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)
_EMBEDDED_RE = {
    kind: re.compile(r'\{[\s\S]*"action"\s*:\s*"' + kind + r'"[\s\S]*\}') for kind in ACTION_KINDS
}


def _decode(fragment: str) -> AnyDirective:
    try:
        payload = json.loads(fragment)
    except json.JSONDecodeError as exc:
        raise MalformedDirectiveError(f"Invalid JSON: {exc.msg}") from exc
    return coerce_directive(payload)


def coerce_directive(payload: Any) -> AnyDirective:
    """Validate an already-decoded payload into a directive model."""
    if not isinstance(payload, dict) or payload.get("action") not in ACTION_KINDS:
        raise MalformedDirectiveError("Payload carries no known action")
    try:
        return directive_adapter.validate_python(payload)
    except ValidationError as exc:
        raise MalformedDirectiveError(str(exc)) from exc


def _candidates(content: str):
    for match in _FENCED_RE.finditer(content):
        yield match.group(1)
    for kind in ACTION_KINDS:
        if kind not in content:
            continue
        match = _EMBEDDED_RE[kind].search(content)
        if match:
            yield match.group(0)


def parse(content: Optional[str]) -> Optional[AnyDirective]:
    if not content or not content.strip():
        return None
    try:
        return _decode(content.strip())
    except MalformedDirectiveError:
        pass
    for fragment in _candidates(content):
        try:
            return _decode(fragment)
        except MalformedDirectiveError as exc:
            logger.debug("directive_fragment_rejected", extra={"reason": str(exc)})
    return None


def is_directive_only(content: Optional[str]) -> bool:
    """True when the whole message is a directive (rendered as custom UI, never revealed)."""
    if not content or not content.strip():
        return False
    text = content.strip()
    fenced = _FENCED_RE.fullmatch(text)
    if fenced:
        text = fenced.group(1)
    try:
        _decode(text)
    except MalformedDirectiveError:
        return False
    return True


def summarize(directive: AnyDirective) -> str:
    if isinstance(directive, CreateProjectDirective):
        return f"Your project **{directive.project_name}** has been created successfully!"
    return f"Your task **{directive.title}** has been created successfully!"
