"""
Persistence codec for pcc-flap-guard

The in-memory state repository is volatile, so the durable part of each
route's state rides along in the route's own comment field:

    pccData:perm=true;mult=2;stable=1700000000;rs=false

This module is the single point where that mini-format is read and
written. Text an operator placed before the marker is kept on re-encode.
"""

from typing import Dict, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .state import RouteState

MARKER = "pccData:"
PAIR_SEPARATOR = ";"
KEY_VALUE_SEPARATOR = "="

# Emission order is part of the format: re-encoding must be byte-identical
FIELD_ORDER = ("perm", "mult", "stable", "rs")

_BOOL_TEXT = {"true": True, "false": False}


def split_comment(comment: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    Split a comment into (leading free text, payload after the marker).

    The payload is None when the marker is absent.
    """
    if not comment:
        return "", None
    pos = comment.find(MARKER)
    if pos < 0:
        return comment, None
    return comment[:pos], comment[pos + len(MARKER):]


def decode(annotation: Optional[str]) -> Dict[str, str]:
    """
    Decode the raw key/value map carried by a comment.

    Returns an empty dict when the comment has no marker. Pairs without a
    key/value separator, or with an empty key, are skipped. Unknown keys are
    dropped.
    """
    _, payload = split_comment(annotation)
    if payload is None:
        return {}

    fields: Dict[str, str] = {}
    for pair in payload.split(PAIR_SEPARATOR):
        key, sep, value = pair.partition(KEY_VALUE_SEPARATOR)
        key = key.strip()
        if not sep or not key:
            continue
        if key not in FIELD_ORDER:
            continue
        fields[key] = value.strip()
    return fields


def encode(fields: Dict[str, str], lead: str = "") -> str:
    """Encode a key/value map, emitting only the keys that are present."""
    parts = [
        f"{key}{KEY_VALUE_SEPARATOR}{fields[key]}"
        for key in FIELD_ORDER
        if fields.get(key) is not None
    ]
    return f"{lead}{MARKER}{PAIR_SEPARATOR.join(parts)}"


def state_fields(state: 'RouteState') -> Dict[str, str]:
    """Render the durable fields of a RouteState as strings."""
    fields: Dict[str, str] = {}
    if state.disable_permanently:
        fields["perm"] = "true"
    if state.reward_multiplier is not None:
        fields["mult"] = str(state.reward_multiplier)
    if state.stable_since is not None:
        fields["stable"] = str(state.stable_since)
    if state.previous_active is not None:
        fields["rs"] = "true" if state.previous_active else "false"
    return fields


def parse_fields(raw: Dict[str, str], plugin=None) -> Dict[str, object]:
    """
    Convert decoded strings into typed values.

    Values that do not parse are skipped (and logged at debug level when a
    logger is supplied); the rest of the map is still used.
    """
    parsed: Dict[str, object] = {}
    for key, value in raw.items():
        try:
            if key in ("perm", "rs"):
                parsed[key] = _BOOL_TEXT[value.lower()]
            elif key == "mult":
                mult = int(value)
                if mult < 1:
                    raise ValueError(f"multiplier {mult} below 1")
                parsed[key] = mult
            elif key == "stable":
                parsed[key] = int(value)
        except (KeyError, ValueError) as e:
            if plugin:
                plugin.log(f"CODEC: Skipping malformed field {key}={value!r}: {e}", level='debug')
    return parsed


def render_comment(original: Optional[str], state: 'RouteState') -> str:
    """Compute the comment that should be on the route after this pass."""
    lead, _ = split_comment(original)
    return encode(state_fields(state), lead=lead)
