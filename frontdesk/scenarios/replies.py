"""Weighted reply variants.

Reply fields arrive either as bare string lists (legacy) or as
``{text, weight}`` objects (current). Both shapes are normalized here, once,
at the pool-load boundary. Nothing downstream branches on the raw shape.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

DEFAULT_REPLY_WEIGHT = 3.0


@dataclass(frozen=True, slots=True)
class ReplyVariant:
    """One reply text with its relative selection weight."""

    text: str
    weight: float = DEFAULT_REPLY_WEIGHT


def _coerce_weight(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return DEFAULT_REPLY_WEIGHT
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    try:
        return max(0.0, float(str(value).strip()))
    except ValueError:
        return DEFAULT_REPLY_WEIGHT


def normalize_replies(raw: Any) -> tuple[ReplyVariant, ...]:
    """Normalize any supported reply shape into a tuple of ReplyVariant.

    Accepts None, a single string, a list of strings, a list of
    ``{"text": ..., "weight": ...}`` mappings, or ReplyVariant instances
    (mixed lists included). Blank texts are dropped, texts are stripped,
    missing or unparsable weights default to 3 and negative weights clamp
    to 0. Normalizing an already-normalized tuple returns an equal tuple.
    """
    if raw is None:
        return ()
    if isinstance(raw, (str, ReplyVariant, Mapping)):
        raw = [raw]
    if not isinstance(raw, Iterable):
        return ()

    variants: list[ReplyVariant] = []
    for item in raw:
        if isinstance(item, ReplyVariant):
            text, weight = item.text, item.weight
        elif isinstance(item, Mapping):
            text, weight = item.get("text"), item.get("weight")
        elif isinstance(item, str):
            text, weight = item, None
        else:
            continue
        text = str(text).strip() if text is not None else ""
        if not text:
            continue
        variants.append(ReplyVariant(text=text, weight=_coerce_weight(weight)))
    return tuple(variants)
