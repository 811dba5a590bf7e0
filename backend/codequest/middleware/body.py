"""
CodeQuest API — Request Normalizer
====================================

What:  Bounds the request body size and decodes JSON and form-encoded bodies
       into a Python value before any route handler runs.
Why:   Oversized payloads must be rejected before they reach business logic,
       and handlers should receive one already-parsed value regardless of
       how the client encoded it.
How:   1. Reject early from the declared Content-Length (no read at all)
       2. Stream the body and stop as soon as the running total passes the
          limit (chunked uploads are never buffered past it)
       3. Decode by Content-Type:
            application/json, */*+json          → dict or list
            application/x-www-form-urlencoded   → nested dict (a[b][c]=1, a[]=1, a[0]=1)
            anything else                       → left undecoded (body=None)
       The parsed value lands on request.state.body; handlers read it with
       Depends(parsed_body).

No business-shape validation happens here; that belongs to the handlers.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from starlette.requests import Request

from codequest.exceptions import PayloadTooLargeError, ValidationError
from codequest.pipeline import CONTINUE, Fail, RequestContext, StageResult

logger = logging.getLogger(__name__)

# Form decoding limits (same as the qs defaults the frontend was built against)
FORM_MAX_DEPTH = 5
FORM_PARAMETER_LIMIT = 1000
FORM_ARRAY_LIMIT = 20

_BRACKET = re.compile(r"\[[^\[\]]*\]")


def _media_type(content_type: str) -> Tuple[str, Dict[str, str]]:
    media_type, _, raw_params = content_type.partition(";")
    params: Dict[str, str] = {}
    for param in raw_params.split(";"):
        key, sep, value = param.partition("=")
        if sep:
            params[key.strip().lower()] = value.strip().strip('"')
    return media_type.strip().lower(), params


def _is_json(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def _split_key(key: str, depth: int) -> List[str]:
    """
    "quest[rewards][0]" → ["quest", "[rewards]", "[0]"]

    Bracket segments keep their brackets so an index is told apart from a
    plain key named "0". At most `depth` bracket segments are split; the rest
    of the key becomes one literal segment ("[[g]]" → key "[g]"). A leading
    bracket has no parent: "[x]" → ["[x]"].
    """
    match = _BRACKET.search(key) if depth > 0 else None
    parent = key[: match.start()] if match else key
    segments = [parent] if parent else []
    count = 0
    while match is not None and count < depth:
        segments.append(match.group(0))
        count += 1
        match = _BRACKET.search(key, match.end())
    if match is not None:
        segments.append("[" + key[match.start():] + "]")
    return segments


class _IndexedList(dict):
    """
    Array under construction, keyed by index.

    a[1]=x leaves a hole at 0; holes are dropped when the result is compacted
    into a real list.
    """

    def push(self, value: Any) -> None:
        self[max(self, default=-1) + 1] = value

    def ordered(self) -> List[Any]:
        return [self[index] for index in sorted(self)]


def _build(segments: List[str], leaf: Any, array_limit: int) -> Any:
    # Innermost segment first: hero[skills][] wraps the value in a list, then
    # in {"skills": ...}, then in {"hero": ...}
    for segment in reversed(segments):
        if segment == "[]":
            values = leaf.ordered() if isinstance(leaf, _IndexedList) else [leaf]
            leaf = _IndexedList(enumerate(values))
            continue
        bracketed = segment.startswith("[") and segment.endswith("]")
        name = segment[1:-1] if bracketed else segment
        if (
            bracketed
            and name.isascii()
            and name.isdigit()
            and str(int(name)) == name
            and int(name) <= array_limit
        ):
            leaf = _IndexedList({int(name): leaf})
        else:
            leaf = {name: leaf}
    return leaf


def _entries(value: Dict[Any, Any]) -> List[Tuple[str, Any]]:
    if isinstance(value, _IndexedList):
        return [(str(index), value[index]) for index in sorted(value)]
    return list(value.items())


def _merge(target: Any, source: Any) -> Any:
    """
    Merge one decoded pair into the accumulated result.

        list + list      → merged by index; objects at the same index merge,
                           anything else is appended
        list + object    → the list becomes an object keyed "0", "1", ...
        list + scalar    → appended
        object + scalar  → the scalar becomes a key set to True
        scalar + other   → [scalar, *other]
    """
    if not isinstance(source, dict):
        if isinstance(target, _IndexedList):
            target.push(source)
            return target
        if isinstance(target, dict):
            target[source] = True
            return target
        return _IndexedList(enumerate([target, source]))

    if not isinstance(target, dict):
        merged = _IndexedList({0: target})
        for value in source.ordered() if isinstance(source, _IndexedList) else [source]:
            merged.push(value)
        return merged

    if isinstance(target, _IndexedList) and isinstance(source, _IndexedList):
        for index, item in sorted(source.items()):
            if index not in target:
                target[index] = item
            elif isinstance(target[index], dict) and isinstance(item, dict):
                target[index] = _merge(target[index], item)
            else:
                target.push(item)
        return target

    merged = dict(_entries(target)) if isinstance(target, _IndexedList) else target
    for key, value in _entries(source):
        merged[key] = _merge(merged[key], value) if key in merged else value
    return merged


def _compact(value: Any) -> Any:
    if isinstance(value, _IndexedList):
        return [_compact(item) for item in value.ordered()]
    if isinstance(value, dict):
        return {key: _compact(item) for key, item in value.items()}
    return value


def parse_form(
    text: str,
    depth: int = FORM_MAX_DEPTH,
    parameter_limit: int = FORM_PARAMETER_LIMIT,
    array_limit: int = FORM_ARRAY_LIMIT,
) -> Dict[str, Any]:
    """
    Decode an application/x-www-form-urlencoded string with nested keys.

        >>> parse_form("hero[name]=Ada&hero[skills][]=py&hero[skills][]=sql")
        {'hero': {'name': 'Ada', 'skills': ['py', 'sql']}}
        >>> parse_form("items[][name]=sword&items[][dmg]=5")
        {'items': [{'name': 'sword', 'dmg': '5'}]}
        >>> parse_form("a[0]=x&a[1]=y&b[21]=z")
        {'a': ['x', 'y'], 'b': {'21': 'z'}}

    Numeric indices up to `array_limit` build lists (holes are dropped);
    larger ones stay object keys. Repeated keys collect into a list.

    Raises PayloadTooLargeError when there are more than `parameter_limit`
    pairs.
    """
    pairs = parse_qsl(text, keep_blank_values=True)
    if len(pairs) > parameter_limit:
        raise PayloadTooLargeError(
            limit=parameter_limit,
            size=len(pairs),
            message=f"Too many form parameters (limit {parameter_limit})",
        )

    # Repeated keys (a=1&a=2) collect into a list
    values: Dict[str, Any] = {}
    for key, value in pairs:
        if not key:
            continue
        if key not in values:
            values[key] = value
        elif isinstance(values[key], _IndexedList):
            values[key].push(value)
        else:
            values[key] = _IndexedList(enumerate([values[key], value]))

    result: Dict[str, Any] = {}
    for key, value in values.items():
        result = _merge(result, _build(_split_key(key, depth), value, array_limit))
    return _compact(result)


class RequestNormalizer:
    """Stage: size limit + body decoding."""

    def __init__(
        self,
        max_body_size: int,
        form_depth: int = FORM_MAX_DEPTH,
        form_parameter_limit: int = FORM_PARAMETER_LIMIT,
    ):
        self.max_body_size = max_body_size
        self.form_depth = form_depth
        self.form_parameter_limit = form_parameter_limit

    async def __call__(self, context: RequestContext) -> StageResult:
        declared = context.headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                return Fail(ValidationError("Invalid Content-Length header", field="content-length"))
            if declared_size > self.max_body_size:
                return Fail(PayloadTooLargeError(limit=self.max_body_size, size=declared_size))
        elif "transfer-encoding" not in context.headers:
            # No body on this request
            return CONTINUE

        received = bytearray()
        async for chunk in context.stream_body():
            received.extend(chunk)
            # Never buffers more than one chunk past the limit
            if len(received) > self.max_body_size:
                return Fail(PayloadTooLargeError(limit=self.max_body_size, size=len(received)))
        raw = bytes(received)
        context.raw_body = raw
        context.body_read = True

        media_type, params = _media_type(context.headers.get("content-type", ""))
        if _is_json(media_type):
            context.body = self._decode_json(raw, params)
        elif media_type == "application/x-www-form-urlencoded":
            context.body = parse_form(
                self._decode_text(raw, params),
                depth=self.form_depth,
                parameter_limit=self.form_parameter_limit,
            )
        elif raw:
            logger.debug("Leaving %d byte %s body undecoded", len(raw), media_type or "untyped")
        return CONTINUE

    def _decode_text(self, raw: bytes, params: Dict[str, str]) -> str:
        charset = params.get("charset", "utf-8").lower()
        if charset not in ("utf-8", "utf8"):
            raise ValidationError(f"Unsupported charset '{charset}'", field="content-type")
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("Request body is not valid UTF-8", field="body") from exc

    def _decode_json(self, raw: bytes, params: Dict[str, str]) -> Any:
        text = self._decode_text(raw, params)
        if not text.strip():
            return {}
        try:
            value = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(
                "Malformed JSON in request body",
                field="body",
                context={"line": exc.lineno, "column": exc.colno},
            ) from exc
        # Only objects and arrays at the top level
        if not isinstance(value, (dict, list)):
            raise ValidationError("JSON body must be an object or an array", field="body")
        return value


def parsed_body(request: Request) -> Optional[Any]:
    """Route-handler dependency: the body decoded by the Request Normalizer."""
    return getattr(request.state, "body", None)
