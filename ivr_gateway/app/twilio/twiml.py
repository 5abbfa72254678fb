"""TwiML verbs and the renderer that turns them into Twilio response markup.

State resolvers describe what the caller should hear as a list of verb
objects; `render_twiml` is the only place those verbs become XML.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, fields
from typing import Any, Union

_LOGGER = logging.getLogger(__name__)

_INDENT = "  "


@dataclass(slots=True, frozen=True)
class Say:
    """Reads text to the caller with Twilio text-to-speech."""

    text: str
    voice: str | None = None
    language: str | None = None
    loop: int | None = None


@dataclass(slots=True, frozen=True)
class Play:
    """Plays an audio file, or sends DTMF tones when `digits` is given."""

    url: str = ""
    loop: int | None = None
    digits: str | None = None


@dataclass(slots=True, frozen=True)
class Pause:
    length: int = 1


@dataclass(slots=True, frozen=True)
class Gather:
    """Collects keypad (or speech) input while playing nested prompts.

    Attributes:
        prompts: `Say`, `Play` or `Pause` verbs played while gathering.
        action: Callback URL Twilio posts collected input to.
        method: HTTP method for `action`.
        num_digits: Number of digits that ends input collection.
        timeout: Seconds of silence before Twilio gives up.
        finish_on_key: Key that submits collected digits.
        input: Input modes, for example ``dtmf`` or ``dtmf speech``.
    """

    prompts: tuple[Say | Play | Pause, ...] = ()
    action: str | None = None
    method: str | None = None
    num_digits: int | None = None
    timeout: int | None = None
    finish_on_key: str | None = None
    input: str | None = None


@dataclass(slots=True, frozen=True)
class Record:
    action: str | None = None
    method: str | None = None
    max_length: int | None = None
    timeout: int | None = None
    finish_on_key: str | None = None
    play_beep: bool | None = None
    transcribe: bool | None = None


@dataclass(slots=True, frozen=True)
class Dial:
    number: str
    caller_id: str | None = None
    timeout: int | None = None
    action: str | None = None
    record: str | None = None


@dataclass(slots=True, frozen=True)
class Redirect:
    url: str
    method: str | None = None


@dataclass(slots=True, frozen=True)
class Hangup:
    pass


@dataclass(slots=True, frozen=True)
class Reject:
    reason: str | None = None


Verb = Union[Say, Play, Pause, Gather, Record, Dial, Redirect, Hangup, Reject]

# Directives accepted by `render_twiml`: one verb or an ordered sequence of them.
Directives = Union[Verb, Sequence[Verb], None]

# Field holding each verb's text body; every other field becomes an attribute.
_BODY_FIELDS: dict[type, str] = {
    Say: "text",
    Play: "url",
    Dial: "number",
    Redirect: "url",
}


def _camel_case(name: str) -> str:
    """Converts a snake_case field name into a TwiML camelCase attribute."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return html.escape(str(value))


def _attributes(verb: Verb, skip: Iterable[str]) -> str:
    skipped = set(skip)
    parts = [
        f'{_camel_case(item.name)}="{_format_value(getattr(verb, item.name))}"'
        for item in fields(verb)
        if item.name not in skipped and getattr(verb, item.name) is not None
    ]
    return "".join(f" {part}" for part in parts)


def _render_verb(verb: Verb, depth: int) -> str:
    pad = _INDENT * depth
    tag = type(verb).__name__

    if isinstance(verb, Gather):
        attrs = _attributes(verb, skip=("prompts",))
        if not verb.prompts:
            return f"{pad}<{tag}{attrs} />\n"
        for prompt in verb.prompts:
            if not isinstance(prompt, (Say, Play, Pause)):
                raise TypeError(f"Gather cannot nest {type(prompt).__name__}")
        nested = "".join(_render_verb(prompt, depth + 1) for prompt in verb.prompts)
        return f"{pad}<{tag}{attrs}>\n{nested}{pad}</{tag}>\n"

    body_field = _BODY_FIELDS.get(type(verb))
    attrs = _attributes(verb, skip=(body_field,) if body_field else ())
    body = getattr(verb, body_field) if body_field else ""
    if not body:
        return f"{pad}<{tag}{attrs} />\n"
    return f"{pad}<{tag}{attrs}>{html.escape(str(body))}</{tag}>\n"


def render_twiml(directives: Directives) -> str:
    """Renders verbs into a complete TwiML `<Response>` document.

    Args:
        directives: A single verb, an ordered sequence of verbs, or ``None``
            for an empty response.

    Raises:
        TypeError: If a directive is not a known TwiML verb.

    Returns:
        TwiML XML payload.
    """
    if directives is None:
        verbs: list[Verb] = []
    elif isinstance(directives, (list, tuple)):
        verbs = list(directives)
    else:
        verbs = [directives]  # type: ignore[list-item]

    for verb in verbs:
        if type(verb) not in _VERB_TYPES:
            raise TypeError(f"Unsupported TwiML directive: {verb!r}")

    _LOGGER.debug(
        "Rendering TwiML response.",
        extra={"verbs": [type(verb).__name__ for verb in verbs]},
    )
    header = '<?xml version="1.0" encoding="UTF-8"?>\n'
    if not verbs:
        return header + "<Response />"
    return header + "<Response>\n" + "".join(_render_verb(verb, 1) for verb in verbs) + "</Response>"


_VERB_TYPES: frozenset[type] = frozenset(
    {Say, Play, Pause, Gather, Record, Dial, Redirect, Hangup, Reject}
)
