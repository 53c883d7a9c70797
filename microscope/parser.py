"""AI response parsing into typed directives + leftover narrative.

Two mutually exclusive modes, chosen per response:

  legacy mode  — no line starts with '#'. Only the first line is tested as a
                 directive; everything after it is that directive's narrative.
                 If the first line is not a directive the whole response is
                 narrative.
  hash mode    — at least one line starts with '#'. Only '#' lines are tested
                 (prefix stripped). Every other line is narrative. '#' lines
                 that match nothing are dropped, not restored to narrative.

Two directive dialects are accepted on a directive line:

  colon    create period: Title (light|dark) [first|after X|before X] | Desc
           create start bookend: Title (dark) | Desc
           create event: Title (light) in Period [| Desc]
           create scene: Question in Event
           add to palette yes: Item
           edit name: Text / edit description: Text / edit tone: dark
  keyword  CREATE PERIOD Title [FIRST|LAST|AFTER X|BEFORE X] TONE light DESCRIPTION Desc
           CREATE EVENT Title IN Period [placement] TONE dark DESCRIPTION Desc
           CREATE SCENE Title IN Event [placement] TONE dark QUESTION Q ANSWER A DESCRIPTION Desc

Matching is case-insensitive; tone and palette category are lowercased, all
other text is kept verbatim.

Narrative text that follows a directive (up to the next directive) is
attached to that command as `narrative`, which the executor moves into the
new item's own conversation. Text before the first directive is the
`preamble`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from microscope.models import PaletteCategory, Placement, Tone

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Command types
# ---------------------------------------------------------------------------

class _Directive(BaseModel):
    narrative: str | None = None


class CreatePeriod(_Directive):
    type: Literal["create-period"] = "create-period"
    title: str
    tone: Tone
    description: str
    placement: Placement | None = None


class CreateStartBookend(_Directive):
    type: Literal["create-start-bookend"] = "create-start-bookend"
    title: str
    tone: Tone
    description: str


class CreateEndBookend(_Directive):
    type: Literal["create-end-bookend"] = "create-end-bookend"
    title: str
    tone: Tone
    description: str


class CreateEvent(_Directive):
    type: Literal["create-event"] = "create-event"
    title: str
    tone: Tone
    period_title: str
    description: str = ""
    placement: Placement | None = None


class CreateScene(_Directive):
    type: Literal["create-scene"] = "create-scene"
    question: str
    event_title: str
    answer: str | None = None
    tone: Tone | None = None  # None → inherit the event's tone
    title: str | None = None
    description: str | None = None  # keyword dialect only
    placement: Placement | None = None


class AddPalette(_Directive):
    type: Literal["add-palette"] = "add-palette"
    category: PaletteCategory
    item: str


class EditName(_Directive):
    type: Literal["edit-name"] = "edit-name"
    new_name: str


class EditDescription(_Directive):
    type: Literal["edit-description"] = "edit-description"
    new_description: str


class EditTone(_Directive):
    type: Literal["edit-tone"] = "edit-tone"
    new_tone: Tone


class NoCommand(_Directive):
    type: Literal["none"] = "none"


Command = Annotated[
    Union[
        CreatePeriod,
        CreateStartBookend,
        CreateEndBookend,
        CreateEvent,
        CreateScene,
        AddPalette,
        EditName,
        EditDescription,
        EditTone,
        NoCommand,
    ],
    Field(discriminator="type"),
]

CREATE_TYPES = frozenset({
    "create-period",
    "create-start-bookend",
    "create-end-bookend",
    "create-event",
    "create-scene",
})


class ParseResult(BaseModel):
    commands: list[Command]
    remaining_message: str | None = None
    preamble: str | None = None
    directive_lines: list[str] = Field(default_factory=list)

    @property
    def has_directives(self) -> bool:
        return any(c.type != "none" for c in self.commands)


# ---------------------------------------------------------------------------
# Colon dialect
# ---------------------------------------------------------------------------

_FLAGS = re.IGNORECASE

_COLON_PERIOD = re.compile(
    r"create period:\s*(?P<title>.+?)\s*\((?P<tone>light|dark)\)"
    r"\s*(?:(?P<first>first)|(?P<rel>after|before)\s+(?P<ref>.+?))?"
    r"\s*\|\s*(?P<desc>.+)",
    _FLAGS,
)
_COLON_BOOKEND = re.compile(
    r"create (?P<pos>start|end) bookend:\s*(?P<title>.+?)\s*\((?P<tone>light|dark)\)"
    r"\s*\|\s*(?P<desc>.+)",
    _FLAGS,
)
_COLON_EVENT = re.compile(
    r"create event:\s*(?P<title>.+?)\s*\((?P<tone>light|dark)\)\s*in\s+(?P<parent>.+?)"
    r"(?:\s*\|\s*(?P<desc>.*))?",
    _FLAGS,
)
# Greedy question: the event title is whatever follows the last " in ".
_COLON_SCENE = re.compile(r"create scene:\s*(?P<question>.+)\s+in\s+(?P<parent>.+)", _FLAGS)
_COLON_PALETTE = re.compile(r"add to palette (?P<cat>yes|no):\s*(?P<item>.+)", _FLAGS)
_COLON_EDIT_TEXT = re.compile(r"edit (?P<field>name|description):\s*(?P<text>.+)", _FLAGS)
_COLON_EDIT_TONE = re.compile(r"edit tone:\s*(?P<tone>light|dark)", _FLAGS)


def _colon_period(line: str) -> CreatePeriod | None:
    m = _COLON_PERIOD.fullmatch(line)
    if not m:
        return None
    placement = None
    if m["first"]:
        placement = Placement(type="first")
    elif m["rel"]:
        placement = Placement(type=m["rel"].lower(), relative_to=m["ref"].strip())
    return CreatePeriod(
        title=m["title"].strip(),
        tone=m["tone"].lower(),
        description=m["desc"].strip(),
        placement=placement,
    )


def _colon_bookend(line: str) -> CreateStartBookend | CreateEndBookend | None:
    m = _COLON_BOOKEND.fullmatch(line)
    if not m:
        return None
    cls = CreateStartBookend if m["pos"].lower() == "start" else CreateEndBookend
    return cls(title=m["title"].strip(), tone=m["tone"].lower(), description=m["desc"].strip())


def _colon_event(line: str) -> CreateEvent | None:
    m = _COLON_EVENT.fullmatch(line)
    if not m:
        return None
    return CreateEvent(
        title=m["title"].strip(),
        tone=m["tone"].lower(),
        period_title=m["parent"].strip(),
        description=(m["desc"] or "").strip(),
    )


def _colon_scene(line: str) -> CreateScene | None:
    m = _COLON_SCENE.fullmatch(line)
    if not m:
        return None
    return CreateScene(question=m["question"].strip(), event_title=m["parent"].strip())


def _colon_palette(line: str) -> AddPalette | None:
    m = _COLON_PALETTE.fullmatch(line)
    if not m:
        return None
    return AddPalette(category=m["cat"].lower(), item=m["item"].strip())


def _colon_edit(line: str) -> EditName | EditDescription | EditTone | None:
    m = _COLON_EDIT_TONE.fullmatch(line)
    if m:
        return EditTone(new_tone=m["tone"].lower())
    m = _COLON_EDIT_TEXT.fullmatch(line)
    if not m:
        return None
    if m["field"].lower() == "name":
        return EditName(new_name=m["text"].strip())
    return EditDescription(new_description=m["text"].strip())


# ---------------------------------------------------------------------------
# Keyword dialect
# ---------------------------------------------------------------------------

_PLACEMENT = (
    r"(?:\s+(?:(?P<first>first)|(?P<last>last)|(?P<rel>after|before)\s+(?P<ref>.+?)))?"
)
_TONE_DESC = r"\s+tone\s+(?P<tone>light|dark)"

_KW_PERIOD = re.compile(
    r"create\s+period\s+(?P<title>.+?)" + _PLACEMENT + _TONE_DESC
    + r"\s+description\s+(?P<desc>.+)",
    _FLAGS,
)
_KW_EVENT = re.compile(
    r"create\s+event\s+(?P<title>.+?)\s+in\s+(?P<parent>.+?)" + _PLACEMENT + _TONE_DESC
    + r"\s+description\s+(?P<desc>.+)",
    _FLAGS,
)
_KW_SCENE = re.compile(
    r"create\s+scene\s+(?P<title>.+?)\s+in\s+(?P<parent>.+?)" + _PLACEMENT + _TONE_DESC
    + r"\s+question\s+(?P<question>.+?)\s+answer\s+(?P<answer>.+?)"
    + r"\s+description\s+(?P<desc>.+)",
    _FLAGS,
)


def _keyword_placement(m: re.Match) -> Placement | None:
    if m["first"]:
        return Placement(type="first")
    if m["last"]:
        return Placement(type="last")
    if m["rel"]:
        return Placement(type=m["rel"].lower(), relative_to=m["ref"].strip())
    return None


def _keyword_period(line: str) -> CreatePeriod | CreateStartBookend | CreateEndBookend | None:
    m = _KW_PERIOD.fullmatch(line)
    if not m:
        return None
    fields = {
        "title": m["title"].strip(),
        "tone": m["tone"].lower(),
        "description": m["desc"].strip(),
    }
    # FIRST / LAST on a period designates the timeline bookends
    if m["first"]:
        return CreateStartBookend(**fields)
    if m["last"]:
        return CreateEndBookend(**fields)
    return CreatePeriod(**fields, placement=_keyword_placement(m))


def _keyword_event(line: str) -> CreateEvent | None:
    m = _KW_EVENT.fullmatch(line)
    if not m:
        return None
    return CreateEvent(
        title=m["title"].strip(),
        tone=m["tone"].lower(),
        period_title=m["parent"].strip(),
        description=m["desc"].strip(),
        placement=_keyword_placement(m),
    )


def _keyword_scene(line: str) -> CreateScene | None:
    m = _KW_SCENE.fullmatch(line)
    if not m:
        return None
    return CreateScene(
        title=m["title"].strip(),
        event_title=m["parent"].strip(),
        tone=m["tone"].lower(),
        question=m["question"].strip(),
        answer=m["answer"].strip(),
        description=m["desc"].strip(),
        placement=_keyword_placement(m),
    )


# Ordered alternation: first parser to return a command wins.
_DIRECTIVE_PARSERS: list[Callable[[str], _Directive | None]] = [
    _colon_bookend,
    _colon_period,
    _colon_event,
    _colon_scene,
    _colon_palette,
    _colon_edit,
    _keyword_period,
    _keyword_event,
    _keyword_scene,
]


def parse_directive(line: str) -> Command | None:
    """Parse a single directive line (without any '#' prefix)."""
    line = line.strip()
    if not line:
        return None
    for parser in _DIRECTIVE_PARSERS:
        command = parser(line)
        if command is not None:
            return command
    return None


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_GAP = object()  # marks where a directive line was removed


def _is_hash_line(line: str) -> bool:
    return line.lstrip().startswith("#")


def _join_narrative(items: list) -> str | None:
    """Rebuild narrative from surviving lines.

    A blank line right after a removed directive is dropped when the output is
    empty or already ends in a blank line. Blank lines with no directive
    between them are kept as written.
    """
    out: list[str] = []
    after_gap = False
    for item in items:
        if item is _GAP:
            after_gap = True
            continue
        if not item.strip():
            if after_gap and (not out or not out[-1].strip()):
                continue
            out.append(item)
        else:
            out.append(item)
            after_gap = False
    joined = "\n".join(out).strip()
    return joined or None


def _parse_legacy(text: str) -> ParseResult:
    body = text.strip()
    first, _, rest = body.partition("\n")
    command = parse_directive(first)
    if command is None:
        return ParseResult(commands=[NoCommand()], remaining_message=body, preamble=body)
    narrative = rest.strip() or None
    return ParseResult(
        commands=[command.model_copy(update={"narrative": narrative})],
        remaining_message=narrative,
        directive_lines=[first.strip()],
    )


def _parse_hash_mode(lines: list[str]) -> ParseResult:
    matched: list[tuple[_Directive, list]] = []
    directive_lines: list[str] = []
    all_items: list = []
    preamble_items: list = []
    section = preamble_items

    for line in lines:
        if not _is_hash_line(line):
            all_items.append(line)
            section.append(line)
            continue

        body = line.strip()[1:].strip()
        all_items.append(_GAP)
        section.append(_GAP)
        command = parse_directive(body)
        if command is None:
            logger.debug("Dropped unrecognised directive line %r", body)
            continue
        section = []
        matched.append((command, section))
        directive_lines.append(line.strip())

    commands = [
        command.model_copy(update={"narrative": _join_narrative(items)})
        for command, items in matched
    ]
    return ParseResult(
        commands=commands or [NoCommand()],
        remaining_message=_join_narrative(all_items),
        preamble=_join_narrative(preamble_items),
        directive_lines=directive_lines,
    )


def parse_response(text: str | None) -> ParseResult:
    """Split a raw AI response into commands and narrative.

    Never returns an empty command list: when nothing matched, the list holds
    a single NoCommand sentinel.
    """
    if not text or not text.strip():
        return ParseResult(commands=[NoCommand()], remaining_message=None)

    text = text.replace("\r\n", "\n")
    lines = text.split("\n")
    if any(_is_hash_line(line) for line in lines):
        return _parse_hash_mode(lines)
    return _parse_legacy(text)
