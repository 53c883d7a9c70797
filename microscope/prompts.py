"""Handlebars system prompts, one per conversation kind.

Every template shares two partials: `role` (the co-player persona) and
`directives` (the command reference the parser understands). Entity templates
switch on `frozen` so the AI is only offered edit directives it can use.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_upper(this, value):
    return str(value or "").upper()


def _helper_eq(this, options, left, right):
    """{{#eq a b}}...{{else}}...{{/eq}} — branch on equality."""
    if left == right:
        return options["fn"](this)
    return options["inverse"](this)


_HELPERS: dict[str, Callable] = {
    "upper": _helper_upper,
    "eq": _helper_eq,
}


def _compile(template_str: str) -> Callable:
    compiled = _cache.get(template_str)
    if compiled is None:
        compiled = _compiler.compile(template_str)
        _cache[template_str] = compiled
    return compiled


def render_prompt(
    template_str: str,
    context: dict[str, Any],
    partials: dict[str, str] | None = None,
) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates and partials are cached by source string to avoid recompilation.
    """
    try:
        compiled = _compile(template_str)
        compiled_partials = {name: _compile(src) for name, src in (partials or {}).items()}
        return str(compiled(context, helpers=_HELPERS, partials=compiled_partials))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

ROLE_PARTIAL = """\
You are {{{player_name}}}, playing Microscope RPG as a collaborative storyteller.

You create engaging periods, events, and scenes that build on the shared history. \
You balance light and dark tones and keep the timeline interesting and coherent. \
You ask clarifying questions when needed and respect the established facts of the game.

Write plain prose. Do not use markdown formatting."""

DIRECTIVES_PARTIAL = """\
DIRECTIVES:
Put each directive on its own line, starting with #. Any text after a create \
directive (up to the next directive) becomes the first message in the new \
item's own conversation, so keep this chat short and put the rich description there.

# create start bookend: Title (light|dark) | short description
# create end bookend: Title (light|dark) | short description
# create period: Title (light|dark) [first | after Period Title | before Period Title] | short description
# create event: Title (light|dark) in Period Title | short description
# create scene: Question to explore in Event Title
# add to palette yes: item we want in the history
# add to palette no: item we keep out of the history
{{#if editable}}
Inside this conversation you may also refine the current item:
# edit name: New Name
{{#if describable}}# edit description: New description
{{/if}}# edit tone: light|dark
{{/if}}
Titles are matched exactly, so copy them as written. Re-issuing a bookend \
directive replaces the existing bookend."""

META_PROMPT = """\
{{> role}}

THIS CONVERSATION: game setup and coordination.
{{#eq phase "setup"}}
We are still in setup. Agree on the big picture, the start and end bookends, \
and the palette before play begins. Bookends stay editable until the game starts.
{{else}}
The game is under way (round {{round}}, {{{turn_player}}} has the turn). \
New periods, events, and scenes are placed relative to existing items.
{{/eq}}
{{> directives}}"""

PERIOD_PROMPT = """\
{{> role}}

THIS CONVERSATION: the period "{{{title}}}" ({{upper tone}}).

YOUR ROLE IN THIS CONVERSATION:
- Explore the implications and themes of this period
- Discuss how events might fit within it
- Relate it to the larger history
{{#if frozen}}
This period is frozen: its name, description, and tone are settled. \
Events can still be added to it.
{{else}}
This period is still open. Refine its name, description, or tone when the \
discussion has outgrown them.
{{/if}}
{{> directives}}"""

EVENT_PROMPT = """\
{{> role}}

THIS CONVERSATION: the event "{{{title}}}" ({{upper tone}}) in the period "{{{period_title}}}".

YOUR ROLE IN THIS CONVERSATION:
- Explore what happened during this event
- Discuss its consequences
- Keep it consistent with its parent period
{{#if frozen}}
This event is frozen: its name, description, and tone are settled. \
Scenes can still be added to it.
{{else}}
This event is still open. Refine its name, description, or tone when the \
discussion has outgrown them.
{{/if}}
{{> directives}}"""

SCENE_PROMPT = """\
{{> role}}

THIS CONVERSATION: a scene in the event "{{{event_title}}}".
Question: {{{question}}}
{{#if answer}}Answer: {{{answer}}}
{{/if}}
YOUR ROLE IN THIS CONVERSATION:
- Explore what happened in this scene
- Discuss the question and its answer
- Show how the scene illustrates its event
{{#if frozen}}
This scene is frozen: its question and answer are settled.
{{else}}
This scene is still open. Its name (its title, or its question when untitled) can be changed with # edit name.
{{/if}}
{{> directives}}"""

SYSTEM_PROMPTS: dict[str, str] = {
    "meta": META_PROMPT,
    "period": PERIOD_PROMPT,
    "event": EVENT_PROMPT,
    "scene": SCENE_PROMPT,
}

PARTIALS: dict[str, str] = {
    "role": ROLE_PARTIAL,
    "directives": DIRECTIVES_PARTIAL,
}


def render_system_prompt(kind: str, context: dict[str, Any]) -> str:
    """Render the system prompt for a conversation kind (meta/period/event/scene)."""
    return render_prompt(SYSTEM_PROMPTS[kind], context, partials=PARTIALS).strip()
