"""Turn orchestrator — runs one human → AI round-trip end-to-end.

Turn flow:
  1. Append the human message as pending, under a caller-chosen id.
  2. Build the layered context and call the AI provider.
  3. On provider failure: remove the pending message, post an error with
     guidance to the same conversation, and hand the text back for resubmission.
  4. On success: clear the pending flag, then apply the response:
       parse → execute each directive → store the assistant message with the
       prose that was not teleported into a new item's conversation.

apply_response() is the single parse→execute path; live turns, reparse, and
rerun all go through it. Each assistant message records the fingerprints of
the directives it has already applied, so reparsing the same message never
creates an item twice.
"""

from __future__ import annotations

import logging
from collections import Counter

from pydantic import BaseModel, Field

from microscope.context import DEFAULT_RECENT_COUNT, build_context, to_provider_messages
from microscope.executor import (
    CommandExecutor,
    ExecutionResult,
    command_fingerprint,
)
from microscope.llm import AIProvider, ProviderConfig, ProviderError
from microscope.models import (
    HUMAN_PLAYER_ID,
    SYSTEM_PLAYER_ID,
    GameState,
    Message,
    MessageMetadata,
    new_id,
)
from microscope.parser import CREATE_TYPES, parse_response
from microscope.store import GameStore, NotFoundError

logger = logging.getLogger(__name__)


class TurnResult(BaseModel):
    ok: bool
    user_message: Message | None = None
    assistant_message: Message | None = None
    results: list[ExecutionResult] = Field(default_factory=list)
    error: str | None = None
    restored_input: str | None = None


class AppliedResponse(BaseModel):
    message: Message
    results: list[ExecutionResult]


# ---------------------------------------------------------------------------
# Response application
# ---------------------------------------------------------------------------

def apply_response(
    store: GameStore,
    text: str,
    conversation_id: str,
    *,
    message_id: str | None = None,
    executor: CommandExecutor | None = None,
) -> AppliedResponse:
    """Parse an AI response, execute its directives, and store the message.

    With `message_id`, the existing assistant message is updated in place
    (reparse); otherwise a new one is appended.
    """
    executor = executor or CommandExecutor(store)
    parsed = parse_response(text)

    with store.batch():
        if message_id is None:
            message = store.add_message(
                conversation_id,
                role="assistant",
                content=text,
                raw_content=text,
                player_id=executor.player.id,
                player_name=executor.player.name,
            )
        else:
            message = next(
                (m for m in store.get_conversation(conversation_id).messages if m.id == message_id),
                None,
            )
            if message is None:
                raise NotFoundError(f"Message {message_id} not found in {conversation_id}")

        metadata = message.metadata or MessageMetadata()
        applied = list(metadata.applied_directives)
        # One recorded fingerprint covers one occurrence of a repeated directive
        already = Counter(applied)
        results: list[ExecutionResult] = []
        kept: list[str] = [parsed.preamble] if parsed.preamble else []

        for command in parsed.commands:
            if command.type == "none":
                continue
            fingerprint = command_fingerprint(command)
            if already[fingerprint] > 0:
                already[fingerprint] -= 1
                logger.debug("Skipping already applied %s %s", command.type, fingerprint)
                result = ExecutionResult(
                    command_type=command.type,
                    ok=True,
                    detail="already applied",
                    teleported=command.type in CREATE_TYPES and bool(command.narrative),
                    fingerprint=fingerprint,
                )
            else:
                result = executor.execute(command, conversation_id)
                if result.ok:
                    applied.append(fingerprint)
            results.append(result)
            if command.narrative and not result.teleported:
                kept.append(command.narrative)

        content = "\n\n".join(kept) or "\n".join(parsed.directive_lines) or text.strip()
        message = store.update_message(
            conversation_id,
            message.id,
            content=content,
            raw_content=text,
            metadata=metadata.model_copy(update={"applied_directives": applied}),
        )

    return AppliedResponse(message=message, results=results)


def reparse_message(
    store: GameStore, message_id: str, executor: CommandExecutor | None = None
) -> AppliedResponse:
    """Run a stored assistant message through the parse→execute pipeline again."""
    found = store.find_message(message_id)
    if found is None:
        raise NotFoundError(f"Message {message_id} not found")
    conversation_id, message = found
    if message.role != "assistant":
        raise ValueError("Only assistant messages can be reparsed")
    return apply_response(
        store,
        message.raw_content or message.content,
        conversation_id,
        message_id=message.id,
        executor=executor,
    )


# ---------------------------------------------------------------------------
# Live turns
# ---------------------------------------------------------------------------

def _post_provider_error(store: GameStore, conversation_id: str, error: ProviderError) -> None:
    store.add_message(
        conversation_id,
        role="error",
        content=(
            f"The AI request failed: {error}. Check the provider settings"
            " (API key, model) and send your message again."
        ),
        player_id=SYSTEM_PLAYER_ID,
        player_name="System",
    )


async def _generate(
    state: GameState,
    provider: AIProvider,
    conversation_id: str,
    config: ProviderConfig | None,
    recent_count: int,
) -> str:
    context = build_context(state, conversation_id, recent_count)
    return await provider.generate_response(to_provider_messages(context), config)


def _history_before(state: GameState, conversation_id: str, message_id: str) -> GameState:
    """A copy of `state` whose conversation stops just before `message_id`."""
    conv = state.conversations[conversation_id]
    index = next(i for i, m in enumerate(conv.messages) if m.id == message_id)
    trimmed = conv.model_copy(update={"messages": conv.messages[:index]})
    return state.model_copy(
        update={"conversations": {**state.conversations, conversation_id: trimmed}}
    )


async def run_turn(
    *,
    store: GameStore,
    provider: AIProvider,
    conversation_id: str,
    content: str,
    message_id: str | None = None,
    config: ProviderConfig | None = None,
    recent_count: int = DEFAULT_RECENT_COUNT,
) -> TurnResult:
    """Send one human message and apply the AI's reply."""
    store.get_conversation(conversation_id)
    names = {p.id: p.name for p in store.state.players}
    pending = store.add_message_with_id(
        conversation_id,
        message_id or new_id(),
        role="user",
        content=content,
        player_id=HUMAN_PLAYER_ID,
        player_name=names.get(HUMAN_PLAYER_ID),
        pending=True,
    )

    try:
        text = await _generate(store.state, provider, conversation_id, config, recent_count)
    except ProviderError as e:
        logger.warning("AI call failed for conversation %s: %s", conversation_id, e)
        with store.batch():
            store.remove_message(conversation_id, pending.id)
            _post_provider_error(store, conversation_id, e)
        return TurnResult(ok=False, error=str(e), restored_input=content)

    user_message = store.update_message(conversation_id, pending.id, pending=False)
    applied = apply_response(store, text, conversation_id)
    return TurnResult(
        ok=True,
        user_message=user_message,
        assistant_message=applied.message,
        results=applied.results,
    )


async def rerun_from_message(
    *,
    store: GameStore,
    provider: AIProvider,
    message_id: str,
    config: ProviderConfig | None = None,
    recent_count: int = DEFAULT_RECENT_COUNT,
) -> TurnResult:
    """Drop a message and everything after it, then ask the AI again.

    Rerunning from a human message resends that message, and a failed call
    hands its text back as `restored_input`. Rerunning from any other message
    re-issues the AI call on the history before it; the conversation is only
    cut once a reply arrives, so a failed call leaves it intact apart from
    the error notice. Items created by the dropped responses are kept.
    """
    found = store.find_message(message_id)
    if found is None:
        raise NotFoundError(f"Message {message_id} not found")
    conversation_id, message = found

    if message.role == "user":
        store.truncate_conversation(conversation_id, message.id)
        return await run_turn(
            store=store,
            provider=provider,
            conversation_id=conversation_id,
            content=message.content,
            message_id=message.id,
            config=config,
            recent_count=recent_count,
        )

    history = _history_before(store.state, conversation_id, message.id)
    try:
        text = await _generate(history, provider, conversation_id, config, recent_count)
    except ProviderError as e:
        logger.warning("AI rerun failed for conversation %s: %s", conversation_id, e)
        _post_provider_error(store, conversation_id, e)
        return TurnResult(ok=False, error=str(e))

    store.truncate_conversation(conversation_id, message.id)
    applied = apply_response(store, text, conversation_id)
    return TurnResult(ok=True, assistant_message=applied.message, results=applied.results)
