"""Conversation endpoints: read, send (AI turn), reparse, rerun, parse preview."""

from fastapi import APIRouter

from backend import runtime
from microscope.parser import parse_response
from microscope.pipeline import reparse_message, rerun_from_message, run_turn

from .errors import domain_errors
from .models import ParseBody, SendMessageBody

router = APIRouter()


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    with domain_errors():
        return runtime.get_store().get_conversation(conversation_id)


@router.post("/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, body: SendMessageBody):
    """Send a human message and apply the AI's reply.

    A provider failure is not an HTTP error: the result carries ok=false,
    the error text, and `restored_input` for the input box.
    """
    with domain_errors():
        return await run_turn(
            store=runtime.get_store(),
            provider=runtime.get_provider(),
            conversation_id=conversation_id,
            content=body.content,
            message_id=body.message_id,
            recent_count=runtime.recent_message_count(),
        )


@router.post("/messages/{message_id}/reparse")
async def reparse(message_id: str):
    """Re-run directive execution over a stored assistant message."""
    with domain_errors():
        return reparse_message(runtime.get_store(), message_id)


@router.post("/messages/{message_id}/rerun")
async def rerun(message_id: str):
    """Drop this message and everything after it, then ask the AI again."""
    with domain_errors():
        return await rerun_from_message(
            store=runtime.get_store(),
            provider=runtime.get_provider(),
            message_id=message_id,
            recent_count=runtime.recent_message_count(),
        )


@router.post("/parse")
async def parse_preview(body: ParseBody):
    """Show what the parser extracts from a text, without executing anything."""
    return parse_response(body.text)
