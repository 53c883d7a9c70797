"""Turn pipeline: human message → AI call → parse → execute → store.

  run_turn            one live round-trip with pending-message reconciliation
  apply_response      the shared parse→execute path for any AI text
  reparse_message     re-apply a stored assistant message (idempotent)
  rerun_from_message  truncate a conversation and ask the AI again
"""

from .orchestrator import (  # noqa: F401
    AppliedResponse,
    TurnResult,
    apply_response,
    reparse_message,
    rerun_from_message,
    run_turn,
)
