"""Health check, settings, model list, and connection check endpoints."""

from fastapi import APIRouter

from backend import runtime
from microscope.llm import AIMessage, ProviderError, create_provider, list_models

from .models import SettingsBody

router = APIRouter()


def _public(config: dict) -> dict:
    """Settings as returned to clients: the API key itself is never echoed back."""
    public = {k: v for k, v in config.items() if k != "api_key"}
    public["api_key_set"] = bool(config.get("api_key"))
    return public


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get provider settings (defaults merged with stored values)."""
    return _public(runtime.get_storage().get_config())


@router.patch("/settings")
async def update_settings(body: SettingsBody):
    """Update provider settings (partial merge)."""
    config = runtime.get_storage().update_config(body.model_dump(exclude_none=True))
    return _public(config)


@router.get("/models")
async def get_models():
    """Available models per provider (cached for an hour)."""
    return list_models()


@router.post("/check-connection")
async def check_connection():
    """Send a one-line prompt through the configured provider."""
    config = runtime.get_storage().provider_config().model_copy(update={"max_tokens": 16})
    try:
        provider = create_provider(config)
        await provider.generate_response([AIMessage(role="user", content="Reply with OK.")], config)
    except ProviderError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True}
