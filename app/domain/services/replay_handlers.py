"""
Replay Handler Registry - מיפוי ספק webhook ל-handler שמעבד מחדש payload שמור.

ה-handlers עצמם (אימות, לוגיקה עסקית) חיים מחוץ לתת-המערכת. מודול
אינטגרציה רושם את ה-handler שלו בזמן import:

    @register_replay_handler(WebhookProvider.MUX)
    async def replay_mux_event(payload: dict) -> None:
        ...

ה-Celery beat task מעביר את get_replay_handlers() ל-process_pending_retries.
"""
from __future__ import annotations

import importlib
from typing import Any, Awaitable, Callable

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.failed_webhook_event import WebhookProvider

logger = get_logger(__name__)

ReplayHandler = Callable[[dict[str, Any]], Awaitable[None]]

_registry: dict[WebhookProvider, ReplayHandler] = {}


def register_replay_handler(
    provider: WebhookProvider | str,
) -> Callable[[ReplayHandler], ReplayHandler]:
    """Decorator registering the replay handler for a provider"""
    resolved = provider if isinstance(provider, WebhookProvider) else WebhookProvider.parse(provider)
    if resolved is None:
        raise ValueError(f"Unknown webhook provider: {provider!r}")

    def decorator(handler: ReplayHandler) -> ReplayHandler:
        if resolved in _registry:
            raise ValueError(f"Replay handler already registered for {resolved.value}")
        _registry[resolved] = handler
        logger.debug(
            "Replay handler registered",
            extra_data={"provider": resolved.value, "handler": getattr(handler, "__qualname__", repr(handler))},
        )
        return handler

    return decorator


def load_replay_handler_modules(module_paths: str | None = None) -> list[str]:
    """
    Import the integration modules listed in WEBHOOK_REPLAY_HANDLER_MODULES.

    Importing a module runs its @register_replay_handler decorators. Modules
    already imported are not re-executed. A missing module raises ImportError.
    """
    if module_paths is None:
        module_paths = settings.WEBHOOK_REPLAY_HANDLER_MODULES
    names = [name.strip() for name in module_paths.split(",") if name.strip()]
    for name in names:
        importlib.import_module(name)
    return names


def get_replay_handlers() -> dict[str, ReplayHandler]:
    """Snapshot keyed by the provider string stored on each row"""
    return {provider.value: handler for provider, handler in _registry.items()}


def clear_replay_handlers() -> None:
    """Reset the registry (for testing)"""
    _registry.clear()
