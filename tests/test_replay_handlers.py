"""
בדיקות ל-registry של replay handlers - app/domain/services/replay_handlers.py
"""
from unittest.mock import patch

import pytest

from app.db.models.failed_webhook_event import WebhookProvider
from app.domain.services.replay_handlers import (
    clear_replay_handlers,
    get_replay_handlers,
    load_replay_handler_modules,
    register_replay_handler,
)


class TestRegistry:

    @pytest.mark.unit
    def test_register_with_enum_and_string(self) -> None:
        @register_replay_handler(WebhookProvider.STRIPE)
        async def replay_stripe(payload: dict) -> None:
            return None

        @register_replay_handler("Twilio")
        async def replay_twilio(payload: dict) -> None:
            return None

        assert get_replay_handlers() == {"stripe": replay_stripe, "twilio": replay_twilio}

    @pytest.mark.unit
    def test_decorator_returns_handler_unchanged(self) -> None:
        async def replay_mux(payload: dict) -> None:
            return None

        assert register_replay_handler("mux")(replay_mux) is replay_mux

    @pytest.mark.unit
    def test_duplicate_registration_rejected(self) -> None:
        async def first(payload: dict) -> None:
            return None

        register_replay_handler("mux")(first)

        with pytest.raises(ValueError, match="already registered"):
            register_replay_handler(WebhookProvider.MUX)(first)

    @pytest.mark.unit
    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown webhook provider"):
            register_replay_handler("github")

    @pytest.mark.unit
    def test_snapshot_is_detached_from_registry(self) -> None:
        async def handler(payload: dict) -> None:
            return None

        register_replay_handler("mux")(handler)
        snapshot = get_replay_handlers()
        clear_replay_handlers()

        assert snapshot == {"mux": handler}
        assert get_replay_handlers() == {}


class TestLoadModules:

    @pytest.mark.unit
    def test_empty_setting_imports_nothing(self) -> None:
        with patch("app.domain.services.replay_handlers.importlib.import_module") as import_module:
            assert load_replay_handler_modules("") == []
        import_module.assert_not_called()

    @pytest.mark.unit
    def test_comma_separated_modules(self) -> None:
        with patch("app.domain.services.replay_handlers.importlib.import_module") as import_module:
            loaded = load_replay_handler_modules(" billing.webhooks ,, video.replay ")

        assert loaded == ["billing.webhooks", "video.replay"]
        assert [c.args[0] for c in import_module.call_args_list] == ["billing.webhooks", "video.replay"]

    @pytest.mark.unit
    def test_missing_module_raises(self) -> None:
        with pytest.raises(ImportError):
            load_replay_handler_modules("no_such_replay_module_xyz")
