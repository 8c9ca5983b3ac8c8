"""
Tests for the shared data model in provider_manager.types.
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from omnichat.core.provider_manager.types import (
    APIFormat,
    APIKeyEntry,
    AttachmentPayload,
    AuthMethod,
    BackendFamily,
    ChatMessage,
    MessageRole,
    ModelDescriptor,
    ProviderConfiguration,
    StreamEvent,
    StreamEventKind,
    StreamingFormat,
    UsageWindow,
)


class TestBackendFamily:
    """Tests for family metadata."""

    def test_every_family_has_display_name(self):
        """Test that no family is missing a display name."""
        for family in BackendFamily:
            assert family.display_name

    def test_only_custom_lacks_default_url(self):
        """Test that every family but custom has a default base URL."""
        missing = [f for f in BackendFamily if f.default_base_url is None]
        assert missing == [BackendFamily.CUSTOM]

    def test_openai_compatible_partition(self):
        """Test which families use the chat completions adapter."""
        assert BackendFamily.GROQ.is_openai_compatible
        assert BackendFamily.PERPLEXITY.is_openai_compatible
        assert not BackendFamily.ANTHROPIC.is_openai_compatible
        assert not BackendFamily.ZHIPU_ANTHROPIC.is_openai_compatible
        assert not BackendFamily.OLLAMA.is_openai_compatible
        assert not BackendFamily.CUSTOM.is_openai_compatible

    def test_subscription_families(self):
        """Test the plan-billed families."""
        assert BackendFamily.ZHIPU_CODING.uses_subscription_billing
        assert not BackendFamily.OPENAI.uses_subscription_billing


class TestProviderConfiguration:
    """Tests for configuration defaults, snapshots and serialization."""

    def test_effective_base_url_falls_back_to_family_default(self):
        """Test the default URL is used when none is configured."""
        config = ProviderConfiguration(name="A", family="anthropic", base_url="  ")
        assert config.effective_base_url == "https://api.anthropic.com"

    def test_effective_base_url_strips_trailing_slash(self):
        """Test trailing slashes are removed."""
        config = ProviderConfiguration(name="C", family=BackendFamily.CUSTOM, base_url="http://host:8080/")
        assert config.effective_base_url == "http://host:8080"

    def test_effective_api_path(self):
        """Test api path defaults by format and gains a leading slash."""
        anthropic = ProviderConfiguration(name="C", family="custom", api_format=APIFormat.ANTHROPIC)
        relative = ProviderConfiguration(name="C", family="custom", api_path="chat")
        assert anthropic.effective_api_path == "/v1/messages"
        assert relative.effective_api_path == "/chat"

    def test_string_enums_are_coerced(self):
        """Test that plain strings become enum members."""
        config = ProviderConfiguration(
            name="C", family="custom", auth_method="none", api_format="anthropic", streaming_format="ndjson"
        )
        assert config.family is BackendFamily.CUSTOM
        assert config.auth_method is AuthMethod.NONE
        assert config.streaming_format is StreamingFormat.NDJSON

    def test_snapshot_is_immutable(self):
        """Test that snapshots cannot be changed and do not track later edits."""
        # Arrange
        config = ProviderConfiguration(name="A", family="openai", custom_headers={"X-A": "1"})

        # Act
        snapshot = config.snapshot()
        config.custom_headers["X-A"] = "2"

        # Assert
        assert snapshot.custom_headers["X-A"] == "1"
        with pytest.raises(TypeError):
            snapshot.custom_headers["X-B"] = "3"
        with pytest.raises(AttributeError):
            snapshot.name = "B"

    def test_snapshot_carries_oauth_metadata(self):
        """Test OAuth endpoints and scopes reach the snapshot."""
        # Arrange
        config = ProviderConfiguration(
            name="Claude",
            family="anthropic",
            auth_method="oauth",
            oauth_client_id="client-1",
            oauth_authorize_url="https://auth.example.com/authorize",
            oauth_token_url="https://auth.example.com/token",
            oauth_scopes=["user:inference", "user:profile"],
        )

        # Act
        snapshot = config.snapshot()
        config.oauth_scopes.append("org:create_api_key")

        # Assert
        assert snapshot.oauth_client_id == "client-1"
        assert snapshot.oauth_authorize_url == "https://auth.example.com/authorize"
        assert snapshot.oauth_token_url == "https://auth.example.com/token"
        assert snapshot.oauth_scopes == ("user:inference", "user:profile")

    def test_round_trip_through_dict(self):
        """Test that to_dict/from_dict preserves the configuration."""
        # Arrange
        config = ProviderConfiguration(
            name="Router",
            family=BackendFamily.OPENROUTER,
            models=[ModelDescriptor("a/b", "B", 1000, True, True, 1.0, 2.0)],
            default_model_id="a/b",
            oauth_scopes=["read"],
        )

        # Act
        restored = ProviderConfiguration.from_dict(config.to_dict())

        # Assert
        assert restored == config

    def test_from_dict_ignores_unknown_keys(self):
        """Test that extra keys from newer versions are ignored."""
        restored = ProviderConfiguration.from_dict({"name": "X", "family": "groq", "future_flag": True})
        assert restored.family is BackendFamily.GROQ

    @freeze_time("2026-01-02 03:04:05")
    def test_touch_updates_timestamp(self):
        """Test touch sets updated_at to now."""
        config = ProviderConfiguration(name="A", family="openai", updated_at=datetime(2020, 1, 1))
        config.touch()
        assert config.updated_at == datetime(2026, 1, 2, 3, 4, 5)

    def test_default_model_selection(self):
        """Test the configured default model, else the first model."""
        models = [ModelDescriptor("a", "A"), ModelDescriptor("b", "B")]
        with_default = ProviderConfiguration(name="P", family="openai", models=models, default_model_id="b")
        without = ProviderConfiguration(name="P", family="openai", models=models, default_model_id="zzz")
        assert with_default.snapshot().default_model.id == "b"
        assert without.snapshot().default_model.id == "a"
        assert ProviderConfiguration(name="P", family="openai").snapshot().default_model is None


class TestMessagesAndEvents:
    """Tests for outbound messages and stream events."""

    def test_attachment_encoding(self):
        """Test base64 and data URL forms."""
        attachment = AttachmentPayload(b"\x89PNG", "image/png", "a.png")
        assert attachment.base64_data == "iVBORw=="
        assert attachment.data_url == "data:image/png;base64,iVBORw=="
        assert attachment.is_image

    def test_attachment_repr_hides_bytes(self):
        """Test the repr shows only size."""
        assert "size=4" in repr(AttachmentPayload(b"1234", "text/plain"))

    def test_chat_message_image_attachments(self):
        """Test only images are returned and the role is coerced."""
        message = ChatMessage(
            "user", "hi", [AttachmentPayload(b"x", "image/jpeg"), AttachmentPayload(b"y", "application/pdf")]
        )
        assert message.role is MessageRole.USER
        assert [a.mime_type for a in message.image_attachments] == ["image/jpeg"]

    def test_terminal_events(self):
        """Test which events end a stream."""
        assert StreamEvent.done().is_terminal
        assert StreamEvent.failed(ValueError()).is_terminal
        assert not StreamEvent.text_delta("x").is_terminal
        assert StreamEvent.input_tokens(5).kind is StreamEventKind.INPUT_TOKENS


class TestUsageWindow:
    """Tests for quota windows."""

    def test_percent_is_clamped(self):
        """Test used percent stays within 0..100."""
        assert UsageWindow("5h", 150).used_percent == 100.0
        assert UsageWindow("5h", -3).used_percent == 0.0
        assert UsageWindow("5h", 40).remaining_percent == 60.0

    def test_reset_time_display(self):
        """Test the remaining time formatting."""
        now = 1_000_000.0
        window = UsageWindow("5h", 10, reset_at=int((now + 2 * 3600 + 5 * 60) * 1000))
        soon = UsageWindow("5h", 10, reset_at=int((now + 90) * 1000))
        past = UsageWindow("5h", 10, reset_at=int((now - 1) * 1000))
        assert window.reset_time_display(now) == "2h 5m"
        assert soon.reset_time_display(now) == "1m"
        assert past.reset_time_display(now) == "Resets soon"
        assert UsageWindow("5h", 10).reset_time_display(now) == ""


class TestAPIKeyEntry:
    """Tests for rotation key entries."""

    def test_round_trip(self):
        """Test dict serialization keeps counters and flags."""
        entry = APIKeyEntry(label="main", key="sk-1", token_count=42, is_active=True, is_valid=False)
        assert APIKeyEntry.from_dict(entry.to_dict()) == entry

    def test_key_hidden_from_repr(self):
        """Test that the secret is not in the repr."""
        assert "sk-secret" not in repr(APIKeyEntry(label="main", key="sk-secret"))
