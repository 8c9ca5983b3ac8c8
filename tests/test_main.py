"""
Tests for the omnichat command line entry point.
"""

import httpx
import pytest

from conftest import sse_body
from omnichat import main as cli
from omnichat.core.provider_manager import ProviderManager, ProviderStore

CHAT_STREAM = sse_body(
    {"model": "gpt-4o", "choices": [{"delta": {"content": "Hi"}}]},
    {"model": "gpt-4o", "choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5}},
    "[DONE]",
)


@pytest.fixture
def cli_manager(mocker, tmp_path, settings, credential_store, make_client):
    """Route main() to an in-memory manager backed by a mocked transport."""
    client, recorder = make_client(lambda request: httpx.Response(200, content=CHAT_STREAM))
    manager = ProviderManager(
        credential_store,
        settings=settings,
        store=ProviderStore(tmp_path / "providers.json"),
        client=client,
    )
    mocker.patch("omnichat.main.get_settings", return_value=settings)
    mocker.patch("omnichat.main.setup_logging")
    mocker.patch("omnichat.main.build_manager", return_value=manager)
    return manager, recorder


class TestParser:
    """Tests for argument parsing."""

    def test_chat_arguments(self):
        """Test repeatable images and numeric options."""
        args = cli.build_parser().parse_args(
            ["chat", "p1", "Hello", "--image", "a.png", "--image", "b.png", "--max-tokens", "64"]
        )
        assert args.image == ["a.png", "b.png"]
        assert args.max_tokens == 64
        assert args.no_stream is False

    def test_unknown_family_rejected(self):
        """Test family choices come from BackendFamily."""
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["add", "X", "not-a-family"])


class TestCommands:
    """Tests for main() dispatch."""

    def test_version(self, mocker, capsys):
        """Test the version command needs no manager."""
        build_manager = mocker.patch("omnichat.main.build_manager")
        assert cli.main(["version"]) == 0
        assert capsys.readouterr().out.strip() == cli.get_version()
        build_manager.assert_not_called()

    def test_add_list_and_remove(self, cli_manager, capsys):
        """Test provider management round trip."""
        # Arrange
        manager, _ = cli_manager

        # Act
        assert cli.main(["add", "Work", "openai", "--default", "--model", "gpt-4o"]) == 0
        provider_id = capsys.readouterr().out.strip()
        assert cli.main(["providers"]) == 0
        listing = capsys.readouterr().out

        # Assert
        assert f"* {provider_id}  Work  [OpenAI]" in listing
        assert cli.main(["remove", provider_id]) == 0
        assert manager.providers == []

    def test_set_key(self, cli_manager, credential_store):
        """Test keys passed on the command line are stored stripped."""
        manager, _ = cli_manager
        cli.main(["add", "Work", "openai"])
        provider_id = manager.providers[0].id

        assert cli.main(["set-key", provider_id, "--key", "  sk-test  "]) == 0
        assert credential_store.read_api_key(provider_id) == "sk-test"

    def test_unknown_provider_reports_error(self, cli_manager, capsys):
        """Test ProviderError becomes exit code 1 with a message."""
        assert cli.main(["remove", "missing"]) == 1
        assert "Provider not found" in capsys.readouterr().err

    def test_chat_streams_and_reports_cost(self, cli_manager, capsys):
        """Test a chat prints deltas and a usage summary."""
        # Arrange
        manager, recorder = cli_manager
        cli.main(["add", "Work", "openai"])
        provider_id = manager.providers[0].id
        cli.main(["set-key", provider_id, "--key", "sk-test"])
        capsys.readouterr()

        # Act
        code = cli.main(["chat", provider_id, "Hello", "--model", "gpt-4o"])
        output = capsys.readouterr()

        # Assert
        assert code == 0
        assert output.out.startswith("Hi")
        assert "[gpt-4o] 10 in / 5 out, $0.000075" in output.err
        assert recorder.last_request.headers["Authorization"] == "Bearer sk-test"
        assert recorder.last_json["messages"] == [{"role": "user", "content": "Hello"}]

    def test_unreadable_attachment_reports_error(self, cli_manager, capsys, tmp_path):
        """Test a missing image file exits with a message and sends nothing."""
        # Arrange
        manager, recorder = cli_manager
        cli.main(["add", "Work", "openai"])
        provider_id = manager.providers[0].id
        cli.main(["set-key", provider_id, "--key", "sk-test"])
        capsys.readouterr()

        # Act
        code = cli.main(["chat", provider_id, "Hi", "--model", "gpt-4o", "--image", str(tmp_path / "missing.png")])

        # Assert
        assert code == 1
        assert "Cannot read attachment" in capsys.readouterr().err
        assert recorder.requests == []
