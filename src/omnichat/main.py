"""
Command line entry point for OmniChat.

Manages stored providers and talks to them from the terminal:

    omnichat add "My Claude" anthropic --default
    omnichat set-key <provider-id>
    omnichat chat <provider-id> "Hello"
"""

import argparse
import asyncio
import getpass
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .core.config import Settings, get_settings
from .core.cost import calculate_cost, format_cost, format_token_count
from .core.credentials import CredentialStoreError, KeyringCredentialStore
from .core.logger import setup_logging
from .core.provider_manager import (
    AttachmentPayload,
    AuthMethod,
    BackendFamily,
    ChatMessage,
    ProviderConfiguration,
    ProviderError,
    ProviderManager,
    ProviderStore,
    RequestOptions,
    StreamEventKind,
)
from .core.usage_monitor import UsageMonitor
from .core.version import get_version


def build_manager(settings: Settings) -> ProviderManager:
    return ProviderManager(
        KeyringCredentialStore(settings.keyring_service),
        settings=settings,
        store=ProviderStore(),
    )


def _require_provider(manager: ProviderManager, provider_id: Optional[str]) -> ProviderConfiguration:
    config = manager.get_provider(provider_id) if provider_id else manager.default_provider
    if config is None:
        raise ProviderError.provider_error(f"Provider not found: {provider_id or '(default)'}")
    return config


def cmd_providers(manager: ProviderManager, args) -> int:
    providers = manager.providers
    if not providers:
        print("No providers configured. Add one with 'omnichat add'.")
        return 0
    default = manager.default_provider
    for config in providers:
        marker = "*" if default is not None and config.id == default.id else " "
        state = "" if config.is_enabled else " (disabled)"
        print(f"{marker} {config.id}  {config.name}  [{config.family.display_name}]{state}")
    return 0


def cmd_add(manager: ProviderManager, args) -> int:
    config = ProviderConfiguration(
        name=args.name,
        family=BackendFamily(args.family),
        base_url=args.base_url,
        auth_method=AuthMethod(args.auth),
        default_model_id=args.model,
        is_default=args.default,
    )
    manager.create_provider(config)
    print(config.id)
    return 0


def cmd_remove(manager: ProviderManager, args) -> int:
    manager.delete_provider(_require_provider(manager, args.provider))
    return 0


def cmd_set_key(manager: ProviderManager, args) -> int:
    config = _require_provider(manager, args.provider)
    api_key = args.key or getpass.getpass(f"API key for {config.name}: ")
    if not api_key.strip():
        print("No key entered.", file=sys.stderr)
        return 1
    manager.save_api_key(config.id, api_key)
    return 0


async def cmd_models(manager: ProviderManager, args) -> int:
    config = _require_provider(manager, args.provider)
    for model in await manager.fetch_models(config.id):
        details = []
        if model.context_window:
            details.append(f"{format_token_count(model.context_window)} ctx")
        if model.supports_vision:
            details.append("vision")
        if model.is_free:
            details.append("free")
        suffix = f"  ({', '.join(details)})" if details else ""
        print(f"{model.id}  {model.display_name}{suffix}")
    return 0


async def cmd_validate(manager: ProviderManager, args) -> int:
    config = _require_provider(manager, args.provider)
    valid = await manager.validate_credentials(config.id)
    print("valid" if valid else "invalid")
    return 0 if valid else 1


def _load_attachments(paths: List[str]) -> List[AttachmentPayload]:
    attachments = []
    for raw in paths:
        path = Path(raw)
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ProviderError.provider_error(f"Cannot read attachment {raw}: {e.strerror or e}") from e
        attachments.append(AttachmentPayload(data, mime_type, path.name))
    return attachments


async def cmd_chat(manager: ProviderManager, args) -> int:
    config = _require_provider(manager, args.provider)
    adapter = manager.adapter_for(config)

    model_id = args.model or config.default_model_id
    if not model_id:
        models = await adapter.fetch_models()
        if not models:
            print("No model available; pass --model.", file=sys.stderr)
            return 1
        model_id = models[0].id

    options = RequestOptions(temperature=args.temperature, max_tokens=args.max_tokens, stream=not args.no_stream)
    messages = [ChatMessage("user", args.prompt)]
    input_tokens = output_tokens = 0
    model_used = model_id

    async with adapter.send_message(
        messages, model_id, system_prompt=args.system, attachments=_load_attachments(args.image), options=options
    ) as stream:
        async for event in stream:
            if event.kind is StreamEventKind.TEXT_DELTA:
                sys.stdout.write(event.text)
                sys.stdout.flush()
            elif event.kind is StreamEventKind.MODEL_USED:
                model_used = event.model
            elif event.kind is StreamEventKind.INPUT_TOKENS:
                input_tokens = event.tokens
            elif event.kind is StreamEventKind.OUTPUT_TOKENS:
                output_tokens = event.tokens
            elif event.kind is StreamEventKind.ERROR:
                print(f"\nError: {event.error}", file=sys.stderr)
                return 1

    manager.record_usage(config.id, input_tokens, output_tokens)
    snapshot = config.snapshot()
    cost = calculate_cost(model_used, input_tokens, output_tokens, snapshot.find_model(model_used), provider=snapshot)
    print()
    print(
        f"[{model_used}] {format_token_count(input_tokens)} in / "
        f"{format_token_count(output_tokens)} out, {format_cost(cost)}",
        file=sys.stderr,
    )
    return 0


async def cmd_usage(manager: ProviderManager, args) -> int:
    config = _require_provider(manager, args.provider)
    family = args.family or config.family
    secret = manager.current_secret(config)
    monitor = UsageMonitor(timeout=manager.settings.usage_request_timeout)
    try:
        snapshot = await monitor.fetch(family, secret)
    finally:
        await monitor.aclose()

    if snapshot.error:
        print(f"{snapshot.display_name}: {snapshot.error}", file=sys.stderr)
        return 1
    plan = f" ({snapshot.plan})" if snapshot.plan else ""
    print(f"{snapshot.display_name}{plan}")
    for window in snapshot.windows:
        reset = window.reset_time_display()
        suffix = f" ({reset})" if reset else ""
        print(f"  {window.label}: {window.used_percent:.0f}% used{suffix}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnichat", description="Chat with AI providers from the terminal")
    parser.add_argument("--log-level", help="Override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("providers", help="List configured providers")

    add = sub.add_parser("add", help="Add a provider")
    add.add_argument("name")
    add.add_argument("family", choices=[f.value for f in BackendFamily])
    add.add_argument("--base-url")
    add.add_argument("--model", help="Default model id")
    add.add_argument("--auth", choices=[a.value for a in AuthMethod], default=AuthMethod.API_KEY.value)
    add.add_argument("--default", action="store_true", help="Make this the default provider")

    remove = sub.add_parser("remove", help="Delete a provider and its secrets")
    remove.add_argument("provider")

    set_key = sub.add_parser("set-key", help="Store the API key of a provider")
    set_key.add_argument("provider")
    set_key.add_argument("--key", help="Key value; prompted for when omitted")

    for name, help_text in (("models", "List available models"), ("validate", "Check stored credentials")):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("provider", nargs="?", help="Provider id (default provider when omitted)")

    chat = sub.add_parser("chat", help="Send one prompt and stream the answer")
    chat.add_argument("provider", help="Provider id")
    chat.add_argument("prompt")
    chat.add_argument("--model")
    chat.add_argument("--system", help="System prompt")
    chat.add_argument("--temperature", type=float)
    chat.add_argument("--max-tokens", type=int)
    chat.add_argument("--image", action="append", default=[], help="Attach an image file (repeatable)")
    chat.add_argument("--no-stream", action="store_true", help="Request a single non-streaming response")

    usage = sub.add_parser("usage", help="Show subscription quota usage")
    usage.add_argument("provider", nargs="?")
    usage.add_argument("--family", help="Quota API to query, e.g. 'minimax'")

    sub.add_parser("version", help="Print the version")
    return parser


_SYNC_COMMANDS = {"providers": cmd_providers, "add": cmd_add, "remove": cmd_remove, "set-key": cmd_set_key}
_ASYNC_COMMANDS = {"models": cmd_models, "validate": cmd_validate, "chat": cmd_chat, "usage": cmd_usage}


async def _run_async(manager: ProviderManager, args) -> int:
    try:
        return await _ASYNC_COMMANDS[args.command](manager, args)
    finally:
        await manager.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "version":
        print(get_version())
        return 0

    settings = get_settings()
    setup_logging(settings, level=args.log_level)

    try:
        manager = build_manager(settings)
        if args.command in _SYNC_COMMANDS:
            return _SYNC_COMMANDS[args.command](manager, args)
        return asyncio.run(_run_async(manager, args))
    except (ProviderError, CredentialStoreError) as e:
        logger.debug(f"Command '{args.command}' failed: {e!r}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
