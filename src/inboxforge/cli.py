"""Summary: Command-line interface for InboxForge.

Importance: Provides a local entry point for tenant setup, simulation, and operations.
Alternatives: Drive everything through the HTTP API.
"""

from __future__ import annotations

import argparse
import json
import logging

from inboxforge.app import build_context
from inboxforge.config import AppConfig
from inboxforge.errors import InboxForgeError
from inboxforge.models import CHANNELS
from inboxforge.oauth import CONNECT_PLATFORMS
from inboxforge.usage import TIER_LIMITS


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="InboxForge CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")

    create_tenant = subparsers.add_parser("create-tenant", help="Create a tenant")
    create_tenant.add_argument("name", type=str)
    create_tenant.add_argument("email", type=str)
    create_tenant.add_argument("--tier", choices=sorted(TIER_LIMITS), default="free")

    set_tier = subparsers.add_parser("set-tier", help="Change a tenant's subscription tier")
    set_tier.add_argument("tenant_id", type=int)
    set_tier.add_argument("tier", choices=sorted(TIER_LIMITS))

    usage = subparsers.add_parser("usage", help="Show quota usage for a tenant")
    usage.add_argument("tenant_id", type=int)

    simulate = subparsers.add_parser("simulate-message", help="Inject a customer message")
    simulate.add_argument("tenant_id", type=int)
    simulate.add_argument("channel", choices=CHANNELS)
    simulate.add_argument("contact", type=str)
    simulate.add_argument("message", type=str)
    simulate.add_argument("--name", type=str, default="Customer")
    simulate.add_argument("--subject", type=str, default=None)

    list_conversations = subparsers.add_parser("list-conversations", help="List conversations")
    list_conversations.add_argument("tenant_id", type=int)
    list_conversations.add_argument("--archived", action="store_true")
    list_conversations.add_argument("--limit", type=int, default=50)

    send = subparsers.add_parser("send", help="Send a reply in a conversation")
    send.add_argument("tenant_id", type=int)
    send.add_argument("conversation_id", type=int)
    send.add_argument("content", type=str)
    send.add_argument("--sender-name", type=str, default=None)

    retry = subparsers.add_parser("retry-message", help="Retry a failed outbound message")
    retry.add_argument("message_id", type=int)

    refresh = subparsers.add_parser("refresh-credential", help="Force a token refresh")
    refresh.add_argument("tenant_id", type=int)
    refresh.add_argument("platform", choices=CONNECT_PLATFORMS)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Summary: Execute CLI commands based on arguments.

    Importance: Domain errors print a message and exit non-zero instead of a traceback.
    Alternatives: Let exceptions propagate to the interpreter.
    """

    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "inboxforge.api:build_default_app",
            factory=True,
            host=args.host or config.api_host,
            port=args.port or config.api_port,
        )
        return 0

    context = build_context(config)
    try:
        _run_command(args, context)
    except (InboxForgeError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}")
        return 1
    return 0


def _run_command(args: argparse.Namespace, context) -> None:
    if args.command == "init-db":
        print(f"Database ready at {context.config.db_path}.")
        return

    if args.command == "create-tenant":
        tenant = context.tenants.create_tenant(args.name, args.email, args.tier)
        print(f"Tenant {tenant.id}: {tenant.name} <{tenant.email}> ({tenant.subscription_tier})")
        return

    if args.command == "set-tier":
        tenant = context.tenants.set_tier(args.tenant_id, args.tier)
        print(f"Tenant {tenant.id} is now on the {tenant.subscription_tier} tier.")
        return

    if args.command == "usage":
        print(json.dumps(context.tenants.usage_status(args.tenant_id).to_dict(), indent=2))
        return

    if args.command == "simulate-message":
        result = context.webhooks.simulate(
            tenant_id=args.tenant_id,
            channel=args.channel,
            customer_name=args.name,
            customer_contact=args.contact,
            message=args.message,
            subject=args.subject,
        )
        state = "new" if result.created_conversation else "existing"
        print(
            f"Stored message {result.message_id} in {state} conversation {result.conversation_id}."
        )
        return

    if args.command == "list-conversations":
        conversations = context.conversations.list_conversations(
            args.tenant_id, archived=args.archived, limit=args.limit
        )
        for conversation in conversations:
            print(
                f"{conversation.id}: [{conversation.channel}] {conversation.customer_name} "
                f"<{conversation.customer_identity}> unread={conversation.unread_count} "
                f"last={conversation.last_message_at}"
            )
        return

    if args.command == "send":
        message = context.dispatcher.send(
            args.tenant_id, args.conversation_id, args.content, args.sender_name
        )
        print(f"Message {message.id} {message.status}.")
        return

    if args.command == "retry-message":
        message = context.dispatcher.retry(args.message_id)
        print(f"Message {message.id} {message.status}.")
        return

    if args.command == "refresh-credential":
        credential = context.connections.refresh(args.tenant_id, args.platform)
        expires = credential.token_expires_at.isoformat() if credential.token_expires_at else "never"
        print(f"Refreshed {args.platform} credential {credential.id}; expires {expires}.")
        return


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
