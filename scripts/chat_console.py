"""
Interactive terminal chat against an assistant backend.

Type a message to send it. Commands:
  /list            list conversations
  /new [title]     start a new conversation
  /open <id>       switch to a conversation
  /delete <id>     delete a conversation
  /stop            abort the reply in flight
  /quit            leave

Run:
  python scripts/chat_console.py --tenant-id t1 --user-id u1 --email me@example.com
"""
from __future__ import annotations

from pathlib import Path
import argparse
import asyncio
import sys

# Ensure repository root is on sys.path so 'src' package can be imported when
# executing this script from the scripts/ directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.assistant_sync.config import load_settings
from src.assistant_sync.core.state_machine import RevealState
from src.assistant_sync.domain.chat_models import TenantScope
from src.assistant_sync.domain.errors import AssistantError
from src.assistant_sync.infrastructure.backend_client import AssistantApiClient
from src.assistant_sync.infrastructure.ledger import get_ledger
from src.assistant_sync.infrastructure.preferences import ActiveConversationStore
from src.assistant_sync.services.conversation_controller import ConversationController
from src.assistant_sync.services.notifications import Notification, Notifier


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the assistant from a terminal.")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--model", default=None, help="Model id passed with every message")
    parser.add_argument("--conversation", default=None, help="Conversation id to open on start")
    return parser.parse_args(argv)


def print_frame(key: str, text: str, state: RevealState) -> None:
    # Overwrite the current line while revealing; newline once complete
    end = "\n" if state == RevealState.COMPLETE else ""
    print(f"\rassistant> {text}", end=end, flush=True)


def print_notification(notification: Notification) -> None:
    print(f"\n[{notification.level}] {notification.message}")


async def run(args: argparse.Namespace) -> int:
    settings = load_settings()
    scope = TenantScope(tenant_id=args.tenant_id, user_id=args.user_id, user_email=args.email)
    backend = AssistantApiClient(settings.api_base, scope, token=settings.auth_token, timeout=settings.timeout)
    controller = ConversationController(
        backend,
        scope,
        get_ledger(settings),
        settings=settings,
        notifier=Notifier(print_notification),
        preferences=ActiveConversationStore(settings.preferences_file),
        on_frame=print_frame,
        model_id=args.model,
    )

    try:
        if args.conversation:
            await controller.open(args.conversation)
        else:
            await controller.resume()
    except AssistantError as exc:
        print(f"Could not open conversation: {exc}")
    if controller.active_id:
        print(f"Conversation {controller.active_id} ({len(controller.messages)} messages)")

    pending: set[asyncio.Task] = set()
    while True:
        line = (await asyncio.to_thread(input, "you> ")).strip()
        if not line:
            continue
        command, _, rest = line.partition(" ")
        try:
            if command == "/quit":
                break
            elif command == "/stop":
                controller.stop()
            elif command == "/list":
                for conversation in await controller.list_conversations():
                    marker = "*" if conversation.conversation_id == controller.active_id else " "
                    print(f"{marker} {conversation.conversation_id}  {conversation.title or ''}")
            elif command == "/new":
                conversation = await controller.create_conversation(title=rest.strip() or None)
                print(f"Conversation {conversation.conversation_id}")
            elif command == "/open":
                await controller.open(rest.strip())
                for message in controller.messages:
                    print(f"{message.role}> {message.content}")
            elif command == "/delete":
                await controller.delete_conversation(rest.strip())
            else:
                task = asyncio.create_task(controller.send(line))
                pending.add(task)
                task.add_done_callback(pending.discard)
        except AssistantError as exc:
            print(f"[error] {exc}")

    controller.stop()
    await controller.aclose()
    for task in list(pending):
        task.cancel()
    return 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    raise SystemExit(main())
