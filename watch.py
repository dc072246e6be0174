import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from chatsync.api.client import HttpRequestApi
from chatsync.app_logging import init_logging
from chatsync.config import SyncSettings, get_sync_settings
from chatsync.exceptions import ConfigurationError, ReconnectExhaustedError, SendFailedError
from chatsync.formatting import PRESENCE_TTL_SECONDS
from chatsync.schemas import ChatMode, ConversationDetail, Message, ViewerRole
from chatsync.sync.index import ConversationIndex
from chatsync.sync.session import ConversationSession, SessionListener
from chatsync.sync.timers import BackgroundTasks, LoopScheduler
from chatsync.sync.viewport import AnchorDecision
from chatsync.transport.aiohttp_ws import AiohttpPushTransport

logger = logging.getLogger(__name__)


def _echo(message: str) -> None:
    sys.stdout.write(f"{message}\n")


def format_message(message: Message) -> str:
    if message.is_system:
        author = "system"
    elif message.is_from_ai:
        author = "ai"
    else:
        author = "agent" if message.sender_is_agent else "visitor"
    status = "read" if message.is_read else "unread"
    marker = "~" if message.is_provisional else " "
    body = message.content
    if message.file is not None:
        body = f"{body} [{message.file.kind or 'file'}: {message.file.name or message.file.url}]".strip()
    return f"{marker}{message.created_at:%H:%M:%S} #{message.id} {author:<7} {status:<6} {body}"


class EchoListener(SessionListener):
    """Prints each message once and every read-state flip afterwards."""

    def __init__(self, presence_ttl: float = PRESENCE_TTL_SECONDS) -> None:
        self.presence_ttl = presence_ttl
        self._seen: dict[int, bool] = {}

    def on_messages_changed(self, messages: list[Message], decision: AnchorDecision | None) -> None:
        for message in messages:
            previous = self._seen.get(message.id)
            if previous is None:
                _echo(format_message(message))
            elif previous != message.is_read:
                _echo(f"  #{message.id} marked read")
            self._seen[message.id] = message.is_read

    def on_detail_changed(self, detail: ConversationDetail | None) -> None:
        if detail is not None:
            online = detail.is_visitor_online(ttl_seconds=self.presence_ttl)
            presence = "online" if online else "offline"
            _echo(f"-- conversation {detail.id} ({detail.status}, visitor {presence})")

    def on_disconnected(self, error: ReconnectExhaustedError) -> None:
        _echo(f"-- disconnected: {error}")

    def on_notify(self, message: Message) -> None:
        _echo(f"-- new message from the other side in conversation {message.conversation_id}")


async def watch(args: argparse.Namespace, settings: SyncSettings) -> int:
    role = ViewerRole(args.role)
    api = HttpRequestApi(
        settings.api_base_url,
        timeout=settings.request_timeout,
        user_id=args.viewer_id if role.is_agent else None,
    )
    transport = AiohttpPushTransport(settings.ws_url)
    scheduler = LoopScheduler()
    tasks = BackgroundTasks()

    index = None
    if role.is_agent:
        index = ConversationIndex(
            api, scheduler=scheduler, tasks=tasks, search_debounce=settings.search_debounce
        )
        await index.refresh()
        _echo(f"-- {len(index.conversations)} conversations, {index.total_unread} unread")

    conversation_id = args.conversation_id
    if conversation_id is None and index is not None:
        conversation_id = index.view.selected_id
    if conversation_id is None:
        _echo("No conversation to watch")
        await transport.aclose()
        api.close()
        return 1

    session = ConversationSession(
        api,
        transport,
        role=role,
        viewer_id=args.viewer_id,
        agent_id=args.viewer_id if role.is_agent else None,
        index=index,
        settings=settings,
        scheduler=scheduler,
        tasks=tasks,
        listener=EchoListener(settings.presence_ttl),
        chat_mode=ChatMode(args.chat_mode),
    )
    session.select(conversation_id)
    session.on_scroll(0)
    try:
        if args.send:
            try:
                await session.send(args.send)
            except SendFailedError as exc:
                _echo(f"-- send failed, draft kept: {exc.draft!r}")
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await session.aclose()
        tasks.cancel_all()
        await transport.aclose()
        api.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Follow a support conversation in real time")
    parser.add_argument("--conversation-id", type=int, help="Conversation to open")
    parser.add_argument(
        "--role",
        choices=[role.value for role in ViewerRole],
        default=ViewerRole.AGENT.value,
        help="View the conversation as an agent or as the visitor",
    )
    parser.add_argument("--viewer-id", type=int, default=0, help="Agent or visitor id")
    parser.add_argument(
        "--chat-mode",
        choices=[mode.value for mode in ChatMode],
        default=ChatMode.HUMAN.value,
        help="Visitor widget mode",
    )
    parser.add_argument("--send", help="Send one message after connecting")
    parser.add_argument(
        "--duration", type=float, default=0, help="Seconds to watch (0 = until interrupted)"
    )
    args = parser.parse_args(argv)

    if args.role == ViewerRole.VISITOR.value and args.conversation_id is None:
        parser.error("--conversation-id is required for the visitor role")

    init_logging()
    try:
        settings = get_sync_settings()
    except ConfigurationError as exc:
        parser.error(str(exc))

    try:
        return asyncio.run(watch(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
