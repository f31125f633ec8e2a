import asyncio
import signal
import sys
from collections.abc import Callable

from dotenv import load_dotenv
from loguru import logger

from iano_chat.app_config import load_json_config, parse_app_config
from iano_chat.bootstrap import AppRuntime, bootstrap_runtime
from iano_chat.commands.router import CommandRouter
from iano_chat.console import StreamRenderer, format_tool_call
from iano_chat.errors import ChatBusyError, ChatClientError
from iano_chat.models import Message, MessageRole

_HELP_TEXT = """Commands:
  /help                                   show this help
  /new                                    start a new session
  /history                                reload and print the current session
  /clear                                  forget the current session's messages locally
  /feedback <message_id> like|dislike [comment]
  /sync <text>                            send without streaming
  exit | quit                             leave"""

_RATINGS = {"like", "dislike"}


def _print_message(message: Message) -> None:
    role = "you" if message.role is MessageRole.USER else "assistant"
    print(f"[{message.id}] {role} ({message.status.value})> {message.content.text}")
    for call in message.content.tool_calls:
        print(f"    {format_tool_call(call.name, call.arguments)}")


def _install_interrupt_handler(on_interrupt: Callable[[], None]) -> Callable[[], None]:
    """Route Ctrl+C to ``on_interrupt`` while a stream is running.

    Returns a callable that restores the previous behaviour. Event loops
    without signal support (Windows) keep the runner's default, which
    cancels the main task instead.
    """
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        return lambda: None
    return lambda: loop.remove_signal_handler(signal.SIGINT)


def _build_router(runtime: AppRuntime) -> CommandRouter:
    store = runtime.store
    sessions = runtime.sessions

    async def on_help() -> None:
        print(_HELP_TEXT)

    async def on_new() -> None:
        try:
            session_id = await sessions.create_session()
        except ChatClientError as ex:
            print(f"error: {ex}")
            return
        print(f"Session: {session_id}")

    async def on_history() -> None:
        session_id = sessions.current_session_id
        if not session_id:
            print("No active session.")
            return
        await store.fetch_messages_by_session(session_id)
        if store.error:
            print(f"error: {store.error}")
            return
        for message in store.current_messages:
            _print_message(message)

    async def on_clear() -> None:
        store.clear_current_session()
        print("Cleared.")

    async def on_feedback(command: str) -> None:
        parts = command.split(maxsplit=3)
        if len(parts) < 3 or parts[2] not in _RATINGS:
            print("Usage: /feedback <message_id> like|dislike [comment]")
            return
        comment = parts[3] if len(parts) > 3 else ""
        if await store.send_feedback(parts[1], parts[2], comment):
            print("Feedback saved.")
        else:
            print("Feedback failed.")

    async def on_sync(command: str) -> None:
        text = command[len("/sync"):].strip()
        if not text:
            print("Usage: /sync <text>")
            return
        await store.send_message_non_streaming(text)
        if store.error:
            print(f"error: {store.error}")
            return
        replies = [m for m in store.current_messages if m.role is MessageRole.ASSISTANT]
        if replies:
            print(f"assistant> {replies[-1].content.text}")

    def on_unknown(command: str) -> None:
        print(f"Unknown command: {command} (try /help)")

    return CommandRouter(
        on_help=on_help,
        on_new=on_new,
        on_history=on_history,
        on_clear=on_clear,
        on_feedback=on_feedback,
        on_sync=on_sync,
        on_unknown=on_unknown,
    )


async def _stream_reply(runtime: AppRuntime, text: str, work_dir: str | None) -> None:
    store = runtime.store
    restore_sigint = _install_interrupt_handler(store.cancel_streaming)
    try:
        with StreamRenderer(store):
            await store.send_message(text, work_dir)
    except asyncio.CancelledError:
        # Runner-level Ctrl+C (no signal handler support).
        store.cancel_streaming()
        current = asyncio.current_task()
        if current is not None:
            current.uncancel()
        print("\n[cancelled]")
        return
    finally:
        restore_sigint()

    if store.error:
        print(f"\nerror: {store.error}")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    runtime = bootstrap_runtime(app)
    router = _build_router(runtime)

    print("iano-chat. Type 'exit' to quit, /help for commands.")
    print(f"Backend: {app.api_base} (agent: {app.agent_id}, protocol: {app.protocol.value})")
    if app.session_id:
        print(f"Session: {app.session_id}")
    if app.work_dir:
        print(f"Working directory: {app.work_dir}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                if await router.try_handle(trimmed):
                    continue
                await _stream_reply(runtime, trimmed, app.work_dir)
                print("\n")
            except ChatBusyError as ex:
                print(f"error: {ex}")
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
