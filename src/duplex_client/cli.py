"""Terminal chat client.

Joins a room through :class:`SessionCoordinator`, prints incoming messages,
delivery status, typing indicators and errors, and sends stdin lines as chat
messages.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from duplex_client.config import ClientConfig
from duplex_client.errors import SessionError
from duplex_client.protocol import ChatMessage, MessageStatus
from duplex_client.session import SessionCoordinator, SessionOptions, SessionSnapshot
from duplex_client.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /typing  - Send a typing indicator
  /status  - Show session status
  /history - Show chat history
  /quit    - Leave the room and exit
  /help    - Show this help
"""


class ChatCLI:
    """Interactive chat client for a single session."""

    def __init__(
        self,
        coordinator: SessionCoordinator,
        options: SessionOptions,
    ) -> None:
        """Initialize chat CLI.

        Args:
            coordinator: Session coordinator to drive
            options: Session start options
        """
        self.coordinator = coordinator
        self.options = options
        self.running = True
        self._last_state: str | None = None
        self._unsubscribers = [
            coordinator.on_state(self.handle_state),
            coordinator.on_message(self.handle_message),
            coordinator.on_message_status(self.handle_status),
            coordinator.on_typing(self.handle_typing),
            coordinator.on_error(self.handle_error),
        ]

    def handle_state(self, snapshot: SessionSnapshot) -> None:
        state = snapshot.connection_state.value
        if state != self._last_state:
            self._last_state = state
            print(f"\n[connection: {state}]")

    def handle_message(self, message: ChatMessage) -> None:
        sender = message.sender_name or f"User {message.sender_id[-6:]}"
        print(f"\n{sender}: {message.text}")

    def handle_status(self, message_id: str, status: MessageStatus) -> None:
        if status is MessageStatus.FAILED:
            print(f"\n[message {message_id[:8]} failed]")
        else:
            logger.debug("Message status", extra={"message_id": message_id, "status": status.value})

    def handle_typing(self, sender_id: str, is_typing: bool) -> None:
        if is_typing:
            print(f"\n[{sender_id} is typing...]")

    def handle_error(self, error: SessionError) -> None:
        print(f"\nError: {error.user_message}")

    def print_status(self) -> None:
        snapshot = self.coordinator.snapshot
        print("\nSession status:")
        for key, value in snapshot.to_dict().items():
            print(f"  {key}: {value}")

    def print_history(self) -> None:
        messages = self.coordinator.history()
        if not messages:
            print("\n(no messages)")
            return
        print()
        for message in messages:
            sender = message.sender_name or message.sender_id
            status = self.coordinator.get_message_status(message.id)
            suffix = f" [{status.value}]" if status else ""
            print(f"  {sender}: {message.text}{suffix}")

    async def handle_command(self, command: str) -> None:
        """Run one slash command (without the leading slash)."""
        if command == "quit":
            self.running = False
            print("\nGoodbye!")
        elif command == "help":
            print(HELP_TEXT)
        elif command == "typing":
            self.coordinator.set_typing(True)
        elif command == "status":
            self.print_status()
        elif command == "history":
            self.print_history()
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    def send_text(self, text: str) -> None:
        try:
            message_id = self.coordinator.send_message(text)
            logger.debug("Queued message", extra={"message_id": message_id})
        except SessionError as e:
            print(f"Error: {e.user_message}")

    async def input_loop(self) -> None:
        """Read lines from stdin until /quit or EOF."""
        print("\n" + "=" * 60)
        print("Duplex Voice Chat")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "You: ")
            except EOFError:
                self.running = False
                break

            text = text.strip()
            if not text:
                continue

            if text.startswith("/"):
                await self.handle_command(text[1:].lower())
            else:
                self.send_text(text)

    def stop(self) -> None:
        self.running = False

    async def run(self) -> int:
        """Start the session, run the input loop and end the session.

        Returns:
            Process exit code
        """
        try:
            await self.coordinator.start_session(self.options)
        except SessionError as e:
            logger.error("Could not join room", extra={"category": e.category})
            return 1

        snapshot = self.coordinator.snapshot
        print(f"\nJoined room {snapshot.room_name} as {snapshot.user_name}")

        # SIGINT/SIGTERM run the session's cleanups, then stop the loop
        registry = self.coordinator.lifecycle
        remove_handlers = (
            registry.install_signal_handlers(on_complete=self.stop) if registry else None
        )

        input_task = asyncio.create_task(self.input_loop(), name="cli-input")
        try:
            while self.running and self.coordinator.has_active_session:
                if input_task.done():
                    break
                await asyncio.sleep(0.1)
        finally:
            input_task.cancel()
            if remove_handlers is not None:
                remove_handlers()
            await self.coordinator.end_session()
            for unsubscribe in self._unsubscribers:
                unsubscribe()

        return 0


async def run_client(config: ClientConfig, options: SessionOptions) -> int:
    """Run the chat client until the user quits or a signal arrives.

    Args:
        config: Client configuration
        options: Session start options

    Returns:
        Process exit code
    """
    coordinator = SessionCoordinator(config)
    return await ChatCLI(coordinator, options).run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Terminal chat client for realtime duplex voice chat"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to client YAML config",
    )
    parser.add_argument("--user-id", type=str, default=None, help="Participant identity")
    parser.add_argument("--name", type=str, default=None, help="Display name")
    parser.add_argument("--room", type=str, default=None, help="Room name")
    parser.add_argument("--provider", type=str, default=None, help="Voice provider")
    parser.add_argument("--voice-id", type=str, default=None, help="Voice id")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the chat client."""
    args = build_parser().parse_args(argv)

    try:
        if args.config is not None:
            config = ClientConfig.from_yaml(args.config)
        else:
            config = ClientConfig.from_yaml_with_defaults()
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.log_level, verbose=args.verbose)

    options = SessionOptions(
        user_id=args.user_id,
        user_name=args.name,
        room_name=args.room,
        provider=args.provider,
        voice_id=args.voice_id,
    )

    try:
        exit_code = asyncio.run(run_client(config, options))
    except KeyboardInterrupt:
        print("\nExiting...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
