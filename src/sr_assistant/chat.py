"""
Service Request Assistant (console)

One channel in the terminal. Commands:
  /commit   submit the current form
  /logout   end the session
  /login    sign in again (optional display name: /login Jane Doe)
  quit      exit
"""

import asyncio
import os
import sys
from uuid import uuid4

from dotenv import load_dotenv

from sr_assistant.agents.assistant import ServiceDeskAssistant, build_assistant
from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.core.logging import setup_logging
from sr_assistant.session.models import IdentitySignal, SignalKind

load_dotenv()
logger = setup_logging(__name__)


def get_channel_id() -> str:
    return os.getenv("CHANNEL_ID", f"console-{uuid4().hex[:8]}")


async def run_command(assistant: ServiceDeskAssistant, channel_id: str, user_input: str) -> str:
    """Handle one console line and return the text to print."""
    command, _, argument = user_input.partition(" ")
    command = command.lower()

    if command == "/logout":
        await assistant.on_identity_signal(IdentitySignal(kind=SignalKind.LOGOUT, source="console"))
        return "Signed out."

    if command == "/login":
        session = await assistant.on_identity_signal(
            IdentitySignal(kind=SignalKind.LOGIN, hint=argument.strip() or None, source="console")
        )
        if session is None:
            return "Could not sign you in."
        return f"Signed in as {session.identity.display_name}."

    if command == "/commit":
        channel = assistant.registry.get(channel_id)
        if channel is None or channel.draft.offering is None:
            return "There is no form ready to submit yet."
        outcome = await assistant.handle_commit(channel_id, channel.draft.offering.offering_id, {})
        return outcome.message

    result = await assistant.handle_message(channel_id, user_input)
    lines = [result.reply]
    if result.missing:
        lines.append(f"(still needed: {', '.join(result.missing)})")
    return "\n".join(lines)


async def main_async():
    os.system("cls" if os.name == "nt" else "clear")

    config = AgentConfig()
    config.validate()

    print("=" * 70)
    print("Service Request Assistant")
    print("=" * 70)
    print("\nType 'quit' to exit, '/commit' to submit the current form\n")
    print("=" * 70)

    channel_id = get_channel_id()
    assistant = build_assistant(config)
    await assistant.start()

    session = assistant.live_session()
    if session:
        print(f"\nSigned in as {session.identity.display_name}")

    try:
        while True:
            user_input = (await asyncio.to_thread(input, "\nYou: ")).strip()
            if user_input.lower() in ["quit", "exit", "bye"]:
                print("\nGoodbye!")
                break
            if not user_input:
                print("Please enter a message.")
                continue

            print("\nAssistant: ", end="", flush=True)
            print(await run_command(assistant, channel_id, user_input))
    finally:
        await assistant.close_channel(channel_id)
        await assistant.stop()


def main():
    try:
        asyncio.run(main_async())
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
