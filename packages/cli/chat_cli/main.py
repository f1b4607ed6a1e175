"""Interactive command-line interface for character chats."""

import logging
import os

from dotenv import load_dotenv  # type: ignore

from pipeline.bootstrap import build_pipeline, open_storage  # type: ignore
from pipeline.errors import ContentBlocked, ModelUnavailable, RateLimitExceeded  # type: ignore
from pipeline.settings import Settings  # type: ignore


def main():
    """Run the interactive chat REPL.

    Loads environment configuration, wires the chat pipeline, opens a
    conversation with ``CHAT_CHARACTER`` and then enters a read-eval-print
    loop. Replies are streamed token by token.
    """
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(level=os.environ.get("CLI_LOG_LEVEL", "WARNING").upper())

    user_id = os.environ.get("CHAT_USER_ID", "cli-user")
    character_id = os.environ.get("CHAT_CHARACTER", "assistant")

    storage, provider = open_storage(settings)
    pipeline = build_pipeline(settings, storage)

    conversation = pipeline.create_conversation(user_id, character_id)
    if conversation is None:
        print("Could not open a conversation; check CHAT_DB_PATH.")
        return

    print(f"Chatting with {character_id} (type 'quit' or 'exit' to stop)")
    print("-" * 48)

    try:
        while True:
            try:
                user_input = input("\nYou: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit"):
                print("Goodbye!")
                break

            try:
                events = pipeline.process_message_stream(
                    conversation.id, user_id, user_input
                )
            except RateLimitExceeded as e:
                print(f"\n[rate limited] {e}")
                continue
            except ContentBlocked as e:
                print(f"\n[blocked] {e}")
                continue

            try:
                print(f"\n{character_id}: ", end="", flush=True)
                for event in events:
                    if event["type"] == "moderation":
                        print(f"[flagged: {', '.join(event['categories'])}] ", end="")
                    elif event["type"] == "token":
                        print(event["token"], end="", flush=True)
                print()
            except KeyboardInterrupt:
                events.close()
                print("\n[interrupted]")
            except ModelUnavailable as e:
                print(f"\n[error] {e}")
    finally:
        pipeline.close()
        if provider is not None:
            provider.close()


if __name__ == "__main__":
    main()
