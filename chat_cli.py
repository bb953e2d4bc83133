import os
import sys
import logging
import argparse
import threading
from functools import partial

import requests

from chat_models import ChatSession, DEFAULT_SYSTEM_PROMPT
from chat_stream import API_BASE, MODEL, ChatStreamError, stream_chat

logger = logging.getLogger(__name__)

PROMPT = "> "
EXIT_COMMAND = "exit"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
MISSING_KEY = "Error: CHATGPT_API_TOKEN environment variable or --api-key argument must be provided."


class ChatRepl:
    """
    Read a line, stream the model's reply to the terminal, repeat.

    `send` is called as send(messages, on_data, cancel=event) and returns the
    full reply text. The session is only modified here: a user message is
    rolled back when its turn fails, so history keeps alternating.
    """

    def __init__(self, send, session=None, stdin=None, stdout=None, stderr=None):
        self.send = send
        self.session = session if session is not None else ChatSession()
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        # Passed to every request; code embedding the REPL sets it to end a reply early
        self.cancel = threading.Event()

    def _print(self, text=""):
        self.stdout.write(text + "\n")
        self.stdout.flush()

    def _read_line(self):
        self.stdout.write(PROMPT)
        self.stdout.flush()
        try:
            return self.stdin.readline()
        except KeyboardInterrupt:
            return ""

    def run(self) -> int:
        self._print("Welcome to the ChatGPT REPL!")
        self._print(f"Type your query or '{EXIT_COMMAND}' to quit:")
        while True:
            raw = self._read_line()
            if not raw:
                self._print("\nGoodbye!")
                break
            line = raw.strip()
            if line.lower() == EXIT_COMMAND:
                self._print("Goodbye!")
                break
            if not line:
                continue
            self.turn(line)
        return 0

    def turn(self, line: str):
        self.session.add_user(line)
        self.cancel.clear()
        shown = []

        def on_data(fragment):
            shown.append(fragment)
            self.stdout.write(fragment)
            self.stdout.flush()

        try:
            reply = self.send(self.session.payload(), on_data, cancel=self.cancel)
        except KeyboardInterrupt:
            self._end_line(shown)
            self._print("[interrupted]")
            self.session.discard_last_user()
            return None
        except (ChatStreamError, requests.RequestException) as e:
            self._end_line(shown)
            logger.error(f"Chat request failed: {e}")
            self.stderr.write(f"Error: {e}\n")
            self.stderr.flush()
            self.session.discard_last_user()
            return None

        self._end_line(shown, always=True)
        if self.cancel.is_set():
            self._print("[interrupted]")
            self.session.discard_last_user()
            return None
        if not reply:
            self.stderr.write("Error: the model returned an empty response\n")
            self.stderr.flush()
            self.session.discard_last_user()
            return None

        self.session.add_assistant(reply)
        return reply

    def _end_line(self, shown, always=False):
        if (shown or always) and not "".join(shown).endswith("\n"):
            self.stdout.write("\n")
            self.stdout.flush()


def _env_float(name):
    value = os.getenv(name, "").strip()
    return float(value) if value else None


def build_parser():
    p = argparse.ArgumentParser(
        prog="chat-repl",
        description="Interactive chat with a hosted chat-completion model, streamed to the terminal.",
    )
    p.add_argument("--api-key", default=os.getenv("CHATGPT_API_TOKEN", ""), help="Bearer API key (overrides CHATGPT_API_TOKEN)")
    p.add_argument("--base", default=os.getenv("CHATGPT_API_BASE", API_BASE), help="API base URL")
    p.add_argument("--model", default=os.getenv("CHATGPT_MODEL", MODEL), help="Model name/id")
    p.add_argument("--system", default=os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT), help="System prompt seeding the conversation")
    p.add_argument("--temperature", type=float, default=float(os.getenv("TEMPERATURE", "0.7")))
    p.add_argument("--max_tokens", type=int, default=int(os.getenv("MAX_TOKENS", "150")))
    p.add_argument("--timeout", type=int, default=int(os.getenv("TIMEOUT", "300")), help="Connect/read timeout in seconds")
    p.add_argument("--deadline", type=float, default=_env_float("DEADLINE"), help="Give up on a reply after this many seconds")
    p.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "ERROR").upper(),
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT, stream=sys.stderr)

    if not args.api_key:
        raise SystemExit(MISSING_KEY)

    send = partial(
        stream_chat,
        api_key=args.api_key,
        base=args.base,
        model=args.model,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        timeout=args.timeout,
        deadline=args.deadline,
    )
    logger.info(f"Chatting with {args.model} at {args.base}")
    return ChatRepl(send, ChatSession(system_prompt=args.system)).run()


if __name__ == "__main__":
    sys.exit(main())
