import os
import json
import time
import codecs
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://api.openai.com"
MODEL = "gpt-4o"
TEMPERATURE = 0.7
MAX_TOKENS = 150
TIMEOUT = 300

DONE_SENTINEL = "[DONE]"
# Server-sent event fields that carry no payload for us
_IGNORED_FIELDS = {"event", "id", "retry"}


class ChatStreamError(RuntimeError):
    pass


class ChatAPIError(ChatStreamError):
    """Non-success HTTP status returned before streaming began."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class StreamTimeout(ChatStreamError):
    pass


def build_payload(messages: List[Dict[str, str]], model=MODEL, temperature=TEMPERATURE, max_tokens=MAX_TOKENS):
    if not messages:
        raise ValueError("At least one message is required")
    for m in messages:
        if not m.get("role") or not m.get("content"):
            raise ValueError(f"Message needs a role and content: {m!r}")
    return {
        "model": model,
        "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": True,
    }


def _headers(api_key):
    return {
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
        "Authorization": f"Bearer {api_key}",
    }


def _session():
    s = requests.Session()
    s.headers.update({"User-Agent": "chat-repl/1.0"})
    return s


def _error_message(r) -> str:
    try:
        err = r.json()
        return str(err["error"]["message"])
    except (ValueError, KeyError, TypeError):
        text = (r.text or "").strip()
        return text[:200] or (r.reason or "request failed")


def open_chat_stream(messages, api_key, base=API_BASE, model=MODEL, temperature=TEMPERATURE,
                     max_tokens=MAX_TOKENS, timeout=TIMEOUT, session=None):
    """
    POST the conversation to the chat-completions endpoint with streaming on.

    Without a session a new requests.Session is created for the call.
    Returns the open response; the caller owns it and must close it. A
    non-success status raises ChatAPIError after closing the response.
    Network failures propagate as requests.RequestException.
    """
    payload = build_payload(messages, model=model, temperature=temperature, max_tokens=max_tokens)
    url = f"{base.rstrip('/')}/v1/chat/completions"
    http = session or _session()
    logger.debug(f"POST {url} model={model} messages={len(payload['messages'])}")
    r = http.post(url, headers=_headers(api_key), json=payload, stream=True, timeout=timeout)
    try:
        r.raise_for_status()
    except requests.HTTPError as e:
        message = _error_message(r)
        r.close()
        raise ChatAPIError(r.status_code, message) from e
    return r


def _delta_content(obj: Dict[str, Any]) -> str:
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class StreamDecoder:
    """
    Turns raw event-stream bytes into text fragments.

    Bytes go through an incremental UTF-8 decoder so a character split across
    reads comes out once. Records are separated by a blank line; the last,
    unterminated segment is held back until more data arrives or close()
    is called.
    """

    def __init__(self, on_data: Optional[Callable[[str], Any]] = None):
        self.on_data = on_data
        self.parts: List[str] = []
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def feed(self, chunk: bytes) -> List[str]:
        return self._consume(self._utf8.decode(chunk), final=False)

    def close(self) -> List[str]:
        return self._consume(self._utf8.decode(b"", final=True), final=True)

    def _consume(self, text: str, final: bool) -> List[str]:
        buf = self._buffer + text
        carry = ""
        # A lone CR at the end may be the first half of a CRLF
        if not final and buf.endswith("\r"):
            buf, carry = buf[:-1], "\r"
        buf = buf.replace("\r\n", "\n").replace("\r", "\n")
        records = buf.split("\n\n")
        if final:
            self._buffer = ""
        else:
            self._buffer = records.pop() + carry

        fragments = []
        for record in records:
            fragment = self._parse_record(record)
            if fragment is None:
                continue
            self.parts.append(fragment)
            fragments.append(fragment)
            if self.on_data is not None:
                self.on_data(fragment)
        return fragments

    def _parse_record(self, record: str) -> Optional[str]:
        record = record.strip()
        if not record:
            return None

        data_lines = []
        unknown = []
        for line in record.split("\n"):
            if line.startswith(":"):
                continue  # keep-alive comment
            name, sep, value = line.partition(":")
            if name == "data" and sep:
                data_lines.append(value[1:] if value.startswith(" ") else value)
            elif name not in _IGNORED_FIELDS:
                unknown.append(line)

        if not data_lines:
            if unknown:
                logger.warning(f"Skipping event record without data field: {record[:200]!r}")
            return None

        data = "\n".join(data_lines).strip()
        if data == DONE_SENTINEL:
            return None

        try:
            obj = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Error parsing JSON chunk: {e} ({data[:200]!r})")
            return None
        if not isinstance(obj, dict):
            logger.warning(f"Skipping non-object event payload: {data[:200]!r}")
            return None
        if obj.get("error"):
            logger.warning(f"Error event in stream: {obj['error']}")
            return None
        return _delta_content(obj)


def decode_stream(chunks: Iterable[bytes], on_data=None, cancel=None, deadline=None) -> str:
    """
    Decode an event stream, passing each fragment to on_data as it arrives.

    Stops early when the cancel event is set. Raises StreamTimeout once
    deadline seconds have elapsed. Returns the accumulated text, trimmed.
    """
    decoder = StreamDecoder(on_data)
    expires = time.monotonic() + deadline if deadline else None
    for chunk in chunks:
        if cancel is not None and cancel.is_set():
            logger.info("Stream cancelled by caller")
            break
        if expires is not None and time.monotonic() > expires:
            raise StreamTimeout(f"No complete response within {deadline}s")
        if chunk:
            decoder.feed(chunk)
    decoder.close()
    return decoder.text.strip()


def stream_chat(messages, on_data=None, api_key=None, base=API_BASE, model=MODEL,
                temperature=TEMPERATURE, max_tokens=MAX_TOKENS, timeout=TIMEOUT,
                cancel=None, deadline=None, session=None) -> str:
    api_key = api_key or os.getenv("CHATGPT_API_TOKEN", "")
    if not api_key:
        raise ValueError("CHATGPT_API_TOKEN not found in environment")
    http = session or _session()
    try:
        with open_chat_stream(messages, api_key, base=base, model=model, temperature=temperature,
                              max_tokens=max_tokens, timeout=timeout, session=http) as r:
            return decode_stream(r.iter_content(chunk_size=None), on_data, cancel=cancel, deadline=deadline)
    finally:
        # A caller-supplied session stays open for reuse
        if session is None:
            http.close()
