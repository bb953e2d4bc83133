from dataclasses import dataclass, field
from typing import Dict, List

ROLES = ("system", "user", "assistant")
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass(frozen=True)
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not self.content:
            raise ValueError(f"Empty {self.role} message")

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatSession:
    """Conversation history for one REPL run, seeded with a system message."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    messages: List[Message] = field(default_factory=list)

    def __post_init__(self):
        if not self.messages:
            self.messages.append(Message("system", self.system_prompt))

    def add_user(self, content: str) -> Message:
        msg = Message("user", content)
        self.messages.append(msg)
        return msg

    def add_assistant(self, content: str) -> Message:
        msg = Message("assistant", content)
        self.messages.append(msg)
        return msg

    def discard_last_user(self):
        # Only a dangling user message (no reply yet) can be rolled back
        if self.messages and self.messages[-1].role == "user":
            return self.messages.pop()
        return None

    def payload(self) -> List[Dict[str, str]]:
        return [m.as_dict() for m in self.messages]

    @property
    def turns(self) -> int:
        return sum(1 for m in self.messages if m.role == "assistant")

    def __len__(self):
        return len(self.messages)
