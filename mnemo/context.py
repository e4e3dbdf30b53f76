"""Token-bounded conversation buffer shared by the memory managers."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from mnemo.protocols import TokenCounter, ValidationError
from mnemo.types import now_utc, parse_datetime
from mnemo.utils import estimate_tokens

CONTEXT_ROLES = ("user", "assistant", "system")


@dataclass
class ContextMessage:
    role: str
    content: str
    timestamp: datetime
    tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "tokens": self.tokens,
        }


class ContextWindow:
    """Role-tagged turns kept under a token limit.

    ``append`` returns the turns pushed out so the caller can persist them.
    The newest turn is never evicted, even if it alone exceeds the limit.
    """

    def __init__(
        self,
        limit: int,
        token_counter: TokenCounter = estimate_tokens,
        clock: Callable[[], datetime] = now_utc,
    ):
        if limit <= 0:
            raise ValidationError("Context limit must be positive")
        self.limit = limit
        self._count_tokens = token_counter
        self._clock = clock
        self._messages: List[ContextMessage] = []
        self._tokens = 0

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def tokens(self) -> int:
        return self._tokens

    @property
    def messages(self) -> List[ContextMessage]:
        return list(self._messages)

    def append(self, content: str, role: str) -> List[ContextMessage]:
        if role not in CONTEXT_ROLES:
            raise ValidationError(f"Invalid context role: {role!r}")
        tokens = self._count_tokens(content)
        self._messages.append(
            ContextMessage(role=role, content=content, timestamp=self._clock(), tokens=tokens)
        )
        self._tokens += tokens

        evicted = []
        while self._tokens > self.limit and len(self._messages) > 1:
            removed = self._messages.pop(0)
            self._tokens -= removed.tokens
            evicted.append(removed)
        return evicted

    def render(self, max_tokens: Optional[int] = None) -> List[str]:
        """``[role]: content`` lines for the newest turns within the budget."""
        budget = self.limit if max_tokens is None else max_tokens
        lines: List[str] = []
        used = 0
        for message in reversed(self._messages):
            if used + message.tokens > budget:
                break
            lines.insert(0, f"[{message.role}]: {message.content}")
            used += message.tokens
        return lines

    def last_user_message(self) -> Optional[ContextMessage]:
        return next((m for m in reversed(self._messages) if m.role == "user"), None)

    def summary(self, snippet_chars: int = 50, max_chars: int = 500) -> str:
        text = " | ".join(f"{m.role}: {m.content[:snippet_chars]}" for m in self._messages)
        return text[:max_chars]

    def clear(self) -> None:
        self._messages = []
        self._tokens = 0

    def to_list(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._messages]

    def load(self, items: List[Dict[str, Any]]) -> None:
        """Replace the buffer with serialized turns (as produced by to_list)."""
        messages = [
            ContextMessage(
                role=item["role"],
                content=item["content"],
                timestamp=parse_datetime(item.get("timestamp")) or self._clock(),
                tokens=int(item.get("tokens") or self._count_tokens(item["content"])),
            )
            for item in items
        ]
        self._messages = messages
        self._tokens = sum(m.tokens for m in messages)
