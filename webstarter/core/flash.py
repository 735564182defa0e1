from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, MutableMapping

Session = MutableMapping[str, Any]

FLASH_SUCCESS = "success"
FLASH_ERROR = "error"
FLASH_WARNING = "warning"
FLASH_INFO = "info"

# Display order when messages are read back
FLASH_CATEGORIES = (FLASH_SUCCESS, FLASH_ERROR, FLASH_WARNING, FLASH_INFO)

_FLASH_KEY_PREFIX = "_flash_"


@dataclass(frozen=True)
class FlashMessage:
    category: str
    message: str


def _bucket(category: str) -> str:
    return f"{_FLASH_KEY_PREFIX}{category}"


def add_flash(session: Session, category: str, text: str) -> None:
    """
    Queue a one-time message in the session under its category bucket.

    Raises:
        ValueError: If the category is not one of FLASH_CATEGORIES
    """
    if category not in FLASH_CATEGORIES:
        raise ValueError(f"unknown flash category: {category!r}")
    stack: List[str] = list(session.get(_bucket(category), []))
    stack.append(text)
    session[_bucket(category)] = stack


def get_flashes(session: Session) -> List[FlashMessage]:
    """Pop every queued flash message; each message is returned only once."""
    messages: List[FlashMessage] = []
    for category in FLASH_CATEGORIES:
        stack = session.pop(_bucket(category), [])
        if not isinstance(stack, list):
            continue
        messages.extend(FlashMessage(category, str(text)) for text in stack)
    return messages
