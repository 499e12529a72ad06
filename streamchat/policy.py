"""
Ordering and visibility rules shared by the chat engines.

All functions are pure: they take a window of messages and return a new
list, leaving the input untouched.
"""

from typing import Iterable, List

from streamchat.schemas import Message


def sort_key(message: Message):
    # ties on sentAt are broken by key so every client renders the same order
    return (message.sent_at, message.id)


def order_messages(messages: Iterable[Message]) -> List[Message]:
    """Sort ascending by sentAt, then id."""
    return sorted(messages, key=sort_key)


def is_visible(message: Message) -> bool:
    return not message.deleted


def visible_messages(messages: Iterable[Message]) -> List[Message]:
    """Drop soft-deleted messages and order the rest."""
    return order_messages(m for m in messages if is_visible(m))


def matches_search(message: Message, search: str) -> bool:
    """Case-insensitive substring match on display name or body."""
    if not search:
        return True
    needle = search.lower()
    return needle in message.display_name.lower() or needle in message.body.lower()


def filter_view(messages: Iterable[Message], search: str = "", show_deleted: bool = False) -> List[Message]:
    """
    Local moderation view over an already-fetched window.

    Args:
        messages: The moderation window
        search: Substring matched against display name and body
        show_deleted: Include soft-deleted messages

    Returns:
        Matching messages ordered by sentAt, id
    """
    return order_messages(
        m for m in messages
        if matches_search(m, search) and (show_deleted or is_visible(m))
    )


def count_deleted(messages: Iterable[Message]) -> int:
    return sum(1 for m in messages if m.deleted)
