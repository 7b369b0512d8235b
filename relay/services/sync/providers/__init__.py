"""
Data Source Providers
API clients and normalization for Google Chat and Gmail
"""
from relay.services.sync.providers.google_chat import (
    GoogleChatClient,
    load_user_name_mapping,
    normalize_chat_message,
)
from relay.services.sync.providers.gmail import (
    GmailClient,
    after_query,
    newer_than_query,
    normalize_gmail_message,
    parse_sender,
)

__all__ = [
    "GoogleChatClient",
    "load_user_name_mapping",
    "normalize_chat_message",
    "GmailClient",
    "after_query",
    "newer_than_query",
    "normalize_gmail_message",
    "parse_sender",
]
