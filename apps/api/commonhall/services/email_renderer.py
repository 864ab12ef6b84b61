from __future__ import annotations

import html
import re
import uuid
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

_HREF_RE = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)


@dataclass(frozen=True)
class NewsletterContent:
    id: uuid.UUID
    title: str
    subject: str
    content: str
    preview_text: str | None = None


@dataclass(frozen=True)
class RecipientAddress:
    id: uuid.UUID
    email: str
    tracking_token: str


class NewsletterRenderer(Protocol):
    def render(self, newsletter: NewsletterContent, recipient: RecipientAddress, base_url: str) -> str: ...


def open_tracking_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/api/email/track/open/{token}"


def click_tracking_url(base_url: str, token: str, target_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/email/track/click/{token}?url={quote(target_url, safe='')}"


class TrackedHtmlRenderer:
    """Wraps newsletter HTML with per-recipient click and open tracking."""

    def render(self, newsletter: NewsletterContent, recipient: RecipientAddress, base_url: str) -> str:
        token = recipient.tracking_token
        body = _HREF_RE.sub(
            lambda match: f'href="{html.escape(click_tracking_url(base_url, token, match.group(1)))}"',
            newsletter.content,
        )
        preview = ""
        if newsletter.preview_text:
            preview = f'<div style="display:none;max-height:0;overflow:hidden">{html.escape(newsletter.preview_text)}</div>'
        pixel = f'<img src="{html.escape(open_tracking_url(base_url, token))}" width="1" height="1" alt="" />'
        return (
            "<!DOCTYPE html>"
            f"<html><head><meta charset=\"utf-8\"><title>{html.escape(newsletter.title)}</title></head>"
            f"<body>{preview}{body}{pixel}</body></html>"
        )
