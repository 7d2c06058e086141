from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class VaultSettings:
    server_url: str = ""
    api_key: str = ""
    encryption_secret: str = ""

    @property
    def is_connected(self) -> bool:
        return bool(self.server_url and self.api_key)


@dataclass(frozen=True)
class RateLimitState:
    remaining: int | None = None
    reset_at: int | None = None

    def is_exhausted(self, now: float) -> bool:
        if self.remaining is None or self.reset_at is None:
            return False
        return self.remaining <= 0 and now < self.reset_at


@dataclass(frozen=True)
class OAuthResult:
    api_key: str
    encryption_secret: str | None = None


@dataclass(frozen=True)
class UserProfile:
    payload: dict[str, Any]

    @property
    def email(self) -> str | None:
        value = self.payload.get("email")
        return str(value) if value else None

    @property
    def name(self) -> str | None:
        value = self.payload.get("name")
        return str(value) if value else None


@dataclass(frozen=True)
class ContextMenuVariant:
    menu_id: str
    title: str
    kind: str
    tags: tuple[str, ...]


CONTEXT_MENU_VARIANTS: tuple[ContextMenuVariant, ...] = (
    ContextMenuVariant("save-as-insight", "Save as Insight", "insight", ("captured", "insight")),
    ContextMenuVariant("save-as-note", "Save as Note", "note", ("captured", "note")),
    ContextMenuVariant("save-as-reference", "Save as Reference", "reference", ("captured", "reference")),
    ContextMenuVariant("save-as-snippet", "Save as Code Snippet", "snippet", ("captured", "code")),
)

CONTEXT_MENU_INGEST_ID = "ingest-page"
