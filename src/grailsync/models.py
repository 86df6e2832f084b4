"""Domain models: collection and want-list entries, sessions, market data, credentials."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, SecretStr

PurgeTag = Literal["keep", "cut", "maybe"]
Theme = Literal["light", "dark", "system"]


class CustomField(BaseModel):
    """A user-defined Discogs collection field (e.g. "Acquired From")."""

    name: str
    value: str


class CollectionItem(BaseModel):
    """One owned release. ``id`` is local; ``release_id`` is the Discogs id."""

    id: str
    release_id: int
    instance_id: int = 0
    title: str
    artist: str
    year: int = 0
    cover: str = ""
    folder: str = "Uncategorized"
    label: str = "Unknown"
    catalog_number: str = ""
    format: str = "Vinyl"
    media_condition: str = ""
    sleeve_condition: str = ""
    price_paid: str = ""
    notes: str = ""
    custom_fields: list[CustomField] = Field(default_factory=list)
    date_added: str = ""
    discogs_url: str = ""
    purge_tag: PurgeTag | None = None
    num_for_sale: int | None = None
    lowest_price: float | None = None


class WantItem(BaseModel):
    """A want-list entry. ``id`` is ``w-<release_id>``."""

    id: str
    release_id: int
    title: str
    artist: str
    year: int = 0
    cover: str = ""
    label: str = "Unknown"
    priority: bool = False


class Session(BaseModel):
    """A curated, ordered listening session of collection item ids."""

    id: str
    name: str
    item_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    last_modified: datetime


class Preferences(BaseModel):
    theme: Theme = "system"
    hide_purge_indicators: bool = False
    hide_gallery_meta: bool = False


class UserProfile(BaseModel):
    username: str
    avatar_url: str = ""


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


class ConditionPrice(BaseModel):
    condition: str
    value: float
    currency: str = "USD"


class MarketplaceStats(BaseModel):
    lowest_price: float | None = None
    num_for_sale: int = 0
    currency: str = "USD"


class MarketCacheEntry(BaseModel):
    """Cached price lookup for one release. ``fetched_at`` is epoch seconds."""

    prices: list[ConditionPrice] = Field(default_factory=list)
    stats: MarketplaceStats = Field(default_factory=MarketplaceStats)
    fetched_at: float


class CollectionValue(BaseModel):
    minimum: float
    median: float
    maximum: float
    currency: str = "USD"
    fetched_at: float


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class DelegatedCredential(BaseModel):
    """Access/secret pair obtained through the Discogs OAuth login."""

    kind: Literal["delegated"] = "delegated"
    access_token: SecretStr
    token_secret: SecretStr


class ManualCredential(BaseModel):
    """Personal access token entered by the user."""

    kind: Literal["manual"] = "manual"
    token: SecretStr


SyncCredential = Annotated[
    Union[DelegatedCredential, ManualCredential],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    album_count: int
    folder_count: int
    want_count: int


class DelegatedLogin(BaseModel):
    """Result of a completed delegated (OAuth) login."""

    username: str
    avatar_url: str = ""
    access_token: SecretStr
    token_secret: SecretStr
