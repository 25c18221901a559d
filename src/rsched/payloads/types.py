"""Collection/search payload types and the submission wire shape."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class PayloadItem(BaseModel):
    location: str
    check_in_date: date
    check_out_date: date
    adults: int = Field(ge=1)
    star_rating: str
    website: str
    pos: list[str] = Field(default_factory=list)  # point-of-sale codes


class Collection(BaseModel):
    id: int
    user_id: str
    name: str
    description: str | None = None
    status: str = "saved"
    last_run_at: datetime | None = None
    items: list[PayloadItem] = Field(default_factory=list)


class Search(BaseModel):
    id: int
    user_id: str
    job_name: str | None = None
    collection_name: str | None = None
    status: str = "Starting"
    scheduled: bool = False
    items: list[PayloadItem] = Field(default_factory=list)


class WebsiteData(BaseModel):
    name: str
    pos: list[str]


class SubmissionItem(BaseModel):
    website: WebsiteData
    location: str
    check_in_date: str  # YYYY-MM-DD
    check_out_date: str
    adults: int
    star_rating: str


class ResolvedPayload(BaseModel):
    """What a due schedule submits: exactly one of collection or search."""

    collection: Collection | None = None
    search: Search | None = None

    @property
    def items(self) -> list[PayloadItem]:
        source = self.collection or self.search
        return source.items if source else []

    @property
    def label(self) -> str:
        if self.collection:
            return self.collection.name
        if self.search:
            return self.search.collection_name or self.search.job_name or f"search{self.search.id}"
        return "schedule"
