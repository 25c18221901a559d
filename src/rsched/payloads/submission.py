"""Payload resolution and submission building for scheduled attempts."""

from __future__ import annotations

from datetime import datetime

from rsched.payloads.repository import PayloadRepository
from rsched.payloads.types import PayloadItem, ResolvedPayload, SubmissionItem, WebsiteData
from rsched.scheduling.errors import PayloadMissing


def resolve_payload(repo: PayloadRepository, collection_id: int | None, search_id: int | None) -> ResolvedPayload:
    """Load the collection and/or search a schedule points at.

    A collection takes precedence when both resolve.
    """
    collection = repo.get_collection(collection_id) if collection_id is not None else None
    if collection is not None:
        return ResolvedPayload(collection=collection)

    search = repo.get_search(search_id) if search_id is not None else None
    if search is not None:
        return ResolvedPayload(search=search)

    raise PayloadMissing(
        "No collection or search found for schedule",
        {"collection_id": collection_id, "search_id": search_id},
    )


def build_submission_items(items: list[PayloadItem]) -> list[SubmissionItem]:
    return [
        SubmissionItem(
            website=WebsiteData(name=item.website, pos=list(item.pos)),
            location=item.location,
            check_in_date=item.check_in_date.strftime("%Y-%m-%d"),
            check_out_date=item.check_out_date.strftime("%Y-%m-%d"),
            adults=item.adults,
            star_rating=item.star_rating,
        )
        for item in items
    ]


def generate_job_name(label: str, user_id: str, now: datetime, attempt_id: int) -> str:
    """<label>_scheduled_<owner>_<YYYYmmdd_HHMMSS>_<attempt>, '@' made safe."""
    safe_label = label.replace("@", "_")
    safe_user = user_id.replace("@", "_")
    return f"{safe_label}_scheduled_{safe_user}_{now.strftime('%Y%m%d_%H%M%S')}_{attempt_id}"
