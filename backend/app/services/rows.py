import json
import sqlite3

from app.models import (
    CompletionConfirmation,
    Connection,
    Interest,
    Review,
    ReviewObligation,
    RoleHistoryEntry,
    ServiceRequest,
)
from app.services.database import from_iso, optional_iso


def request_from_row(row: sqlite3.Row) -> ServiceRequest:
    return ServiceRequest(
        id=row["id"],
        requester_id=row["requester_id"],
        category_id=row["category_id"],
        title=row["title"],
        description=row["description"],
        locality=row["locality"],
        urgency_tier=row["urgency_tier"],
        budget_min=row["budget_min"],
        budget_max=row["budget_max"],
        status=row["status"],
        selected_provider_id=row["selected_provider_id"],
        interested_count=int(row["interested_count"]),
        created_at=from_iso(row["created_at"]),
        expires_at=from_iso(row["expires_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def interest_from_row(row: sqlite3.Row) -> Interest:
    return Interest(
        id=row["id"],
        request_id=row["request_id"],
        provider_id=row["provider_id"],
        proposed_price=row["proposed_price"],
        message=row["message"],
        estimated_completion_time=row["estimated_completion_time"],
        status=row["status"],
        viewed_by_requester=bool(row["viewed_by_requester"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def connection_from_row(row: sqlite3.Row) -> Connection:
    return Connection(
        id=row["id"],
        requester_id=row["requester_id"],
        provider_id=row["provider_id"],
        request_id=row["request_id"],
        interest_id=row["interest_id"],
        channel_id=row["channel_id"],
        status=row["status"],
        requester_confirmed=bool(row["requester_confirmed"]),
        provider_confirmed=bool(row["provider_confirmed"]),
        requester_confirmed_at=optional_iso(row["requester_confirmed_at"]),
        provider_confirmed_at=optional_iso(row["provider_confirmed_at"]),
        agreed_price=row["agreed_price"],
        started_at=from_iso(row["started_at"]),
        completed_at=optional_iso(row["completed_at"]),
        cancelled_at=optional_iso(row["cancelled_at"]),
        cancelled_by=row["cancelled_by"],
    )


def confirmation_from_row(row: sqlite3.Row) -> CompletionConfirmation:
    return CompletionConfirmation(
        id=row["id"],
        connection_id=row["connection_id"],
        party_id=row["party_id"],
        role=row["role"],
        satisfaction=row["satisfaction"],
        satisfaction_note=row["satisfaction_note"],
        evidence_flag=bool(row["evidence_flag"]),
        confirmed_at=from_iso(row["confirmed_at"]),
    )


def obligation_from_row(row: sqlite3.Row) -> ReviewObligation:
    return ReviewObligation(
        id=row["id"],
        owner_id=row["owner_id"],
        owner_role=row["owner_role"],
        connection_id=row["connection_id"],
        counterparty_id=row["counterparty_id"],
        due_at=from_iso(row["due_at"]),
        created_at=from_iso(row["created_at"]),
        resolved=bool(row["resolved"]),
        resolved_at=optional_iso(row["resolved_at"]),
        review_id=row["review_id"],
        blocking=bool(row["blocking"]),
    )


def review_from_row(row: sqlite3.Row) -> Review:
    return Review(
        id=row["id"],
        connection_id=row["connection_id"],
        author_id=row["author_id"],
        author_role=row["author_role"],
        subject_id=row["subject_id"],
        rating=int(row["rating"]),
        comment=row["comment"],
        dimensions=json.loads(row["dimensions_json"] or "{}"),
        would_engage_again=bool(row["would_engage_again"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        editable_until=from_iso(row["editable_until"]),
    )


def role_history_from_row(row: sqlite3.Row) -> RoleHistoryEntry:
    return RoleHistoryEntry(
        id=row["id"],
        user_id=row["user_id"],
        old_role=row["old_role"],
        new_role=row["new_role"],
        reason=row["reason"],
        switched_at=from_iso(row["switched_at"]),
    )
