"""
Pydantic response schemas for the read-only scoring API

Transforms the value types from watchlist.py into API response models.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from watchlist import ScoreRecord, ScoreRun, WatchlistSnapshot


class SnapshotSummary(BaseModel):
    """Metadata of a published watchlist snapshot."""
    snapshot_id: str = Field(..., description="Snapshot identifier (UUID)")
    list_date: str = Field(..., description="List version date (ISO 8601)")
    name: str = Field(..., description="Snapshot display name")
    entry_count: int = Field(..., ge=0, description="Number of deduplicated entries")
    source_checksum: str = Field(..., description="SHA-256 of the canonical entries")
    ingested_at: str = Field(..., description="Publication timestamp (ISO 8601)")

    @classmethod
    def from_snapshot(cls, snapshot: WatchlistSnapshot) -> 'SnapshotSummary':
        return cls(**snapshot.to_summary())


class ScoreRecordResponse(BaseModel):
    """Score of one customer for one list date."""
    customer_id: str
    score: int = Field(..., ge=0, le=100, description="Match score (0-100)")
    matched_entry_id: Optional[str] = Field(default=None, description="Best matching entry reference")
    matched_name: Optional[str] = Field(default=None, description="Name that produced the best match")
    scored_at: Optional[str] = Field(default=None, description="Scoring timestamp (ISO 8601)")

    @classmethod
    def from_record(cls, record: ScoreRecord) -> 'ScoreRecordResponse':
        return cls(
            customer_id=record.customer_id,
            score=record.score,
            matched_entry_id=record.matched_entry_id,
            matched_name=record.matched_name,
            scored_at=record.scored_at.isoformat() if record.scored_at else None,
        )


class ScorePageResponse(BaseModel):
    """Paginated score listing, highest score first."""
    list_date: str = Field(..., description="List version date (ISO 8601)")
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total: int = Field(..., ge=0, description="Total score records for the date")
    items: List[ScoreRecordResponse] = Field(default_factory=list)


class ScoreRunResponse(BaseModel):
    """Status and progress of a score run."""
    list_date: str
    snapshot_id: str
    state: str = Field(..., description="pending, running, completed, failed or partially_completed")
    total_customers: int = Field(..., ge=0)
    completed_count: int = Field(..., ge=0)
    failed_count: int = Field(..., ge=0)
    progress: float = Field(..., ge=0.0, le=1.0, description="Fraction of customers accounted for")
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    failure_reason: Optional[str] = None
    failed_customer_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: ScoreRun) -> 'ScoreRunResponse':
        return cls(**run.to_dict())


class ListDatesResponse(BaseModel):
    """Distinct list dates that have score records, newest first."""
    list_dates: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    store_healthy: bool = Field(..., description="Whether the score store answered")
    current_snapshot: Optional[SnapshotSummary] = Field(
        default=None,
        description="Snapshot new runs would score against"
    )
    algorithm_version: str = Field(..., description="Matching algorithm version")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
