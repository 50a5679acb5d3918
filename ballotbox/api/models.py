"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ballotbox.shared.models import EventStatus, VoteMode


class EventCreateRequest(BaseModel):
    """Event creation request model."""

    name: str = Field(..., min_length=1, description="Display name")
    category: str = Field(default="", description="Free-form category")
    vote_mode: VoteMode = Field(default=VoteMode.SINGLE, description="single or multiple")
    number_of_choices: int = Field(default=1, description="Exact item count per ballot in multiple mode")
    number_of_winners: int = Field(default=1, description="How many top items are reported as winners")
    start_time: datetime = Field(..., description="Window start (naive values are UTC)")
    end_time: datetime = Field(..., description="Window end (naive values are UTC)")
    allow_anonymous: bool = Field(default=False, description="Accept ballots without a voter code")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Validate name is not blank."""
        if not v.strip():
            raise ValueError("Name cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Best Poster 2024",
                "category": "posters",
                "vote_mode": "multiple",
                "number_of_choices": 3,
                "number_of_winners": 3,
                "start_time": "2024-06-01T09:00:00Z",
                "end_time": "2024-06-01T17:00:00Z",
                "allow_anonymous": False
            }
        }


class EventUpdateRequest(BaseModel):
    """Partial event update. Only fields that are sent are changed."""

    name: Optional[str] = None
    category: Optional[str] = None
    vote_mode: Optional[VoteMode] = None
    number_of_choices: Optional[int] = None
    number_of_winners: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    allow_anonymous: Optional[bool] = None


class EventResponse(BaseModel):
    """Event response model."""

    id: str
    name: str
    category: str
    vote_mode: VoteMode
    number_of_choices: int
    number_of_winners: int
    start_time: datetime
    end_time: datetime
    status: EventStatus
    allow_anonymous: bool
    created_at: datetime
    accepting_submissions: bool = Field(..., description="Active and before end_time")


class StatusUpdateRequest(BaseModel):
    """Administrative status change."""

    status: EventStatus = Field(..., description="Target status: active, paused or ended")


class ItemCreateRequest(BaseModel):
    """Item creation request model."""

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    creator: Optional[str] = None


class ItemResponse(BaseModel):
    """Item response model."""

    id: str
    event_id: str
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    creator: Optional[str] = None
    vote_count: int
    position: int
    created_at: datetime


class CredentialIssueRequest(BaseModel):
    """Voter code batch request."""

    count: int = Field(..., description="Number of codes to issue (1-1000)")


class CredentialIssueResponse(BaseModel):
    event_id: str
    count: int
    codes: List[str]


class CredentialResponse(BaseModel):
    code: str
    used: bool
    used_at: Optional[datetime] = None
    created_at: datetime


class BallotRequest(BaseModel):
    """Ballot submission request model."""

    code: Optional[str] = Field(default=None, description="Voter code; omit for anonymous events")
    item_ids: List[str] = Field(..., description="Chosen item ids")

    class Config:
        json_schema_extra = {
            "example": {
                "code": "K7Q2M9XA",
                "item_ids": ["3f1c9a52-5c43-4f57-9d4e-2a9e8c1b7d10"]
            }
        }


class BallotResponse(BaseModel):
    """Ballot submission response model."""

    ballot_id: str = Field(..., description="Identifier of the stored ballot")
    event_id: str
    item_ids: List[str]
    voter_code: str
    submitted_at: datetime
    status: str = Field(default="counted")
    message: str = Field(default="Vote recorded successfully")


class TallyEntryResponse(BaseModel):
    item_id: str
    title: str
    vote_count: int
    position: int


class TallyResponse(BaseModel):
    """Live tally: items ordered by votes, ties by creation order."""

    event_id: str
    entries: List[TallyEntryResponse]
    total_votes: int


class ResultEntryResponse(TallyEntryResponse):
    share: float = Field(..., description="Percentage of all votes")


class ResultsResponse(BaseModel):
    """Ranked results with winners."""

    event_id: str
    name: str
    status: EventStatus
    is_final: bool
    total_votes: int
    entries: List[ResultEntryResponse]
    winners: List[ResultEntryResponse]


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error body for every engine error."""

    error: str = Field(..., description="Machine-readable error type")
    detail: str = Field(..., description="Human-readable message")
    reason: Optional[str] = Field(default=None, description="Ballot rejection reason")
    status: Optional[str] = Field(default=None, description="Event status when the session is closed")
    credential_consumed: Optional[bool] = Field(
        default=None,
        description="Whether the voter code was used up by a failed submission; null when unknown"
    )
