"""
Data models for the call assistant.

These Pydantic models define the shape of data flowing between the Google
clients, the lookup engine, the call orchestrator and the API routes.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessagePart(BaseModel):
    """One node of a Gmail MIME part tree."""
    mime_type: str = Field(default="")
    filename: str = Field(default="")
    data: Optional[str] = Field(default=None, description="base64url-encoded inline body")
    attachment_id: Optional[str] = Field(default=None)
    parts: list["MessagePart"] = Field(default_factory=list)


class EmailMessage(BaseModel):
    """A Gmail message as fetched with format=full."""
    id: str
    snippet: str = Field(default="")
    subject: str = Field(default="No Subject")
    date: str = Field(default="")
    payload: MessagePart = Field(default_factory=MessagePart)


class RankedChoice(BaseModel):
    """A relevant email offered to the user for disambiguation."""
    id: str
    text: str


class LookupResult(BaseModel):
    """
    Outcome of the relevance & ranking pipeline.

    Either needs_selection is True and choices is populated, or it is False
    and context carries a sentence for the caller persona.
    """
    needs_selection: bool
    choices: list[RankedChoice] = Field(default_factory=list)
    context: str = Field(default="")
    candidates: int = Field(default=0)
    unclassified: int = Field(default=0)


class EmailDetails(BaseModel):
    """Fields extracted from a chosen email."""
    context: dict[str, Any]
    phone_number_from_email: Optional[str] = Field(default=None)


class NextAction(BaseModel):
    """Follow-up action proposed by the post-call summary."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action_type: str = Field(default="", alias="actionType")
    title: str = Field(default="Appointment")
    start_time: str = Field(default="", alias="startTime")
    end_time: str = Field(default="", alias="endTime")
    time_zone: Optional[str] = Field(default=None, alias="timeZone")
    description: str = Field(default="")


class CallSummary(BaseModel):
    """Structured post-call summary."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: str = Field(default="")
    result: str = Field(default="")
    follow_up: bool = Field(default=False, alias="followUp")
    next_action: Optional[NextAction] = Field(default=None, alias="nextAction")


# =============================================================================
# REQUEST BODIES
# =============================================================================

class LookupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_request: str = Field(alias="userRequest", min_length=1)


class DetailsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)
    user_request: str = Field(alias="userRequest", min_length=1)


class InitiateCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_name: str = Field(alias="userName", min_length=1)
    user_request: str = Field(alias="userRequest", min_length=1)
    phone_number: str = Field(alias="phoneNumber", min_length=1)
    context: Any = Field(default="")
    task_type: str = Field(default="lookup", alias="taskType")
