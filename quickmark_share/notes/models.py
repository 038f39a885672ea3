"""Pydantic models for stored notes."""

from pydantic import BaseModel, ConfigDict, Field


class NoteMetadata(BaseModel):
    """One entry of the notes index file.

    ``updated_at`` must be an ISO-8601 timestamp string; merges compare it
    lexically.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    updated_at: str = Field(alias="updatedAt")
