"""Request bodies accepted by the JSON API."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WriteMode(str, Enum):
    OVERWRITE = "overwrite"
    APPEND = "append"


class EnergyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NoteWrite(BaseModel):
    """Body of ``POST /api/notes/{filename}``."""

    content: str = Field(..., description="Raw note text")
    mode: WriteMode = Field(WriteMode.OVERWRITE, description="overwrite replaces, append adds a blank line then the text")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1)
    api_key: str = Field("", alias="apiKey")
    conversation_id: Optional[str] = Field(None, max_length=128)


class PlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dump: str = Field(..., min_length=1, description="Free-form brain dump")
    available_minutes: int = Field(60, ge=1, le=24 * 60)
    energy: EnergyLevel = EnergyLevel.MEDIUM
    api_key: str = Field("", alias="apiKey")


class ExtractNotesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instruction: str = Field(..., min_length=1)
    api_key: str = Field("", alias="apiKey")
