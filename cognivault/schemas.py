"""
Pydantic schemas for request/response validation.
"""
from typing import List, Literal, Optional
from pydantic import AliasChoices, BaseModel, Field, field_validator

EntityType = Literal["person", "organization", "location", "date", "other"]

_ENTITY_TYPE_ALIASES = {
    "org": "organization",
    "organisation": "organization",
    "company": "organization",
    "place": "location",
    "loc": "location",
    "gpe": "location",
    "time": "date",
    "per": "person",
}


class Entity(BaseModel):
    """A named thing mentioned in a chunk."""
    name: str = Field(..., min_length=1, validation_alias=AliasChoices("name", "label"))
    type: EntityType = "other"

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if not isinstance(value, str):
            return "other"
        lowered = value.strip().lower()
        lowered = _ENTITY_TYPE_ALIASES.get(lowered, lowered)
        if lowered not in ("person", "organization", "location", "date", "other"):
            return "other"
        return lowered


class Relation(BaseModel):
    """A free-form subject-predicate-object triple."""
    subject: str = Field(..., min_length=1)
    predicate: str = Field(..., min_length=1)
    object: str = Field(..., min_length=1)


class ChunkMetadata(BaseModel):
    """Enrichment attached to every chunk."""
    summary: str = ""
    tags: List[str] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)
    relations: List[Relation] = Field(default_factory=list)


class DocumentAnalysis(BaseModel):
    """Document-level analysis recorded on the SourceFile."""
    document_type: str = "document"
    main_topic: str = ""
    key_points: List[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    complexity: str = "intermediate"
    suggested_categories: List[str] = Field(default_factory=lambda: ["general"])


# ==================== Request bodies ====================

class CreateMemoryBody(BaseModel):
    """Request body for creating a memory directly, without an upload."""
    text: str = Field(..., min_length=1, description="The memory text")
    summary: Optional[str] = Field(None, description="Summary; generated when omitted")
    tags: Optional[List[str]] = Field(None, description="Tags; generated when omitted")
    entities: Optional[List[Entity]] = Field(None, description="Entities; generated when omitted")
    source_file_id: Optional[str] = Field(None, description="Existing SourceFile to attach to")


class SimilarityEdgesBody(BaseModel):
    """Request body for materializing SIMILAR_TO edges."""
    chunk_id: Optional[str] = Field(None, description="Link one chunk; all of the user's chunks when omitted")


class IncognitoChatBody(BaseModel):
    """Request body for chatting about an incognito session."""
    session_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, description="The question to ask about the session content")


# ==================== Responses ====================

class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: Optional[str] = None
    timestamp: str
