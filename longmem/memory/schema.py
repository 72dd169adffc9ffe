"""Memory data structures."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MemoryType(str, Enum):
    """Kinds of statements the memory engine persists."""

    PREFERENCE = "preference"
    FACT = "fact"
    DECISION = "decision"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"

    @classmethod
    def values(cls) -> list:
        return [t.value for t in cls]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


@dataclass
class Memory:
    """A persisted memory record."""

    id: int
    content: str
    memory_type: str
    session_id: Optional[str] = None  # None = global
    category: Optional[str] = None
    importance: float = 0.5
    surprise_score: float = 0.0
    access_count: int = 0
    decay_factor: float = 1.0
    source_turn_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    score: Optional[float] = None  # Populated during search and retrieval


@dataclass
class Entity:
    """A tracked entity, keyed by (entity_type, entity_name)."""

    entity_type: str
    entity_name: str
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    occurrence_count: int = 1
    properties: Dict[str, Any] = field(default_factory=dict)


class MemoryInput(BaseModel):
    """Validated fields for a new memory.

    Numeric fields are clamped into range rather than rejected.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    content: str = Field(..., min_length=1, description="Memory text")
    memory_type: MemoryType = Field(..., description="Kind of memory")
    session_id: Optional[str] = Field(default=None, description="Owning session (None = global)")
    category: Optional[str] = Field(default=None, description="Free-form category")
    importance: float = Field(default=0.5, description="Importance in [0, 1]")
    surprise_score: float = Field(default=0.0, description="Surprise score in [0, 1]")
    access_count: int = Field(default=0, description="Number of retrievals")
    decay_factor: float = Field(default=1.0, description="Persisted decay multiplier")
    source_turn_id: Optional[str] = Field(default=None, description="Conversation turn this came from")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque key/value data")

    @field_validator("importance", "surprise_score", mode="after")
    @classmethod
    def clamp_unit_interval(cls, v: float) -> float:
        return clamp(v)

    @field_validator("access_count", mode="after")
    @classmethod
    def clamp_non_negative_int(cls, v: int) -> int:
        return max(0, v)

    @field_validator("decay_factor", mode="after")
    @classmethod
    def clamp_non_negative(cls, v: float) -> float:
        return max(0.0, v)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v):
        return {} if v is None else v


class MemoryUpdate(BaseModel):
    """Partial update for an existing memory. Only fields that are set get applied."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    content: Optional[str] = Field(default=None, min_length=1)
    memory_type: Optional[MemoryType] = None
    category: Optional[str] = None
    importance: Optional[float] = None
    surprise_score: Optional[float] = None
    decay_factor: Optional[float] = None
    source_turn_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("importance", "surprise_score", mode="after")
    @classmethod
    def clamp_unit_interval(cls, v: Optional[float]) -> Optional[float]:
        return None if v is None else clamp(v)

    @field_validator("decay_factor", mode="after")
    @classmethod
    def clamp_non_negative(cls, v: Optional[float]) -> Optional[float]:
        return None if v is None else max(0.0, v)
