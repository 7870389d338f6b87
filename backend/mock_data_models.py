# -*- coding: utf-8 -*-
"""
Mock Data Models
Data sets with integrity metadata and generation options
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from engine_errors import ValidationError
from schema_inference import infer_schema


class MockDataType(Enum):
    """Kinds of mock data"""
    CV = "cv"
    USER_PROFILE = "user-profile"
    JOB_DESCRIPTION = "job-description"
    AI_RESPONSE = "ai-response"
    MULTIMEDIA = "multimedia"
    OTHER = "other"


def coerce_data_type(value) -> MockDataType:
    if isinstance(value, MockDataType):
        return value
    try:
        return MockDataType(value)
    except ValueError:
        raise ValidationError("unknown_data_type", f"Unknown mock data type: {value}")


def canonical_json(payload: Any) -> str:
    """Serialization used for checksums and size accounting"""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_checksum(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def serialized_size(payload: Any) -> int:
    return len(canonical_json(payload).encode("utf-8"))


def new_data_set_id() -> str:
    return f"mock-{uuid.uuid4().hex}"


@dataclass
class MockDataMetadata:
    generated_by: str = "MockDataService"
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    usage_count: int = 0
    source: str = "generated"
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_by": self.generated_by,
            "generated_at": self.generated_at.isoformat(),
            "usage_count": self.usage_count,
            "source": self.source,
            "tags": list(self.tags),
        }


@dataclass
class MockDataSet:
    """
    A fixture payload with integrity metadata.

    Checksum and size are recomputed from the payload whenever it changes,
    and the inferred schema follows the payload unless one was declared.
    """
    name: str
    type: MockDataType
    data: Any
    description: str = ""
    category: str = "default"
    schema: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    metadata: MockDataMetadata = field(default_factory=MockDataMetadata)
    id: str = field(default_factory=new_data_set_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    checksum: str = field(init=False, default="")
    size: int = field(init=False, default=0)
    schema_inferred: bool = field(init=False, default=False)

    def __post_init__(self):
        self.type = coerce_data_type(self.type)
        if not self.name or not str(self.name).strip():
            raise ValidationError("data_set_name_required", "Mock data set name is required")
        if self.schema is None:
            self.schema = infer_schema(self.data)
            self.schema_inferred = True
        self._refresh_integrity()

    def _refresh_integrity(self):
        self.checksum = compute_checksum(self.data)
        self.size = serialized_size(self.data)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(timezone.utc))

    def increment_usage(self):
        self.metadata.usage_count += 1

    def update_data(self, data: Any):
        self.data = data
        if self.schema_inferred:
            self.schema = infer_schema(data)
        self._refresh_integrity()
        self.updated_at = datetime.now(timezone.utc)

    def verify_checksum(self) -> bool:
        return compute_checksum(self.data) == self.checksum

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "category": self.category,
            "data": self.data,
            "schema": self.schema,
            "size": self.size,
            "checksum": self.checksum,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class DataGenerationOptions:
    """Parameters for generating a data set from a template"""
    type: MockDataType = MockDataType.OTHER
    category: Optional[str] = None
    count: int = 1
    locale: str = "en_US"
    seed: Optional[Any] = None
    template_id: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = coerce_data_type(self.type)
        if self.count < 1:
            raise ValidationError("count_positive", "Generation count must be at least 1")
