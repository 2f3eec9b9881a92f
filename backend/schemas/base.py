# schemas/base.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: SHARED SCHEMA PRIMITIVES
# ============================================================================

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


Money = Annotated[
    Decimal,
    PlainSerializer(float, return_type=float, when_used="json"),
]


class CamelModel(BaseModel):
    """Base for every wire-facing model"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
