"""Base model for pyvalet records.

Every stored record inherits from :class:`ValetBaseModel` which provides:

* ``frozen=True`` so a record can only change through ``model_copy``
  inside a store transaction.
* ``alias_generator=to_camel`` so records serialize to the camelCase
  shape the dashboard and the persisted snapshot use, while Python code
  keeps snake_case names.
* :data:`UtcDatetime`, which coerces naive datetimes to UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
"""Annotated datetime that is always timezone-aware UTC."""


class ValetBaseModel(BaseModel):
    """Base for all pyvalet records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible camelCase dict."""
        return self.model_dump(mode="json", by_alias=True)
