"""Registry data model.

Two layers live here:

- ORM tables (``ServiceRecord`` and its three owned child tables), used only
  inside a unit of work by the registry core.
- Plain dataclasses (``RegisterRequest``, ``Service``) that cross the core's
  boundary. ``Service.from_record`` is the only bridge between the two.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from ..errors import ValidationError


class UTCDateTime(TypeDecorator):
    """Store naive UTC, hand back aware UTC.

    SQLite drops tzinfo on the way out, so values are normalised on both
    sides to keep comparisons between stored and computed times valid.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class ServiceRecord(Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    # Child rows come back in insertion order
    capabilities: Mapped[List["Capability"]] = relationship(
        back_populates="service", cascade="all, delete-orphan", passive_deletes=True,
        order_by="Capability.id",
    )
    categories: Mapped[List["Category"]] = relationship(
        back_populates="service", cascade="all, delete-orphan", passive_deletes=True,
        order_by="Category.id",
    )
    metadata_items: Mapped[List["MetadataItem"]] = relationship(
        back_populates="service", cascade="all, delete-orphan", passive_deletes=True,
        order_by="MetadataItem.id",
    )


class Capability(Base):
    __tablename__ = "capabilities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    service: Mapped[ServiceRecord] = relationship(back_populates="capabilities")


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    service: Mapped[ServiceRecord] = relationship(back_populates="categories")


class MetadataItem(Base):
    __tablename__ = "metadata_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")

    service: Mapped[ServiceRecord] = relationship(back_populates="metadata_items")


# ---------------------------------------------------------------------------
# Boundary types
# ---------------------------------------------------------------------------

def _require_text(payload: Mapping, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"'{key}' is required and must be a non-empty string")
    return value


@dataclass
class RegisterRequest:
    """Validated payload for register and update."""
    name: str
    url: str
    description: str = ""
    capabilities: Dict[str, bool] = field(default_factory=dict)
    categories: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> 'RegisterRequest':
        """Validate a decoded request body.

        ``capabilities`` and ``categories`` must be present, even if empty.
        ``metadata`` may be omitted or null.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")

        name = _require_text(payload, "name")
        url = _require_text(payload, "url")

        description = payload.get("description")
        if description is None:
            description = ""
        elif not isinstance(description, str):
            raise ValidationError("'description' must be a string")

        if payload.get("capabilities") is None or payload.get("categories") is None:
            raise ValidationError("Missing required fields: 'capabilities' and 'categories'")

        capabilities = payload["capabilities"]
        if not isinstance(capabilities, Mapping):
            raise ValidationError("'capabilities' must be a mapping of name to boolean")
        for cap_name, enabled in capabilities.items():
            if not isinstance(cap_name, str) or not isinstance(enabled, bool):
                raise ValidationError("'capabilities' must be a mapping of name to boolean")

        categories = payload["categories"]
        if isinstance(categories, (str, bytes)) or not isinstance(categories, Sequence):
            raise ValidationError("'categories' must be a list of strings")
        if not all(isinstance(c, str) for c in categories):
            raise ValidationError("'categories' must be a list of strings")

        metadata = payload.get("metadata")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
        ):
            raise ValidationError("'metadata' must be a mapping of string to string")

        return cls(
            name=name,
            url=url,
            description=description,
            capabilities=dict(capabilities),
            # Categories are a set; keep first-seen order for stable output
            categories=list(dict.fromkeys(categories)),
            metadata=dict(metadata),
        )


@dataclass
class Service:
    """A registered service as returned to callers."""
    id: str
    name: str
    url: str
    description: str = ""
    capabilities: Dict[str, bool] = field(default_factory=dict)
    categories: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: ServiceRecord) -> 'Service':
        """Build from a row whose child collections are already loaded."""
        return cls(
            id=record.id,
            name=record.name,
            description=record.description or "",
            url=record.url,
            capabilities={c.name: c.enabled for c in record.capabilities},
            categories=[c.name for c in record.categories],
            created_at=record.created_at,
            last_seen=record.last_seen,
            metadata={m.key: m.value for m in record.metadata_items},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "url": self.url,
            "capabilities": dict(self.capabilities),
            "categories": list(self.categories),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Service':
        """Create from dictionary."""
        created_at = data.get("created_at")
        last_seen = data.get("last_seen")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description") or "",
            url=data["url"],
            capabilities=dict(data.get("capabilities") or {}),
            categories=list(data.get("categories") or []),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            last_seen=datetime.fromisoformat(last_seen) if last_seen else None,
            metadata=dict(data.get("metadata") or {}),
        )
