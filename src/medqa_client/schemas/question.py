"""Question, answer and content-edit schemas."""

from __future__ import annotations

import os
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medqa_client.core.settings import settings


class EntityKind(str, Enum):
    """Kinds of entities that carry upvotes."""

    QUESTION = "question"
    ANSWER = "answer"


class VotableEntity(BaseModel):
    """Local view of an entity with an upvote counter.

    `viewer_has_voted` is relative to the identity the entity was loaded
    for; it is not part of the entity's canonical representation.
    """

    kind: EntityKind
    id: str
    upvote_count: int = Field(0, ge=0)
    viewer_has_voted: bool = False

    model_config = ConfigDict(validate_assignment=True)


class Question(VotableEntity):
    """A patient question."""

    kind: EntityKind = EntityKind.QUESTION
    title: str = ""
    body: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    is_anonymous: bool = False
    is_public: bool = True
    image_urls: list[str] = Field(default_factory=list)
    author_id: str | None = None


class Answer(VotableEntity):
    """An answer posted on a question."""

    kind: EntityKind = EntityKind.ANSWER
    question_id: str
    body: str = ""
    author_id: str | None = None


class VoteToggleResult(BaseModel):
    """Remote response to a vote toggle."""

    authoritative_count: int | None = Field(
        None,
        ge=0,
        description="Server-side upvote count after the toggle, when available",
    )


class AttachedFile(BaseModel):
    """Local image file attached to a content edit."""

    filename: str = Field(..., min_length=1)
    content_type: str
    data: bytes

    @field_validator("content_type")
    @classmethod
    def validate_content_type(cls, v: str) -> str:
        """Only image MIME types may be attached."""
        if not v.lower().startswith("image/"):
            raise ValueError(f"Attachment must be an image (got {v})")
        return v.lower()

    @field_validator("data")
    @classmethod
    def validate_size(cls, v: bytes) -> bytes:
        """Reject files above the configured size limit."""
        if len(v) > settings.max_image_bytes:
            limit_mb = settings.max_image_bytes / (1024 * 1024)
            raise ValueError(f"Image exceeds the {limit_mb:g}MB limit")
        return v

    @property
    def extension(self) -> str:
        """Return the file extension without the dot, or the MIME subtype."""
        ext = os.path.splitext(self.filename)[1].lstrip(".").lower()
        return ext or self.content_type.split("/", 1)[1]


class EditedContent(BaseModel):
    """Edited question fields plus the image-set delta."""

    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    is_anonymous: bool = False
    is_public: bool = True

    existing_images: list[str] = Field(default_factory=list)
    images_to_delete: list[str] = Field(default_factory=list)
    new_images: list[AttachedFile] = Field(default_factory=list)

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        """Lowercase, trim and deduplicate tags, keeping first-seen order."""
        normalized: list[str] = []
        for tag in v:
            cleaned = tag.strip().lower()
            if cleaned and cleaned not in normalized:
                normalized.append(cleaned)
        if len(normalized) > settings.max_question_tags:
            raise ValueError(f"At most {settings.max_question_tags} tags are allowed")
        return normalized

    @model_validator(mode="after")
    def validate_image_delta(self) -> "EditedContent":
        unknown = [url for url in self.images_to_delete if url not in self.existing_images]
        if unknown:
            raise ValueError("Only existing images can be marked for deletion")
        total = len(self.retained_images) + len(self.new_images)
        if total > settings.max_question_images:
            raise ValueError(f"A question can have at most {settings.max_question_images} images")
        return self

    @property
    def retained_images(self) -> list[str]:
        """Existing images not marked for deletion, in their original order."""
        return [url for url in self.existing_images if url not in self.images_to_delete]

    def update_fields(self, image_urls: list[str]) -> dict[str, Any]:
        """Return the row fields submitted as a single update."""
        return {
            "title": self.title,
            "content": self.body,
            "category": self.category,
            "tags": list(self.tags),
            "is_anonymous": self.is_anonymous,
            "is_public": self.is_public,
            "image_urls": list(image_urls),
        }
