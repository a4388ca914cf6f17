from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime

    @field_validator("createdAt")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # rows written by CURRENT_TIMESTAMP carry no offset
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class PlanKind(str, Enum):
    CREATE_PRIMARY = "create_primary"
    ATTACH_OR_MERGE = "attach_or_merge"
    PROMOTE_NEW_PRIMARY = "promote_new_primary"


class ResolutionPlan(BaseModel):
    """What the graph mutator has to do for one submission.

    ``ultimate_primary`` is the oldest primary touched by the submission and
    ``other_primaries`` the younger ones, oldest first. ``create_record`` is
    only meaningful for ATTACH_OR_MERGE: it is False when some stored contact
    already carries the submitted values.
    """

    kind: PlanKind
    submission: IdentifyRequest
    ultimate_primary: Optional[Contact] = None
    other_primaries: List[Contact] = Field(default_factory=list)
    create_record: bool = True

    @property
    def demoted(self) -> List[Contact]:
        if self.kind == PlanKind.PROMOTE_NEW_PRIMARY:
            return [self.ultimate_primary] + self.other_primaries
        return list(self.other_primaries)

    @property
    def has_writes(self) -> bool:
        if self.kind == PlanKind.ATTACH_OR_MERGE:
            return self.create_record or bool(self.other_primaries)
        return True
