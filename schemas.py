"""
Database Schemas for the Society Management API

Each top-level Pydantic model represents a MongoDB collection.
Collection name = lowercase of class name (User -> "user", Petition -> "petition").
Embedded lists (comments, signatures, notes) live inside their parent document.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal['citizen', 'admin', 'police', 'advocate']
UserStatus = Literal['active', 'inactive', 'suspended']
ReportType = Literal['violation', 'complaint']
ReportStatus = Literal['pending', 'in-progress', 'resolved', 'rejected']
PetitionStatus = Literal['active', 'completed', 'expired', 'rejected']
ReviewStatus = Literal['pending', 'approved', 'rejected']

ADMIN_ROLES = frozenset({'admin', 'police', 'advocate'})
TERMINAL_REPORT_STATUSES = frozenset({'resolved', 'rejected'})
TERMINAL_PETITION_STATUSES = frozenset({'completed', 'expired', 'rejected'})
MIN_PETITION_GOAL = 10


class Document(BaseModel):
    id: Optional[str] = Field(None, description="String form of the Mongo _id")
    version: int = Field(0, description="Optimistic concurrency counter")
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class User(Document):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    passwordHash: str = Field(..., description="Hashed password")
    role: Role = Field('citizen', description="Role of the account")
    status: UserStatus = Field('active', description="Account status")


class Comment(BaseModel):
    text: str
    author: str = Field(..., description="User id of the commenter")
    createdAt: datetime


class AdminNote(BaseModel):
    text: str
    addedBy: str
    addedAt: datetime


class Report(Document):
    title: str
    description: str
    type: ReportType = 'complaint'
    category: str
    location: str = ''
    date: Optional[str] = Field(None, description="Incident date as entered")
    time: Optional[str] = Field(None, description="Incident time as entered")
    evidence: Optional[str] = Field(None, description="Blob store reference")
    status: ReportStatus = 'pending'
    submittedBy: str
    assignedTo: Optional[str] = None
    comments: List[Comment] = Field(default_factory=list)
    adminNotes: List[AdminNote] = Field(default_factory=list)
    resolvedAt: Optional[datetime] = None


class Signature(BaseModel):
    user: str
    name: str = Field(..., description="Display name at signing time")
    comment: Optional[str] = None
    timestamp: datetime


class PetitionUpdate(BaseModel):
    text: str
    addedBy: str
    addedAt: datetime


class AdminReview(BaseModel):
    status: ReviewStatus = 'pending'
    notes: Optional[str] = None
    reviewedBy: Optional[str] = None
    reviewedAt: Optional[datetime] = None


class Petition(Document):
    title: str
    description: str
    category: str
    goal: int = Field(100, ge=MIN_PETITION_GOAL)
    deadline: datetime
    status: PetitionStatus = 'active'
    image: Optional[str] = Field(None, description="Blob store reference")
    createdBy: str
    signatures: List[Signature] = Field(default_factory=list)
    updates: List[PetitionUpdate] = Field(default_factory=list)
    adminReview: AdminReview = Field(default_factory=AdminReview)

    @field_validator('deadline')
    @classmethod
    def _aware_deadline(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    def has_signed(self, user_id: str) -> bool:
        return any(s.user == user_id for s in self.signatures)

    def effective_status(self, now: datetime) -> str:
        """Status as seen by readers: an active petition past its deadline is expired."""
        if self.status == 'active' and self.deadline <= now:
            return 'expired'
        return self.status

    @property
    def signature_count(self) -> int:
        return len(self.signatures)

    @property
    def percentage_complete(self) -> int:
        return min(round(self.signature_count / self.goal * 100), 100)


class IdeaComment(BaseModel):
    text: str
    createdBy: str
    createdAt: datetime


class Idea(Document):
    title: str
    description: str
    category: str
    createdBy: str
    upvotes: List[str] = Field(default_factory=list)
    comments: List[IdeaComment] = Field(default_factory=list)


COLLECTIONS = {
    User: 'user',
    Report: 'report',
    Petition: 'petition',
    Idea: 'idea',
}
