"""
Moderation workflow.

All state changes to reports, petitions and ideas go through Moderation.
Each mutation reads the current document, validates the requested
transition against it and the caller's identity, applies the change in
memory and writes it back conditioned on the version it read. A lost
race re-reads and retries; a rejected operation never writes.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Callable, List, Optional, Type, TypeVar

from database import utcnow
from errors import (
    AlreadySigned,
    AlreadyUpvoted,
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotActive,
    NotFound,
    StoreFailure,
    ValidationError,
)
from identity import Identity
from schemas import (
    ADMIN_ROLES,
    COLLECTIONS,
    MIN_PETITION_GOAL,
    TERMINAL_PETITION_STATUSES,
    TERMINAL_REPORT_STATUSES,
    AdminNote,
    AdminReview,
    Comment,
    Document,
    Idea,
    IdeaComment,
    Petition,
    PetitionUpdate,
    Report,
    Signature,
    User,
)
from store import EntityStore

logger = logging.getLogger(__name__)

SIGNING_REQUIRES_APPROVAL = os.getenv("PETITION_SIGNING_REQUIRES_APPROVAL", "false").lower() in ("1", "true", "yes")
MAX_WRITE_ATTEMPTS = 5
ANONYMOUS_SIGNER = "Anonymous Supporter"

# Allowed report status moves. resolved/rejected are terminal.
REPORT_TRANSITIONS = {
    "pending": {"in-progress", "resolved", "rejected"},
    "in-progress": {"pending", "resolved", "rejected"},
    "resolved": set(),
    "rejected": set(),
}

E = TypeVar("E", bound=Document)


def _required(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class Moderation:
    def __init__(
        self,
        store: EntityStore,
        clock: Callable[[], datetime] = utcnow,
        signing_requires_approval: bool = SIGNING_REQUIRES_APPROVAL,
        max_attempts: int = MAX_WRITE_ATTEMPTS,
    ):
        self.store = store
        self.clock = clock
        self.signing_requires_approval = signing_requires_approval
        self.max_attempts = max_attempts

    # ---------- persistence helpers ----------

    def load(self, model: Type[E], entity_id: str) -> E:
        return model.model_validate(self.store.get(COLLECTIONS[model], entity_id))

    def _insert(self, entity: E) -> E:
        now = self.clock()
        entity.createdAt = entity.createdAt or now
        entity.updatedAt = now
        stored = self.store.put(COLLECTIONS[type(entity)], entity.model_dump())
        return type(entity).model_validate(stored)

    def _mutate(self, model: Type[E], entity_id: str, change: Callable[[E, datetime], None]) -> E:
        """Apply `change` to the current state of one document, atomically.

        `change` validates and mutates in place; any exception it raises
        aborts the operation with nothing written.
        """
        collection = COLLECTIONS[model]
        for attempt in range(1, self.max_attempts + 1):
            entity = self.load(model, entity_id)
            now = self.clock()
            change(entity, now)
            entity.updatedAt = now
            try:
                return model.model_validate(self.store.put(collection, entity.model_dump()))
            except ConflictError:
                logger.debug("write conflict on %s/%s (attempt %d)", collection, entity_id, attempt)
        logger.warning("giving up on %s/%s after %d conflicting writes", collection, entity_id, self.max_attempts)
        raise StoreFailure("Too many concurrent updates, try again")

    # ---------- reports ----------

    def create_report(
        self,
        identity: Identity,
        title: str,
        description: str,
        report_type: str,
        category: str,
        location: str = "",
        date: Optional[str] = None,
        time: Optional[str] = None,
        evidence: Optional[str] = None,
    ) -> Report:
        if report_type not in ("violation", "complaint"):
            raise ValidationError("type must be 'violation' or 'complaint'")
        report = Report(
            title=_required(title, "title"),
            description=_required(description, "description"),
            type=report_type,
            category=_required(category, "category"),
            location=(location or "").strip(),
            date=date,
            time=time,
            evidence=evidence,
            submittedBy=identity.userId,
        )
        report = self._insert(report)
        logger.info("report %s submitted by %s", report.id, identity.userId)
        return report

    def update_report_status(
        self, identity: Identity, report_id: str, new_status: str, note: Optional[str] = None
    ) -> Report:
        if not identity.is_admin:
            raise Forbidden("Access denied. Admin role required.")
        if new_status not in REPORT_TRANSITIONS:
            raise ValidationError("Invalid status value")
        note = (note or "").strip()

        def change(report: Report, now: datetime):
            if new_status not in REPORT_TRANSITIONS[report.status]:
                raise InvalidTransition(f"Cannot move a {report.status} report to {new_status}")
            report.status = new_status
            if note:
                report.adminNotes.append(AdminNote(text=note, addedBy=identity.userId, addedAt=now))
            report.resolvedAt = now if new_status in TERMINAL_REPORT_STATUSES else None

        report = self._mutate(Report, report_id, change)
        logger.info("report %s -> %s by %s", report_id, new_status, identity.userId)
        return report

    def add_report_comment(self, identity: Identity, report_id: str, text: str) -> Report:
        text = _required(text, "Comment text")

        def change(report: Report, now: datetime):
            if not identity.is_admin and report.submittedBy != identity.userId:
                raise Forbidden("You do not have permission to comment on this report")
            report.comments.append(Comment(text=text, author=identity.userId, createdAt=now))

        return self._mutate(Report, report_id, change)

    def assign_report(self, identity: Identity, report_id: str, assignee_id: str) -> Report:
        if not identity.is_admin:
            raise Forbidden("Access denied. Admin role required.")
        try:
            assignee = self.load(User, assignee_id)
        except NotFound:
            raise ValidationError("Assignee does not exist")
        if assignee.role not in ADMIN_ROLES:
            raise ValidationError("Reports can only be assigned to staff accounts")

        def change(report: Report, now: datetime):
            if report.status in TERMINAL_REPORT_STATUSES:
                raise InvalidTransition(f"Cannot assign a {report.status} report")
            report.assignedTo = assignee_id

        return self._mutate(Report, report_id, change)

    def attach_report_evidence(self, identity: Identity, report_id: str, ref: str) -> Report:
        def change(report: Report, now: datetime):
            if not identity.is_admin and report.submittedBy != identity.userId:
                raise Forbidden("You do not have permission to add evidence to this report")
            report.evidence = ref

        return self._mutate(Report, report_id, change)

    # ---------- petitions ----------

    def _check_goal_and_deadline(self, goal: int, deadline: datetime, now: datetime) -> datetime:
        if goal is None or goal < MIN_PETITION_GOAL:
            raise ValidationError(f"Goal must be at least {MIN_PETITION_GOAL} signatures")
        deadline = _aware(deadline)
        if deadline <= now:
            raise ValidationError("Deadline must be in the future")
        return deadline

    def create_petition(
        self,
        identity: Identity,
        title: str,
        description: str,
        category: str,
        goal: int,
        deadline: datetime,
        image: Optional[str] = None,
    ) -> Petition:
        deadline = self._check_goal_and_deadline(goal, deadline, self.clock())
        petition = Petition(
            title=_required(title, "title"),
            description=_required(description, "description"),
            category=_required(category, "category"),
            goal=goal,
            deadline=deadline,
            image=image,
            createdBy=identity.userId,
        )
        petition = self._insert(petition)
        logger.info("petition %s created by %s (goal=%d)", petition.id, identity.userId, goal)
        return petition

    def _signer_name(self, identity: Identity) -> str:
        if identity.name:
            return identity.name
        try:
            return self.load(User, identity.userId).name
        except (NotFound, ValidationError):
            return ANONYMOUS_SIGNER

    def sign_petition(self, identity: Identity, petition_id: str, comment: Optional[str] = None) -> Petition:
        name = self._signer_name(identity)
        comment = (comment or "").strip() or None

        def change(petition: Petition, now: datetime):
            status = petition.effective_status(now)
            if status != "active":
                raise NotActive(f"Cannot sign a petition with status: {status}")
            if self.signing_requires_approval and petition.adminReview.status != "approved":
                raise NotActive("Cannot sign a petition that has not been approved")
            if petition.has_signed(identity.userId):
                raise AlreadySigned()
            petition.signatures.append(Signature(user=identity.userId, name=name, comment=comment, timestamp=now))
            if petition.signature_count >= petition.goal:
                petition.status = "completed"

        petition = self._mutate(Petition, petition_id, change)
        if petition.status == "completed" and petition.signature_count == petition.goal:
            logger.info("petition %s reached its goal of %d", petition_id, petition.goal)
        return petition

    def review_petition(
        self, identity: Identity, petition_id: str, decision: str, notes: Optional[str] = None
    ) -> Petition:
        if not identity.is_admin:
            raise Forbidden("Access denied. Admin privileges required.")
        if decision not in ("approved", "rejected"):
            raise ValidationError("Invalid review status")

        def change(petition: Petition, now: datetime):
            if petition.adminReview.status != "pending":
                raise InvalidTransition(f"Petition has already been {petition.adminReview.status}")
            petition.adminReview = AdminReview(
                status=decision, notes=notes, reviewedBy=identity.userId, reviewedAt=now
            )
            if decision == "rejected":
                petition.status = "rejected"

        petition = self._mutate(Petition, petition_id, change)
        logger.info("petition %s %s by %s", petition_id, decision, identity.userId)
        return petition

    def delete_petition(self, identity: Identity, petition_id: str) -> Petition:
        petition = self.load(Petition, petition_id)
        if petition.createdBy != identity.userId:
            raise Forbidden("You do not have permission to delete this petition")
        self.store.delete("petition", petition_id)
        logger.info("petition %s deleted by %s", petition_id, identity.userId)
        return petition

    def update_petition(
        self,
        identity: Identity,
        petition_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        goal: Optional[int] = None,
        deadline: Optional[datetime] = None,
    ) -> Petition:
        def change(petition: Petition, now: datetime):
            if petition.createdBy != identity.userId and not identity.is_admin:
                raise Forbidden("You do not have permission to edit this petition")
            status = petition.effective_status(now)
            if status in TERMINAL_PETITION_STATUSES:
                raise InvalidTransition(f"Cannot edit a petition with status: {status}")
            new_goal = petition.goal if goal is None else goal
            new_deadline = petition.deadline if deadline is None else deadline
            petition.deadline = self._check_goal_and_deadline(new_goal, new_deadline, now)
            petition.goal = new_goal
            if title is not None:
                petition.title = _required(title, "title")
            if description is not None:
                petition.description = _required(description, "description")
            if category is not None:
                petition.category = _required(category, "category")
            if petition.signature_count >= petition.goal:
                petition.status = "completed"

        return self._mutate(Petition, petition_id, change)

    def add_petition_update(self, identity: Identity, petition_id: str, text: str) -> PetitionUpdate:
        text = _required(text, "Update text")

        def change(petition: Petition, now: datetime):
            if petition.createdBy != identity.userId and not identity.is_admin:
                raise Forbidden("Only the petition creator can add updates")
            petition.updates.append(PetitionUpdate(text=text, addedBy=identity.userId, addedAt=now))

        return self._mutate(Petition, petition_id, change).updates[-1]

    def attach_petition_image(self, identity: Identity, petition_id: str, ref: str) -> Petition:
        def change(petition: Petition, now: datetime):
            if petition.createdBy != identity.userId and not identity.is_admin:
                raise Forbidden("You do not have permission to modify this petition")
            petition.image = ref

        return self._mutate(Petition, petition_id, change)

    def expire_overdue_petitions(self, identity: Identity) -> List[str]:
        """Persist `expired` on active petitions past their deadline."""
        if not identity.is_admin:
            raise Forbidden("Access denied. Admin privileges required.")
        now = self.clock()
        overdue = [
            doc["id"]
            for doc in self.store.query("petition", {"status": "active"})
            if Petition.model_validate(doc).effective_status(now) == "expired"
        ]
        expired = []

        def change(petition: Petition, at: datetime):
            if petition.effective_status(at) != "expired":
                raise InvalidTransition()
            petition.status = "expired"

        for petition_id in overdue:
            try:
                self._mutate(Petition, petition_id, change)
            except (InvalidTransition, NotFound):
                # completed or deleted between the scan and the write
                continue
            expired.append(petition_id)
        logger.info("expired %d overdue petitions", len(expired))
        return expired

    # ---------- ideas ----------

    def create_idea(self, identity: Identity, title: str, description: str, category: str) -> Idea:
        idea = Idea(
            title=_required(title, "title"),
            description=_required(description, "description"),
            category=_required(category, "category"),
            createdBy=identity.userId,
        )
        return self._insert(idea)

    def upvote_idea(self, identity: Identity, idea_id: str) -> Idea:
        def change(idea: Idea, now: datetime):
            if identity.userId in idea.upvotes:
                raise AlreadyUpvoted()
            idea.upvotes.append(identity.userId)

        return self._mutate(Idea, idea_id, change)

    def comment_idea(self, identity: Identity, idea_id: str, text: str) -> Idea:
        text = _required(text, "Comment text")

        def change(idea: Idea, now: datetime):
            idea.comments.append(IdeaComment(text=text, createdBy=identity.userId, createdAt=now))

        return self._mutate(Idea, idea_id, change)
