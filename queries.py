"""
Read side: visibility rules, filtering, ordering and the JSON shape
handed to clients.

Visibility is decided before any caller-supplied filter:
- petitions: admins see everything; everyone else sees approved
  petitions plus the ones they created.
- reports: admins see everything; citizens see only their own.
"""

from collections import Counter
from datetime import datetime
from typing import Iterable, List, Optional

from errors import Forbidden, NotFound
from identity import Identity
from schemas import Idea, Petition, Report
from store import EntityStore, ResultSet

REPORT_SEARCH_FIELDS = ("title", "description", "location", "category")
PETITION_SEARCH_FIELDS = ("title", "description", "category")
IDEA_SEARCH_FIELDS = ("title", "description", "category")


def _contains(doc: dict, q: str, fields) -> bool:
    needle = q.lower()
    return any(needle in str(doc.get(f) or "").lower() for f in fields)


def _where(**pairs) -> dict:
    return {k.replace("__", "."): v for k, v in pairs.items() if v is not None}


def recent_first(docs: Iterable[dict]) -> List[dict]:
    # list.sort is stable under reverse=True, so equal timestamps keep insertion order
    return sorted(docs, key=lambda d: d["createdAt"], reverse=True)


def page(docs: List[dict], skip: int = 0, limit: Optional[int] = None) -> List[dict]:
    end = None if limit is None else skip + limit
    return docs[skip:end]


# ---------- petitions ----------

def petition_visible(doc: dict, identity: Optional[Identity]) -> bool:
    if identity is not None and (identity.is_admin or doc["createdBy"] == identity.userId):
        return True
    return doc["adminReview"]["status"] == "approved"


def petitions_for(
    store: EntityStore,
    identity: Optional[Identity],
    now: datetime,
    status: Optional[str] = None,
    category: Optional[str] = None,
    q: Optional[str] = None,
    mine: bool = False,
    review: Optional[str] = None,
) -> ResultSet:
    where = _where(category=category, adminReview__status=review)
    if mine:
        if identity is None:
            return ResultSet(list)
        where["createdBy"] = identity.userId
    results = store.query("petition", where).filter(lambda d: petition_visible(d, identity))
    if status:
        results = results.filter(lambda d: Petition.model_validate(d).effective_status(now) == status)
    if q:
        results = results.filter(lambda d: _contains(d, q, PETITION_SEARCH_FIELDS))
    return results


def petition_for(store: EntityStore, identity: Optional[Identity], petition_id: str) -> Petition:
    doc = store.get("petition", petition_id)
    if not petition_visible(doc, identity):
        # unapproved petitions don't exist as far as outsiders can tell
        raise NotFound("Petition")
    return Petition.model_validate(doc)


def present_petition(petition: Petition, identity: Optional[Identity], now: datetime) -> dict:
    data = petition.model_dump(exclude={"version"})
    data["status"] = petition.effective_status(now)
    data["signatureCount"] = petition.signature_count
    data["percentageComplete"] = petition.percentage_complete
    privileged = identity is not None and (identity.is_admin or identity.userId == petition.createdBy)
    if identity is not None:
        data["hasSigned"] = petition.has_signed(identity.userId)
    if not privileged:
        data["adminReview"].pop("notes", None)
    return data


def petition_stats(store: EntityStore, now: datetime) -> dict:
    by_status = Counter()
    by_review = Counter()
    for doc in store.query("petition"):
        petition = Petition.model_validate(doc)
        by_status[petition.effective_status(now)] += 1
        by_review[petition.adminReview.status] += 1
    return {
        "total": sum(by_status.values()),
        "status": {s: by_status[s] for s in ("active", "completed", "expired", "rejected")},
        "review": {s: by_review[s] for s in ("pending", "approved", "rejected")},
    }


# ---------- reports ----------

def reports_for(
    store: EntityStore,
    identity: Identity,
    status: Optional[str] = None,
    category: Optional[str] = None,
    type: Optional[str] = None,
    q: Optional[str] = None,
    mine: bool = False,
) -> ResultSet:
    where = _where(status=status, category=category, type=type)
    if mine or not identity.is_admin:
        where["submittedBy"] = identity.userId
    results = store.query("report", where)
    if q:
        results = results.filter(lambda d: _contains(d, q, REPORT_SEARCH_FIELDS))
    return results


def report_for(store: EntityStore, identity: Identity, report_id: str) -> Report:
    report = Report.model_validate(store.get("report", report_id))
    if not identity.is_admin and report.submittedBy != identity.userId:
        raise Forbidden("You do not have permission to view this report")
    return report


def present_report(report: Report) -> dict:
    return report.model_dump(exclude={"version"})


def report_stats(store: EntityStore, recent: int = 5) -> dict:
    docs = list(store.query("report"))
    statuses = Counter(d["status"] for d in docs)
    categories = Counter(d["category"] for d in docs)
    latest = sorted(docs, key=lambda d: d["updatedAt"], reverse=True)[:recent]
    return {
        "total": len(docs),
        "pending": statuses["pending"],
        "inProgress": statuses["in-progress"],
        "resolved": statuses["resolved"],
        "rejected": statuses["rejected"],
        "categories": [{"category": c, "count": n} for c, n in categories.most_common()],
        "recentActivity": [present_report(Report.model_validate(d)) for d in latest],
    }


# ---------- ideas ----------

def ideas_for(
    store: EntityStore,
    category: Optional[str] = None,
    q: Optional[str] = None,
    created_by: Optional[str] = None,
) -> ResultSet:
    results = store.query("idea", _where(category=category, createdBy=created_by))
    if q:
        results = results.filter(lambda d: _contains(d, q, IDEA_SEARCH_FIELDS))
    return results


def present_idea(idea: Idea, identity: Optional[Identity] = None) -> dict:
    data = idea.model_dump(exclude={"version"})
    data["upvoteCount"] = len(idea.upvotes)
    if identity is not None:
        data["hasUpvoted"] = identity.userId in idea.upvotes
    return data
