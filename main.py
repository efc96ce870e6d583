import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal, Optional

from fastapi import Depends, FastAPI, File, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr

import database
from accounts import Accounts, public_user
from blobstore import EVIDENCE_TYPES, IMAGE_TYPES, MAX_EVIDENCE_BYTES, MAX_IMAGE_BYTES, UPLOAD_DIR, BlobStore
from database import utcnow
from errors import Forbidden, WorkflowError
from identity import Identity, create_token, optional_identity, require_admin, require_superadmin, verify_token
from queries import (
    ideas_for,
    page,
    petition_for,
    petition_stats,
    petitions_for,
    present_idea,
    present_petition,
    present_report,
    recent_first,
    report_for,
    report_stats,
    reports_for,
)
from schemas import Idea, Petition, Report, ReportStatus, ReportType, Role, UserStatus
from store import EntityStore, MemoryStore, MongoStore
from workflow import Moderation

APP_NAME = "Society Management API"

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title=APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


# ---------- Dependencies ----------

_memory_store: Optional[MemoryStore] = None


def get_store() -> EntityStore:
    global _memory_store
    if database.db is not None:
        return MongoStore(database.db)
    if _memory_store is None:
        logger.warning("DATABASE_URL not set; using in-memory store")
        _memory_store = MemoryStore()
    return _memory_store


def get_clock():
    return utcnow


def get_blobs() -> BlobStore:
    return BlobStore(UPLOAD_DIR)


def get_moderation(store: EntityStore = Depends(get_store), clock=Depends(get_clock)) -> Moderation:
    return Moderation(store, clock=clock)


def get_accounts(store: EntityStore = Depends(get_store), clock=Depends(get_clock)) -> Accounts:
    return Accounts(store, clock=clock)


# ---------- Error mapping ----------

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"detail": message, "error": "validation_error"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error", "error": "server_error"})


# ---------- Models for requests ----------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class AdminRegisterRequest(RegisterRequest):
    secretKey: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    status: Optional[UserStatus] = None


class ReportCreateRequest(BaseModel):
    title: str
    description: str
    type: ReportType
    category: str
    location: str = ""
    date: Optional[str] = None
    time: Optional[str] = None


class ReportStatusUpdate(BaseModel):
    status: ReportStatus
    note: Optional[str] = None


class AssignRequest(BaseModel):
    adminId: str


class TextRequest(BaseModel):
    text: str


class PetitionCreateRequest(BaseModel):
    title: str
    description: str
    category: str
    goal: int = 100
    deadline: datetime


class PetitionEditRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    goal: Optional[int] = None
    deadline: Optional[datetime] = None


class SignRequest(BaseModel):
    comment: Optional[str] = None


class ReviewRequest(BaseModel):
    status: Literal['approved', 'rejected']
    notes: Optional[str] = None


class IdeaCreateRequest(BaseModel):
    title: str
    description: str
    category: str


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/test")
def test_database(store: EntityStore = Depends(get_store)):
    return {"backend": "running", **store.ping()}


# ---------- Auth endpoints ----------

def _session(user):
    token = create_token(user.id, user.role, user.name)
    return {"token": token, "user": public_user(user)}


@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, accounts: Accounts = Depends(get_accounts)):
    return _session(accounts.register(req.name, req.email, req.password))


@app.post("/auth/login")
def login(req: LoginRequest, accounts: Accounts = Depends(get_accounts)):
    return _session(accounts.login(req.email, req.password))


@app.get("/me")
def me(identity: Identity = Depends(verify_token)):
    return {"id": identity.userId, "role": identity.role, "name": identity.name}


# ---------- Admin: accounts ----------

@app.post("/admin/register", status_code=201)
def admin_register(req: AdminRegisterRequest, accounts: Accounts = Depends(get_accounts)):
    user = accounts.register_admin(req.name, req.email, req.password, req.secretKey)
    return {"message": "Admin account created successfully", "user": public_user(user)}


@app.post("/admin/login")
def admin_login(req: LoginRequest, accounts: Accounts = Depends(get_accounts)):
    return _session(accounts.login(req.email, req.password, admin_only=True))


@app.get("/admin/users")
def list_users(identity: Identity = Depends(require_superadmin), accounts: Accounts = Depends(get_accounts)):
    return [public_user(u) for u in accounts.all_users()]


@app.get("/admin/users/{user_id}")
def get_user(user_id: str, identity: Identity = Depends(require_superadmin), accounts: Accounts = Depends(get_accounts)):
    return public_user(accounts.get(user_id))


@app.put("/admin/users/{user_id}")
def update_user(
    user_id: str,
    body: UserUpdateRequest,
    identity: Identity = Depends(require_superadmin),
    accounts: Accounts = Depends(get_accounts),
):
    user = accounts.update(identity, user_id, **body.model_dump(exclude_unset=True))
    return public_user(user)


@app.delete("/admin/users/{user_id}")
def delete_user(user_id: str, identity: Identity = Depends(require_superadmin), accounts: Accounts = Depends(get_accounts)):
    accounts.delete(identity, user_id)
    return {"message": "User deleted successfully"}


# ---------- Report endpoints ----------

@app.post("/reports", status_code=201)
def create_report(
    body: ReportCreateRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    report = moderation.create_report(
        identity,
        title=body.title,
        description=body.description,
        report_type=body.type,
        category=body.category,
        location=body.location,
        date=body.date,
        time=body.time,
    )
    return present_report(report)


@app.get("/reports")
def list_reports(
    status: Optional[ReportStatus] = None,
    category: Optional[str] = None,
    type: Optional[ReportType] = None,
    q: Optional[str] = None,
    mine: bool = False,
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(verify_token),
    store: EntityStore = Depends(get_store),
):
    docs = recent_first(reports_for(store, identity, status=status, category=category, type=type, q=q, mine=mine))
    return [present_report(Report.model_validate(d)) for d in page(docs, skip, limit)]


@app.get("/reports/admin/all")
def admin_list_reports(
    status: Optional[ReportStatus] = None,
    category: Optional[str] = None,
    type: Optional[ReportType] = None,
    q: Optional[str] = None,
    identity: Identity = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    docs = recent_first(reports_for(store, identity, status=status, category=category, type=type, q=q))
    return [present_report(Report.model_validate(d)) for d in docs]


@app.get("/reports/admin/stats")
def admin_report_stats(identity: Identity = Depends(require_admin), store: EntityStore = Depends(get_store)):
    return report_stats(store)


@app.get("/reports/{report_id}")
def get_report(report_id: str, identity: Identity = Depends(verify_token), store: EntityStore = Depends(get_store)):
    return present_report(report_for(store, identity, report_id))


@app.post("/reports/{report_id}/comments", status_code=201)
def add_report_comment(
    report_id: str,
    body: TextRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    report = moderation.add_report_comment(identity, report_id, body.text)
    return report.comments[-1].model_dump()


@app.post("/reports/{report_id}/evidence")
def upload_report_evidence(
    report_id: str,
    file: UploadFile = File(...),
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
    blobs: BlobStore = Depends(get_blobs),
):
    # permission check before anything touches the disk
    report_for(moderation.store, identity, report_id)
    ref = blobs.save(file, "reports", "report-evidence", EVIDENCE_TYPES, MAX_EVIDENCE_BYTES)
    moderation.attach_report_evidence(identity, report_id, ref)
    return {"message": "Evidence uploaded successfully", "file": ref}


@app.put("/reports/admin/{report_id}/status")
def update_report_status(
    report_id: str,
    body: ReportStatusUpdate,
    identity: Identity = Depends(require_admin),
    moderation: Moderation = Depends(get_moderation),
):
    return present_report(moderation.update_report_status(identity, report_id, body.status, body.note))


@app.patch("/reports/{report_id}/assign")
def assign_report(
    report_id: str,
    body: AssignRequest,
    identity: Identity = Depends(require_admin),
    moderation: Moderation = Depends(get_moderation),
):
    return present_report(moderation.assign_report(identity, report_id, body.adminId))


# ---------- Petition endpoints ----------

@app.post("/petitions", status_code=201)
def create_petition(
    body: PetitionCreateRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    petition = moderation.create_petition(
        identity, body.title, body.description, body.category, body.goal, body.deadline
    )
    return present_petition(petition, identity, moderation.clock())


@app.get("/petitions")
def list_petitions(
    status: Optional[Literal['active', 'completed', 'expired', 'rejected']] = None,
    category: Optional[str] = None,
    q: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    identity: Optional[Identity] = Depends(optional_identity),
    store: EntityStore = Depends(get_store),
    clock=Depends(get_clock),
):
    now = clock()
    docs = recent_first(petitions_for(store, identity, now, status=status, category=category, q=q))
    return [present_petition(Petition.model_validate(d), identity, now) for d in page(docs, skip, limit)]


@app.get("/petitions/user")
def my_petitions(
    identity: Identity = Depends(verify_token),
    store: EntityStore = Depends(get_store),
    clock=Depends(get_clock),
):
    now = clock()
    docs = recent_first(petitions_for(store, identity, now, mine=True))
    return [present_petition(Petition.model_validate(d), identity, now) for d in docs]


@app.get("/petitions/admin/all")
def admin_list_petitions(
    review: Optional[Literal['pending', 'approved', 'rejected']] = None,
    status: Optional[Literal['active', 'completed', 'expired', 'rejected']] = None,
    identity: Identity = Depends(require_admin),
    store: EntityStore = Depends(get_store),
    clock=Depends(get_clock),
):
    now = clock()
    docs = recent_first(petitions_for(store, identity, now, status=status, review=review))
    return [present_petition(Petition.model_validate(d), identity, now) for d in docs]


@app.get("/petitions/admin/stats")
def admin_petition_stats(
    identity: Identity = Depends(require_admin),
    store: EntityStore = Depends(get_store),
    clock=Depends(get_clock),
):
    return petition_stats(store, clock())


@app.post("/petitions/admin/expire")
def expire_petitions(identity: Identity = Depends(require_admin), moderation: Moderation = Depends(get_moderation)):
    expired = moderation.expire_overdue_petitions(identity)
    return {"message": "Checked for expired petitions", "updated": len(expired)}


@app.get("/petitions/{petition_id}")
def get_petition(
    petition_id: str,
    identity: Optional[Identity] = Depends(optional_identity),
    store: EntityStore = Depends(get_store),
    clock=Depends(get_clock),
):
    return present_petition(petition_for(store, identity, petition_id), identity, clock())


@app.put("/petitions/{petition_id}")
def edit_petition(
    petition_id: str,
    body: PetitionEditRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    petition = moderation.update_petition(identity, petition_id, **body.model_dump(exclude_unset=True))
    return present_petition(petition, identity, moderation.clock())


@app.post("/petitions/{petition_id}/sign", status_code=201)
def sign_petition(
    petition_id: str,
    body: Optional[SignRequest] = None,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    petition = moderation.sign_petition(identity, petition_id, body.comment if body else None)
    return {
        "message": "Signature added successfully",
        "signatureCount": petition.signature_count,
        "status": petition.status,
    }


@app.post("/petitions/{petition_id}/updates", status_code=201)
def add_petition_update(
    petition_id: str,
    body: TextRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    return moderation.add_petition_update(identity, petition_id, body.text).model_dump()


@app.post("/petitions/{petition_id}/image")
def upload_petition_image(
    petition_id: str,
    image: UploadFile = File(...),
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
    blobs: BlobStore = Depends(get_blobs),
):
    petition = moderation.load(Petition, petition_id)
    if petition.createdBy != identity.userId and not identity.is_admin:
        raise Forbidden("You do not have permission to modify this petition")
    ref = blobs.save(image, "petitions", "petition-image", IMAGE_TYPES, MAX_IMAGE_BYTES)
    previous = petition.image
    moderation.attach_petition_image(identity, petition_id, ref)
    blobs.delete(previous)
    return {"message": "Image uploaded successfully", "file": ref}


@app.put("/petitions/admin/{petition_id}/review")
def review_petition(
    petition_id: str,
    body: ReviewRequest,
    identity: Identity = Depends(require_admin),
    moderation: Moderation = Depends(get_moderation),
):
    petition = moderation.review_petition(identity, petition_id, body.status, body.notes)
    return present_petition(petition, identity, moderation.clock())


@app.delete("/petitions/{petition_id}")
def delete_petition(
    petition_id: str,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
    blobs: BlobStore = Depends(get_blobs),
):
    petition = moderation.delete_petition(identity, petition_id)
    blobs.delete(petition.image)
    return {"message": "Petition deleted successfully"}


# ---------- Idea endpoints ----------

@app.get("/ideas")
def list_ideas(
    category: Optional[str] = None,
    q: Optional[str] = None,
    identity: Optional[Identity] = Depends(optional_identity),
    store: EntityStore = Depends(get_store),
):
    docs = recent_first(ideas_for(store, category=category, q=q))
    return [present_idea(Idea.model_validate(d), identity) for d in docs]


@app.post("/ideas", status_code=201)
def create_idea(
    body: IdeaCreateRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    idea = moderation.create_idea(identity, body.title, body.description, body.category)
    return present_idea(idea, identity)


@app.get("/ideas/user/me")
def my_ideas(identity: Identity = Depends(verify_token), store: EntityStore = Depends(get_store)):
    docs = recent_first(ideas_for(store, created_by=identity.userId))
    return [present_idea(Idea.model_validate(d), identity) for d in docs]


@app.get("/ideas/{idea_id}")
def get_idea(
    idea_id: str,
    identity: Optional[Identity] = Depends(optional_identity),
    moderation: Moderation = Depends(get_moderation),
):
    return present_idea(moderation.load(Idea, idea_id), identity)


@app.post("/ideas/{idea_id}/upvote")
def upvote_idea(
    idea_id: str,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    idea = moderation.upvote_idea(identity, idea_id)
    return {"message": "Upvote added successfully", "upvotes": len(idea.upvotes)}


@app.post("/ideas/{idea_id}/comments", status_code=201)
def comment_idea(
    idea_id: str,
    body: TextRequest,
    identity: Identity = Depends(verify_token),
    moderation: Moderation = Depends(get_moderation),
):
    idea = moderation.comment_idea(identity, idea_id, body.text)
    return {"message": "Comment added successfully", "comments": [c.model_dump() for c in idea.comments]}
