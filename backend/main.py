"""TreeKeeper - Family Chart Backend.

FastAPI server for building and browsing a family tree: add, edit and delete
members, link spouses and children, and fetch the rendered tree structure.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("TREEKEEPER_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("treekeeper")

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from family_store import Attachment, MemberPayload, RelationshipError, find_consistency_issues, normalize_member_id
from family_utils import build_descendant_tree, build_family_forest, forest_to_dicts, get_relatives
from gedcom_io import export_gedcom_content, import_gedcom_content
from persistence import DEFAULT_DATA_FILE, FamilyTreeSession


DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173"


def get_data_path() -> Path:
    """Data file location, from TREEKEEPER_DATA_FILE."""
    return Path(os.getenv("TREEKEEPER_DATA_FILE", DEFAULT_DATA_FILE))


def get_cors_origins() -> list[str]:
    origins = os.getenv("TREEKEEPER_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in origins.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - load the family tree and keep it on app.state."""
    data_path = get_data_path()
    logger.info(f"Loading family tree from {data_path}...")
    app.state.tree_session = FamilyTreeSession.open(data_path)
    logger.info(f"✓ Family tree ready with {len(app.state.tree_session.store)} members")

    yield

    logger.info(f"Shutting down, family tree saved at {data_path}")


# Create FastAPI app
app = FastAPI(
    title="TreeKeeper",
    description="Build and browse a family tree",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session(request: Request) -> FamilyTreeSession:
    return request.app.state.tree_session


def parse_path_id(member_id: str) -> int | str:
    return normalize_member_id(member_id)


# Request/Response models
class AddMemberRequest(BaseModel):
    """New member details plus how to link them."""
    member: MemberPayload
    attachment: Attachment = Field(default_factory=Attachment)


class MemberMutationResponse(BaseModel):
    """Result of adding, updating or linking a member."""
    member: dict | None
    changed: bool
    saved: bool


class DeleteMemberResponse(BaseModel):
    """Result of deleting a member."""
    id: int | str
    deleted: bool
    saved: bool


class SpouseLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: int | str = Field(alias="memberId")
    spouse_id: int | str = Field(alias="spouseId")


class ParentChildLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    parent_id: int | str = Field(alias="parentId")
    child_id: int | str = Field(alias="childId")


class TreeResponse(BaseModel):
    """The materialized forest: one entry per canonical root."""
    roots: list[dict]
    member_count: int


class ValidationReport(BaseModel):
    valid: bool
    issues: list[str]


class GedcomUploadResponse(BaseModel):
    """Response after uploading a GEDCOM file."""
    message: str
    member_count: int
    saved: bool


# Endpoints

@app.get("/health")
async def health_check(session: FamilyTreeSession = Depends(get_session)):
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "member_count": len(session.store),
        "data_file": str(session.data_path),
    }


@app.get("/members")
async def list_members(session: FamilyTreeSession = Depends(get_session)):
    """Get all members."""
    members = session.store.all()
    logger.debug(f"Returning {len(members)} members")
    return {"members": [member.to_dict() for member in members]}


@app.get("/members/{member_id}")
async def get_member(member_id: str, session: FamilyTreeSession = Depends(get_session)):
    member = session.store.get(parse_path_id(member_id))
    if member is None:
        raise HTTPException(status_code=404, detail=f"Member with ID {member_id} not found")
    return member.to_dict()


@app.get("/members/{member_id}/relatives")
async def get_member_relatives(member_id: str, session: FamilyTreeSession = Depends(get_session)):
    """Get parents, children, spouse and siblings of a member."""
    relatives = get_relatives(session.store, parse_path_id(member_id))
    if relatives is None:
        raise HTTPException(status_code=404, detail=f"Member with ID {member_id} not found")
    return relatives


@app.post("/members", response_model=MemberMutationResponse, status_code=201)
async def create_member(request: AddMemberRequest, session: FamilyTreeSession = Depends(get_session)):
    """Add a member as a root, spouse or child."""
    logger.info(f"Adding member '{request.member.name}' as {request.attachment.type}")
    outcome = session.add_member(request.member, request.attachment)
    return MemberMutationResponse(member=outcome.member.to_dict(), changed=outcome.changed, saved=outcome.saved)


@app.patch("/members/{member_id}", response_model=MemberMutationResponse)
async def edit_member(
    member_id: str,
    patch: dict[str, Any] = Body(...),
    session: FamilyTreeSession = Depends(get_session),
):
    """Update descriptive fields of a member. Unknown ids are a no-op."""
    try:
        outcome = session.update_member(parse_path_id(member_id), patch)
    except ValidationError as e:
        logger.warning(f"Rejected update of member {member_id}: {e.error_count()} error(s)")
        raise HTTPException(status_code=422, detail=str(e))

    member = outcome.member.to_dict() if outcome.member else None
    return MemberMutationResponse(member=member, changed=outcome.changed, saved=outcome.saved)


@app.delete("/members/{member_id}", response_model=DeleteMemberResponse)
async def remove_member(member_id: str, session: FamilyTreeSession = Depends(get_session)):
    """Delete a member and unlink them everywhere. Unknown ids are a no-op."""
    parsed_id = parse_path_id(member_id)
    outcome = session.delete_member(parsed_id)
    if not outcome.changed:
        logger.info(f"Delete requested for unknown member {member_id}")
    return DeleteMemberResponse(id=parsed_id, deleted=outcome.changed, saved=outcome.saved)


@app.post("/relationships/spouse", response_model=MemberMutationResponse)
async def create_spouse_link(request: SpouseLinkRequest, session: FamilyTreeSession = Depends(get_session)):
    """Marry two existing members."""
    try:
        outcome = session.link_spouses(request.member_id, request.spouse_id)
    except RelationshipError as e:
        logger.warning(f"Spouse link rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return MemberMutationResponse(member=outcome.member.to_dict(), changed=outcome.changed, saved=outcome.saved)


@app.post("/relationships/parent-child", response_model=MemberMutationResponse)
async def create_parent_child_link(
    request: ParentChildLinkRequest,
    session: FamilyTreeSession = Depends(get_session),
):
    """Record an existing member as parent of another."""
    try:
        outcome = session.link_parent_child(request.parent_id, request.child_id)
    except RelationshipError as e:
        logger.warning(f"Parent/child link rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return MemberMutationResponse(member=outcome.member.to_dict(), changed=outcome.changed, saved=outcome.saved)


@app.get("/tree", response_model=TreeResponse)
async def get_tree(session: FamilyTreeSession = Depends(get_session)):
    """Get the whole family tree as a forest of root nodes."""
    forest = build_family_forest(session.store)
    logger.info(f"Returning family tree with {len(forest)} root(s)")
    return TreeResponse(roots=forest_to_dicts(forest), member_count=len(session.store))


@app.get("/tree/{member_id}")
async def get_descendant_tree(
    member_id: str,
    max_depth: int = Query(default=10, ge=0, le=20),
    session: FamilyTreeSession = Depends(get_session),
):
    """Get the descendant tree below one member."""
    logger.info(f"Building descendant tree for member_id={member_id}, max_depth={max_depth}")
    tree = build_descendant_tree(session.store, parse_path_id(member_id), max_depth)
    if tree is None:
        logger.warning(f"Member {member_id} not found")
        raise HTTPException(status_code=404, detail=f"Member with ID {member_id} not found")
    return {"tree": tree}


@app.get("/validate", response_model=ValidationReport)
async def validate_tree(session: FamilyTreeSession = Depends(get_session)):
    """Report relationship inconsistencies in the current tree."""
    issues = find_consistency_issues(session.store)
    if issues:
        logger.warning(f"Family tree has {len(issues)} consistency issue(s)")
    return ValidationReport(valid=not issues, issues=issues)


@app.post("/upload-gedcom", response_model=GedcomUploadResponse)
async def upload_gedcom(file: UploadFile = File(...), session: FamilyTreeSession = Depends(get_session)):
    """Replace the family tree with the contents of a GEDCOM file."""
    logger.info(f"Received GEDCOM file upload: {file.filename}")

    if not file.filename or not file.filename.endswith(('.ged', '.gedcom')):
        logger.warning(f"Invalid file type: {file.filename}")
        raise HTTPException(status_code=400, detail="File must be a GEDCOM file (.ged or .gedcom)")

    content = await file.read()
    try:
        content_str = content.decode('utf-8')
    except UnicodeDecodeError:
        logger.info("UTF-8 decode failed, trying latin-1 encoding")
        content_str = content.decode('latin-1')

    try:
        store = import_gedcom_content(content_str)
    except Exception as e:
        logger.error(f"Failed to parse GEDCOM file: {str(e)}")
        raise HTTPException(status_code=400, detail=f"Failed to parse GEDCOM file: {str(e)}")

    outcome = session.replace_store(store)
    return GedcomUploadResponse(
        message=f"Successfully imported GEDCOM file: {file.filename}",
        member_count=len(store),
        saved=outcome.saved,
    )


@app.get("/export-gedcom", response_class=PlainTextResponse)
async def export_gedcom(session: FamilyTreeSession = Depends(get_session)):
    """Download the family tree as a GEDCOM file."""
    content = export_gedcom_content(session.store)
    return PlainTextResponse(
        content,
        media_type="text/x-gedcom",
        headers={"Content-Disposition": 'attachment; filename="family-tree.ged"'},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
