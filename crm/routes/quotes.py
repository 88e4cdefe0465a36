from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth.security import require_permissions
from ..db import get_db, utcnow
from ..errors import parse_uuid
from ..models.models import Company, Project, Quote, QuoteComment, User
from ..services.effects import Effect, run_effects
from ..services.notifications import create_notification


router = APIRouter(prefix="/api/quotes", tags=["quotes"])

QUOTE_STATUSES = {"draft", "pending_review", "approved", "rejected", "sent"}


def next_quote_number(db: Session) -> str:
    # Format: Q-<year>-<seq>, e.g. Q-2025-00001
    year = utcnow().year
    seq = (db.query(func.count(Quote.id)).scalar() or 0) + 1
    code = f"Q-{year}-{seq:05d}"
    while db.query(Quote).filter(Quote.quote_number == code).first():
        seq += 1
        code = f"Q-{year}-{seq:05d}"
    return code


def _user_name(db: Session, user_id) -> Optional[str]:
    if not user_id:
        return None
    u = db.query(User).filter(User.id == user_id).first()
    return u.full_name if u else None


def _quote_to_dict(db: Session, q: Quote) -> dict:
    company = db.query(Company).filter(Company.id == q.company_id).first() if q.company_id else None
    project = db.query(Project).filter(Project.id == q.project_id).first() if q.project_id else None
    return {
        "id": str(q.id),
        "quote_number": q.quote_number,
        "title": q.title,
        "description": q.description,
        "company_id": str(q.company_id) if q.company_id else None,
        "company_name": company.name if company else None,
        "project_id": str(q.project_id) if q.project_id else None,
        "project_name": project.name if project else None,
        "amount": float(q.amount) if q.amount is not None else None,
        "currency": q.currency,
        "status": q.status,
        "valid_until": q.valid_until.isoformat() if q.valid_until else None,
        "created_by": str(q.created_by) if q.created_by else None,
        "created_by_name": _user_name(db, q.created_by),
        "reviewed_by": str(q.reviewed_by) if q.reviewed_by else None,
        "reviewer_name": _user_name(db, q.reviewed_by),
        "created_at": q.created_at.isoformat() if q.created_at else None,
        "updated_at": q.updated_at.isoformat() if q.updated_at else None,
    }


def _get_quote(db: Session, quote_id: str) -> Quote:
    q = db.query(Quote).filter(Quote.id == parse_uuid(quote_id, "quote id")).first()
    if not q:
        raise HTTPException(status_code=404, detail="Quote not found")
    return q


def _apply(db: Session, q: Quote, payload: Dict[str, Any]) -> None:
    if "title" in payload:
        title = (payload.get("title") or "").strip()
        if not title:
            raise HTTPException(status_code=400, detail="Quote title is required")
        q.title = title
    if "description" in payload:
        q.description = payload.get("description")
    if "company_id" in payload:
        cid = parse_uuid(payload["company_id"], "company id") if payload.get("company_id") else None
        if cid and not db.query(Company).filter(Company.id == cid).first():
            raise HTTPException(status_code=404, detail="Company not found")
        q.company_id = cid
    if "project_id" in payload:
        pid = parse_uuid(payload["project_id"], "project id") if payload.get("project_id") else None
        if pid and not db.query(Project).filter(Project.id == pid).first():
            raise HTTPException(status_code=404, detail="Project not found")
        q.project_id = pid
    if "amount" in payload:
        try:
            q.amount = float(payload["amount"]) if payload.get("amount") not in (None, "") else None
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid amount")
    if payload.get("currency"):
        q.currency = str(payload["currency"])[:10]
    if "valid_until" in payload:
        try:
            q.valid_until = date.fromisoformat(str(payload["valid_until"])[:10]) if payload.get("valid_until") else None
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid valid_until")
    if "status" in payload and payload.get("status"):
        if payload["status"] not in QUOTE_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid quote status")
        q.status = payload["status"]


@router.get("")
def list_quotes(status: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    q = db.query(Quote)
    if status:
        q = q.filter(Quote.status == status)
    return [_quote_to_dict(db, row) for row in q.order_by(Quote.created_at.desc()).all()]


@router.get("/companies/list")
def companies_list(db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    return [{"id": str(c.id), "name": c.name} for c in db.query(Company).order_by(Company.name).all()]


@router.get("/projects/list")
def projects_list(company_id: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    q = db.query(Project)
    if company_id:
        q = q.filter(Project.company_id == parse_uuid(company_id, "company id"))
    return [{"id": str(p.id), "name": p.name} for p in q.order_by(Project.name).all()]


@router.get("/reviewers/list")
def reviewers_list(db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    rows = db.query(User).filter(User.is_active.is_(True)).order_by(User.first_name).all()
    return [{"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email} for u in rows]


@router.get("/{quote_id}")
def get_quote(quote_id: str, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    q = _get_quote(db, quote_id)
    comments = db.query(QuoteComment).filter(QuoteComment.quote_id == q.id).order_by(QuoteComment.created_at.asc()).all()
    data = _quote_to_dict(db, q)
    data["comments"] = [
        {
            "id": str(c.id),
            "user_id": str(c.user_id),
            "user_name": _user_name(db, c.user_id),
            "comment": c.comment,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in comments
    ]
    return data


@router.post("", status_code=201)
def create_quote(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_quotes"))):
    if not (payload.get("title") or "").strip():
        raise HTTPException(status_code=400, detail="Quote title is required")
    q = Quote(quote_number=next_quote_number(db), title="", created_by=me.id, status="draft")
    _apply(db, q, payload)
    db.add(q)
    db.commit()
    db.refresh(q)
    return _quote_to_dict(db, q)


@router.put("/{quote_id}")
def update_quote(quote_id: str, payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    q = _get_quote(db, quote_id)
    _apply(db, q, payload)
    db.commit()
    db.refresh(q)
    return _quote_to_dict(db, q)


@router.delete("/{quote_id}")
def delete_quote(quote_id: str, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_quotes"))):
    q = _get_quote(db, quote_id)
    db.delete(q)
    db.commit()
    return {"message": "Quote deleted successfully"}


@router.post("/{quote_id}/send-for-review")
def send_for_review(quote_id: str, payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_quotes"))):
    q = _get_quote(db, quote_id)
    reviewer_raw = payload.get("reviewer_id") or payload.get("reviewerId")
    if not reviewer_raw:
        raise HTTPException(status_code=400, detail="Reviewer is required")
    reviewer = db.query(User).filter(User.id == parse_uuid(reviewer_raw, "reviewer id"), User.is_active.is_(True)).first()
    if not reviewer:
        raise HTTPException(status_code=404, detail="Reviewer not found")
    q.status = "pending_review"
    q.reviewed_by = reviewer.id
    db.commit()
    db.refresh(q)
    result = _quote_to_dict(db, q)
    if reviewer.id != me.id:
        run_effects([
            Effect(
                "notify_quote_review",
                create_notification,
                (db, reviewer.id, "quote_review", "Quote awaiting review", f"{me.full_name} sent quote {q.quote_number} for your review"),
            )
        ])
    return result


@router.post("/{quote_id}/comments", status_code=201)
def add_comment(quote_id: str, payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_quotes"))):
    q = _get_quote(db, quote_id)
    text = (payload.get("comment") or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Comment is required")
    c = QuoteComment(quote_id=q.id, user_id=me.id, comment=text)
    db.add(c)
    db.commit()
    db.refresh(c)
    return {
        "id": str(c.id),
        "quote_id": str(q.id),
        "user_id": str(me.id),
        "user_name": me.full_name,
        "comment": c.comment,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }
