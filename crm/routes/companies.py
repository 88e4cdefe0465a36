from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import require_permissions
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import Company, Project


router = APIRouter(prefix="/api/companies", tags=["companies"])

FIELDS = ("name", "ico", "dic", "address", "contact_person", "email", "phone")


def _company_to_dict(c: Company) -> dict:
    return {
        "id": str(c.id),
        **{f: getattr(c, f) for f in FIELDS},
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


def _get_company(db: Session, company_id: str) -> Company:
    c = db.query(Company).filter(Company.id == parse_uuid(company_id, "company id")).first()
    if not c:
        raise HTTPException(status_code=404, detail="Company not found")
    return c


@router.get("")
def list_companies(db: Session = Depends(get_db), _=Depends(require_permissions("manage_companies"))):
    rows = db.query(Company).order_by(Company.name).all()
    counts = {}
    for p in db.query(Project.company_id).all():
        counts[p.company_id] = counts.get(p.company_id, 0) + 1
    return [{**_company_to_dict(c), "project_count": counts.get(c.id, 0)} for c in rows]


@router.get("/{company_id}")
def get_company(company_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("manage_companies"))):
    c = _get_company(db, company_id)
    projects = db.query(Project).filter(Project.company_id == c.id).order_by(Project.name).all()
    return {
        **_company_to_dict(c),
        "projects": [{"id": str(p.id), "name": p.name, "status": p.status} for p in projects],
    }


@router.post("", status_code=201)
def create_company(payload: dict, db: Session = Depends(get_db), _=Depends(require_permissions("manage_companies"))):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Company name is required")
    c = Company(name=name, **{f: payload.get(f) for f in FIELDS if f != "name"})
    db.add(c)
    db.commit()
    db.refresh(c)
    return _company_to_dict(c)


@router.put("/{company_id}")
def update_company(company_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_permissions("manage_companies"))):
    c = _get_company(db, company_id)
    if "name" in payload and not (payload.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="Company name is required")
    for f in FIELDS:
        if f in payload:
            setattr(c, f, payload[f].strip() if f == "name" else payload[f])
    db.commit()
    db.refresh(c)
    return _company_to_dict(c)


@router.delete("/{company_id}")
def delete_company(company_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("manage_companies"))):
    c = _get_company(db, company_id)
    if db.query(Project).filter(Project.company_id == c.id).count():
        raise HTTPException(status_code=400, detail="Cannot delete a company that has projects")
    db.delete(c)
    db.commit()
    return {"message": "Company deleted"}
