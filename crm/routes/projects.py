from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_permissions
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import Company, Project, ProjectEmployee, Task, User
from ..services.policy import allow, can_view_project


router = APIRouter(prefix="/api/projects", tags=["projects"])

PROJECT_STATUSES = {"active", "completed", "on_hold", "cancelled"}


def _parse_date(value) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}")


def _member_ids(db: Session, project_id) -> List:
    return [r.user_id for r in db.query(ProjectEmployee.user_id).filter(ProjectEmployee.project_id == project_id).all()]


def _project_to_dict(db: Session, p: Project, with_employees: bool = False) -> dict:
    members = _member_ids(db, p.id)
    d = {
        "id": str(p.id),
        "name": p.name,
        "description": p.description,
        "company_id": str(p.company_id) if p.company_id else None,
        "company_name": p.company.name if p.company else None,
        "status": p.status,
        "budget": float(p.budget) if p.budget is not None else None,
        "start_date": p.start_date.isoformat() if p.start_date else None,
        "end_date": p.end_date.isoformat() if p.end_date else None,
        "employee_count": len(members),
        "task_count": db.query(Task).filter(Task.project_id == p.id).count(),
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }
    if with_employees:
        users = db.query(User).filter(User.id.in_(members)).all() if members else []
        d["employees"] = [
            {"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email} for u in users
        ]
    return d


def _get_project(db: Session, project_id: str) -> Project:
    p = db.query(Project).filter(Project.id == parse_uuid(project_id, "project id")).first()
    if not p:
        raise HTTPException(status_code=404, detail="Project not found")
    return p


def _replace_employees(db: Session, project: Project, employee_ids) -> None:
    ids = {parse_uuid(e, "employee id") for e in employee_ids or []}
    if ids and db.query(User).filter(User.id.in_(ids)).count() != len(ids):
        raise HTTPException(status_code=400, detail="Unknown employee in employee_ids")
    db.query(ProjectEmployee).filter(ProjectEmployee.project_id == project.id).delete(synchronize_session=False)
    for uid in ids:
        db.add(ProjectEmployee(project_id=project.id, user_id=uid))


def _apply_fields(project: Project, payload: dict) -> None:
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Project name is required")
        project.name = name
    if "description" in payload:
        project.description = payload.get("description")
    if "status" in payload:
        if payload["status"] not in PROJECT_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid project status")
        project.status = payload["status"]
    if "budget" in payload:
        project.budget = payload.get("budget")
    if "start_date" in payload:
        project.start_date = _parse_date(payload.get("start_date"))
    if "end_date" in payload:
        project.end_date = _parse_date(payload.get("end_date"))


@router.get("")
def list_projects(status: Optional[str] = None, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    q = db.query(Project)
    if not allow(me, "manage_projects"):
        q = q.join(ProjectEmployee, ProjectEmployee.project_id == Project.id).filter(ProjectEmployee.user_id == me.id)
    if status:
        q = q.filter(Project.status == status)
    return [_project_to_dict(db, p) for p in q.order_by(Project.created_at.desc()).all()]


@router.get("/companies/list")
def companies_for_projects(db: Session = Depends(get_db), _=Depends(require_permissions("manage_projects"))):
    return [{"id": str(c.id), "name": c.name} for c in db.query(Company).order_by(Company.name).all()]


@router.get("/employees/list")
def employees_for_projects(db: Session = Depends(get_db), _=Depends(require_permissions("manage_projects"))):
    rows = (
        db.query(User)
        .filter(User.role == "employee", User.is_active.is_(True))
        .order_by(User.first_name, User.last_name)
        .all()
    )
    return [{"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email} for u in rows]


@router.get("/{project_id}")
def get_project(project_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    p = _get_project(db, project_id)
    if not can_view_project(me, _member_ids(db, p.id)):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return _project_to_dict(db, p, with_employees=True)


@router.post("", status_code=201)
def create_project(payload: dict, db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_projects"))):
    if not (payload.get("name") or "").strip() or not payload.get("company_id"):
        raise HTTPException(status_code=400, detail="Project name and company are required")
    company_id = parse_uuid(payload["company_id"], "company id")
    if not db.query(Company).filter(Company.id == company_id).first():
        raise HTTPException(status_code=404, detail="Company not found")
    p = Project(company_id=company_id, created_by=me.id, name="", status="active")
    _apply_fields(p, payload)
    db.add(p)
    db.flush()
    _replace_employees(db, p, payload.get("employee_ids"))
    db.commit()
    db.refresh(p)
    return _project_to_dict(db, p, with_employees=True)


@router.put("/{project_id}")
def update_project(project_id: str, payload: dict, db: Session = Depends(get_db), _=Depends(require_permissions("manage_projects"))):
    p = _get_project(db, project_id)
    _apply_fields(p, payload)
    if "company_id" in payload and payload["company_id"]:
        company_id = parse_uuid(payload["company_id"], "company id")
        if not db.query(Company).filter(Company.id == company_id).first():
            raise HTTPException(status_code=404, detail="Company not found")
        p.company_id = company_id
    if payload.get("employee_ids") is not None:
        _replace_employees(db, p, payload["employee_ids"])
    db.commit()
    db.refresh(p)
    return _project_to_dict(db, p, with_employees=True)


@router.delete("/{project_id}")
def delete_project(project_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("manage_projects"))):
    p = _get_project(db, project_id)
    if db.query(Task).filter(Task.project_id == p.id).count():
        raise HTTPException(status_code=400, detail="Cannot delete a project that has tasks")
    db.delete(p)
    db.commit()
    return {"message": "Project deleted"}
