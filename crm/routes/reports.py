from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import require_permissions
from ..db import get_db, utcnow
from ..errors import parse_uuid
from ..models.models import Company, Project, User
from ..services import reports


router = APIRouter(prefix="/api/reports", tags=["reports"])


def _day(value: Optional[str], label: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


@router.get("/time-tracking")
def time_tracking(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    rows = reports.closed_timesheets(
        db,
        _day(start_date, "start_date"),
        _day(end_date, "end_date"),
        user_id=parse_uuid(user_id, "user id") if user_id else None,
        project_id=parse_uuid(project_id, "project id") if project_id else None,
    ).all()
    return reports.time_tracking(rows)


@router.get("/project-progress")
def project_progress(db: Session = Depends(get_db), _: User = Depends(require_permissions("view_reports"))):
    return reports.project_progress(db)


@router.get("/user-productivity")
def user_productivity(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    return reports.user_productivity(db, _day(start_date, "start_date"), _day(end_date, "end_date"))


@router.get("/financial-summary")
def financial_summary(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Invalid month")
    return reports.financial_summary(db, year or utcnow().year, month)


@router.get("/users/list")
def users_list(db: Session = Depends(get_db), _: User = Depends(require_permissions("view_reports"))):
    rows = db.query(User).filter(User.is_active.is_(True)).order_by(User.first_name).all()
    return [{"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name} for u in rows]


@router.get("/projects/list")
def projects_list(db: Session = Depends(get_db), _: User = Depends(require_permissions("view_reports"))):
    rows = db.query(Project).order_by(Project.name).all()
    return [{"id": str(p.id), "name": p.name, "company_name": p.company.name if p.company else None} for p in rows]


@router.get("/companies/list")
def companies_list(db: Session = Depends(get_db), _: User = Depends(require_permissions("view_reports"))):
    return [{"id": str(c.id), "name": c.name} for c in db.query(Company).order_by(Company.name).all()]


@router.get("/user/{user_id}")
def user_report(
    user_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    u = db.query(User).filter(User.id == parse_uuid(user_id, "user id")).first()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    rows = reports.closed_timesheets(db, _day(start_date, "start_date"), _day(end_date, "end_date"), user_id=u.id).all()
    report = reports.time_tracking(rows)
    report["user"] = {"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "hourly_rate": float(u.hourly_rate or 0)}
    return report


@router.get("/project/{project_id}")
def project_report(
    project_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    p = db.query(Project).filter(Project.id == parse_uuid(project_id, "project id")).first()
    if not p:
        raise HTTPException(status_code=404, detail="Project not found")
    rows = reports.closed_timesheets(db, _day(start_date, "start_date"), _day(end_date, "end_date"), project_id=p.id).all()
    report = reports.time_tracking(rows)
    report["project"] = {"id": str(p.id), "name": p.name, "status": p.status, "company_name": p.company.name if p.company else None}
    return report


@router.get("/company/{company_id}")
def company_report(
    company_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("view_reports")),
):
    c = db.query(Company).filter(Company.id == parse_uuid(company_id, "company id")).first()
    if not c:
        raise HTTPException(status_code=404, detail="Company not found")
    return reports.company_summary(db, c, _day(start_date, "start_date"), _day(end_date, "end_date"))
