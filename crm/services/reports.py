"""
Reporting aggregates.

Costs are derived at read time from closed timesheet rows
(`duration / 60 * hourly_rate`); nothing here is stored.
"""
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Query, Session

from ..models.models import Company, Project, Task, Timesheet, User
from .timesheets import cost_of


def _hours(minutes: float) -> float:
    return round((minutes or 0) / 60, 2)


def closed_timesheets(
    db: Session,
    start: Optional[date] = None,
    end: Optional[date] = None,
    user_id=None,
    project_id=None,
    company_id=None,
    task_id=None,
) -> Query:
    q = db.query(Timesheet).filter(Timesheet.duration.isnot(None))
    if task_id:
        q = q.filter(Timesheet.task_id == task_id)
    if start:
        q = q.filter(Timesheet.start_time >= datetime.combine(start, time.min))
    if end:
        q = q.filter(Timesheet.start_time < datetime.combine(end + timedelta(days=1), time.min))
    if user_id:
        q = q.filter(Timesheet.user_id == user_id)
    if project_id or company_id:
        q = q.join(Task, Task.id == Timesheet.task_id)
        if project_id:
            q = q.filter(Task.project_id == project_id)
        if company_id:
            q = q.join(Project, Project.id == Task.project_id).filter(Project.company_id == company_id)
    return q


def time_tracking(rows: List[Timesheet]) -> dict:
    """Group closed entries by (task, user) with per-entry detail and grand totals."""
    groups: "OrderedDict[tuple, dict]" = OrderedDict()
    for ts in sorted(rows, key=lambda r: r.start_time, reverse=True):
        key = (ts.task_id, ts.user_id)
        g = groups.get(key)
        if g is None:
            task, user = ts.task, ts.user
            project = task.project if task else None
            g = groups[key] = {
                "task_id": str(ts.task_id),
                "task_title": task.title if task else None,
                "task_status": task.status if task else None,
                "project_name": project.name if project else None,
                "company_name": project.company.name if project and project.company else None,
                "user_id": str(ts.user_id),
                "first_name": user.first_name if user else None,
                "last_name": user.last_name if user else None,
                "hourly_rate": float(user.hourly_rate or 0) if user else 0.0,
                "entry_count": 0,
                "total_duration": 0,
                "total_cost": 0.0,
                "first_entry": None,
                "last_entry": ts.start_time.isoformat(),
                "timesheet_details": [],
            }
        g["entry_count"] += 1
        g["total_duration"] += ts.duration or 0
        g["first_entry"] = ts.start_time.isoformat()
        g["timesheet_details"].append({
            "id": str(ts.id),
            "start_time": ts.start_time.isoformat(),
            "end_time": ts.end_time.isoformat() if ts.end_time else None,
            "duration": ts.duration,
            "description": ts.description,
            "cost": cost_of(ts.duration, g["hourly_rate"]),
        })
    tasks = list(groups.values())
    for g in tasks:
        g["total_cost"] = cost_of(g["total_duration"], g["hourly_rate"])
    total_minutes = sum(g["total_duration"] for g in tasks)
    return {
        "aggregatedTasks": tasks,
        "summary": {
            "totalHours": _hours(total_minutes),
            "totalCost": round(sum(g["total_cost"] for g in tasks), 2),
            "totalEntries": sum(g["entry_count"] for g in tasks),
            "totalTasks": len(tasks),
        },
    }


def project_progress(db: Session) -> List[dict]:
    out = []
    for p in db.query(Project).filter(Project.status == "active").order_by(Project.name).all():
        tasks = db.query(Task).filter(Task.project_id == p.id).all()
        counts = {s: sum(1 for t in tasks if t.status == s) for s in ("completed", "in_progress", "pending")}
        rows = closed_timesheets(db, project_id=p.id).all()
        minutes = sum(ts.duration or 0 for ts in rows)
        cost = sum(cost_of(ts.duration, ts.user.hourly_rate if ts.user else 0) for ts in rows)
        out.append({
            "id": str(p.id),
            "name": p.name,
            "description": p.description,
            "status": p.status,
            "start_date": p.start_date.isoformat() if p.start_date else None,
            "end_date": p.end_date.isoformat() if p.end_date else None,
            "company_name": p.company.name if p.company else None,
            "total_tasks": len(tasks),
            "completed_tasks": counts["completed"],
            "in_progress_tasks": counts["in_progress"],
            "pending_tasks": counts["pending"],
            "progress": round(counts["completed"] / len(tasks) * 100) if tasks else 0,
            "total_minutes": minutes,
            "total_hours": _hours(minutes),
            "total_cost": round(cost, 2),
        })
    return out


def user_productivity(db: Session, start: Optional[date] = None, end: Optional[date] = None) -> List[dict]:
    out = []
    for u in db.query(User).filter(User.is_active.is_(True)).all():
        rows = closed_timesheets(db, start, end, user_id=u.id).all()
        minutes = sum(ts.duration or 0 for ts in rows)
        assigned = db.query(Task).filter(Task.assigned_to == u.id).count()
        completed = db.query(Task).filter(Task.assigned_to == u.id, Task.status == "completed").count()
        days = len({ts.start_time.date() for ts in rows})
        out.append({
            "id": str(u.id),
            "first_name": u.first_name,
            "last_name": u.last_name,
            "email": u.email,
            "hourly_rate": float(u.hourly_rate or 0),
            "timesheet_entries": len(rows),
            "total_minutes": minutes,
            "total_hours": _hours(minutes),
            "total_revenue": cost_of(minutes, u.hourly_rate),
            "avg_hours_per_day": round(minutes / 60 / days, 2) if days else 0,
            "assigned_tasks": assigned,
            "completed_tasks": completed,
            "completion_rate": round(completed / assigned * 100) if assigned else 0,
        })
    out.sort(key=lambda r: r["total_minutes"], reverse=True)
    return out


def financial_summary(db: Session, year: int, month: Optional[int] = None) -> dict:
    """Twelve months of labour cost for the year, plus cost per project for the year or one month."""
    rows = closed_timesheets(db, date(year, 1, 1), date(year, 12, 31)).all()
    months: Dict[int, Dict[str, float]] = {m: {"revenue": 0.0, "minutes": 0} for m in range(1, 13)}
    projects: Dict[str, dict] = {}
    for ts in rows:
        rate = ts.user.hourly_rate if ts.user else 0
        cost = cost_of(ts.duration, rate)
        bucket = months[ts.start_time.month]
        bucket["revenue"] += cost
        bucket["minutes"] += ts.duration or 0
        if month and ts.start_time.month != month:
            continue
        project = ts.task.project if ts.task else None
        if project is None:
            continue
        p = projects.setdefault(str(project.id), {
            "project_name": project.name,
            "company_name": project.company.name if project.company else None,
            "total_cost": 0.0,
            "total_minutes": 0,
        })
        p["total_cost"] += cost
        p["total_minutes"] += ts.duration or 0

    monthly = [
        {"month": f"{m:02d}", "revenue": round(v["revenue"], 2), "total_hours": _hours(v["minutes"])}
        for m, v in months.items()
    ]
    project_costs = sorted(
        (
            {**p, "total_cost": round(p["total_cost"], 2), "total_hours": _hours(p["total_minutes"])}
            for p in projects.values()
            if p["total_cost"] > 0
        ),
        key=lambda p: p["total_cost"],
        reverse=True,
    )
    total_revenue = round(sum(m["revenue"] for m in monthly), 2)
    total_hours = round(sum(m["total_hours"] for m in monthly), 2)
    return {
        "year": year,
        "monthlyRevenue": monthly,
        "projectCosts": project_costs,
        "summary": {
            "totalRevenue": total_revenue,
            "totalHours": total_hours,
            "avgHourlyRate": round(total_revenue / total_hours, 2) if total_hours else 0,
        },
    }


def company_summary(db: Session, company: Company, start: Optional[date] = None, end: Optional[date] = None) -> dict:
    report = time_tracking(closed_timesheets(db, start, end, company_id=company.id).all())
    projects = db.query(Project).filter(Project.company_id == company.id).order_by(Project.name).all()
    report["company"] = {"id": str(company.id), "name": company.name}
    report["projects"] = [{"id": str(p.id), "name": p.name, "status": p.status} for p in projects]
    return report
