from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_permissions
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import Team, TeamMember, User


router = APIRouter(prefix="/api/teams", tags=["teams"])

TEAM_ROLES = {"leader", "member"}


def _team_to_dict(db: Session, t: Team, member_count: Optional[int] = None) -> dict:
    creator = db.query(User).filter(User.id == t.created_by).first() if t.created_by else None
    d = {
        "id": str(t.id),
        "name": t.name,
        "description": t.description,
        "leader_id": str(t.leader_id) if t.leader_id else None,
        "created_by": str(t.created_by) if t.created_by else None,
        "created_by_first_name": creator.first_name if creator else None,
        "created_by_last_name": creator.last_name if creator else None,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }
    if member_count is not None:
        d["member_count"] = member_count
    return d


def _get_team(db: Session, team_id: str) -> Team:
    t = db.query(Team).filter(Team.id == parse_uuid(team_id, "team id")).first()
    if not t:
        raise HTTPException(status_code=404, detail="Team not found")
    return t


@router.get("")
def list_teams(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    counts = dict(
        db.query(TeamMember.team_id, func.count(TeamMember.id)).group_by(TeamMember.team_id).all()
    )
    teams = db.query(Team).order_by(Team.created_at.desc()).all()
    return [_team_to_dict(db, t, int(counts.get(t.id, 0))) for t in teams]


@router.get("/list/simple")
def list_simple(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return [{"id": str(t.id), "name": t.name} for t in db.query(Team).order_by(Team.name).all()]


@router.get("/{team_id}")
def get_team(team_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    t = _get_team(db, team_id)
    rows = (
        db.query(TeamMember, User)
        .join(User, User.id == TeamMember.user_id)
        .filter(TeamMember.team_id == t.id)
        .order_by(TeamMember.role.asc(), User.first_name)
        .all()
    )
    data = _team_to_dict(db, t, len(rows))
    data["members"] = [
        {
            "user_id": str(u.id),
            "first_name": u.first_name,
            "last_name": u.last_name,
            "email": u.email,
            "user_role": u.role,
            "role": m.role,
            "joined_at": m.joined_at.isoformat() if m.joined_at else None,
        }
        for m, u in rows
    ]
    return data


@router.post("", status_code=201)
def create_team(payload: dict, db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_users"))):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Team name is required")
    leader_id = parse_uuid(payload["leader_id"], "leader id") if payload.get("leader_id") else None
    member_ids = {parse_uuid(x, "member id") for x in (payload.get("member_ids") or []) if x}
    if leader_id:
        member_ids.add(leader_id)
    if member_ids and db.query(User.id).filter(User.id.in_(member_ids)).count() != len(member_ids):
        raise HTTPException(status_code=400, detail="Unknown team member")
    try:
        t = Team(name=name, description=payload.get("description"), leader_id=leader_id, created_by=me.id)
        db.add(t)
        db.flush()
        db.add_all([
            TeamMember(team_id=t.id, user_id=uid, role="leader" if uid == leader_id else "member")
            for uid in member_ids
        ])
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(t)
    return _team_to_dict(db, t, len(member_ids))


@router.put("/{team_id}")
def update_team(team_id: str, payload: dict, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_users"))):
    t = _get_team(db, team_id)
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Team name is required")
        t.name = name
    if "description" in payload:
        t.description = payload.get("description")
    if "leader_id" in payload:
        t.leader_id = parse_uuid(payload["leader_id"], "leader id") if payload.get("leader_id") else None
    db.commit()
    db.refresh(t)
    return _team_to_dict(db, t)


@router.delete("/{team_id}")
def delete_team(team_id: str, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_users"))):
    t = _get_team(db, team_id)
    db.delete(t)
    db.commit()
    return {"message": "Team deleted successfully"}


@router.post("/{team_id}/members")
def add_member(team_id: str, payload: dict, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_users"))):
    t = _get_team(db, team_id)
    if not payload.get("user_id"):
        raise HTTPException(status_code=400, detail="User ID is required")
    uid = parse_uuid(payload["user_id"], "user id")
    if not db.query(User).filter(User.id == uid).first():
        raise HTTPException(status_code=404, detail="User not found")
    role = payload.get("role") or "member"
    if role not in TEAM_ROLES:
        raise HTTPException(status_code=400, detail="Invalid team role")
    # Re-adding an existing member updates the role
    m = db.query(TeamMember).filter(TeamMember.team_id == t.id, TeamMember.user_id == uid).first()
    if m is None:
        db.add(TeamMember(team_id=t.id, user_id=uid, role=role))
    else:
        m.role = role
    db.commit()
    return {"message": "Member added to team successfully"}


@router.delete("/{team_id}/members/{user_id}")
def remove_member(team_id: str, user_id: str, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_users"))):
    t = _get_team(db, team_id)
    uid = parse_uuid(user_id, "user id")
    deleted = db.query(TeamMember).filter(TeamMember.team_id == t.id, TeamMember.user_id == uid).delete(synchronize_session=False)
    if not deleted:
        raise HTTPException(status_code=404, detail="User is not a member of this team")
    if t.leader_id == uid:
        t.leader_id = None
    db.commit()
    return {"message": "Member removed from team successfully"}
