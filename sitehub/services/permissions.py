"""
Project membership checks for field actions.
"""
from typing import Any, List, Optional
from sqlalchemy.orm import Session

from ..models.models import Project, ProjectMember, LabourRequest, LabourRequestParticipant


OWNER = "OWNER"
MANAGER = "MANAGER"
SITE_ENGINEER = "SITE_ENGINEER"
PURCHASE_MANAGER = "PURCHASE_MANAGER"
QA_ENGINEER = "QA_ENGINEER"
LABOUR = "LABOUR"

ROLES = (OWNER, MANAGER, SITE_ENGINEER, PURCHASE_MANAGER, QA_ENGINEER, LABOUR)


def get_active_membership(db: Session, project_id: Any, user_id: Any, role: str) -> Optional[ProjectMember]:
    return (
        db.query(ProjectMember)
        .filter(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
            ProjectMember.role == role,
            ProjectMember.status == "ACTIVE",
        )
        .first()
    )


def is_active_member(db: Session, project_id: Any, user_id: Any, role: str) -> bool:
    """Check if user holds an ACTIVE assignment with the given role on the project."""
    return get_active_membership(db, project_id, user_id, role) is not None


def has_active_role(db: Session, project_id: Any, user_id: Any, roles: tuple) -> bool:
    row = (
        db.query(ProjectMember.id)
        .filter(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
            ProjectMember.role.in_(roles),
            ProjectMember.status == "ACTIVE",
        )
        .first()
    )
    return row is not None


def is_approved_labour(db: Session, project_id: Any, labour_id: Any) -> bool:
    """
    Check if a labourer has been approved onto any labour request of the project.
    """
    row = (
        db.query(LabourRequestParticipant.id)
        .join(LabourRequest, LabourRequest.id == LabourRequestParticipant.labour_request_id)
        .filter(
            LabourRequest.project_id == project_id,
            LabourRequestParticipant.labour_id == labour_id,
            LabourRequestParticipant.status == "APPROVED",
        )
        .first()
    )
    return row is not None


def is_project_creator(project: Project, user_id: Any) -> bool:
    return project.created_by is not None and str(project.created_by) == str(user_id)


def visible_project_ids(db: Session, user_id: Any) -> List[Any]:
    """
    Projects whose audit trail the user may read: the ones they created plus
    the ones they hold an ACTIVE assignment on.
    """
    created = [r.id for r in db.query(Project.id).filter(Project.created_by == user_id).all()]
    assigned = [
        r.project_id
        for r in db.query(ProjectMember.project_id)
        .filter(ProjectMember.user_id == user_id, ProjectMember.status == "ACTIVE")
        .all()
    ]
    return list(dict.fromkeys(created + assigned))
