from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List
from .. import models, schemas
from ..dependencies import get_db, require_role
from ..services.security import generate_voting_id, is_valid_voting_id, normalize_voting_id

router = APIRouter(prefix="/students", tags=["Students"])

VOTING_ID_ATTEMPTS = 5


def _voting_id_taken(db: Session, voting_id: str) -> bool:
    return db.query(models.Student.id).filter(models.Student.voting_id == voting_id).first() is not None


def _new_voting_id(db: Session, roll_number) -> str:
    for _ in range(VOTING_ID_ATTEMPTS):
        voting_id = generate_voting_id(roll_number)
        if not _voting_id_taken(db, voting_id):
            return voting_id
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Could not generate unique voting ID after {VOTING_ID_ATTEMPTS} attempts",
    )


@router.post("/", response_model=schemas.StudentResponse, status_code=status.HTTP_201_CREATED)
def create_student(
    student_in: schemas.StudentCreate,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    """Add a student to the voting roll, a voting ID is generated when none is given"""
    if student_in.voting_id and student_in.voting_id.strip():
        voting_id = normalize_voting_id(student_in.voting_id)
        if not is_valid_voting_id(voting_id):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid voting ID format")
        if _voting_id_taken(db, voting_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Voting ID already registered")
    else:
        voting_id = _new_voting_id(db, student_in.roll_number)

    student = models.Student(
        name=student_in.name,
        voting_id=voting_id,
        roll_number=student_in.roll_number,
        department=student_in.department,
    )
    db.add(student)
    db.commit()
    db.refresh(student)
    return student


@router.get("/", response_model=List[schemas.StudentResponse])
def list_students(
    active_only: bool = False,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    query = db.query(models.Student)
    if active_only:
        query = query.filter(models.Student.is_active.is_(True))
    return query.order_by(models.Student.name).all()


@router.post("/{student_id}/deactivate", response_model=schemas.StudentResponse)
def deactivate_student(
    student_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    student = db.query(models.Student).filter(models.Student.id == student_id).first()
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    student.is_active = False
    db.commit()
    db.refresh(student)
    return student
