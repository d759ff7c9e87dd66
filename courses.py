# courses.py
import logging

from fastapi import APIRouter, Depends, status
from fastapi.exceptions import HTTPException
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from auth import get_current_user, require_roles
from db import get_db
from entitlements import EntitlementStore
from errors import ErrorKind, Result
from models import Course, Question, Role
from schemas import (
    CourseCreate,
    CourseOut,
    CourseUpdate,
    CourseWithSubcoursesCreate,
    EntitlementIn,
    EntitlementOut,
    QuestionCreate,
    QuestionOut,
    QuestionUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter()

staff_only = [Depends(require_roles(Role.ADMIN, Role.PROFESSOR))]
admin_only = [Depends(require_roles(Role.ADMIN))]


def get_course(db: Session, course_id: int) -> Result[Course]:
    course = db.get(Course, course_id, options=[selectinload(Course.sub_courses)])
    if not course:
        return Result.failure(ErrorKind.NOT_FOUND, "Curso não encontrado")
    return Result.success(course)


def create_course_tree(db: Session, data: CourseWithSubcoursesCreate) -> Result[Course]:
    course = Course(**data.model_dump(exclude={"sub_courses"}))
    course.sub_courses = [Course(**sub.model_dump()) for sub in data.sub_courses]
    db.add(course)
    db.commit()
    db.refresh(course)
    logger.info("course %s created with %d sub-courses", course.id, len(course.sub_courses))
    return Result.success(course, "Curso e subcursos criados com sucesso")


def delete_course(db: Session, course_id: int) -> Result[None]:
    """Delete a course, its sub-course tree, questions and access rows."""
    course = db.get(Course, course_id)
    if not course:
        return Result.failure(ErrorKind.NOT_FOUND, "Curso não encontrado")
    db.delete(course)
    db.commit()
    logger.info("course %s deleted", course_id)
    return Result.success(None, "Curso deletado com sucesso")


# === COURSES ===
@router.post("/curso", status_code=status.HTTP_201_CREATED, response_model=CourseOut, dependencies=staff_only)
def create_course(payload: CourseCreate, db: Session = Depends(get_db)):
    course = Course(**payload.model_dump())
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


@router.post("/courses", status_code=status.HTTP_201_CREATED, dependencies=staff_only)
def create_course_with_subcourses(payload: CourseWithSubcoursesCreate, db: Session = Depends(get_db)):
    result = create_course_tree(db, payload)
    course = result.unwrap()
    return {
        "message": result.message,
        "course": CourseOut.model_validate(course),
        "subCourses": {"count": len(course.sub_courses)},
    }


@router.get("/cursos", response_model=list[CourseOut])
def list_courses(db: Session = Depends(get_db)):
    stmt = (
        select(Course)
        .where(Course.parent_id.is_(None))
        .options(selectinload(Course.sub_courses))
        .order_by(Course.created_at.desc(), Course.id.desc())
    )
    return list(db.scalars(stmt))


@router.get("/curso/{course_id}", response_model=CourseOut)
def course_detail(course_id: int, db: Session = Depends(get_db)):
    return get_course(db, course_id).unwrap()


@router.put("/curso/{course_id}", response_model=CourseOut, dependencies=staff_only)
def update_course(course_id: int, payload: CourseUpdate, db: Session = Depends(get_db)):
    course = get_course(db, course_id).unwrap()
    for key, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(course, key, value)
    db.commit()
    db.refresh(course)
    return course


@router.delete("/curso/{course_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=staff_only)
def remove_course(course_id: int, db: Session = Depends(get_db)):
    delete_course(db, course_id).unwrap()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# === ADMIN GRANTS ===
@router.post("/adicionarCurso", response_model=EntitlementOut, dependencies=admin_only)
def add_course_to_user(payload: EntitlementIn, db: Session = Depends(get_db)):
    return EntitlementStore(db).grant(payload.user_id, payload.course_id).unwrap()


@router.post("/removerCurso", dependencies=admin_only)
def remove_course_from_user(payload: EntitlementIn, db: Session = Depends(get_db)):
    result = EntitlementStore(db).revoke(payload.user_id, payload.course_id)
    result.unwrap()
    return {"message": result.message}


# === QUESTIONS ===
@router.post("/pergunta", response_model=QuestionOut, dependencies=staff_only)
def add_question(payload: QuestionCreate, db: Session = Depends(get_db)):
    get_course(db, payload.course_id).unwrap()
    if payload.answer not in payload.options:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "A resposta deve ser uma das opções")
    question = Question(course_id=payload.course_id, title=payload.title, options=payload.options, answer=payload.answer)
    db.add(question)
    db.commit()
    db.refresh(question)
    return question


@router.get("/perguntas/{course_id}", response_model=list[QuestionOut], dependencies=[Depends(get_current_user)])
def list_questions(course_id: int, db: Session = Depends(get_db)):
    get_course(db, course_id).unwrap()
    return list(db.scalars(select(Question).where(Question.course_id == course_id).order_by(Question.id)))


@router.put("/pergunta/{question_id}", response_model=QuestionOut, dependencies=staff_only)
def update_question(question_id: int, payload: QuestionUpdate, db: Session = Depends(get_db)):
    question = db.get(Question, question_id)
    if not question:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Pergunta não encontrada")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    options = changes.get("options", question.options)
    answer = changes.get("answer", question.answer)
    if answer not in options:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "A resposta deve ser uma das opções")
    for key, value in changes.items():
        setattr(question, key, value)
    db.commit()
    db.refresh(question)
    return question


@router.delete("/pergunta/{question_id}", dependencies=staff_only)
def delete_question(question_id: int, db: Session = Depends(get_db)):
    question = db.get(Question, question_id)
    if not question:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Pergunta não encontrada")
    db.delete(question)
    db.commit()
    return {"message": "Pergunta deletada com sucesso!"}
