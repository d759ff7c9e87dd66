# entitlements.py
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ErrorKind, Result
from models import Course, Purchase, PurchaseStatus, User, UserCourse

logger = logging.getLogger(__name__)


class EntitlementStore:
    """Single writer of the user <-> course access relation.

    Purchase-driven grants (webhooks) and administrative grants both go
    through here. The unique constraint on ``user_courses(user_id,
    course_id)`` is the serialization point for concurrent grants.
    """

    def __init__(self, db: Session):
        self.db = db

    def _find(self, user_id: int, course_id: int) -> UserCourse | None:
        return self.db.scalar(
            select(UserCourse).where(UserCourse.user_id == user_id, UserCourse.course_id == course_id)
        )

    def has(self, user_id: int, course_id: int) -> bool:
        return self._find(user_id, course_id) is not None

    def grant(self, user_id: int, course_id: int) -> Result[UserCourse]:
        if self.db.get(User, user_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Usuário não encontrado")
        if self.db.get(Course, course_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Curso não encontrado")

        existing = self._find(user_id, course_id)
        if existing:
            return Result.success(existing, "Curso já está associado ao usuário")

        link = UserCourse(user_id=user_id, course_id=course_id)
        self.db.add(link)
        try:
            self.db.commit()
        except IntegrityError:
            # another request inserted the same pair first
            self.db.rollback()
            existing = self._find(user_id, course_id)
            if existing is None:
                raise
            logger.info("concurrent grant user=%s course=%s resolved to existing row", user_id, course_id)
            return Result.success(existing, "Curso já está associado ao usuário")
        self.db.refresh(link)
        logger.info("granted course=%s to user=%s", course_id, user_id)
        return Result.success(link, "Curso adicionado ao usuário com sucesso!")

    def revoke(self, user_id: int, course_id: int) -> Result[None]:
        link = self._find(user_id, course_id)
        if link is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Curso não está associado ao usuário")
        self.db.delete(link)
        self.db.commit()
        logger.info("revoked course=%s from user=%s", course_id, user_id)
        return Result.success(None, "Curso removido do usuário com sucesso!")

    def courses_for(self, user_id: int) -> list[Course]:
        return list(
            self.db.scalars(
                select(Course).join(UserCourse, UserCourse.course_id == Course.id).where(UserCourse.user_id == user_id)
            )
        )

    def find_purchase(self, user_id: int, course_id: int) -> Purchase | None:
        return self.db.scalar(
            select(Purchase).where(Purchase.user_id == user_id, Purchase.course_id == course_id)
        )

    def record_purchase(
        self, user_id: int, course_id: int, status: PurchaseStatus, payment_ref: str | None = None
    ) -> Purchase:
        """Upsert the single purchase record of the pair. Approved is terminal."""
        purchase = self.find_purchase(user_id, course_id)
        if purchase is None:
            purchase = Purchase(user_id=user_id, course_id=course_id, status=status, payment_ref=payment_ref)
            self.db.add(purchase)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                purchase = self.find_purchase(user_id, course_id)
                if purchase is None:
                    raise
            else:
                return purchase

        if purchase.status == PurchaseStatus.APPROVED and status != PurchaseStatus.APPROVED:
            logger.info("purchase user=%s course=%s already approved, ignoring %s", user_id, course_id, status.value)
            return purchase
        purchase.status = status
        if payment_ref:
            purchase.payment_ref = payment_ref
        self.db.commit()
        return purchase
