"""
Check-in / check-out decisions for members and staff.

Business rejections come back as result dicts with ``valid``/``success``
false; only transport or database failures raise.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from .models import (
    Employee,
    Member,
    MemberAttendance,
    Membership,
    MembershipFreeze,
    MembershipPlan,
    StaffAttendance,
    as_dict,
    utcnow,
)

logger = logging.getLogger(__name__)

REJECTION_MESSAGES = {
    "not_found": "Member not found",
    "no_membership": "No active membership at this branch",
    "frozen": "Membership is frozen",
    "expired": "Membership has expired",
    "already_checked_in": "Member is already checked in",
}


def _reject(reason: str) -> Dict[str, Any]:
    return {"valid": False, "success": False, "reason": reason, "message": REJECTION_MESSAGES[reason]}


def _duration_minutes(check_in: datetime, check_out: datetime) -> int:
    return round((check_out - check_in).total_seconds() / 60)


def _today_start() -> datetime:
    now = utcnow()
    return datetime(now.year, now.month, now.day)


class AttendanceValidator:
    """Membership validity and open-visit bookkeeping for members."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _is_frozen(db, membership: Membership, today: date) -> bool:
        if membership.status == "frozen":
            return True
        return db.query(MembershipFreeze.id).filter(
            MembershipFreeze.membership_id == membership.id,
            MembershipFreeze.start_date <= today,
            MembershipFreeze.end_date >= today,
        ).first() is not None

    def _evaluate(self, db, member_id: str, branch_id: str, today: date) -> Dict[str, Any]:
        member = db.query(Member).filter(Member.id == member_id).first()
        if not member:
            return _reject("not_found")

        memberships = db.query(Membership).filter(
            Membership.member_id == member_id,
            Membership.branch_id == branch_id,
            Membership.status.notin_(("cancelled",)),
            Membership.start_date <= today,
        ).order_by(Membership.end_date.desc()).all()

        if not memberships:
            return _reject("no_membership")

        current = [m for m in memberships if m.end_date >= today and m.status != "expired"]
        if not current:
            return _reject("expired")

        usable = [m for m in current if not self._is_frozen(db, m, today)]
        if not usable:
            return _reject("frozen")

        open_visit = db.query(MemberAttendance.id).filter(
            MemberAttendance.member_id == member_id,
            MemberAttendance.check_out.is_(None),
        ).first()
        if open_visit:
            return _reject("already_checked_in")

        membership = usable[0]
        plan = db.query(MembershipPlan).filter(MembershipPlan.id == membership.plan_id).first()
        return {
            "valid": True,
            "membership_id": membership.id,
            "plan_name": plan.name if plan else None,
            "days_remaining": (membership.end_date - today).days,
            "message": "Membership valid",
        }

    def validate_check_in(self, member_id: str, branch_id: str) -> Dict[str, Any]:
        """Decide whether the member may check in, without writing anything."""
        db = self.session_factory()
        try:
            result = self._evaluate(db, member_id, branch_id, utcnow().date())
        finally:
            db.close()
        result.pop("membership_id", None)
        return result

    def check_in(self, member_id: str, branch_id: str, method: str = "manual") -> Dict[str, Any]:
        """
        Validate and open a visit.

        The open-visit unique index backs the check: a concurrent check-in
        that loses the race is reported as already_checked_in.
        """
        db = self.session_factory()
        try:
            result = self._evaluate(db, member_id, branch_id, utcnow().date())
            if not result["valid"]:
                logger.info("Check-in rejected for member %s: %s", member_id, result["reason"])
                return result

            visit = MemberAttendance(
                member_id=member_id,
                branch_id=branch_id,
                membership_id=result["membership_id"],
                check_in=utcnow(),
                check_in_method=method,
            )
            db.add(visit)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("Concurrent check-in detected for member %s", member_id)
                return _reject("already_checked_in")

            db.refresh(visit)
            return {
                "valid": True,
                "success": True,
                "attendance_id": visit.id,
                "message": "Check-in successful",
                "plan_name": result["plan_name"],
                "days_remaining": result["days_remaining"],
                "check_in_time": visit.check_in.isoformat(),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_out(self, member_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            visit = db.query(MemberAttendance).filter(
                MemberAttendance.member_id == member_id,
                MemberAttendance.check_out.is_(None),
            ).order_by(MemberAttendance.check_in.desc()).first()
            if not visit:
                return {"success": False, "message": "No active check-in found"}

            visit.check_out = utcnow()
            db.commit()
            db.refresh(visit)
            return {
                "success": True,
                "attendance_id": visit.id,
                "message": "Check-out successful",
                "check_in": visit.check_in.isoformat(),
                "check_out": visit.check_out.isoformat(),
                "duration_minutes": _duration_minutes(visit.check_in, visit.check_out),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_today_attendance(self, branch_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = db.query(MemberAttendance, Member)\
                .join(Member, Member.id == MemberAttendance.member_id)\
                .filter(MemberAttendance.branch_id == branch_id,
                        MemberAttendance.check_in >= _today_start())\
                .order_by(MemberAttendance.check_in.desc())\
                .all()
            return [
                {**as_dict(visit), "member": {"member_code": m.member_code, "full_name": m.full_name}}
                for visit, m in rows
            ]
        finally:
            db.close()

    def get_checked_in_members(self, branch_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = db.query(MemberAttendance, Member)\
                .join(Member, Member.id == MemberAttendance.member_id)\
                .filter(MemberAttendance.branch_id == branch_id,
                        MemberAttendance.check_out.is_(None))\
                .order_by(MemberAttendance.check_in.desc())\
                .all()
            return [
                {**as_dict(visit), "member": {"member_code": m.member_code, "full_name": m.full_name}}
                for visit, m in rows
            ]
        finally:
            db.close()

    def get_member_attendance(self, member_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = db.query(MemberAttendance)\
                .filter(MemberAttendance.member_id == member_id)\
                .order_by(MemberAttendance.check_in.desc())\
                .limit(limit)\
                .all()
            return [as_dict(r) for r in rows]
        finally:
            db.close()


class StaffAttendanceService:
    """Open/close staff shifts; a second open shift is refused."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def check_in(self, employee_id: str, branch_id: Optional[str] = None, method: str = "manual") -> Dict[str, Any]:
        db = self.session_factory()
        try:
            employee = db.query(Employee).filter(Employee.id == employee_id).first()
            if not employee:
                return {"success": False, "reason": "not_found", "message": "Employee not found"}
            if not employee.is_active:
                return {"success": False, "reason": "inactive", "message": "Account inactive"}

            existing = db.query(StaffAttendance.id).filter(
                StaffAttendance.employee_id == employee_id,
                StaffAttendance.check_out.is_(None),
            ).first()
            if existing:
                return {"success": False, "reason": "already_checked_in",
                        "message": "Already checked in", "attendance_id": existing.id}

            shift = StaffAttendance(
                employee_id=employee_id,
                branch_id=branch_id or employee.branch_id,
                check_in=utcnow(),
                check_in_method=method,
            )
            db.add(shift)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return {"success": False, "reason": "already_checked_in", "message": "Already checked in"}

            db.refresh(shift)
            return {"success": True, "attendance_id": shift.id, "message": "Check-in successful",
                    "check_in_time": shift.check_in.isoformat()}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_out(self, employee_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            shift = db.query(StaffAttendance).filter(
                StaffAttendance.employee_id == employee_id,
                StaffAttendance.check_out.is_(None),
            ).order_by(StaffAttendance.check_in.desc()).first()
            if not shift:
                return {"success": False, "message": "No active check-in found"}

            shift.check_out = utcnow()
            db.commit()
            db.refresh(shift)
            return {
                "success": True,
                "attendance_id": shift.id,
                "message": "Check-out successful",
                "check_in": shift.check_in.isoformat(),
                "check_out": shift.check_out.isoformat(),
                "duration_minutes": _duration_minutes(shift.check_in, shift.check_out),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_checked_in_staff(self, branch_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = db.query(StaffAttendance)\
                .filter(StaffAttendance.branch_id == branch_id,
                        StaffAttendance.check_out.is_(None))\
                .order_by(StaffAttendance.check_in.desc())\
                .all()
            return [as_dict(r) for r in rows]
        finally:
            db.close()
