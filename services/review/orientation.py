"""
Orientation Attendance Tracker.

    Scheduled -> CheckedIn -> Completed
    Scheduled | CheckedIn -> Missed (session finalized without a check-out)
    Missed | Excused -> Scheduled (re-booking)

Admins may also override attendance to Completed, Excused or Missed directly.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError, as_result
from core.security import Action, Actor, authorize, require
from domain.models import OrientationStatus, OrientationView, SessionFinalization
from domain.transitions import assert_attendance_override, assert_orientation_transition
from domain.value_objects import OrientationSlot
from services.observability.metrics import timing_metric
from services.persistence.models import Application, Orientation
from services.persistence.postgres import lock_application
from services.review.aggregator import ensure_open

logger = logging.getLogger(__name__)


class OrientationTracker:
    def __init__(self, runtime, aggregator):
        self.rt = runtime
        self.aggregator = aggregator

    def _orientation(self, session: Session, application_id: str) -> Optional[Orientation]:
        return session.execute(
            select(Orientation).where(Orientation.application_id == application_id).with_for_update()
        ).scalar_one_or_none()

    def _require_booking(self, session: Session, application_id: str) -> Orientation:
        o = self._orientation(session, application_id)
        if o is None:
            raise ReviewError(ErrorKind.NO_ORIENTATION_SCHEDULED, "No orientation is scheduled for this application")
        return o

    @as_result
    def schedule(self, application_id: str, slot: OrientationSlot, actor: Actor) -> OrientationView:
        with timing_metric("orientation.schedule"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.SUBMIT, app.job_category_id, app.applicant_id)
            ensure_open(app)
            policy = self.rt.policies.get(session, app.job_category_id)
            if not policy.require_orientation:
                raise ReviewError(ErrorKind.INVALID_TRANSITION, "This job category does not require orientation")
            if slot.scheduled_date < self.rt.clock().date():
                raise ReviewError(ErrorKind.INVALID_INPUT, "Orientation date is in the past")

            venue = slot.venue or self.rt.settings.ONSITE_VENUE
            o = self._orientation(session, app.id)
            if o is None:
                o = Orientation(application_id=app.id, scheduled_date=slot.scheduled_date,
                                time_slot=slot.time_slot, venue=venue,
                                status=OrientationStatus.SCHEDULED.value)
                session.add(o)
            else:
                current = OrientationStatus(o.status)
                if current is not OrientationStatus.SCHEDULED:
                    # only a missed session may be re-booked; a pending one may be moved
                    assert_orientation_transition(current, OrientationStatus.SCHEDULED)
                o.scheduled_date = slot.scheduled_date
                o.time_slot = slot.time_slot
                o.venue = venue
                o.status = OrientationStatus.SCHEDULED.value
                o.check_in_time = o.check_out_time = None
                o.checked_in_by = o.checked_out_by = None
            session.flush()

            if actor.id != app.applicant_id:
                self.rt.notifications.notify(
                    session,
                    app.applicant_id,
                    "orientation_scheduled",
                    "Orientation Scheduled",
                    f"Your orientation is on {slot.scheduled_date:%B %d, %Y}, {slot.time_slot} at {venue}.",
                    application_id=app.id,
                    action_ref=f"/applications/{app.id}/orientation",
                )
            self.rt.audit.record(
                session, actor.id, "orientation_scheduled",
                f"{slot.scheduled_date.isoformat()} {slot.time_slot} @ {venue}",
                application_id=app.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return OrientationView.model_validate(o)

    @as_result
    def check_in(self, application_id: str, actor: Actor) -> OrientationView:
        with timing_metric("orientation.check_in"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ATTENDANCE, app.job_category_id)
            ensure_open(app)
            o = self._require_booking(session, app.id)
            if o.check_in_time is not None:
                raise ReviewError(
                    ErrorKind.ALREADY_CHECKED_IN, f"Already checked in at {o.check_in_time:%H:%M}"
                )
            assert_orientation_transition(OrientationStatus(o.status), OrientationStatus.CHECKED_IN)
            now = self.rt.clock()
            if o.scheduled_date != now.date():
                raise ReviewError(
                    ErrorKind.INVALID_INPUT,
                    f"Orientation is scheduled for {o.scheduled_date.isoformat()}, not today",
                )
            o.status = OrientationStatus.CHECKED_IN.value
            o.check_in_time = now
            o.checked_in_by = actor.id
            self.rt.audit.record(
                session, actor.id, "orientation_check_in", f"checked in at {now:%H:%M}", application_id=app.id
            )
            return OrientationView.model_validate(o)

    @as_result
    def check_out(self, application_id: str, actor: Actor) -> OrientationView:
        with timing_metric("orientation.check_out"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ATTENDANCE, app.job_category_id)
            ensure_open(app)
            o = self._require_booking(session, app.id)
            if o.check_in_time is None:
                raise ReviewError(ErrorKind.NOT_CHECKED_IN, "Applicant has not checked in")
            if o.check_out_time is not None:
                raise ReviewError(
                    ErrorKind.ALREADY_CHECKED_OUT, f"Already checked out at {o.check_out_time:%H:%M}"
                )
            now = self.rt.clock()
            minimum = timedelta(minutes=self.rt.settings.ORIENTATION_MIN_DURATION_MIN)
            if now - o.check_in_time < minimum:
                raise ReviewError(
                    ErrorKind.INVALID_TRANSITION,
                    f"Orientation must last at least {self.rt.settings.ORIENTATION_MIN_DURATION_MIN} minutes",
                )
            assert_orientation_transition(OrientationStatus(o.status), OrientationStatus.COMPLETED)
            o.status = OrientationStatus.COMPLETED.value
            o.check_out_time = now
            o.checked_out_by = actor.id

            self.rt.notifications.notify(
                session,
                app.applicant_id,
                "orientation_completed",
                "Orientation Completed",
                "You completed the orientation. You may now proceed to payment.",
                application_id=app.id,
                action_ref=f"/applications/{app.id}",
            )
            self.rt.audit.record(
                session, actor.id, "orientation_check_out", f"checked out at {now:%H:%M}", application_id=app.id
            )
            self.aggregator.set_orientation_completed(session, app, True, actor.id)
            return OrientationView.model_validate(o)

    @as_result
    def set_attendance_status(
        self, application_id: str, status: OrientationStatus, notes: Optional[str], actor: Actor
    ) -> OrientationView:
        """Admin override of an attendance record to Completed, Excused or Missed."""
        with timing_metric("orientation.set_attendance_status"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ADMINISTER, app.job_category_id)
            ensure_open(app)
            o = self._require_booking(session, app.id)
            assert_attendance_override(OrientationStatus(o.status), status)

            now = self.rt.clock()
            if status is OrientationStatus.COMPLETED:
                if o.check_in_time is None:
                    o.check_in_time = now
                    o.checked_in_by = actor.id
                if o.check_out_time is None:
                    o.check_out_time = now
                    o.checked_out_by = actor.id
            o.status = status.value
            if notes:
                o.notes = notes

            self.rt.audit.record(
                session, actor.id, "orientation_manual_status_update",
                f"attendance set to {status.value}" + (f" - {notes}" if notes else ""),
                application_id=app.id,
            )
            self.aggregator.set_orientation_completed(
                session, app, status is OrientationStatus.COMPLETED, actor.id
            )
            logger.info("orientation for %s manually set to %s by %s", app.id, status.value, actor.id)
            return OrientationView.model_validate(o)

    @as_result
    def finalize_session(
        self, scheduled_date: date, time_slot: str, venue: str, actor: Actor
    ) -> SessionFinalization:
        """Close a session: everyone not checked out is marked missed and asked to re-book."""
        require(actor, Action.ADMINISTER)
        with timing_metric("orientation.finalize_session"), self.rt.transaction() as session:
            rows = session.execute(
                select(Orientation, Application)
                .join(Application, Application.id == Orientation.application_id)
                .where(Orientation.scheduled_date == scheduled_date)
                .where(Orientation.time_slot == time_slot)
                .where(Orientation.venue == venue)
                .order_by(Orientation.application_id)
                .with_for_update()
            ).all()
            result = SessionFinalization()
            for o, app in rows:
                if not authorize(actor, Action.ADMINISTER, app.job_category_id).allowed:
                    continue
                result.application_ids.append(app.id)
                if o.status == OrientationStatus.COMPLETED.value:
                    result.completed += 1
                    continue
                if o.status == OrientationStatus.EXCUSED.value:
                    result.excused += 1
                    continue
                if o.status == OrientationStatus.MISSED.value:
                    # finalized before, or marked missed by an admin
                    result.missed += 1
                    continue
                assert_orientation_transition(OrientationStatus(o.status), OrientationStatus.MISSED)
                o.status = OrientationStatus.MISSED.value
                result.missed += 1
                self.aggregator.set_orientation_completed(session, app, False, actor.id)
                self.rt.notifications.notify(
                    session,
                    app.applicant_id,
                    "orientation_missed",
                    "Orientation Missed",
                    f"You did not complete the orientation on {scheduled_date:%B %d, %Y}. "
                    "Please book a new schedule.",
                    application_id=app.id,
                    action_ref=f"/applications/{app.id}/orientation",
                )
            self.rt.audit.record(
                session, actor.id, "orientation_session_finalized",
                f"{scheduled_date.isoformat()} {time_slot} @ {venue}: "
                f"{result.completed} completed, {result.missed} missed, {result.excused} excused",
            )
            logger.info(
                "orientation session %s %s finalized: %d completed, %d missed, %d excused",
                scheduled_date, time_slot, result.completed, result.missed, result.excused,
            )
            return result
