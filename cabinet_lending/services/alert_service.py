"""Debounced condition alerts for station managers.

One tracking row per (station, alert type, catalog item) stays open while the
condition holds. A subject is announced once, re-announced after the
follow-up interval, and its row is resolved as soon as the condition clears.
A later recurrence opens a fresh row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cabinet_lending import config
from cabinet_lending.models.lending_models import (
    ALERT_FAULTY_EQUIPMENT,
    ALERT_LOW_STOCK,
    AlertTracking,
    Station,
    StationStock,
)
from cabinet_lending.services.inventory_service import list_low_stock, list_stuck_faulty, stock_item_name
from cabinet_lending.services.notification_service import CHANNEL_EMAIL, Notifier, deliver, enqueue_notification


ALERT_LOGGER = logging.getLogger("cabinet_lending.alerts")


@dataclass(frozen=True)
class AlertSubject:
    subject_id: int
    name: str
    detail: str = ""


@dataclass(frozen=True)
class OpenAlert:
    alert_id: int
    subject_id: int
    last_alert_at: datetime
    alert_count: int


@dataclass
class AlertEvaluation:
    to_resolve: list[OpenAlert] = field(default_factory=list)
    new: list[AlertSubject] = field(default_factory=list)
    due: list[tuple[AlertSubject, OpenAlert]] = field(default_factory=list)
    recent: list[AlertSubject] = field(default_factory=list)

    @property
    def has_notifications(self) -> bool:
        return bool(self.new or self.due)


def evaluate(
    current_subjects: Mapping[int, AlertSubject],
    open_tracking: Mapping[int, OpenAlert],
    now: datetime,
    follow_up_interval: timedelta,
) -> AlertEvaluation:
    """Decide resolve / first notice / follow-up / skip for one station and alert type."""
    result = AlertEvaluation()
    for subject_id, alert in open_tracking.items():
        if subject_id not in current_subjects:
            result.to_resolve.append(alert)
    for subject_id in sorted(current_subjects):
        subject = current_subjects[subject_id]
        alert = open_tracking.get(subject_id)
        if alert is None:
            result.new.append(subject)
        elif now - alert.last_alert_at >= follow_up_interval:
            result.due.append((subject, alert))
        else:
            result.recent.append(subject)
    result.to_resolve.sort(key=lambda alert: alert.subject_id)
    return result


@dataclass(frozen=True)
class AlertRule:
    alert_type: str
    title: str
    follow_up_title: str
    find_subjects: Callable[[Session, int, datetime], dict[int, AlertSubject]]


def _low_stock_subjects(db: Session, station_id: int, now: datetime) -> dict[int, AlertSubject]:
    threshold = config.LOW_STOCK_THRESHOLD
    subjects: dict[int, AlertSubject] = {}
    for stock in list_low_stock(db, station_id, threshold):
        subjects[stock.CatalogItemID] = AlertSubject(
            subject_id=stock.CatalogItemID,
            name=stock_item_name(stock),
            detail=f"{int(stock.Quantity or 0)} left (minimum {threshold})",
        )
    return subjects


def _faulty_days(stock: StationStock, now: datetime) -> int:
    if not stock.FaultySince:
        return 0
    return max(0, (now - stock.FaultySince).days)


def _faulty_subjects(db: Session, station_id: int, now: datetime) -> dict[int, AlertSubject]:
    cutoff = now - timedelta(days=config.FAULTY_DAYS_THRESHOLD)
    subjects: dict[int, AlertSubject] = {}
    for stock in list_stuck_faulty(db, station_id, cutoff):
        subjects[stock.CatalogItemID] = AlertSubject(
            subject_id=stock.CatalogItemID,
            name=stock_item_name(stock),
            detail=f"faulty for {_faulty_days(stock, now)} days",
        )
    return subjects


LOW_STOCK_RULE = AlertRule(
    alert_type=ALERT_LOW_STOCK,
    title="Stock refill needed",
    follow_up_title="Reminder: stock refill still needed",
    find_subjects=_low_stock_subjects,
)
FAULTY_EQUIPMENT_RULE = AlertRule(
    alert_type=ALERT_FAULTY_EQUIPMENT,
    title="Faulty equipment needs repair",
    follow_up_title="Reminder: faulty equipment still needs repair",
    find_subjects=_faulty_subjects,
)
ALERT_RULES = (LOW_STOCK_RULE, FAULTY_EQUIPMENT_RULE)


def load_open_tracking(db: Session, station_id: int, alert_type: str) -> tuple[dict[int, OpenAlert], list[int]]:
    """Open rows keyed by subject, plus the ids of extra open rows for a subject already seen."""
    rows = db.execute(
        select(AlertTracking)
        .where(
            AlertTracking.StationID == station_id,
            AlertTracking.AlertType == alert_type,
            AlertTracking.ResolvedAt.is_(None),
        )
        .order_by(AlertTracking.AlertID)
    ).scalars().all()
    open_tracking: dict[int, OpenAlert] = {}
    duplicate_ids: list[int] = []
    for row in rows:
        if row.SubjectID in open_tracking:
            # Concurrent runs can race an insert; the oldest row stays open and the rest are resolved.
            ALERT_LOGGER.warning(
                "Duplicate open alert station_id=%s type=%s subject_id=%s alert_id=%s",
                station_id,
                alert_type,
                row.SubjectID,
                row.AlertID,
            )
            duplicate_ids.append(row.AlertID)
            continue
        open_tracking[row.SubjectID] = OpenAlert(
            alert_id=row.AlertID,
            subject_id=row.SubjectID,
            last_alert_at=row.LastAlertAt,
            alert_count=int(row.AlertCount or 0),
        )
    return open_tracking, duplicate_ids


def apply_evaluation(
    db: Session,
    station_id: int,
    alert_type: str,
    evaluation: AlertEvaluation,
    now: datetime,
    duplicate_ids: list[int] | None = None,
) -> None:
    stale_ids = [alert.alert_id for alert in evaluation.to_resolve] + list(duplicate_ids or [])
    if stale_ids:
        db.execute(
            update(AlertTracking)
            .where(AlertTracking.AlertID.in_(stale_ids), AlertTracking.ResolvedAt.is_(None))
            .values(ResolvedAt=now)
            .execution_options(synchronize_session="fetch")
        )
    for subject in evaluation.new:
        db.add(
            AlertTracking(
                StationID=station_id,
                AlertType=alert_type,
                SubjectID=subject.subject_id,
                SubjectName=subject.name,
                FirstAlertAt=now,
                LastAlertAt=now,
                AlertCount=1,
            )
        )
    for _subject, alert in evaluation.due:
        db.execute(
            update(AlertTracking)
            .where(AlertTracking.AlertID == alert.alert_id)
            .values(LastAlertAt=now, AlertCount=AlertTracking.AlertCount + 1)
            .execution_options(synchronize_session="fetch")
        )


def format_alert_message(station: Station, rule: AlertRule, subjects: list[AlertSubject], follow_up: bool) -> str:
    title = rule.follow_up_title if follow_up else rule.title
    lines = [f"{title} - {station.StationName}"]
    if station.ManagerName:
        lines.append(f"Hello {station.ManagerName},")
    for subject in subjects:
        lines.append(f"- {subject.name}: {subject.detail}" if subject.detail else f"- {subject.name}")
    return "\n".join(lines)


def _send_manager_alert(
    db: Session,
    notifier: Notifier,
    station: Station,
    rule: AlertRule,
    subjects: list[AlertSubject],
    follow_up: bool,
) -> bool:
    notification = enqueue_notification(
        db,
        f"{rule.alert_type}_followup" if follow_up else rule.alert_type,
        CHANNEL_EMAIL,
        station.ManagerEmail,
        format_alert_message(station, rule, subjects, follow_up),
        station_id=station.StationID,
    )
    db.commit()
    return deliver(db, notifier, notification)


def run_station_alerts(
    db: Session,
    notifier: Notifier,
    station: Station,
    rule: AlertRule,
    now: datetime | None = None,
) -> list[dict]:
    """Evaluate one rule for one station, store the tracking changes, then notify.

    Tracking rows are committed before anything is sent, so a failed send still
    counts as an attempt and is retried after the next follow-up interval.
    """
    now = now or datetime.now()
    current_subjects = rule.find_subjects(db, station.StationID, now)
    open_tracking, duplicate_ids = load_open_tracking(db, station.StationID, rule.alert_type)
    evaluation = evaluate(current_subjects, open_tracking, now, timedelta(days=config.FOLLOW_UP_DAYS))

    try:
        apply_evaluation(db, station.StationID, rule.alert_type, evaluation, now, duplicate_ids)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    if evaluation.to_resolve:
        ALERT_LOGGER.info(
            "Alerts resolved station_id=%s type=%s count=%s",
            station.StationID,
            rule.alert_type,
            len(evaluation.to_resolve),
        )

    results: list[dict] = []
    batches = (
        (False, evaluation.new, rule.alert_type),
        (True, [subject for subject, _alert in evaluation.due], f"{rule.alert_type}_followup"),
    )
    for follow_up, subjects, label in batches:
        if not subjects:
            continue
        sent = _send_manager_alert(db, notifier, station, rule, subjects, follow_up)
        ALERT_LOGGER.info(
            "Alert batch station_id=%s type=%s follow_up=%s items=%s sent=%s",
            station.StationID,
            rule.alert_type,
            follow_up,
            len(subjects),
            sent,
        )
        results.append(
            {
                "station": station.StationName,
                "stationID": station.StationID,
                "alertType": label,
                "status": "sent" if sent else "error",
                "isFollowUp": follow_up,
                "itemsCount": len(subjects),
                "items": [subject.subject_id for subject in subjects],
            }
        )
    return results


def scan_low_stock(db: Session, notifier: Notifier, station_id: int, now: datetime | None = None) -> list[dict]:
    """Inline low-stock pass after stock changes. Never raises."""
    try:
        station = db.get(Station, station_id)
        if not station or not station.IsActive or not station.ManagerEmail:
            return []
        return run_station_alerts(db, notifier, station, LOW_STOCK_RULE, now=now)
    except SQLAlchemyError:
        db.rollback()
        ALERT_LOGGER.exception("Inline low stock scan failed station_id=%s", station_id)
        return []


def run_daily_alerts(db: Session, notifier: Notifier, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    results: list[dict] = []
    stations = db.execute(
        select(Station).where(Station.IsActive.is_(True)).order_by(Station.StationID)
    ).scalars().all()

    for station in stations:
        if not station.ManagerEmail:
            results.append(
                {
                    "station": station.StationName,
                    "stationID": station.StationID,
                    "alertType": "all",
                    "status": "skipped",
                    "reason": "No manager email",
                }
            )
            continue
        for rule in ALERT_RULES:
            try:
                results.extend(run_station_alerts(db, notifier, station, rule, now=now))
            except Exception as exc:
                db.rollback()
                ALERT_LOGGER.exception(
                    "Alert run failed station_id=%s type=%s",
                    station.StationID,
                    rule.alert_type,
                )
                results.append(
                    {
                        "station": station.StationName,
                        "stationID": station.StationID,
                        "alertType": rule.alert_type,
                        "status": "error",
                        "reason": str(exc.__class__.__name__),
                    }
                )

    summary = {
        "total": len(results),
        "sent": sum(1 for row in results if row["status"] == "sent"),
        "skipped": sum(1 for row in results if row["status"] == "skipped"),
        "errors": sum(1 for row in results if row["status"] == "error"),
    }
    ALERT_LOGGER.info("Daily alerts completed summary=%s", summary)
    return {"success": True, "summary": summary, "results": results}


def serialize_alert(alert: AlertTracking) -> dict:
    return {
        "alertID": alert.AlertID,
        "stationID": alert.StationID,
        "alertType": alert.AlertType,
        "subjectID": alert.SubjectID,
        "subjectName": alert.SubjectName,
        "firstAlertAt": alert.FirstAlertAt,
        "lastAlertAt": alert.LastAlertAt,
        "alertCount": alert.AlertCount,
        "resolvedAt": alert.ResolvedAt,
    }
