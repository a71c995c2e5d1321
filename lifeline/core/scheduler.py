"""Background jobs: alert scan, nightly status refresh and auth-code cleanup.

Runs on APScheduler's ``BackgroundScheduler`` inside the web process. Each job
pushes an application context so the services see the same session and
configuration as request handlers.
"""

from __future__ import annotations

import atexit
import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask

from lifeline.core.extensions import db

logger = logging.getLogger(__name__)

ALERT_SCAN_JOB_ID = "lifeline_alert_scan"
STATUS_REFRESH_JOB_ID = "lifeline_status_refresh"
AUTH_CLEANUP_JOB_ID = "lifeline_auth_code_cleanup"


def _job(app: Flask, name: str, fn: Callable[[], object]) -> Callable[[], None]:
    def _run() -> None:
        with app.app_context():
            try:
                outcome = fn()
                logger.debug("job %s finished: %s", name, outcome)
            except Exception:
                db.session.rollback()
                logger.exception("job %s failed", name)
            finally:
                db.session.remove()

    return _run


def _alert_scan() -> object:
    from lifeline.lines.alerts import run_scheduled_alert_scan

    return run_scheduled_alert_scan()


def _status_refresh() -> object:
    from lifeline.lines.services import refresh_record_statuses

    return refresh_record_statuses()


def _auth_cleanup() -> object:
    from lifeline.lines.authorization import cleanup_expired_codes

    return cleanup_expired_codes()


def build_scheduler(app: Flask) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    if app.config.get("ALERT_GENERATION_ENABLED"):
        scheduler.add_job(
            _job(app, "alert-scan", _alert_scan),
            "interval",
            minutes=int(app.config.get("ALERT_SCAN_INTERVAL_MINUTES", 60)),
            id=ALERT_SCAN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    else:
        logger.info("alert generation disabled")
    if app.config.get("STATUS_CHECK_ENABLED"):
        scheduler.add_job(
            _job(app, "status-refresh", _status_refresh),
            "cron",
            hour=0,
            minute=1,
            id=STATUS_REFRESH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    else:
        logger.info("automatic status refresh disabled")
    scheduler.add_job(
        _job(app, "auth-code-cleanup", _auth_cleanup),
        "interval",
        minutes=int(app.config.get("AUTH_CODE_CLEANUP_INTERVAL_MINUTES", 15)),
        id=AUTH_CLEANUP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def init_scheduler(app: Flask) -> BackgroundScheduler | None:
    if not app.config.get("SCHEDULER_ENABLED"):
        return None
    scheduler = build_scheduler(app)
    scheduler.start()
    app.extensions["lifeline_scheduler"] = scheduler
    atexit.register(shutdown_scheduler, scheduler)
    logger.info("scheduler started with %s job(s)", len(scheduler.get_jobs()))
    return scheduler


def shutdown_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("scheduler stopped")
