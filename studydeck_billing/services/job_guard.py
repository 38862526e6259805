"""Run guard for scheduled jobs (sync, normalization, reminders).

A job may start only when its previous start is older than the minimum
interval. The claim is one conditional UPDATE on job_runs, so when two
triggers race exactly one of them gets rowcount == 1.
"""

import logging
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from studydeck_billing.extensions import db
from studydeck_billing.models.job_run import JobRun
from studydeck_billing.services.subscription_state import utcnow

logger = logging.getLogger(__name__)


def claim_job_run(job_name, min_interval_seconds, now=None):
    """Try to start `job_name`. Returns True if this caller owns the run."""
    now = now or utcnow()

    if db.session.get(JobRun, job_name) is None:
        db.session.add(JobRun(job_name=job_name))
        try:
            db.session.commit()
        except IntegrityError:
            # Someone else created the row first; fall through to the UPDATE.
            db.session.rollback()

    cutoff = now - timedelta(seconds=min_interval_seconds or 0)
    result = db.session.execute(
        update(JobRun)
        .where(JobRun.job_name == job_name)
        .where(or_(JobRun.last_started_at.is_(None), JobRun.last_started_at <= cutoff))
        .values(last_started_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    if result.rowcount != 1:
        logger.info(f"Job {job_name} skipped — previous run started less than "
                    f"{min_interval_seconds}s ago")
        return False
    return True


def finish_job_run(job_name, summary, now=None):
    run = db.session.get(JobRun, job_name)
    if run is None:
        return
    run.last_finished_at = now or utcnow()
    run.last_summary = summary
    db.session.commit()


def skipped_summary():
    return {"success": True, "skipped": True, "reason": "recent_run"}
