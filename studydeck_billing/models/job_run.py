"""Scheduled job watermark.

One row per job name. A run may start only when `last_started_at` is
older than the job's minimum interval; the check-and-set is a single
conditional UPDATE, so two overlapping triggers cannot both win.
"""

from studydeck_billing.extensions import db


class JobRun(db.Model):
    __tablename__ = "job_runs"

    job_name = db.Column(db.String(100), primary_key=True)
    last_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_summary = db.Column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<JobRun {self.job_name}>"
