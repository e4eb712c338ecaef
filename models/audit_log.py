from models.db import db, utcnow


class AuditLog(db.Model):
    """Append-only security event trail (logins, lockouts, 2FA and session changes)."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_user_id_timestamp", "user_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)  # null for events with no resolved account
    action = db.Column(db.String(80), nullable=False, index=True)  # LOGIN_FAIL, ACCOUNT_UNLOCK, ...
    entity = db.Column(db.String(80), nullable=True)   # account_lockout, ip_lockout, session
    entity_id = db.Column(db.String(80), nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
