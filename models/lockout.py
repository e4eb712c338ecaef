from models.db import db, utcnow


class AccountLockout(db.Model):
    __tablename__ = "account_lockouts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    failed_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_failed_at = db.Column(db.DateTime, nullable=True)
    last_failed_ip = db.Column(db.String(64), nullable=True, index=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    unlocked_at = db.Column(db.DateTime, nullable=True)
    unlocked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = db.relationship("User", foreign_keys=[user_id])


class IpLockout(db.Model):
    __tablename__ = "ip_lockouts"

    id = db.Column(db.Integer, primary_key=True)
    ip = db.Column(db.String(64), unique=True, nullable=False, index=True)

    failed_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_failed_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    unlocked_at = db.Column(db.DateTime, nullable=True)
    unlocked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
