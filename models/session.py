from models.db import db, utcnow

PURPOSE_FULL = "full"
PURPOSE_PENDING_2FA = "pending_2fa"
PURPOSE_PENDING_PASSWORD_CHANGE = "pending_password_change"


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # store only hashed token in DB (never store raw token)
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    purpose = db.Column(db.String(32), default=PURPOSE_FULL, nullable=False)

    device = db.Column(db.String(16), nullable=True)
    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    last_activity = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    suspicious_activity = db.Column(db.Boolean, default=False, nullable=False)
    suspicious_reason = db.Column(db.String(255), nullable=True)

    terminated_at = db.Column(db.DateTime, nullable=True)
    terminated_reason = db.Column(db.String(64), nullable=True)

    def is_live(self, now) -> bool:
        return self.terminated_at is None and self.expires_at > now

    @property
    def is_full(self) -> bool:
        return self.purpose == PURPOSE_FULL
