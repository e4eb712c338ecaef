from models.db import db, utcnow

METHOD_NONE = "NONE"
METHOD_TOTP = "TOTP"
METHOD_EMAIL = "EMAIL"


class TwoFactorAuth(db.Model):
    __tablename__ = "two_factor_auth"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    method = db.Column(db.String(16), default=METHOD_NONE, nullable=False)
    secret = db.Column(db.String(64), nullable=True)  # TOTP only
    enabled = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    enabled_at = db.Column(db.DateTime, nullable=True)


class BackupCode(db.Model):
    __tablename__ = "two_factor_backup_codes"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # sha256 of the code; plain codes are only shown once
    code_hash = db.Column(db.String(128), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
