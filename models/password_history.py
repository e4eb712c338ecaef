from models.db import db, utcnow


class PasswordHistory(db.Model):
    """Previous password digests, newest first per user; pruned to passwordHistoryCount."""
    __tablename__ = "password_history"
    __table_args__ = (
        db.Index("ix_password_history_user_id_created_at", "user_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
