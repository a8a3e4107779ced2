from billing_engine.extensions import db
from billing_engine.utils import isoformat, utcnow


class ApiKey(db.Model):
    __tablename__ = "api_keys"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
    name = db.Column(db.String(100), nullable=False, default="default")
    key_hash = db.Column(db.String(64), unique=True, nullable=False, index=True)
    key_prefix = db.Column(db.String(24), nullable=False)
    scopes = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    revoked_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User", back_populates="api_keys")

    @property
    def is_revoked(self):
        return self.revoked_at is not None

    def to_dict(self):
        # Never includes the hash; the raw secret is only ever returned at creation.
        return {
            "id": self.id,
            "name": self.name,
            "prefix": self.key_prefix,
            "scopes": list(self.scopes or []),
            "createdAt": isoformat(self.created_at),
            "revokedAt": isoformat(self.revoked_at),
        }

    def __repr__(self):
        return f"<ApiKey {self.key_prefix}… user={self.user_id}>"
